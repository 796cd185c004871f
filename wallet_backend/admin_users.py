from datetime import datetime, timezone

from flask import Blueprint, request, jsonify, current_app

from . import config
from .audit import log_admin_action
from .auth import require_admin, require_super_admin
from .db import get_supabase, fetch_one, first_row
from .extensions import limiter

admin_users_bp = Blueprint('admin_users', __name__)

SORTABLE_COLUMNS = ('created_at', 'updated_at', 'email', 'full_name', 'role', 'kyc_status', 'is_banned')


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


@admin_users_bp.route('/api/admin/users', methods=['GET'])
@require_admin
@limiter.limit("60 per minute")
def admin_list_users():
    """List users with filtering and pagination (zero-based pageIndex)."""
    try:
        page_index = max(_int_arg('pageIndex', 0), 0)
        page_size = min(max(_int_arg('pageSize', 10), 1), 100)
        search = request.args.get('globalFilter', '').strip()
        role_filter = request.args.get('role', '').strip()
        status_filter = request.args.get('status', '').strip()  # active, banned
        # multi-column sorts arrive comma separated; the first one wins
        sort_by = request.args.get('sortBy', 'created_at').split(',')[0]
        sort_order = request.args.get('sortOrder', 'desc').split(',')[0]
        date_from = request.args.get('dateFrom')
        date_to = request.args.get('dateTo')

        if sort_by not in SORTABLE_COLUMNS:
            sort_by = 'created_at'

        query = get_supabase().table('profiles').select('*', count='exact')
        if search:
            query = query.or_(f"email.ilike.%{search}%,full_name.ilike.%{search}%")
        if role_filter:
            query = query.eq('role', role_filter)
        if status_filter == 'active':
            query = query.eq('is_banned', False)
        elif status_filter == 'banned':
            query = query.eq('is_banned', True)
        if date_from:
            query = query.gte('created_at', date_from)
        if date_to:
            query = query.lte('created_at', date_to)

        start = page_index * page_size
        res = query.order(sort_by, desc=(sort_order != 'asc')).range(start, start + page_size - 1).execute()

        return jsonify({'data': res.data or [], 'total': res.count or 0}), 200
    except Exception:
        current_app.logger.exception("admin_list_users error")
        return jsonify({'error': 'Internal server error'}), 500


@admin_users_bp.route('/api/admin/users/<user_id>', methods=['GET'])
@require_admin
def admin_get_user(user_id):
    """Single user with balances and their last ten transactions."""
    try:
        supabase = get_supabase()
        user = fetch_one(supabase.table('profiles').select('*').eq('id', user_id))
        if not user:
            return jsonify({'error': 'User not found'}), 404

        balances = (supabase.table('user_balances')
                    .select('id, base_token_id, balance, locked_balance, created_at, updated_at')
                    .eq('user_id', user_id)
                    .order('created_at', desc=True)
                    .execute().data or [])
        token_ids = list({b['base_token_id'] for b in balances})
        tokens = {}
        if token_ids:
            rows = (supabase.table('base_tokens')
                    .select('id, code, name, symbol, decimals, icon, logo_url, is_active')
                    .in_('id', token_ids).execute().data or [])
            tokens = {t['id']: t for t in rows}

        wallets = []
        for b in balances:
            token = tokens.get(b['base_token_id']) or {}
            wallets.append({
                'id': b['id'],
                'user_id': user_id,
                'coin_symbol': token.get('symbol', ''),
                'coin_name': token.get('name', ''),
                'balance': b.get('balance'),
                'locked_balance': b.get('locked_balance'),
                'created_at': b.get('created_at'),
                'updated_at': b.get('updated_at'),
                'token': token or None,
            })

        transactions = (supabase.table('transactions').select('*')
                        .eq('user_id', user_id)
                        .order('created_at', desc=True)
                        .limit(10).execute().data or [])

        return jsonify({'user': user, 'wallets': wallets, 'transactions': transactions}), 200
    except Exception:
        current_app.logger.exception("admin_get_user error")
        return jsonify({'error': 'Internal server error'}), 500


@admin_users_bp.route('/api/admin/users/<user_id>/ban', methods=['PATCH'])
@require_admin
@limiter.limit("30 per minute")
def admin_ban_user(user_id):
    """Ban or unban a user."""
    try:
        body = request.get_json(silent=True) or {}
        is_banned = body.get('is_banned')
        reason = body.get('reason')

        if not isinstance(is_banned, bool):
            return jsonify({'error': 'is_banned must be a boolean'}), 400
        if user_id == request.user_id:
            return jsonify({'error': 'You cannot ban yourself'}), 400

        now = datetime.now(timezone.utc).isoformat()
        update_data = {
            'is_banned': is_banned,
            'banned_at': now if is_banned else None,
            'banned_reason': (reason or 'No reason provided') if is_banned else None,
            'updated_at': now,
        }
        updated = first_row(get_supabase().table('profiles').update(update_data).eq('id', user_id).execute())
        if not updated:
            return jsonify({'error': 'User not found'}), 404

        log_admin_action('user_banned' if is_banned else 'user_unbanned', user_id, {
            'reason': update_data['banned_reason'],
        })

        return jsonify({
            'message': 'User banned successfully' if is_banned else 'User unbanned successfully',
            'user': updated,
        }), 200
    except Exception:
        current_app.logger.exception("admin_ban_user error")
        return jsonify({'error': 'Internal server error'}), 500


@admin_users_bp.route('/api/admin/users/<user_id>/role', methods=['PATCH'])
@require_super_admin
@limiter.limit("30 per minute")
def admin_update_user_role(user_id):
    try:
        body = request.get_json(silent=True) or {}
        role = body.get('role')

        if not role or role not in config.ROLES:
            return jsonify({'error': 'Invalid role. Must be: user, admin, or super_admin'}), 400
        if user_id == request.user_id:
            return jsonify({'error': 'You cannot change your own role'}), 400

        supabase = get_supabase()
        target = fetch_one(supabase.table('profiles').select('id, role').eq('id', user_id))
        if not target:
            return jsonify({'error': 'User not found'}), 404

        updated = first_row(supabase.table('profiles').update({
            'role': role,
            'updated_at': datetime.now(timezone.utc).isoformat(),
        }).eq('id', user_id).execute())
        if not updated:
            return jsonify({'error': 'Failed to update user role'}), 500

        log_admin_action('user_role_changed', user_id, {'old_role': target.get('role'), 'new_role': role})

        return jsonify({'message': 'User role updated successfully', 'user': updated}), 200
    except Exception:
        current_app.logger.exception("admin_update_user_role error")
        return jsonify({'error': 'Internal server error'}), 500
