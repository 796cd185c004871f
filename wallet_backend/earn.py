"""Earn vaults: fixed-term USDT deposits with a pre-computed APY payout."""
import calendar
from datetime import datetime, timezone

from flask import Blueprint, request, jsonify, current_app

from .audit import log_admin_action
from .auth import require_auth, require_admin, require_super_admin, feature_required
from .db import get_supabase, fetch_one, first_row, parse_timestamp
from .extensions import limiter
from .wallet import get_usdt_token_id, get_available_balance, adjust_balance

earn_bp = Blueprint('earn', __name__)

VAULT_DURATIONS = (1, 3, 6, 12)
VAULT_RISK_LEVELS = ('low', 'medium', 'high')
VAULT_STATUSES = ('active', 'sold_out', 'ended')
VAULT_EDITABLE_FIELDS = (
    'title', 'subtitle', 'apy_percent', 'duration_months', 'min_amount',
    'max_amount', 'total_capacity', 'risk_level', 'status',
)
AVG_DAYS_PER_MONTH = 30.44


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the end of shorter months."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def calculate_returns(amount: float, apy_percent: float, duration_months: int) -> dict:
    duration_days = round(duration_months * AVG_DAYS_PER_MONTH)
    total_profit = amount * (apy_percent / 100) * (duration_months / 12)
    return {
        'duration_days': duration_days,
        'total_profit': total_profit,
        'daily_profit_rate': total_profit / duration_days if duration_days else 0.0,
    }


def vault_availability(vault: dict) -> dict:
    filled = float(vault.get('current_filled') or 0)
    capacity = float(vault['total_capacity']) if vault.get('total_capacity') else None
    return {
        'isFull': capacity is not None and filled >= capacity,
        'fillPercentage': (filled / capacity * 100) if capacity else 0,
        'remainingCapacity': capacity - filled if capacity is not None else None,
    }


def _number(value):
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def validate_vault_fields(body: dict):
    """Returns an error message for the first invalid field present in ``body``, else None."""
    if 'apy_percent' in body:
        apy = _number(body['apy_percent'])
        if apy is None or apy <= 0 or apy > 100:
            return 'APY must be between 0.1 and 100'
    if 'duration_months' in body:
        duration = _number(body['duration_months'])
        if duration is None or duration not in VAULT_DURATIONS:
            return 'Duration must be 1, 3, 6, or 12 months'
    min_amount = _number(body.get('min_amount')) if 'min_amount' in body else None
    if 'min_amount' in body and (min_amount is None or min_amount <= 0):
        return 'Minimum amount must be greater than 0'
    if body.get('max_amount') is not None and min_amount is not None:
        max_amount = _number(body['max_amount'])
        if max_amount is None or max_amount <= min_amount:
            return 'Maximum amount must be greater than minimum amount'
    if 'risk_level' in body and body['risk_level'] not in VAULT_RISK_LEVELS:
        return 'Risk level must be low, medium, or high'
    if 'status' in body and body['status'] not in VAULT_STATUSES:
        return 'Status must be active, sold_out, or ended'
    return None


def position_progress(position: dict, now: datetime) -> dict:
    invested_at = parse_timestamp(position.get('invested_at')) or now
    matures_at = parse_timestamp(position.get('matures_at')) or now
    days_elapsed = (now - invested_at).total_seconds() / 86400
    total_days = (matures_at - invested_at).total_seconds() / 86400
    total_profit = float(position.get('total_profit_usdt') or 0)

    if position.get('status') == 'active':
        effective = min(days_elapsed, total_days)
        current_profit = min(float(position.get('daily_profit_rate') or 0) * max(effective, 0), total_profit)
    else:
        current_profit = total_profit

    remaining = (matures_at - now).total_seconds()
    return {
        'current_profit': current_profit,
        'days_elapsed': int(max(days_elapsed, 0)),
        'days_remaining': max(0, -(-int(remaining) // 86400)),
        'progress_percentage': min(100.0, days_elapsed / total_days * 100) if total_days > 0 else 100.0,
        'is_matured': now >= matures_at,
    }


# --------------------- User routes ---------------------
@earn_bp.route('/api/earn/vaults', methods=['GET'])
@feature_required('earn')
def list_vaults():
    try:
        vaults = (get_supabase().table('earn_vaults').select('*')
                  .eq('status', 'active')
                  .order('apy_percent', desc=True).execute().data or [])
        result = [{**v, 'availability': vault_availability(v)} for v in vaults]
        return jsonify({'vaults': result, 'count': len(result)}), 200
    except Exception:
        current_app.logger.exception("list_vaults error")
        return jsonify({'error': 'Internal server error'}), 500


@earn_bp.route('/api/earn/positions', methods=['GET'])
@feature_required('earn')
@require_auth
def list_earn_positions():
    try:
        supabase = get_supabase()
        positions = (supabase.table('user_earn_positions').select('*')
                     .eq('user_id', request.user_id)
                     .order('invested_at', desc=True).execute().data or [])

        vault_ids = list({p['vault_id'] for p in positions})
        vaults = {}
        if vault_ids:
            rows = supabase.table('earn_vaults').select('*').in_('id', vault_ids).execute().data or []
            vaults = {v['id']: v for v in rows}

        now = datetime.now(timezone.utc)
        for p in positions:
            p['vault'] = vaults.get(p['vault_id'])
            p['calculated'] = position_progress(p, now)

        active = [p for p in positions if p.get('status') == 'active']
        matured = [p for p in positions if p.get('status') == 'matured']
        withdrawn = [p for p in positions if p.get('status') == 'withdrawn']

        return jsonify({
            'positions': positions,
            'grouped': {'active': active, 'matured': matured, 'withdrawn': withdrawn},
            'summary': {
                'total_active_positions': len(active),
                'total_invested': sum(float(p.get('amount_usdt') or 0) for p in active),
                'total_current_profit': sum(p['calculated']['current_profit'] for p in active),
                'total_matured_positions': len(matured),
                'total_lifetime_earnings': sum(float(p.get('total_profit_usdt') or 0) for p in withdrawn),
            },
        }), 200
    except Exception:
        current_app.logger.exception("list_earn_positions error")
        return jsonify({'error': 'Internal server error'}), 500


@earn_bp.route('/api/earn/invest', methods=['POST'])
@feature_required('earn')
@require_auth
@limiter.limit("20 per minute")
def invest():
    try:
        body = request.get_json(silent=True) or {}
        vault_id = body.get('vaultId')
        if not vault_id or not body.get('amount'):
            return jsonify({'error': 'Missing vault ID or amount'}), 400
        amount = _number(body['amount'])
        if amount is None or amount <= 0:
            return jsonify({'error': 'Invalid investment amount'}), 400

        supabase = get_supabase()
        user_id = request.user_id

        vault = fetch_one(supabase.table('earn_vaults').select('*').eq('id', vault_id).eq('status', 'active'))
        if not vault:
            return jsonify({'error': 'Vault not found or inactive'}), 404

        if amount < float(vault.get('min_amount') or 0):
            return jsonify({'error': f"Minimum investment is {vault['min_amount']} USDT"}), 400
        if vault.get('max_amount') and amount > float(vault['max_amount']):
            return jsonify({'error': f"Maximum investment is {vault['max_amount']} USDT"}), 400
        current_filled = float(vault.get('current_filled') or 0)
        capacity = float(vault['total_capacity']) if vault.get('total_capacity') else None
        if capacity and current_filled + amount > capacity:
            return jsonify({'error': 'Insufficient vault capacity'}), 400

        usdt_id = get_usdt_token_id(supabase)
        if not usdt_id:
            return jsonify({'error': 'USDT token not configured'}), 500

        balance = get_available_balance(supabase, user_id, usdt_id)
        if balance['available_balance'] < amount:
            return jsonify({
                'error': 'Insufficient available USDT balance',
                'available': balance['available_balance'],
                'requested': amount,
                'locked': balance['locked_balance'],
            }), 400

        apy = float(vault['apy_percent'])
        months = int(vault['duration_months'])
        returns = calculate_returns(amount, apy, months)
        now = datetime.now(timezone.utc)
        matures_at = add_months(now, months)

        adjust_balance(supabase, user_id, usdt_id, amount, 'debit')

        try:
            position = first_row(supabase.table('user_earn_positions').insert({
                'user_id': user_id,
                'vault_id': vault_id,
                'amount_usdt': amount,
                'daily_profit_rate': returns['daily_profit_rate'],
                'total_profit_usdt': returns['total_profit'],
                'status': 'active',
                'invested_at': now.isoformat(),
                'matures_at': matures_at.isoformat(),
            }).execute())
            if not position:
                raise RuntimeError("position insert returned no row")
        except Exception:
            current_app.logger.exception("Failed to create earn position, refunding")
            adjust_balance(supabase, user_id, usdt_id, amount, 'credit')
            return jsonify({'error': 'Failed to create investment position'}), 500

        try:
            supabase.table('earn_vaults').update({'current_filled': current_filled + amount}).eq('id', vault_id).execute()
        except Exception as e:
            current_app.logger.error(f"Failed to update vault capacity: {e}")

        try:
            supabase.table('transactions').insert({
                'user_id': user_id,
                'base_token_id': usdt_id,
                'type': 'earn_invest',
                'coin_symbol': 'USDT',
                'amount': str(amount),
                'status': 'completed',
                'completed_at': now.isoformat(),
                'metadata': {
                    'vault_id': vault_id,
                    'vault_title': vault.get('title'),
                    'position_id': position['id'],
                    'apy': apy,
                    'duration_months': months,
                    'matures_at': matures_at.isoformat(),
                },
            }).execute()
        except Exception as e:
            current_app.logger.error(f"Failed to record earn_invest transaction: {e}")

        return jsonify({
            'success': True,
            'position': {**position, 'vault': vault},
            'message': f"Successfully invested {amount} USDT",
        }), 200
    except Exception:
        current_app.logger.exception("invest error")
        return jsonify({'error': 'Internal server error'}), 500


@earn_bp.route('/api/earn/claim', methods=['POST'])
@feature_required('earn')
@require_auth
@limiter.limit("20 per minute")
def claim():
    """Pay a matured position's principal plus profit back to the USDT balance."""
    try:
        body = request.get_json(silent=True) or {}
        position_id = body.get('positionId')
        if not position_id:
            return jsonify({'error': 'Missing position ID'}), 400

        supabase = get_supabase()
        user_id = request.user_id

        position = fetch_one(
            supabase.table('user_earn_positions').select('*').eq('id', position_id).eq('user_id', user_id)
        )
        if not position:
            return jsonify({'error': 'Position not found'}), 404
        if position.get('status') != 'matured':
            return jsonify({'error': 'Position is not matured yet'}), 400
        if position.get('withdrawn_at'):
            return jsonify({'error': 'Position already withdrawn'}), 400

        usdt_id = get_usdt_token_id(supabase)
        if not usdt_id:
            return jsonify({'error': 'USDT token not configured'}), 500

        principal = float(position.get('amount_usdt') or 0)
        profit = float(position.get('total_profit_usdt') or 0)
        total = principal + profit

        try:
            adjust_balance(supabase, user_id, usdt_id, total, 'credit')
        except Exception:
            current_app.logger.exception(f"Failed to credit earn claim for position {position_id}")
            return jsonify({'error': 'Failed to process withdrawal'}), 500

        now = datetime.now(timezone.utc).isoformat()
        try:
            # status guard keeps a concurrent claim from paying twice
            withdrawn = first_row(
                supabase.table('user_earn_positions')
                .update({'status': 'withdrawn', 'withdrawn_at': now})
                .eq('id', position_id).eq('status', 'matured').execute()
            )
            if not withdrawn:
                raise RuntimeError("position was no longer matured")
        except Exception:
            current_app.logger.exception(f"Failed to mark position {position_id} withdrawn, reversing credit")
            adjust_balance(supabase, user_id, usdt_id, total, 'debit')
            return jsonify({'error': 'Failed to mark position as withdrawn'}), 500

        vault = fetch_one(supabase.table('earn_vaults').select('title').eq('id', position.get('vault_id')))
        try:
            supabase.table('transactions').insert({
                'user_id': user_id,
                'base_token_id': usdt_id,
                'type': 'earn_claim',
                'coin_symbol': 'USDT',
                'amount': str(total),
                'status': 'completed',
                'completed_at': now,
                'metadata': {
                    'position_id': position_id,
                    'vault_id': position.get('vault_id'),
                    'vault_title': (vault or {}).get('title'),
                    'principal': principal,
                    'profit': profit,
                    'total_payout': total,
                },
            }).execute()
        except Exception as e:
            current_app.logger.error(f"Failed to record earn_claim transaction: {e}")

        balance = get_available_balance(supabase, user_id, usdt_id)
        return jsonify({
            'success': True,
            'payout': {'principal': principal, 'profit': profit, 'total': total},
            'new_balance': balance['balance'],
            'message': f"Successfully claimed {total:.2f} USDT",
        }), 200
    except Exception:
        current_app.logger.exception("claim error")
        return jsonify({'error': 'Internal server error'}), 500


# --------------------- Admin ---------------------
def _vault_position_stats(supabase, vault_id):
    return (supabase.table('user_earn_positions')
            .select('status, amount_usdt, total_profit_usdt')
            .eq('vault_id', vault_id).execute().data or [])


@earn_bp.route('/api/admin/earn-vaults', methods=['GET'])
@require_admin
def admin_list_vaults():
    try:
        try:
            page_index = max(int(request.args.get('pageIndex', 0)), 0)
            page_size = min(max(int(request.args.get('pageSize', 10)), 1), 100)
        except ValueError:
            page_index, page_size = 0, 10
        search = request.args.get('globalFilter', '').strip()
        status = request.args.get('status', '')
        risk = request.args.get('risk', '')
        duration = request.args.get('duration', '')
        sort_by = request.args.get('sortBy', 'created_at')
        sort_order = request.args.get('sortOrder', 'desc')
        if sort_by not in ('created_at', 'apy_percent', 'duration_months', 'min_amount', 'title'):
            sort_by = 'created_at'

        supabase = get_supabase()
        query = supabase.table('earn_vaults').select('*', count='exact')
        if search:
            query = query.or_(f"title.ilike.%{search}%,subtitle.ilike.%{search}%")
        if status and status != 'all':
            query = query.eq('status', status)
        if risk and risk != 'all':
            query = query.eq('risk_level', risk)
        if duration and duration != 'all' and duration.isdigit():
            query = query.eq('duration_months', int(duration))

        start = page_index * page_size
        res = query.order(sort_by, desc=(sort_order != 'asc')).range(start, start + page_size - 1).execute()
        total = res.count or 0

        vaults = []
        for vault in res.data or []:
            active = [p for p in _vault_position_stats(supabase, vault['id']) if p.get('status') == 'active']
            vaults.append({
                **vault,
                'active_positions_count': len(active),
                'total_locked_usdt': sum(float(p.get('amount_usdt') or 0) for p in active),
            })

        return jsonify({'data': vaults, 'total': total, 'pageCount': (total + page_size - 1) // page_size}), 200
    except Exception:
        current_app.logger.exception("admin_list_vaults error")
        return jsonify({'error': 'Internal server error'}), 500


@earn_bp.route('/api/admin/earn-vaults', methods=['POST'])
@require_super_admin
def admin_create_vault():
    try:
        body = request.get_json(silent=True) or {}
        required = ('title', 'apy_percent', 'duration_months', 'min_amount', 'risk_level')
        if any(not body.get(f) for f in required):
            return jsonify({'error': 'Missing required fields'}), 400

        fields = {k: body[k] for k in VAULT_EDITABLE_FIELDS if k in body}
        fields.setdefault('status', 'active')
        error = validate_vault_fields(fields)
        if error:
            return jsonify({'error': error}), 400

        supabase = get_supabase()
        if fetch_one(supabase.table('earn_vaults').select('id').eq('title', fields['title'])):
            return jsonify({'error': 'A vault with this title already exists'}), 400

        vault = first_row(supabase.table('earn_vaults').insert(fields).execute())
        if not vault:
            return jsonify({'error': 'Failed to create vault'}), 500

        log_admin_action('earn_vault_created', None, {'vault_id': vault.get('id'), 'title': fields['title']})
        return jsonify({
            'success': True,
            'vault': vault,
            'message': f"Vault \"{fields['title']}\" created successfully",
        }), 201
    except Exception:
        current_app.logger.exception("admin_create_vault error")
        return jsonify({'error': 'Internal server error'}), 500


@earn_bp.route('/api/admin/earn-vaults/<vault_id>', methods=['GET'])
@require_admin
def admin_get_vault(vault_id):
    try:
        supabase = get_supabase()
        vault = fetch_one(supabase.table('earn_vaults').select('*').eq('id', vault_id))
        if not vault:
            return jsonify({'error': 'Vault not found'}), 404

        positions = _vault_position_stats(supabase, vault_id)
        active = [p for p in positions if p.get('status') == 'active']
        total_locked = sum(float(p.get('amount_usdt') or 0) for p in active)
        capacity = float(vault.get('total_capacity') or 0)

        stats = {
            'total_positions': len(positions),
            'active_positions': len(active),
            'matured_positions': len([p for p in positions if p.get('status') == 'matured']),
            'withdrawn_positions': len([p for p in positions if p.get('status') == 'withdrawn']),
            'total_locked_usdt': total_locked,
            'total_capacity_used_percent': (float(vault.get('current_filled') or 0) / capacity * 100) if capacity else 0,
            'average_position_size': total_locked / len(active) if active else 0,
        }
        return jsonify({'vault': vault, 'stats': stats}), 200
    except Exception:
        current_app.logger.exception("admin_get_vault error")
        return jsonify({'error': 'Internal server error'}), 500


@earn_bp.route('/api/admin/earn-vaults/<vault_id>', methods=['PATCH'])
@require_super_admin
def admin_update_vault(vault_id):
    try:
        body = request.get_json(silent=True) or {}
        fields = {k: body[k] for k in VAULT_EDITABLE_FIELDS if k in body}
        if not fields:
            return jsonify({'error': 'No valid fields to update'}), 400

        supabase = get_supabase()
        vault = fetch_one(supabase.table('earn_vaults').select('id').eq('id', vault_id))
        if not vault:
            return jsonify({'error': 'Vault not found'}), 404

        # terms already promised to investors stay fixed
        active = (supabase.table('user_earn_positions').select('id')
                  .eq('vault_id', vault_id).eq('status', 'active').execute().data or [])
        if active and ('apy_percent' in fields or 'duration_months' in fields):
            return jsonify({
                'error': 'Cannot modify APY or duration for vaults with active positions',
                'activePositionsCount': len(active),
            }), 400

        error = validate_vault_fields(fields)
        if error:
            return jsonify({'error': error}), 400

        updated = first_row(supabase.table('earn_vaults').update(fields).eq('id', vault_id).execute())
        if not updated:
            return jsonify({'error': 'Failed to update vault'}), 500

        log_admin_action('earn_vault_updated', None, {'vault_id': vault_id, 'fields': sorted(fields)})
        return jsonify({'success': True, 'vault': updated, 'message': 'Vault updated successfully'}), 200
    except Exception:
        current_app.logger.exception("admin_update_vault error")
        return jsonify({'error': 'Internal server error'}), 500


@earn_bp.route('/api/admin/earn-vaults/<vault_id>/status', methods=['PATCH'])
@require_admin
def admin_update_vault_status(vault_id):
    try:
        body = request.get_json(silent=True) or {}
        status = body.get('status')
        if not status:
            return jsonify({'error': 'Status is required'}), 400
        if status not in VAULT_STATUSES:
            return jsonify({'error': 'Status must be active, sold_out, or ended'}), 400

        vault = first_row(get_supabase().table('earn_vaults').update({'status': status}).eq('id', vault_id).execute())
        if not vault:
            return jsonify({'error': 'Failed to update vault status'}), 500

        log_admin_action('earn_vault_status_changed', None, {'vault_id': vault_id, 'status': status})
        return jsonify({'success': True, 'vault': vault, 'message': f'Vault status updated to {status}'}), 200
    except Exception:
        current_app.logger.exception("admin_update_vault_status error")
        return jsonify({'error': 'Internal server error'}), 500
