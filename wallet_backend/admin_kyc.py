from datetime import datetime, timezone

from flask import Blueprint, request, jsonify, current_app

from .audit import log_admin_action
from .auth import require_admin, require_super_admin
from .db import get_supabase, fetch_one, first_row

admin_kyc_bp = Blueprint('admin_kyc', __name__)

LIMIT_DEFAULTS = {
    'daily_limit_usd': 0,
    'monthly_limit_usd': 0,
    'single_transaction_limit_usd': 0,
    'can_deposit': True,
    'can_withdraw': True,
    'can_swap': True,
    'can_send': True,
    'can_earn': True,
    'can_copy_trade': True,
}


def _limit_fields(body: dict):
    """Limit columns from a request body, as (fields, error)."""
    fields = {}
    for key, default in LIMIT_DEFAULTS.items():
        value = body.get(key)
        if isinstance(default, bool):
            if value is not None and not isinstance(value, bool):
                return None, f'Invalid value for {key}'
            fields[key] = default if value is None else value
        else:
            fields[key] = value or default
    return fields, None


def _page_args(default_limit=20):
    try:
        page = max(int(request.args.get('page', 1)), 1)
        limit = min(max(int(request.args.get('limit', default_limit)), 1), 100)
    except ValueError:
        page, limit = 1, default_limit
    return page, limit


# --------------------- Submissions ---------------------
@admin_kyc_bp.route('/api/admin/kyc/submissions', methods=['GET'])
@require_admin
def list_kyc_submissions():
    try:
        supabase = get_supabase()
        status = request.args.get('status')
        page, limit = _page_args()
        offset = (page - 1) * limit

        query = supabase.table('kyc_submissions').select(
            'id, user_id, requested_tier, full_name, date_of_birth, nationality, status, '
            'created_at, reviewed_at, reviewed_by',
            count='exact',
        )
        if status:
            query = query.eq('status', status)
        res = query.order('created_at', desc=True).range(offset, offset + limit - 1).execute()
        submissions = res.data or []
        total = res.count or 0

        # Emails for submitters and reviewers in one lookup
        profile_ids = {s['user_id'] for s in submissions} | {s['reviewed_by'] for s in submissions if s.get('reviewed_by')}
        profiles = {}
        if profile_ids:
            rows = supabase.table('profiles').select('id, email, full_name').in_('id', list(profile_ids)).execute().data or []
            profiles = {p['id']: p for p in rows}

        formatted = []
        for sub in submissions:
            formatted.append({
                **sub,
                'user_email': (profiles.get(sub['user_id']) or {}).get('email', ''),
                'reviewed_by': profiles.get(sub['reviewed_by']) if sub.get('reviewed_by') else None,
            })

        return jsonify({
            'submissions': formatted,
            'pagination': {
                'page': page,
                'limit': limit,
                'total': total,
                'total_pages': (total + limit - 1) // limit,
            },
        }), 200
    except Exception:
        current_app.logger.exception("list_kyc_submissions error")
        return jsonify({'error': 'Internal server error'}), 500


@admin_kyc_bp.route('/api/admin/kyc/<submission_id>', methods=['GET'])
@require_admin
def get_kyc_submission(submission_id):
    try:
        supabase = get_supabase()
        submission = fetch_one(supabase.table('kyc_submissions').select('*').eq('id', submission_id))
        if not submission:
            return jsonify({'error': 'Submission not found'}), 404

        user = fetch_one(
            supabase.table('profiles')
            .select('id, email, full_name, kyc_status, kyc_tier, created_at')
            .eq('id', submission['user_id'])
        )
        reviewer = None
        if submission.get('reviewed_by'):
            reviewer = fetch_one(
                supabase.table('profiles').select('id, email, full_name').eq('id', submission['reviewed_by'])
            )
        return jsonify({'submission': submission, 'user': user, 'reviewer': reviewer}), 200
    except Exception:
        current_app.logger.exception("get_kyc_submission error")
        return jsonify({'error': 'Internal server error'}), 500


@admin_kyc_bp.route('/api/admin/kyc/<submission_id>/review', methods=['POST'])
@require_admin
def review_kyc_submission(submission_id):
    try:
        body = request.get_json(silent=True) or {}
        action = body.get('action')
        rejection_reason = body.get('rejection_reason')

        if action not in ('approve', 'reject'):
            return jsonify({'error': 'Invalid action. Must be "approve" or "reject"'}), 400
        if action == 'reject' and not rejection_reason:
            return jsonify({'error': 'Rejection reason is required when rejecting'}), 400

        supabase = get_supabase()
        submission = fetch_one(
            supabase.table('kyc_submissions').select('id, user_id, requested_tier, status').eq('id', submission_id)
        )
        if not submission:
            return jsonify({'error': 'Submission not found'}), 404
        if submission['status'] in ('approved', 'rejected'):
            return jsonify({'error': 'Submission has already been reviewed'}), 400

        now = datetime.now(timezone.utc).isoformat()
        new_status = 'approved' if action == 'approve' else 'rejected'
        updated = first_row(supabase.table('kyc_submissions').update({
            'status': new_status,
            'reviewed_by': request.user_id,
            'reviewed_at': now,
            'rejection_reason': rejection_reason if action == 'reject' else None,
            'admin_notes': body.get('admin_notes') or None,
            'updated_at': now,
        }).eq('id', submission_id).execute())
        if not updated:
            return jsonify({'error': 'Failed to update submission'}), 500

        if action == 'approve':
            profile_update = {
                'kyc_status': 'approved',
                'kyc_tier': submission['requested_tier'],
                'kyc_verified_at': now,
                'kyc_rejection_reason': None,
            }
        else:
            profile_update = {
                'kyc_status': 'rejected',
                'kyc_rejection_reason': rejection_reason,
            }
        profile_update['updated_at'] = now
        profile = first_row(
            supabase.table('profiles').update(profile_update).eq('id', submission['user_id']).execute()
        )

        log_admin_action(f'kyc_{new_status}', submission['user_id'], {
            'submission_id': submission_id,
            'requested_tier': submission['requested_tier'],
            'rejection_reason': rejection_reason if action == 'reject' else None,
        })

        return jsonify({
            'success': True,
            'submission': updated,
            'profile_updated': {
                'kyc_status': profile.get('kyc_status'),
                'kyc_tier': profile.get('kyc_tier'),
            } if profile else None,
        }), 200
    except Exception:
        current_app.logger.exception("review_kyc_submission error")
        return jsonify({'error': 'Internal server error'}), 500


# --------------------- Tier limits ---------------------
@admin_kyc_bp.route('/api/admin/kyc-limits', methods=['GET'])
@require_super_admin
def list_kyc_limits():
    try:
        limits = get_supabase().table('kyc_transaction_limits').select('*').order('tier').execute().data or []
        return jsonify({'limits': limits}), 200
    except Exception:
        current_app.logger.exception("list_kyc_limits error")
        return jsonify({'error': 'Internal server error'}), 500


@admin_kyc_bp.route('/api/admin/kyc-limits', methods=['POST'])
@require_super_admin
def create_kyc_limit():
    try:
        body = request.get_json(silent=True) or {}
        tier = body.get('tier')
        if not tier:
            return jsonify({'error': 'Tier is required'}), 400

        supabase = get_supabase()
        if fetch_one(supabase.table('kyc_transaction_limits').select('id').eq('tier', tier)):
            return jsonify({'error': 'Limits for this tier already exist'}), 409

        fields, error = _limit_fields(body)
        if error:
            return jsonify({'error': error}), 400
        limit = first_row(
            supabase.table('kyc_transaction_limits').insert({'tier': tier, **fields}).execute()
        )
        if not limit:
            return jsonify({'error': 'Failed to create KYC limit'}), 500

        log_admin_action('kyc_limit_created', None, {'tier': tier})
        return jsonify({'success': True, 'limit': limit}), 201
    except Exception:
        current_app.logger.exception("create_kyc_limit error")
        return jsonify({'error': 'Internal server error'}), 500


@admin_kyc_bp.route('/api/admin/kyc-limits/<limit_id>', methods=['GET'])
@require_super_admin
def get_kyc_limit(limit_id):
    try:
        limit = fetch_one(get_supabase().table('kyc_transaction_limits').select('*').eq('id', limit_id))
        if not limit:
            return jsonify({'error': 'KYC limit not found'}), 404
        return jsonify({'limit': limit}), 200
    except Exception:
        current_app.logger.exception("get_kyc_limit error")
        return jsonify({'error': 'Internal server error'}), 500


@admin_kyc_bp.route('/api/admin/kyc-limits/<limit_id>', methods=['PUT'])
@require_super_admin
def update_kyc_limit(limit_id):
    try:
        body = request.get_json(silent=True) or {}
        supabase = get_supabase()
        existing = fetch_one(supabase.table('kyc_transaction_limits').select('id, tier').eq('id', limit_id))
        if not existing:
            return jsonify({'error': 'KYC limit not found'}), 404

        # tier is the lookup key for profiles and never changes
        update, error = _limit_fields(body)
        if error:
            return jsonify({'error': error}), 400
        update['updated_at'] = datetime.now(timezone.utc).isoformat()
        limit = first_row(supabase.table('kyc_transaction_limits').update(update).eq('id', limit_id).execute())
        if not limit:
            return jsonify({'error': 'Failed to update KYC limit'}), 500

        log_admin_action('kyc_limit_updated', None, {'tier': existing['tier']})
        return jsonify({'success': True, 'limit': limit}), 200
    except Exception:
        current_app.logger.exception("update_kyc_limit error")
        return jsonify({'error': 'Internal server error'}), 500


@admin_kyc_bp.route('/api/admin/kyc-limits/<limit_id>', methods=['DELETE'])
@require_super_admin
def delete_kyc_limit(limit_id):
    try:
        supabase = get_supabase()
        limit = fetch_one(supabase.table('kyc_transaction_limits').select('tier').eq('id', limit_id))
        if limit:
            in_use = fetch_one(supabase.table('profiles').select('id').eq('kyc_tier', limit['tier']))
            if in_use:
                return jsonify({'error': 'Cannot delete tier with existing users. Please reassign users first.'}), 409

        supabase.table('kyc_transaction_limits').delete().eq('id', limit_id).execute()
        log_admin_action('kyc_limit_deleted', None, {'limit_id': limit_id, 'tier': (limit or {}).get('tier')})
        return jsonify({'success': True}), 200
    except Exception:
        current_app.logger.exception("delete_kyc_limit error")
        return jsonify({'error': 'Internal server error'}), 500
