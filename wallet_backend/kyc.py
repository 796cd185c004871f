"""KYC status, tier transaction limits and submissions."""
import re
from datetime import date, datetime, timezone

from flask import Blueprint, request, jsonify, current_app

from . import config
from .auth import require_auth
from .db import get_supabase, fetch_one, first_row
from .extensions import limiter

kyc_bp = Blueprint('kyc', __name__)

DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')

LIMIT_PERMISSION_FIELDS = ('can_deposit', 'can_withdraw', 'can_swap', 'can_send', 'can_earn', 'can_copy_trade')


def get_transaction_limits(supabase, tier):
    """Limits row for a tier, or None."""
    return fetch_one(supabase.table('kyc_transaction_limits').select('*').eq('tier', tier or 'none'))


def get_daily_transaction_total(supabase, user_id, day=None) -> float:
    """USD volume the user moved on ``day`` (UTC date, defaults to today)."""
    day = day or datetime.now(timezone.utc).date()
    row = fetch_one(
        supabase.table('user_transaction_totals')
        .select('daily_total_usd')
        .eq('user_id', user_id)
        .eq('date', day.isoformat())
    )
    return float((row or {}).get('daily_total_usd') or 0)


def compute_limits(tier, limits, daily_spent):
    """
    Build the advisory limits payload for a tier.

    Returns None when the tier has no limits row. The remaining daily
    allowance is clamped at zero, so overspending never yields a negative.
    """
    if not limits:
        return None
    daily_limit = float(limits.get('daily_limit_usd') or 0)
    spent = float(daily_spent or 0)
    payload = {
        'tier': tier,
        'daily_limit_usd': limits.get('daily_limit_usd'),
        'monthly_limit_usd': limits.get('monthly_limit_usd'),
        'single_transaction_limit_usd': limits.get('single_transaction_limit_usd'),
        'daily_spent_usd': spent,
        'remaining_daily_limit_usd': max(daily_limit - spent, 0),
    }
    for field in LIMIT_PERMISSION_FIELDS:
        payload[field] = limits.get(field)
    return payload


def calculate_age(dob: date, today: date = None) -> int:
    today = today or datetime.now(timezone.utc).date()
    return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))


@kyc_bp.route('/api/kyc/status', methods=['GET'])
@require_auth
def kyc_status():
    supabase = get_supabase()
    try:
        profile = fetch_one(
            supabase.table('profiles')
            .select('kyc_status, kyc_tier, kyc_verified_at, kyc_rejection_reason')
            .eq('id', request.user_id)
        )
    except Exception:
        current_app.logger.exception("kyc_status profile lookup failed")
        return jsonify({'error': 'Failed to fetch KYC status'}), 500
    if not profile:
        return jsonify({'error': 'Failed to fetch KYC status'}), 500

    try:
        # No submission yet is fine
        submission = fetch_one(
            supabase.table('kyc_submissions')
            .select('id, requested_tier, status, created_at, reviewed_at, rejection_reason')
            .eq('user_id', request.user_id)
            .order('created_at', desc=True)
        )

        tier = profile.get('kyc_tier') or 'none'
        limits = get_transaction_limits(supabase, tier)
        if not limits:
            current_app.logger.warning(f"No transaction limits configured for tier {tier}")
        daily_spent = get_daily_transaction_total(supabase, request.user_id)

        return jsonify({
            'kyc_status': profile.get('kyc_status'),
            'kyc_tier': profile.get('kyc_tier'),
            'kyc_verified_at': profile.get('kyc_verified_at'),
            'kyc_rejection_reason': profile.get('kyc_rejection_reason'),
            'latest_submission': submission,
            'limits': compute_limits(tier, limits, daily_spent),
        }), 200
    except Exception:
        current_app.logger.exception("kyc_status error")
        return jsonify({'error': 'Internal server error'}), 500


def _clean(value):
    return value.strip() if isinstance(value, str) and value.strip() else None


@kyc_bp.route('/api/kyc/submit', methods=['POST'])
@require_auth
@limiter.limit("10 per hour")
def kyc_submit():
    try:
        body = request.get_json(silent=True) or {}
        required = ('requested_tier', 'full_name', 'date_of_birth', 'nationality',
                    'address_line_1', 'city', 'postal_code', 'country')
        if any(not body.get(f) for f in required):
            return jsonify({'error': 'Missing required fields'}), 400

        requested_tier = body['requested_tier']
        if requested_tier not in config.KYC_SUBMITTABLE_TIERS:
            return jsonify({'error': 'Invalid tier'}), 400

        dob_raw = str(body['date_of_birth'])
        if not DATE_RE.match(dob_raw):
            return jsonify({'error': 'Invalid date format. Expected YYYY-MM-DD'}), 400
        try:
            dob = date.fromisoformat(dob_raw)
        except ValueError:
            return jsonify({'error': 'Invalid date of birth'}), 400
        if calculate_age(dob) < config.KYC_MIN_AGE:
            return jsonify({'error': f'You must be at least {config.KYC_MIN_AGE} years old'}), 400

        doc_type = body.get('id_document_type')
        if requested_tier == 'tier_1_basic':
            if not doc_type or not body.get('id_document_front_url') or not body.get('selfie_url'):
                return jsonify({'error': 'Missing required documents for Tier 1'}), 400
            if doc_type not in config.KYC_DOCUMENT_TYPES:
                return jsonify({'error': 'Invalid ID document type'}), 400
            if doc_type != 'passport' and not body.get('id_document_back_url'):
                return jsonify({'error': 'ID document back is required for this document type'}), 400

        supabase = get_supabase()
        existing = fetch_one(
            supabase.table('kyc_submissions')
            .select('id, status')
            .eq('user_id', request.user_id)
            .in_('status', ['pending', 'under_review'])
        )
        if existing:
            return jsonify({'error': 'You already have a pending KYC submission. Please wait for review.'}), 400

        submission_data = {
            'user_id': request.user_id,
            'requested_tier': requested_tier,
            'full_name': _clean(body['full_name']),
            'date_of_birth': dob_raw,
            'nationality': _clean(body['nationality']),
            'phone_number': _clean(body.get('phone_number')),
            'address_line_1': _clean(body['address_line_1']),
            'address_line_2': _clean(body.get('address_line_2')),
            'city': _clean(body['city']),
            'state_province': _clean(body.get('state_province')),
            'postal_code': _clean(body['postal_code']),
            'country': _clean(body['country']),
            'id_document_type': doc_type or None,
            'id_document_front_url': body.get('id_document_front_url') or None,
            'id_document_back_url': body.get('id_document_back_url') or None,
            'selfie_url': body.get('selfie_url') or None,
            'proof_of_address_url': body.get('proof_of_address_url') or None,
            'status': 'pending',
            'ip_address': request.headers.get('X-Forwarded-For', 'unknown'),
            'user_agent': request.headers.get('User-Agent', 'unknown'),
        }
        current_app.logger.info(
            f"KYC submission: user={request.user_id} tier={requested_tier} doc={doc_type} "
            f"front={bool(submission_data['id_document_front_url'])} back={bool(submission_data['id_document_back_url'])}"
        )

        submission = first_row(supabase.table('kyc_submissions').insert(submission_data).execute())
        if not submission:
            return jsonify({'error': 'Failed to submit KYC application'}), 500

        try:
            supabase.table('profiles').update({
                'kyc_status': 'pending',
                'updated_at': datetime.now(timezone.utc).isoformat(),
            }).eq('id', request.user_id).execute()
        except Exception:
            # submission is stored; the profile status catches up on review
            current_app.logger.exception("kyc_submit profile update failed")

        return jsonify({
            'success': True,
            'submission': {
                'id': submission.get('id'),
                'status': submission.get('status'),
                'requested_tier': submission.get('requested_tier'),
                'created_at': submission.get('created_at'),
            },
        }), 200
    except Exception:
        current_app.logger.exception("kyc_submit error")
        return jsonify({'error': 'Internal server error'}), 500
