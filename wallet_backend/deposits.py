"""Invoice-style deposits (memo/tag currencies) created through NOWPayments."""
from datetime import datetime, timedelta, timezone

from flask import Blueprint, request, jsonify, current_app
import requests

from . import config
from .auth import require_auth
from .db import get_supabase, fetch_one, first_row, parse_timestamp
from .extensions import limiter
from .nowpayments import (
    nowpayments,
    NowPaymentsError,
    currency_for,
    requires_invoice_flow,
    webhook_url,
    PAYMENT_EXPIRY_MINUTES,
    DEFAULT_MIN_AMOUNT_USD,
)

deposits_bp = Blueprint('deposits', __name__)

TERMINAL_STATUSES = ('finished', 'expired', 'failed', 'refunded')
DEPOSIT_FIELDS = (
    'id, user_id, base_token_id, network_id, gateway, external_payment_id, pay_address, extra_id, '
    'expected_amount, pay_currency, status, expires_at, actually_paid, actually_paid_fiat, tx_hash, '
    'created_at, updated_at'
)


def _seconds_left(expires_at, now):
    if not expires_at:
        return None
    return max(0, int((expires_at - now).total_seconds()))


def format_deposit(deposit: dict, symbol: str = None, now: datetime = None) -> dict:
    now = now or datetime.now(timezone.utc)
    currency = (deposit.get('pay_currency') or '').upper()
    expires_in = _seconds_left(parse_timestamp(deposit.get('expires_at')), now)
    return {
        'id': deposit['id'],
        'payment_id': deposit.get('external_payment_id'),
        'address': deposit.get('pay_address'),
        'extra_id': deposit.get('extra_id'),
        'expected_amount': deposit.get('expected_amount'),
        'currency': currency,
        'symbol': symbol or currency,
        'status': deposit.get('status'),
        'actually_paid': deposit.get('actually_paid'),
        'actually_paid_fiat': deposit.get('actually_paid_fiat'),
        'tx_hash': deposit.get('tx_hash'),
        'expires_at': deposit.get('expires_at'),
        'expires_in_seconds': expires_in,
        'is_expired': expires_in is not None and expires_in <= 0,
        'created_at': deposit.get('created_at'),
        'updated_at': deposit.get('updated_at'),
    }


def _token_symbol(supabase, base_token_id):
    token = fetch_one(supabase.table('base_tokens').select('symbol').eq('id', base_token_id))
    return (token or {}).get('symbol')


def _amount(value):
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@deposits_bp.route('/api/deposits/create', methods=['POST'])
@require_auth
@limiter.limit("10 per minute")
def create_deposit():
    try:
        body = request.get_json(silent=True) or {}
        base_token_id = body.get('base_token_id')
        if not base_token_id:
            return jsonify({'error': 'base_token_id is required'}), 400

        supabase = get_supabase()
        token = fetch_one(supabase.table('base_tokens').select('id, code, symbol, name').eq('id', base_token_id))
        if not token:
            return jsonify({'error': 'Invalid base_token_id'}), 400

        currency = currency_for(token.get('code'))
        if not currency:
            return jsonify({'error': f"{token['symbol']} is not supported for invoice deposits"}), 400
        if not requires_invoice_flow(currency):
            return jsonify({'error': f"{token['symbol']} uses permanent addresses, not invoice deposits"}), 400

        deployment = fetch_one(supabase.table('token_deployments').select('id, network_id').eq('base_token_id', base_token_id))

        try:
            min_amount = float(nowpayments.get_minimum_amount('usd', currency)['min_amount'])
        except (requests.RequestException, NowPaymentsError, KeyError, TypeError, ValueError) as e:
            current_app.logger.warning(f"NOWPayments minimum amount lookup failed for {currency}: {e}")
            min_amount = DEFAULT_MIN_AMOUNT_USD

        requested = _amount(body.get('amount_usd'))
        is_minimum_amount = requested is None or requested < min_amount
        price_amount = min_amount if is_minimum_amount else requested

        try:
            payment = nowpayments.create_payment(
                price_amount=price_amount,
                price_currency='usd',
                pay_currency=currency,
                order_id=request.user_id,
                order_description=f"Invoice deposit for {token['symbol']}",
                ipn_callback_url=webhook_url(config.APP_URL),
                # variable rate so any amount sent is accepted
                is_fixed_rate=False,
            )
        except (requests.RequestException, NowPaymentsError) as e:
            current_app.logger.error(f"NOWPayments payment creation failed for {request.user_id}: {e}")
            return jsonify({'error': 'Failed to create deposit payment'}), 500

        now = datetime.now(timezone.utc)
        expires_at = (parse_timestamp(payment.get('expiration_estimate_date'))
                      or now + timedelta(minutes=PAYMENT_EXPIRY_MINUTES))

        deposit = first_row(supabase.table('deposit_payments').insert({
            'user_id': request.user_id,
            'base_token_id': base_token_id,
            'network_id': (deployment or {}).get('network_id'),
            'gateway': 'nowpayments',
            'external_payment_id': str(payment['payment_id']),
            'pay_address': payment.get('pay_address'),
            'extra_id': payment.get('payin_extra_id') or None,
            'expected_amount': payment.get('pay_amount'),
            'pay_currency': currency,
            'status': 'waiting',
            'expires_at': expires_at.isoformat(),
        }).execute())
        if not deposit:
            return jsonify({'error': 'Failed to create deposit record'}), 500

        current_app.logger.info(
            f"Invoice deposit created: user={request.user_id} payment_id={payment['payment_id']} currency={currency}"
        )
        result = format_deposit(deposit, token['symbol'], now)
        result.update(
            expected_amount_usd=price_amount,
            minimum_amount_usd=min_amount,
            is_minimum_amount=is_minimum_amount,
        )
        return jsonify({'success': True, 'deposit': result}), 200
    except Exception:
        current_app.logger.exception("create_deposit error")
        return jsonify({'error': 'Internal server error'}), 500


@deposits_bp.route('/api/deposits/active', methods=['GET'])
@require_auth
def get_active_deposit():
    """Newest unexpired, non-terminal deposit for the caller and token, or null."""
    try:
        base_token_id = request.args.get('base_token_id', '').strip()
        if not base_token_id:
            return jsonify({'error': 'base_token_id is required'}), 400

        supabase = get_supabase()
        rows = (supabase.table('deposit_payments').select(DEPOSIT_FIELDS)
                .eq('user_id', request.user_id)
                .eq('base_token_id', base_token_id)
                .order('created_at', desc=True).execute().data or [])

        now = datetime.now(timezone.utc)
        for deposit in rows:
            expires_at = parse_timestamp(deposit.get('expires_at'))
            if deposit.get('status') in TERMINAL_STATUSES or not expires_at or expires_at <= now:
                continue
            result = format_deposit(deposit, _token_symbol(supabase, base_token_id), now)
            result['is_minimum_amount'] = True
            return jsonify({'deposit': result}), 200

        return jsonify({'deposit': None}), 200
    except Exception:
        current_app.logger.exception("get_active_deposit error")
        return jsonify({'error': 'Internal server error'}), 500


@deposits_bp.route('/api/deposits/<deposit_id>', methods=['GET'])
@require_auth
def get_deposit(deposit_id):
    try:
        supabase = get_supabase()
        deposit = fetch_one(supabase.table('deposit_payments').select(DEPOSIT_FIELDS).eq('id', deposit_id))
        if not deposit:
            return jsonify({'error': 'Deposit payment not found'}), 404
        if deposit['user_id'] != request.user_id:
            return jsonify({'error': 'Forbidden'}), 403

        if (request.args.get('refresh') == 'true'
                and deposit.get('gateway') == 'nowpayments'
                and deposit.get('status') not in ('finished', 'expired', 'failed')):
            try:
                remote = nowpayments.get_payment_status(deposit['external_payment_id'])
                if remote.get('payment_status') and remote['payment_status'] != deposit.get('status'):
                    update = {
                        'status': remote['payment_status'],
                        'updated_at': datetime.now(timezone.utc).isoformat(),
                    }
                    if float(remote.get('actually_paid') or 0) > 0:
                        update['actually_paid'] = remote['actually_paid']
                        update['actually_paid_fiat'] = remote.get('actually_paid_at_fiat')
                    if remote.get('payin_hash'):
                        update['tx_hash'] = remote['payin_hash']
                    updated = first_row(
                        supabase.table('deposit_payments').update(update).eq('id', deposit_id).execute()
                    )
                    deposit.update(updated or update)
            except (requests.RequestException, NowPaymentsError) as e:
                current_app.logger.warning(f"Failed to refresh deposit {deposit_id} from NOWPayments: {e}")

        now = datetime.now(timezone.utc)
        result = format_deposit(deposit, _token_symbol(supabase, deposit['base_token_id']), now)
        if result['is_expired'] and deposit.get('status') == 'waiting':
            supabase.table('deposit_payments').update({
                'status': 'expired',
                'updated_at': now.isoformat(),
            }).eq('id', deposit_id).execute()
            result['status'] = 'expired'

        return jsonify({'deposit': result}), 200
    except Exception:
        current_app.logger.exception("get_deposit error")
        return jsonify({'error': 'Internal server error'}), 500
