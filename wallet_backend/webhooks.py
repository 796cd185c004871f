"""Payment provider webhooks (deposit notifications)."""
from datetime import datetime, timezone

from flask import Blueprint, request, jsonify, current_app

from .db import get_supabase, fetch_one, first_row
from .extensions import limiter
from .payments import (
    verify_plisio_callback,
    validate_plisio_callback,
    verify_nowpayments_signature,
    validate_nowpayments_callback,
    map_payment_status,
    should_credit_balance,
)
from .wallet import adjust_balance, lock_balance, unlock_balance

webhooks_bp = Blueprint('webhooks', __name__)


def _log_webhook(supabase, event_type: str, payload) -> str:
    """Store the raw payload in webhook_logs; returns the log row id (or None)."""
    try:
        res = supabase.table('webhook_logs').insert({
            'event_type': event_type,
            'payload': payload,
            'processed': False,
        }).execute()
        row = first_row(res)
        return row.get('id') if row else None
    except Exception as e:
        current_app.logger.error(f"Failed to log webhook: {e}")
        return None


def _mark_webhook_processed(supabase, log_id):
    if not log_id:
        return
    try:
        supabase.table('webhook_logs').update({'processed': True}).eq('id', log_id).execute()
    except Exception as e:
        current_app.logger.error(f"Failed to mark webhook {log_id} processed: {e}")


# --------------------- Plisio ---------------------
@webhooks_bp.route('/api/webhooks/plisio', methods=['POST'])
@limiter.limit("300 per minute")
def plisio_webhook():
    try:
        body = request.get_json(silent=True)
        supabase = get_supabase()

        if isinstance(body, dict):
            current_app.logger.info(
                f"Plisio webhook received: txn_id={body.get('txn_id')} currency={body.get('currency')} "
                f"amount={body.get('amount')} status={body.get('status')}"
            )

        log_id = _log_webhook(supabase, 'plisio_deposit', body)

        if not validate_plisio_callback(body):
            current_app.logger.error("Invalid Plisio callback data structure")
            return jsonify({'error': 'Invalid callback data'}), 400

        if not verify_plisio_callback(body):
            current_app.logger.error("Invalid Plisio webhook signature")
            return jsonify({'error': 'Invalid signature'}), 401

        if body['status'] != 'completed':
            current_app.logger.info(f"Skipping non-completed Plisio status: {body['status']}")
            return jsonify({'status': 'acknowledged'}), 200

        # Permanent deposit addresses: match the wallet the funds arrived at
        receiving_address = body.get('wallet_hash')
        if not receiving_address:
            current_app.logger.error("No wallet address in Plisio callback")
            return jsonify({'error': 'Missing wallet address'}), 400

        deposit_address = fetch_one(
            supabase.table('deposit_addresses')
            .select('user_id, token_deployment_id, address')
            .eq('address', receiving_address)
        )
        if not deposit_address:
            current_app.logger.error(f"Deposit address not found: {receiving_address}")
            return jsonify({'error': 'Deposit address not found'}), 404

        deployment = fetch_one(
            supabase.table('token_deployments')
            .select('id, symbol, base_token_id, network_id')
            .eq('id', deposit_address['token_deployment_id'])
        )
        if not deployment:
            current_app.logger.error(f"Token deployment missing for address {receiving_address}")
            return jsonify({'error': 'Deposit address not found'}), 404

        user_id = deposit_address['user_id']
        txn_id = body['txn_id']

        existing = fetch_one(supabase.table('transactions').select('id').eq('tx_hash', txn_id))
        if existing:
            current_app.logger.info(f"Plisio transaction already processed: {txn_id}")
            return jsonify({'status': 'already_processed'}), 200

        tx_res = supabase.table('transactions').insert({
            'user_id': user_id,
            'base_token_id': deployment['base_token_id'],
            'network_id': deployment['network_id'],
            'token_deployment_id': deposit_address['token_deployment_id'],
            'type': 'deposit',
            'amount': body['amount'],
            'coin_symbol': deployment['symbol'],
            'status': 'completed',
            'tx_hash': txn_id,
            'to_address': deposit_address['address'],
            'from_address': None,
            'network_fee': body.get('invoice_commission') or '0',
            'notes': f"Deposit via Plisio - {body.get('confirmations')} confirmations",
            'completed_at': datetime.now(timezone.utc).isoformat(),
        }).execute()
        transaction = first_row(tx_res)
        if not transaction:
            current_app.logger.error(f"Failed to create transaction for {txn_id}")
            return jsonify({'error': 'Failed to create transaction'}), 500

        try:
            balance = adjust_balance(supabase, user_id, deployment['base_token_id'], float(body['amount']), 'credit')
        except Exception:
            current_app.logger.exception(f"Failed to update balance for {txn_id}")
            supabase.table('transactions').update({
                'status': 'failed',
                'notes': 'Balance update failed',
            }).eq('id', transaction['id']).execute()
            return jsonify({'error': 'Failed to update balance'}), 500

        _mark_webhook_processed(supabase, log_id)

        current_app.logger.info(
            f"Deposit processed: txn_id={txn_id} user={user_id} deployment={deployment['symbol']} "
            f"amount={body['amount']} balance={getattr(balance, 'data', None)}"
        )
        return jsonify({
            'status': 'success',
            'message': 'Deposit processed',
            'transaction_id': transaction['id'],
        }), 200

    except Exception:
        current_app.logger.exception("plisio_webhook error")
        return jsonify({'error': 'Internal server error'}), 500


@webhooks_bp.route('/api/webhooks/plisio', methods=['GET'])
def plisio_webhook_health():
    return jsonify({
        'status': 'ok',
        'message': 'Plisio webhook endpoint is active',
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }), 200


# --------------------- NOWPayments ---------------------
def _nowpayments_invoice_target(supabase, deposit):
    token = fetch_one(supabase.table('base_tokens').select('symbol').eq('id', deposit['base_token_id']))
    return {
        'base_token_id': deposit['base_token_id'],
        'network_id': deposit.get('network_id'),
        'token_deployment_id': None,
        'address': deposit.get('pay_address'),
        'coin_symbol': (token or {}).get('symbol') or (deposit.get('pay_currency') or '').upper(),
        'label': 'Invoice deposit via NOWPayments',
    }


def _nowpayments_address_target(supabase, deposit_address):
    deployment = fetch_one(
        supabase.table('token_deployments')
        .select('id, symbol, base_token_id, network_id')
        .eq('id', deposit_address['token_deployment_id'])
    )
    if not deployment:
        return None
    return {
        'base_token_id': deployment['base_token_id'],
        'network_id': deployment.get('network_id'),
        'token_deployment_id': deposit_address['token_deployment_id'],
        'address': deposit_address['address'],
        'coin_symbol': deployment.get('symbol'),
        'label': 'Deposit via NOWPayments',
    }


def _deposit_row(user_id, target, amount, status, tx_hash, notes):
    row = {
        'user_id': user_id,
        'base_token_id': target['base_token_id'],
        'network_id': target['network_id'],
        'type': 'deposit',
        'amount': str(amount),
        'coin_symbol': target['coin_symbol'],
        'status': status,
        'tx_hash': tx_hash,
        'to_address': target['address'],
        'from_address': None,
        'network_fee': '0',
        'notes': notes,
    }
    if target['token_deployment_id']:
        row['token_deployment_id'] = target['token_deployment_id']
    if status == 'completed':
        row['completed_at'] = datetime.now(timezone.utc).isoformat()
    return row


def _nowpayments_confirmed(supabase, user_id, target, payment_id, amount):
    """Record a pending deposit and hold its funds as locked balance."""
    tx_hash = f"nowpayments_{payment_id}"
    if fetch_one(supabase.table('transactions').select('id').eq('tx_hash', tx_hash)):
        current_app.logger.info(f"NOWPayments transaction already exists: {tx_hash}")
        return jsonify({'status': 'already_exists'}), 200

    transaction = first_row(supabase.table('transactions').insert(_deposit_row(
        user_id, target, amount, 'pending', tx_hash,
        f"{target['label']} - confirmed (payment_id: {payment_id})",
    )).execute())
    if not transaction:
        return jsonify({'error': 'Failed to create transaction'}), 500

    if amount > 0:
        try:
            adjust_balance(supabase, user_id, target['base_token_id'], amount, 'credit')
        except Exception:
            current_app.logger.exception(f"Failed to credit pending NOWPayments deposit {payment_id}")
            supabase.table('transactions').delete().eq('id', transaction['id']).execute()
            return jsonify({'error': 'Failed to credit balance'}), 500
        try:
            lock_balance(supabase, user_id, target['base_token_id'], amount)
        except Exception as e:
            current_app.logger.error(f"Failed to lock pending NOWPayments deposit {payment_id}: {e}")

    return jsonify({
        'status': 'pending',
        'message': 'Deposit confirmed and locked',
        'transaction_id': transaction['id'],
    }), 200


def _nowpayments_finished(supabase, user_id, target, payment_id, amount):
    """
    Settle a deposit at its final ``actually_paid``.

    A pending transaction from an earlier ``confirmed`` callback is completed,
    its lock released and the difference to the final amount booked. Without
    one the full amount is credited directly.
    """
    tx_hash = f"nowpayments_{payment_id}"
    existing = fetch_one(supabase.table('transactions').select('id, status, amount').eq('tx_hash', tx_hash))
    notes = f"{target['label']} - finished (payment_id: {payment_id})"
    base_token_id = target['base_token_id']

    if existing:
        if existing.get('status') == 'completed':
            current_app.logger.info(f"NOWPayments transaction already completed: {tx_hash}")
            return jsonify({'status': 'already_processed'}), 200

        pending_amount = float(existing.get('amount') or 0)
        difference = amount - pending_amount
        if difference > 0:
            try:
                adjust_balance(supabase, user_id, base_token_id, difference, 'credit')
            except Exception:
                current_app.logger.exception(f"Failed to credit NOWPayments top-up {payment_id}")
                return jsonify({'error': 'Failed to credit balance'}), 500

        supabase.table('transactions').update({
            'status': 'completed',
            'amount': str(amount),
            'notes': notes,
            'completed_at': datetime.now(timezone.utc).isoformat(),
        }).eq('id', existing['id']).execute()
        transaction_id = existing['id']

        if pending_amount > 0:
            try:
                unlock_balance(supabase, user_id, base_token_id, pending_amount)
            except Exception as e:
                current_app.logger.error(f"Failed to unlock NOWPayments deposit {payment_id}: {e}")
        if difference < 0:
            try:
                adjust_balance(supabase, user_id, base_token_id, -difference, 'debit')
            except Exception as e:
                current_app.logger.error(f"Failed to debit NOWPayments shortfall {payment_id}: {e}")
    else:
        transaction = first_row(supabase.table('transactions').insert(
            _deposit_row(user_id, target, amount, 'completed', tx_hash, notes)
        ).execute())
        if not transaction:
            return jsonify({'error': 'Failed to create transaction'}), 500
        transaction_id = transaction['id']

        if amount > 0:
            try:
                adjust_balance(supabase, user_id, base_token_id, amount, 'credit')
            except Exception:
                current_app.logger.exception(f"Failed to credit NOWPayments deposit {payment_id}")
                supabase.table('transactions').delete().eq('id', transaction_id).execute()
                return jsonify({'error': 'Failed to credit balance'}), 500

    current_app.logger.info(
        f"NOWPayments deposit completed: payment_id={payment_id} user={user_id} "
        f"amount={amount} had_pending={bool(existing)}"
    )
    return jsonify({
        'status': 'success',
        'message': 'Deposit processed',
        'transaction_id': transaction_id,
    }), 200


@webhooks_bp.route('/api/webhooks/nowpayments', methods=['POST'])
@limiter.limit("300 per minute")
def nowpayments_webhook():
    try:
        body = request.get_json(silent=True)
        signature = request.headers.get('x-nowpayments-sig', '')
        supabase = get_supabase()

        log_id = _log_webhook(supabase, 'nowpayments_payment', body)

        if not validate_nowpayments_callback(body):
            current_app.logger.error("Invalid NOWPayments callback data structure")
            return jsonify({'error': 'Invalid callback data'}), 400

        if not verify_nowpayments_signature(body, signature):
            current_app.logger.error("Invalid NOWPayments webhook signature")
            return jsonify({'error': 'Invalid signature'}), 401

        payment_status = body['payment_status']
        internal_status = map_payment_status(payment_status)

        # order_id carries the user id set when the payment was created
        user_id = body.get('order_id')
        if not user_id:
            return jsonify({'error': 'Missing order_id'}), 400

        payment_id = str(body['payment_id'])
        deposit = fetch_one(
            supabase.table('deposit_payments')
            .select('id, user_id, base_token_id, network_id, pay_address, pay_currency, status')
            .eq('external_payment_id', payment_id)
        )

        if deposit:
            # Invoice deposit created through /api/deposits/create
            if deposit['user_id'] != user_id:
                current_app.logger.error(f"User ID mismatch: order_id={user_id} owner={deposit['user_id']}")
                return jsonify({'error': 'User ID mismatch'}), 400

            update_data = {
                'status': payment_status,
                'updated_at': datetime.now(timezone.utc).isoformat(),
            }
            if float(body.get('actually_paid') or 0) > 0:
                update_data['actually_paid'] = body.get('actually_paid')
                update_data['actually_paid_fiat'] = body.get('actually_paid_at_fiat')
            if body.get('payin_hash'):
                update_data['tx_hash'] = body['payin_hash']
            supabase.table('deposit_payments').update(update_data).eq('id', deposit['id']).execute()

            if not should_credit_balance(payment_status):
                current_app.logger.info(f"NOWPayments invoice status update: {payment_status} ({internal_status})")
                return jsonify({'status': 'acknowledged'}), 200
            target = _nowpayments_invoice_target(supabase, deposit)
        else:
            # Permanent deposit address
            if not should_credit_balance(payment_status):
                current_app.logger.info(f"NOWPayments status acknowledged: {payment_status} ({internal_status})")
                return jsonify({'status': 'acknowledged'}), 200

            deposit_address = fetch_one(
                supabase.table('deposit_addresses')
                .select('user_id, token_deployment_id, address')
                .eq('address', body['pay_address'])
            )
            if not deposit_address:
                current_app.logger.error(f"NOWPayments deposit address not found: {body['pay_address']}")
                return jsonify({'error': 'Deposit address not found'}), 404
            if deposit_address['user_id'] != user_id:
                current_app.logger.error(
                    f"User ID mismatch: order_id={user_id} address owner={deposit_address['user_id']}"
                )
                return jsonify({'error': 'User ID mismatch'}), 400

            target = _nowpayments_address_target(supabase, deposit_address)
            if not target:
                current_app.logger.error(f"Token deployment missing for address {body['pay_address']}")
                return jsonify({'error': 'Token deployment not found'}), 404

        amount = float(body.get('actually_paid') or 0)
        if payment_status == 'confirmed':
            return _nowpayments_confirmed(supabase, user_id, target, payment_id, amount)
        if payment_status == 'finished':
            response = _nowpayments_finished(supabase, user_id, target, payment_id, amount)
            if response[1] == 200:
                _mark_webhook_processed(supabase, log_id)
            return response

        # partially_paid is settled by the finished callback that follows it
        current_app.logger.info(f"NOWPayments {payment_status} acknowledged for payment_id={payment_id}")
        return jsonify({'status': 'acknowledged'}), 200

    except Exception:
        current_app.logger.exception("nowpayments_webhook error")
        return jsonify({'error': 'Internal server error'}), 500
