import json
import os

import pytest

from wallet_backend.tests.conftest import USER_ID
from wallet_backend.payments import plisio_signature, nowpayments_signature

ADDRESS = 'bc1qdepositaddress'


@pytest.fixture
def deposit_setup(fake_db, usdt):
    deployment = fake_db.seed('token_deployments', {
        'base_token_id': usdt['id'],
        'symbol': 'USDT',
        'network_id': 'net-1',
    })
    fake_db.seed('deposit_addresses', {
        'user_id': USER_ID,
        'token_deployment_id': deployment['id'],
        'address': ADDRESS,
    })
    return deployment


def _signed(payload):
    payload = dict(payload)
    payload['verify_hash'] = plisio_signature(payload, os.environ['PLISIO_SECRET_KEY'])
    return payload


def _post_plisio(client, payload):
    # send the exact key order the signature was computed over
    return client.post('/api/webhooks/plisio', data=json.dumps(payload), content_type='application/json')


def _plisio_body(**overrides):
    body = {
        'txn_id': 'txn-1',
        'amount': '25.5',
        'currency': 'USDT',
        'status': 'completed',
        'wallet_hash': ADDRESS,
        'confirmations': '3',
    }
    body.update(overrides)
    return body


def test_bad_signature_is_401_and_nothing_credited(client, fake_db, deposit_setup):
    payload = _signed(_plisio_body())
    payload['amount'] = '9999'

    resp = _post_plisio(client, payload)
    assert resp.status_code == 401
    assert fake_db.rows('transactions') == []
    assert fake_db.rows('user_balances') == []
    # the raw payload is logged before verification
    assert len(fake_db.rows('webhook_logs')) == 1


def test_missing_fields_is_400(client, deposit_setup):
    resp = _post_plisio(client, {'txn_id': 'x'})
    assert resp.status_code == 400


def test_non_completed_status_is_acknowledged(client, fake_db, deposit_setup):
    resp = _post_plisio(client, _signed(_plisio_body(status='pending')))
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'acknowledged'
    assert fake_db.rows('transactions') == []


def test_completed_deposit_credits_balance(client, fake_db, usdt, deposit_setup):
    resp = _post_plisio(client, _signed(_plisio_body()))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['status'] == 'success'

    [tx] = fake_db.rows('transactions')
    assert tx['id'] == body['transaction_id']
    assert tx['tx_hash'] == 'txn-1'
    assert tx['type'] == 'deposit'
    assert tx['status'] == 'completed'

    [balance] = fake_db.rows('user_balances')
    assert balance['user_id'] == USER_ID
    assert balance['base_token_id'] == usdt['id']
    assert balance['balance'] == 25.5
    assert fake_db.rows('webhook_logs')[0]['processed'] is True


def test_duplicate_deposit_is_not_credited_twice(client, fake_db, deposit_setup):
    payload = _signed(_plisio_body())
    assert _post_plisio(client, payload).status_code == 200

    resp = _post_plisio(client, payload)
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'already_processed'
    assert len(fake_db.rows('transactions')) == 1
    assert fake_db.rows('user_balances')[0]['balance'] == 25.5


def test_unknown_address_is_404(client, deposit_setup):
    resp = _post_plisio(client, _signed(_plisio_body(wallet_hash='bc1qunknown')))
    assert resp.status_code == 404


def test_balance_failure_marks_transaction_failed(client, fake_db, deposit_setup):
    fake_db.fail('rpc', 'update_user_balance')
    resp = _post_plisio(client, _signed(_plisio_body()))
    assert resp.status_code == 500
    assert resp.get_json()['error'] == 'Failed to update balance'
    assert fake_db.rows('transactions')[0]['status'] == 'failed'


def test_plisio_health(client):
    resp = client.get('/api/webhooks/plisio')
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'ok'


# --------------------- NOWPayments ---------------------
@pytest.fixture
def invoice(fake_db, usdt):
    return fake_db.seed('deposit_payments', {
        'external_payment_id': '777',
        'user_id': USER_ID,
        'base_token_id': usdt['id'],
        'network_id': 'net-1',
        'pay_address': 'TAddress',
        'pay_currency': 'usdttrc20',
        'status': 'waiting',
    })


def _nowpayments_body(**overrides):
    body = {
        'payment_id': 777,
        'payment_status': 'finished',
        'pay_address': 'TAddress',
        'pay_currency': 'usdttrc20',
        'actually_paid': 40,
        'order_id': USER_ID,
    }
    body.update(overrides)
    return body


def _post_nowpayments(client, body, signature=None):
    sig = signature if signature is not None else nowpayments_signature(body, os.environ['NOWPAYMENTS_IPN_SECRET'])
    return client.post('/api/webhooks/nowpayments', json=body, headers={'x-nowpayments-sig': sig})


def test_nowpayments_bad_signature(client, invoice):
    resp = _post_nowpayments(client, _nowpayments_body(), signature='deadbeef')
    assert resp.status_code == 401


def test_nowpayments_finished_credits_once(client, fake_db, invoice):
    resp = _post_nowpayments(client, _nowpayments_body())
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'success'
    assert fake_db.rows('user_balances')[0]['balance'] == 40
    assert fake_db.rows('deposit_payments')[0]['status'] == 'finished'

    resp = _post_nowpayments(client, _nowpayments_body())
    assert resp.get_json()['status'] == 'already_processed'
    assert fake_db.rows('user_balances')[0]['balance'] == 40


def test_nowpayments_intermediate_status_only_updates_invoice(client, fake_db, invoice):
    resp = _post_nowpayments(client, _nowpayments_body(payment_status='confirming', actually_paid=0))
    assert resp.get_json()['status'] == 'acknowledged'
    assert fake_db.rows('deposit_payments')[0]['status'] == 'confirming'
    assert fake_db.rows('transactions') == []


def test_nowpayments_owner_mismatch(client, invoice):
    resp = _post_nowpayments(client, _nowpayments_body(order_id='someone-else'))
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'User ID mismatch'


def test_nowpayments_partial_then_finished_credits_final_amount(client, fake_db, invoice):
    resp = _post_nowpayments(client, _nowpayments_body(payment_status='partially_paid', actually_paid=10))
    assert resp.get_json()['status'] == 'acknowledged'
    assert fake_db.rows('transactions') == []
    assert fake_db.rows('deposit_payments')[0]['status'] == 'partially_paid'

    resp = _post_nowpayments(client, _nowpayments_body(actually_paid=40))
    assert resp.get_json()['status'] == 'success'
    assert fake_db.rows('user_balances')[0]['balance'] == 40


def test_nowpayments_confirmed_locks_until_finished(client, fake_db, invoice):
    resp = _post_nowpayments(client, _nowpayments_body(payment_status='confirmed', actually_paid=30))
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'pending'
    [tx] = fake_db.rows('transactions')
    assert tx['status'] == 'pending'
    [balance] = fake_db.rows('user_balances')
    assert balance['balance'] == 30
    assert balance['locked_balance'] == 30

    # a repeated confirmed callback changes nothing
    resp = _post_nowpayments(client, _nowpayments_body(payment_status='confirmed', actually_paid=30))
    assert resp.get_json()['status'] == 'already_exists'
    assert balance['balance'] == 30

    resp = _post_nowpayments(client, _nowpayments_body(actually_paid=40))
    assert resp.get_json()['status'] == 'success'
    [tx] = fake_db.rows('transactions')
    assert tx['status'] == 'completed'
    assert float(tx['amount']) == 40
    assert balance['balance'] == 40
    assert balance['locked_balance'] == 0


def test_nowpayments_permanent_address_fallback_credits(client, fake_db, usdt, deposit_setup):
    body = _nowpayments_body(payment_id=888, pay_address=ADDRESS, actually_paid=12.5)
    resp = _post_nowpayments(client, body)
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'success'

    [tx] = fake_db.rows('transactions')
    assert tx['tx_hash'] == 'nowpayments_888'
    assert tx['token_deployment_id'] == deposit_setup['id']
    assert tx['to_address'] == ADDRESS
    [balance] = fake_db.rows('user_balances')
    assert balance['base_token_id'] == usdt['id']
    assert balance['balance'] == 12.5


def test_nowpayments_permanent_address_unknown_is_404(client, fake_db, deposit_setup):
    resp = _post_nowpayments(client, _nowpayments_body(payment_id=889, pay_address='unknown-address'))
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'Deposit address not found'
    assert fake_db.rows('user_balances') == []


def test_nowpayments_permanent_address_owner_mismatch(client, deposit_setup):
    body = _nowpayments_body(payment_id=890, pay_address=ADDRESS, order_id='someone-else')
    resp = _post_nowpayments(client, body)
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'User ID mismatch'
