from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from wallet_backend import deposits
from wallet_backend.tests.conftest import USER_ID, ADMIN_ID, auth_headers
from wallet_backend.nowpayments import NowPaymentsError, currency_for, requires_invoice_flow, webhook_url


@pytest.fixture
def xrp(fake_db):
    token = fake_db.seed('base_tokens', {'code': 'xrp', 'symbol': 'XRP', 'name': 'XRP', 'is_active': True})
    fake_db.seed('token_deployments', {'base_token_id': token['id'], 'symbol': 'XRP', 'network_id': 'xrpl'})
    return token


@pytest.fixture
def gateway():
    with mock.patch.object(deposits, 'nowpayments') as client:
        client.get_minimum_amount.return_value = {'min_amount': 2.5}
        client.create_payment.return_value = {
            'payment_id': 5551,
            'pay_address': 'rDepositAddress',
            'payin_extra_id': '123456',
            'pay_amount': 4.2,
        }
        yield client


def _future(minutes=30):
    return (datetime.now(timezone.utc) + timedelta(minutes=minutes)).isoformat()


def test_currency_helpers():
    assert currency_for('xrp') == 'xrp'
    assert currency_for('DOGE') is None
    assert requires_invoice_flow('XLM')
    assert not requires_invoice_flow('sol')
    assert webhook_url('https://wallet.example.com/') == 'https://wallet.example.com/api/webhooks/nowpayments'


def test_create_invoice_deposit(client, fake_db, xrp, gateway):
    resp = client.post('/api/deposits/create', json={'base_token_id': xrp['id'], 'amount_usd': 10},
                       headers=auth_headers(USER_ID))
    assert resp.status_code == 200
    deposit = resp.get_json()['deposit']
    assert deposit['address'] == 'rDepositAddress'
    assert deposit['extra_id'] == '123456'
    assert deposit['currency'] == 'XRP'
    assert deposit['expected_amount_usd'] == 10
    assert deposit['is_minimum_amount'] is False
    assert deposit['is_expired'] is False

    kwargs = gateway.create_payment.call_args.kwargs
    assert kwargs['pay_currency'] == 'xrp'
    assert kwargs['order_id'] == USER_ID
    assert kwargs['is_fixed_rate'] is False

    [row] = fake_db.rows('deposit_payments')
    assert row['external_payment_id'] == '5551'
    assert row['status'] == 'waiting'
    assert row['network_id'] == 'xrpl'


def test_create_uses_minimum_when_amount_missing(client, xrp, gateway):
    gateway.get_minimum_amount.side_effect = NowPaymentsError('down')
    resp = client.post('/api/deposits/create', json={'base_token_id': xrp['id']}, headers=auth_headers(USER_ID))
    deposit = resp.get_json()['deposit']
    assert deposit['is_minimum_amount'] is True
    assert deposit['minimum_amount_usd'] == 1.0
    assert gateway.create_payment.call_args.kwargs['price_amount'] == 1.0


def test_create_rejects_unsupported_and_permanent_tokens(client, fake_db, usdt, gateway):
    sol = fake_db.seed('base_tokens', {'code': 'sol', 'symbol': 'SOL', 'name': 'Solana'})
    headers = auth_headers(USER_ID)

    resp = client.post('/api/deposits/create', json={'base_token_id': usdt['id']}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'USDT is not supported for invoice deposits'

    resp = client.post('/api/deposits/create', json={'base_token_id': sol['id']}, headers=headers)
    assert resp.status_code == 400
    assert 'permanent addresses' in resp.get_json()['error']

    assert client.post('/api/deposits/create', json={}, headers=headers).status_code == 400
    assert client.post('/api/deposits/create', json={'base_token_id': 'nope'}, headers=headers).status_code == 400
    gateway.create_payment.assert_not_called()


def test_create_gateway_failure_stores_nothing(client, fake_db, xrp, gateway):
    gateway.create_payment.side_effect = NowPaymentsError('NOWPayments API error: bad currency (400)')
    resp = client.post('/api/deposits/create', json={'base_token_id': xrp['id']}, headers=auth_headers(USER_ID))
    assert resp.status_code == 500
    assert resp.get_json()['error'] == 'Failed to create deposit payment'
    assert fake_db.rows('deposit_payments') == []


def test_active_deposit_skips_expired_and_finished(client, fake_db, xrp):
    headers = auth_headers(USER_ID)
    assert client.get('/api/deposits/active', headers=headers).status_code == 400

    fake_db.seed('deposit_payments', {'user_id': USER_ID, 'base_token_id': xrp['id'], 'status': 'waiting',
                                      'pay_currency': 'xrp', 'expires_at': _future()})
    fake_db.seed('deposit_payments', {'user_id': USER_ID, 'base_token_id': xrp['id'], 'status': 'finished',
                                      'pay_currency': 'xrp', 'expires_at': _future()})
    fake_db.seed('deposit_payments', {'user_id': USER_ID, 'base_token_id': xrp['id'], 'status': 'waiting',
                                      'pay_currency': 'xrp', 'expires_at': _future(-5)})
    waiting = fake_db.rows('deposit_payments')[0]

    resp = client.get(f"/api/deposits/active?base_token_id={xrp['id']}", headers=headers)
    assert resp.status_code == 200
    deposit = resp.get_json()['deposit']
    assert deposit['id'] == waiting['id']
    assert deposit['symbol'] == 'XRP'
    assert 0 < deposit['expires_in_seconds'] <= 30 * 60

    resp = client.get(f"/api/deposits/active?base_token_id={xrp['id']}", headers=auth_headers(ADMIN_ID))
    assert resp.get_json() == {'deposit': None}


def test_get_deposit_owner_only_and_marks_expired(client, fake_db, xrp):
    deposit = fake_db.seed('deposit_payments', {
        'user_id': USER_ID, 'base_token_id': xrp['id'], 'status': 'waiting', 'gateway': 'nowpayments',
        'external_payment_id': '5551', 'pay_currency': 'xrp', 'expires_at': _future(-1),
    })

    assert client.get('/api/deposits/missing', headers=auth_headers(USER_ID)).status_code == 404
    assert client.get(f"/api/deposits/{deposit['id']}", headers=auth_headers(ADMIN_ID)).status_code == 403

    resp = client.get(f"/api/deposits/{deposit['id']}", headers=auth_headers(USER_ID))
    assert resp.status_code == 200
    body = resp.get_json()['deposit']
    assert body['status'] == 'expired'
    assert body['is_expired'] is True
    assert fake_db.rows('deposit_payments')[0]['status'] == 'expired'


def test_get_deposit_refresh_pulls_gateway_status(client, fake_db, xrp, gateway):
    deposit = fake_db.seed('deposit_payments', {
        'user_id': USER_ID, 'base_token_id': xrp['id'], 'status': 'waiting', 'gateway': 'nowpayments',
        'external_payment_id': '5551', 'pay_currency': 'xrp', 'expires_at': _future(),
    })
    gateway.get_payment_status.return_value = {
        'payment_status': 'confirming', 'actually_paid': 4.2, 'payin_hash': 'ABCDEF',
    }

    resp = client.get(f"/api/deposits/{deposit['id']}?refresh=true", headers=auth_headers(USER_ID))
    assert resp.status_code == 200
    assert resp.get_json()['deposit']['status'] == 'confirming'
    gateway.get_payment_status.assert_called_once_with('5551')
    stored = fake_db.rows('deposit_payments')[0]
    assert stored['status'] == 'confirming'
    assert stored['tx_hash'] == 'ABCDEF'
