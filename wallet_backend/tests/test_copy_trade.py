import pytest

from wallet_backend.tests.conftest import USER_ID, ADMIN_ID, SUPER_ADMIN_ID, auth_headers
from wallet_backend.copy_trade import calculate_payout, trader_availability


@pytest.fixture
def trader(fake_db):
    return fake_db.seed('traders', {
        'name': 'Alpha',
        'strategy': 'Momentum',
        'risk_level': 'medium',
        'aum_usdt': 1000,
        'current_copiers': 1,
        'max_copiers': 2,
        'performance_fee_percent': 20,
        'lifetime_earnings_usdt': 0,
    })


@pytest.fixture
def funded(fake_db, usdt):
    fake_db.seed('user_balances', {'user_id': USER_ID, 'base_token_id': usdt['id'], 'balance': 500.0,
                                   'locked_balance': 100.0})
    return usdt


def _balance(fake_db):
    return fake_db.rows('user_balances')[0]['balance']


def test_payout_takes_fee_from_profit_only():
    win = calculate_payout(100, 50, 20)
    assert win['trader_fee'] == 10
    assert win['user_profit_after_fee'] == 40
    assert win['total'] == 140

    loss = calculate_payout(100, -30, 20)
    assert loss['trader_fee'] == 0
    assert loss['total'] == 100


def test_trader_availability():
    assert trader_availability({'current_copiers': 2, 'max_copiers': 2})['isFull'] is True
    assert trader_availability({'current_copiers': 1, 'max_copiers': 4})['remainingCapacity'] == 3


def test_routes_hidden_when_feature_disabled(client, monkeypatch):
    monkeypatch.setenv('COPY_TRADE_ENABLED', 'false')
    resp = client.get('/api/copy-trade/traders')
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'Feature not available'
    # flag is checked before auth
    assert client.post('/api/copy-trade/start', json={}).status_code == 404


def test_list_traders_marks_copied(client, fake_db, trader):
    fake_db.seed('user_copy_positions', {'user_id': USER_ID, 'trader_id': trader['id'], 'status': 'active'})

    anonymous = client.get('/api/copy-trade/traders').get_json()['traders']
    assert anonymous[0]['isUserCopying'] is False

    mine = client.get('/api/copy-trade/traders', headers=auth_headers(USER_ID)).get_json()['traders']
    assert mine[0]['isUserCopying'] is True


def test_start_debits_and_opens_position(client, fake_db, trader, funded):
    resp = client.post('/api/copy-trade/start', json={'traderId': trader['id'], 'amount': 250},
                       headers=auth_headers(USER_ID))
    assert resp.status_code == 200
    assert _balance(fake_db) == 250

    [position] = fake_db.rows('user_copy_positions')
    assert position['status'] == 'active'
    assert position['allocation_usdt'] == 250
    stored_trader = fake_db.rows('traders')[0]
    assert stored_trader['current_copiers'] == 2
    assert stored_trader['aum_usdt'] == 1250
    assert fake_db.rows('transactions')[0]['type'] == 'copy_trade_start'


def test_start_checks_available_not_total_balance(client, fake_db, trader, funded):
    # 500 total, 100 locked
    resp = client.post('/api/copy-trade/start', json={'traderId': trader['id'], 'amount': 450},
                       headers=auth_headers(USER_ID))
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Insufficient available USDT balance'
    assert _balance(fake_db) == 500


def test_start_rejects_full_trader(client, fake_db, trader, funded):
    headers = auth_headers(USER_ID)
    assert client.post('/api/copy-trade/start', json={'traderId': trader['id'], 'amount': 10},
                       headers=headers).status_code == 200
    resp = client.post('/api/copy-trade/start', json={'traderId': trader['id'], 'amount': 10}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Trader capacity is full'


def test_start_refunds_when_position_insert_fails(client, fake_db, trader, funded):
    fake_db.fail('user_copy_positions', 'insert')
    resp = client.post('/api/copy-trade/start', json={'traderId': trader['id'], 'amount': 100},
                       headers=auth_headers(USER_ID))
    assert resp.status_code == 500
    assert _balance(fake_db) == 500


def test_stop_pays_out_allocation_plus_net_profit(client, fake_db, trader, funded):
    position = fake_db.seed('user_copy_positions', {
        'user_id': USER_ID,
        'trader_id': trader['id'],
        'allocation_usdt': 100,
        'current_pnl': 50,
        'status': 'active',
    })
    resp = client.post('/api/copy-trade/stop', json={'positionId': position['id']}, headers=auth_headers(USER_ID))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['payout']['total'] == 140
    assert body['new_balance'] == 640

    stored = fake_db.rows('user_copy_positions')[0]
    assert stored['status'] == 'stopped'
    assert stored['final_pnl'] == 40
    assert fake_db.rows('traders')[0]['lifetime_earnings_usdt'] == 10

    resp = client.post('/api/copy-trade/stop', json={'positionId': position['id']}, headers=auth_headers(USER_ID))
    assert resp.status_code == 400


def test_positions_summary(client, fake_db, trader):
    fake_db.seed('user_copy_positions', {'user_id': USER_ID, 'trader_id': trader['id'], 'status': 'active',
                                         'allocation_usdt': 100, 'current_pnl': 5})
    fake_db.seed('user_copy_positions', {'user_id': USER_ID, 'trader_id': trader['id'], 'status': 'stopped',
                                         'allocation_usdt': 50, 'final_pnl': 8})
    resp = client.get('/api/copy-trade/positions', headers=auth_headers(USER_ID))
    summary = resp.get_json()['summary']
    assert summary['total_active_positions'] == 1
    assert summary['total_invested'] == 100
    assert summary['total_lifetime_profit'] == 8


def test_admin_create_trader(client):
    headers = auth_headers(SUPER_ADMIN_ID)
    resp = client.post('/api/admin/copy-trade/traders', json={'name': 'Beta', 'strategy': 'Grid'}, headers=headers)
    assert resp.status_code == 400

    resp = client.post('/api/admin/copy-trade/traders',
                       json={'name': 'Beta', 'strategy': 'Grid', 'risk_level': 'extreme'}, headers=headers)
    assert resp.status_code == 400

    resp = client.post('/api/admin/copy-trade/traders',
                       json={'name': 'Beta', 'strategy': 'Grid', 'risk_level': 'low'}, headers=headers)
    assert resp.status_code == 201
    assert resp.get_json()['trader']['current_copiers'] == 0


def test_delete_trader_with_active_positions_is_409(client, fake_db, trader):
    fake_db.seed('user_copy_positions', {'user_id': USER_ID, 'trader_id': trader['id'], 'status': 'active'})
    resp = client.delete(f"/api/admin/copy-trade/traders/{trader['id']}", headers=auth_headers(SUPER_ADMIN_ID))
    assert resp.status_code == 409
    assert len(fake_db.rows('traders')) == 1


def test_delete_trader(client, fake_db, trader):
    resp = client.delete(f"/api/admin/copy-trade/traders/{trader['id']}", headers=auth_headers(SUPER_ADMIN_ID))
    assert resp.status_code == 200
    assert resp.get_json() == {'success': True}
    assert fake_db.rows('traders') == []


@pytest.mark.parametrize('user_id', [ADMIN_ID, USER_ID])
def test_delete_trader_needs_super_admin(client, fake_db, trader, user_id):
    resp = client.delete(f"/api/admin/copy-trade/traders/{trader['id']}", headers=auth_headers(user_id))
    assert resp.status_code == 403
    assert len(fake_db.rows('traders')) == 1
