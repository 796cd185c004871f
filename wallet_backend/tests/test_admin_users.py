from wallet_backend.tests.conftest import USER_ID, ADMIN_ID, SUPER_ADMIN_ID, auth_headers


def test_regular_user_is_forbidden(client):
    resp = client.get('/api/admin/users', headers=auth_headers(USER_ID))
    assert resp.status_code == 403


def test_list_users_filters_and_counts(client, fake_db):
    fake_db.seed('profiles', {'id': 'user-2', 'email': 'bob@example.com', 'full_name': 'Bob', 'role': 'user',
                              'is_banned': True})

    resp = client.get('/api/admin/users?status=banned', headers=auth_headers(ADMIN_ID))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['total'] == 1
    assert body['data'][0]['id'] == 'user-2'

    resp = client.get('/api/admin/users?globalFilter=BOB', headers=auth_headers(ADMIN_ID))
    assert [u['id'] for u in resp.get_json()['data']] == ['user-2']

    resp = client.get('/api/admin/users?pageSize=2&pageIndex=1', headers=auth_headers(ADMIN_ID))
    body = resp.get_json()
    assert body['total'] == 4
    assert len(body['data']) == 2


def test_user_detail(client, fake_db, usdt):
    fake_db.seed('user_balances', {'user_id': USER_ID, 'base_token_id': usdt['id'], 'balance': 12.0,
                                   'locked_balance': 0.0})
    fake_db.seed('transactions', {'user_id': USER_ID, 'type': 'deposit', 'amount': '12'})

    resp = client.get(f'/api/admin/users/{USER_ID}', headers=auth_headers(ADMIN_ID))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['wallets'][0]['coin_symbol'] == 'USDT'
    assert len(body['transactions']) == 1

    assert client.get('/api/admin/users/nobody', headers=auth_headers(ADMIN_ID)).status_code == 404


def test_ban_and_unban(client, fake_db):
    resp = client.patch(f'/api/admin/users/{USER_ID}/ban', json={'is_banned': True}, headers=auth_headers(ADMIN_ID))
    assert resp.status_code == 200
    assert resp.get_json()['user']['banned_reason'] == 'No reason provided'
    assert client.get('/api/auth/me', headers=auth_headers(USER_ID)).status_code == 403

    resp = client.patch(f'/api/admin/users/{USER_ID}/ban', json={'is_banned': False}, headers=auth_headers(ADMIN_ID))
    assert resp.status_code == 200
    assert resp.get_json()['user']['banned_at'] is None

    actions = [log['action_type'] for log in fake_db.rows('admin_action_logs')]
    assert actions == ['user_banned', 'user_unbanned']


def test_ban_validation(client):
    resp = client.patch(f'/api/admin/users/{USER_ID}/ban', json={'is_banned': 'yes'}, headers=auth_headers(ADMIN_ID))
    assert resp.status_code == 400

    resp = client.patch(f'/api/admin/users/{ADMIN_ID}/ban', json={'is_banned': True}, headers=auth_headers(ADMIN_ID))
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'You cannot ban yourself'

    resp = client.patch('/api/admin/users/nobody/ban', json={'is_banned': True}, headers=auth_headers(ADMIN_ID))
    assert resp.status_code == 404


def test_role_change_is_super_admin_only(client):
    resp = client.patch(f'/api/admin/users/{USER_ID}/role', json={'role': 'admin'}, headers=auth_headers(ADMIN_ID))
    assert resp.status_code == 403


def test_role_change(client, fake_db):
    headers = auth_headers(SUPER_ADMIN_ID)
    resp = client.patch(f'/api/admin/users/{USER_ID}/role', json={'role': 'admin'}, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()['user']['role'] == 'admin'

    [log] = fake_db.rows('admin_action_logs')
    assert log['action_type'] == 'user_role_changed'
    assert log['details'] == {'old_role': 'user', 'new_role': 'admin'}


def test_role_change_validation(client):
    headers = auth_headers(SUPER_ADMIN_ID)
    resp = client.patch(f'/api/admin/users/{USER_ID}/role', json={'role': 'owner'}, headers=headers)
    assert resp.status_code == 400

    resp = client.patch(f'/api/admin/users/{SUPER_ADMIN_ID}/role', json={'role': 'user'}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'You cannot change your own role'

    resp = client.patch('/api/admin/users/nobody/role', json={'role': 'user'}, headers=headers)
    assert resp.status_code == 404
