"""
Shared fixtures: an in-memory stand-in for the Supabase query builder,
signed access tokens and a Flask test client.
"""
import copy
import os
import re
import uuid
from datetime import datetime, timedelta, timezone

# Configuration is read at import time, so the environment comes first
os.environ.setdefault('SUPABASE_URL', 'https://fake-project.supabase.co')
os.environ.setdefault('SUPABASE_SERVICE_KEY', 'fake-service-key')
os.environ.setdefault('SUPABASE_JWT_SECRET', 'fake-secret-key-for-testing')
os.environ.setdefault('PLISIO_SECRET_KEY', 'plisio-test-secret')
os.environ.setdefault('NOWPAYMENTS_IPN_SECRET', 'nowpayments-test-secret')
os.environ['RATELIMIT_ENABLED'] = 'false'
os.environ['EARN_ENABLED'] = 'true'
os.environ['COPY_TRADE_ENABLED'] = 'true'

import jwt
import pytest

from wallet_backend import db, tokens
from wallet_backend.app import app as flask_app
from wallet_backend.coin_cache import coin_cache

USER_ID = 'user-1'
ADMIN_ID = 'admin-1'
SUPER_ADMIN_ID = 'super-1'

_BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


def _ilike(pattern: str, value) -> bool:
    if value is None:
        return False
    regex = '^' + '.*'.join(re.escape(part) for part in pattern.split('%')) + '$'
    return re.match(regex, str(value), re.IGNORECASE) is not None


def _or_clause(clause: str):
    column, op, value = clause.split('.', 2)
    if op == 'ilike':
        return lambda row: _ilike(value, row.get(column))
    if op == 'eq':
        return lambda row: str(row.get(column)) == value
    raise ValueError(f"unsupported or_ operator: {op}")


def _sort_key(column):
    return lambda row: (row.get(column) is None, row.get(column) if row.get(column) is not None else '')


class FakeQuery:
    def __init__(self, store, table):
        self.store = store
        self.table_name = table
        self.op = 'select'
        self.payload = None
        self.filters = []
        self.count_mode = None
        self.orders = []
        self.bounds = None
        self.max_rows = None

    # builder
    def select(self, columns='*', count=None):
        self.count_mode = count
        return self

    def insert(self, payload):
        self.op, self.payload = 'insert', payload
        return self

    def update(self, payload):
        self.op, self.payload = 'update', payload
        return self

    def delete(self):
        self.op = 'delete'
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def is_(self, column, value):
        expected = None if value in ('null', None) else value
        self.filters.append(lambda row: row.get(column) is expected)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) >= value)
        return self

    def lte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) <= value)
        return self

    def or_(self, expression):
        clauses = [_or_clause(c) for c in expression.split(',')]
        self.filters.append(lambda row: any(c(row) for c in clauses))
        return self

    def order(self, column, desc=False):
        self.orders.append((column, desc))
        return self

    def range(self, start, end):
        self.bounds = (start, end + 1)
        return self

    def limit(self, n):
        self.max_rows = n
        return self

    # execution
    def _matching(self, rows):
        return [r for r in rows if all(f(r) for f in self.filters)]

    def execute(self):
        self.store.maybe_fail(self.table_name, self.op)
        rows = self.store.tables.setdefault(self.table_name, [])

        if self.op == 'insert':
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = [self.store.new_row(item) for item in items]
            rows.extend(inserted)
            return FakeResponse(copy.deepcopy(inserted))

        if self.op == 'update':
            matched = self._matching(rows)
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return FakeResponse(copy.deepcopy(matched))

        if self.op == 'delete':
            matched = self._matching(rows)
            self.store.tables[self.table_name] = [r for r in rows if r not in matched]
            return FakeResponse(copy.deepcopy(matched))

        result = self._matching(rows)
        for column, desc in reversed(self.orders):
            result = sorted(result, key=_sort_key(column), reverse=desc)
        total = len(result) if self.count_mode else None
        if self.bounds:
            result = result[self.bounds[0]:self.bounds[1]]
        if self.max_rows is not None:
            result = result[:self.max_rows]
        return FakeResponse(copy.deepcopy(result), total)


class FakeRpc:
    def __init__(self, handler, params):
        self.handler = handler
        self.params = params

    def execute(self):
        return FakeResponse(self.handler(self.params))


class FakeSupabase:
    """Enough of the supabase-py client for the routes under test."""

    def __init__(self):
        self.tables = {}
        self.failures = set()
        self.rpc_calls = []
        self._seq = 0
        self.rpc_handlers = {
            'get_user_balance': self._get_user_balance,
            'update_user_balance': self._update_user_balance,
            'lock_user_balance': self._lock_user_balance,
            'unlock_user_balance': self._unlock_user_balance,
        }

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params=None):
        self.rpc_calls.append((name, params))
        self.maybe_fail('rpc', name)
        return FakeRpc(self.rpc_handlers[name], params or {})

    def fail(self, table, op):
        self.failures.add((table, op))

    def maybe_fail(self, table, op):
        if (table, op) in self.failures:
            raise RuntimeError(f"simulated failure: {op} on {table}")

    def new_row(self, item):
        self._seq += 1
        row = {'id': str(uuid.uuid4()), 'created_at': (_BASE_TIME + timedelta(seconds=self._seq)).isoformat()}
        row.update(copy.deepcopy(item))
        return row

    def seed(self, table, *rows):
        created = [self.new_row(r) for r in rows]
        self.tables.setdefault(table, []).extend(created)
        return created[0] if len(created) == 1 else created

    def rows(self, table):
        return self.tables.get(table, [])

    # balance RPCs backed by user_balances
    def _balance_row(self, user_id, token_id):
        for row in self.tables.setdefault('user_balances', []):
            if row['user_id'] == user_id and row['base_token_id'] == token_id:
                return row
        return None

    def _get_user_balance(self, params):
        row = self._balance_row(params['p_user_id'], params['p_base_token_id']) or {}
        balance = float(row.get('balance') or 0)
        locked = float(row.get('locked_balance') or 0)
        return {'balance': balance, 'locked_balance': locked, 'available_balance': balance - locked}

    def _update_user_balance(self, params):
        row = self._balance_row(params['p_user_id'], params['p_base_token_id'])
        if row is None:
            row = self.seed('user_balances', {
                'user_id': params['p_user_id'],
                'base_token_id': params['p_base_token_id'],
                'balance': 0.0,
                'locked_balance': 0.0,
            })
        amount = float(params['p_amount'])
        if params['p_operation'] == 'debit':
            if float(row['balance']) - float(row.get('locked_balance') or 0) < amount:
                raise RuntimeError('Insufficient balance')
            amount = -amount
        row['balance'] = float(row['balance']) + amount
        return {'balance': row['balance']}

    def _lock_user_balance(self, params):
        row = self._balance_row(params['p_user_id'], params['p_base_token_id'])
        amount = float(params['p_amount'])
        if row is None or float(row['balance']) - float(row.get('locked_balance') or 0) < amount:
            raise RuntimeError('Insufficient balance to lock')
        row['locked_balance'] = float(row.get('locked_balance') or 0) + amount
        return {'locked_balance': row['locked_balance']}

    def _unlock_user_balance(self, params):
        row = self._balance_row(params['p_user_id'], params['p_base_token_id'])
        amount = float(params['p_amount'])
        if row is None or float(row.get('locked_balance') or 0) < amount:
            raise RuntimeError('Insufficient locked balance')
        row['locked_balance'] = float(row['locked_balance']) - amount
        return {'locked_balance': row['locked_balance']}


def make_token(user_id, email=None, expires_in=3600):
    now = datetime.now(timezone.utc)
    return jwt.encode({
        'sub': user_id,
        'aud': 'authenticated',
        'email': email or f'{user_id}@example.com',
        'iat': now,
        'exp': now + timedelta(seconds=expires_in),
    }, os.environ['SUPABASE_JWT_SECRET'], algorithm='HS256')


def auth_headers(user_id, **kwargs):
    return {'Authorization': f'Bearer {make_token(user_id, **kwargs)}'}


@pytest.fixture
def fake_db(monkeypatch):
    store = FakeSupabase()
    for user_id, role in ((USER_ID, 'user'), (ADMIN_ID, 'admin'), (SUPER_ADMIN_ID, 'super_admin')):
        store.seed('profiles', {
            'id': user_id,
            'email': f'{user_id}@example.com',
            'full_name': user_id.replace('-', ' ').title(),
            'role': role,
            'is_banned': False,
            'kyc_status': 'none',
            'kyc_tier': 'none',
        })
    monkeypatch.setattr(db, '_client', store)
    coin_cache.invalidate()
    monkeypatch.setitem(tokens._config_cache, 'data', None)
    monkeypatch.setitem(tokens._config_cache, 'timestamp', 0.0)
    return store


@pytest.fixture
def client(fake_db):
    flask_app.config['TESTING'] = True
    with flask_app.test_client() as c:
        yield c


@pytest.fixture
def usdt(fake_db):
    return fake_db.seed('base_tokens', {
        'code': 'usdt',
        'symbol': 'USDT',
        'name': 'Tether',
        'is_stablecoin': True,
        'is_active': True,
        'decimals': 6,
    })
