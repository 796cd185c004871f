"""Balances, transaction history and spot prices."""
from flask import Blueprint, request, jsonify, current_app
import requests

from . import config
from .auth import require_auth, require_admin
from .coin_cache import coin_cache
from .db import get_supabase, fetch_one
from .extensions import limiter

wallet_bp = Blueprint('wallet', __name__)

TOKEN_FIELDS = 'id, code, name, symbol, token_type, is_stablecoin, decimals, icon, logo_url'


# --------------------- Balance helpers ---------------------
def get_usdt_token_id(supabase):
    token = fetch_one(supabase.table('base_tokens').select('id').eq('code', config.USDT_CODE))
    return token['id'] if token else None


def get_available_balance(supabase, user_id, base_token_id) -> dict:
    """Balance, locked and available amounts from the get_user_balance RPC."""
    res = supabase.rpc('get_user_balance', {
        'p_user_id': user_id,
        'p_base_token_id': base_token_id,
    }).execute()
    data = res.data or {}
    if isinstance(data, list):
        data = data[0] if data else {}
    return {
        'balance': float(data.get('balance') or 0),
        'locked_balance': float(data.get('locked_balance') or 0),
        'available_balance': float(data.get('available_balance') or 0),
    }


def adjust_balance(supabase, user_id, base_token_id, amount, operation):
    """Credit or debit through update_user_balance; raises on RPC failure."""
    return supabase.rpc('update_user_balance', {
        'p_user_id': user_id,
        'p_base_token_id': base_token_id,
        'p_amount': amount,
        'p_operation': operation,
    }).execute()


def lock_balance(supabase, user_id, base_token_id, amount):
    """Move ``amount`` of the balance into locked_balance (pending deposits)."""
    return supabase.rpc('lock_user_balance', {
        'p_user_id': user_id,
        'p_base_token_id': base_token_id,
        'p_amount': amount,
    }).execute()


def unlock_balance(supabase, user_id, base_token_id, amount):
    return supabase.rpc('unlock_user_balance', {
        'p_user_id': user_id,
        'p_base_token_id': base_token_id,
        'p_amount': amount,
    }).execute()


def _limit_offset(default_limit=50):
    try:
        limit = min(max(int(request.args.get('limit', default_limit)), 1), 200)
        offset = max(int(request.args.get('offset', 0)), 0)
    except ValueError:
        limit, offset = default_limit, 0
    return limit, offset


# --------------------- Wallets ---------------------
@wallet_bp.route('/api/wallets', methods=['GET'])
@require_auth
def list_wallets():
    try:
        supabase = get_supabase()
        rows = (supabase.table('user_balances')
                .select('base_token_id, balance, locked_balance, updated_at')
                .eq('user_id', request.user_id)
                .execute().data or [])

        token_ids = list({r['base_token_id'] for r in rows})
        tokens = {}
        if token_ids:
            token_rows = supabase.table('base_tokens').select(TOKEN_FIELDS).in_('id', token_ids).execute().data or []
            tokens = {t['id']: t for t in token_rows}

        token_code = request.args.get('token')
        balances = []
        for row in rows:
            token = tokens.get(row['base_token_id'])
            if not token:
                current_app.logger.error(f"Missing base token {row['base_token_id']} for balance row")
                continue
            if token_code and token.get('code') != token_code:
                continue
            total = float(row.get('balance') or 0)
            locked = float(row.get('locked_balance') or 0)
            balances.append({
                'token': token,
                'balance': total,
                'locked_balance': locked,
                'available_balance': total - locked,
                'updated_at': row.get('updated_at'),
            })

        return jsonify({'balances': balances, 'count': len(balances)}), 200
    except Exception:
        current_app.logger.exception("list_wallets error")
        return jsonify({'error': 'Internal server error'}), 500


# --------------------- Transactions ---------------------
def _apply_transaction_filters(query):
    for field in ('type', 'status', 'base_token_id'):
        value = request.args.get(field, '').strip()
        if value:
            query = query.eq(field, value)
    return query


@wallet_bp.route('/api/transactions', methods=['GET'])
@require_auth
def list_transactions():
    try:
        limit, offset = _limit_offset()
        query = get_supabase().table('transactions').select('*', count='exact').eq('user_id', request.user_id)
        query = _apply_transaction_filters(query)
        res = query.order('created_at', desc=True).range(offset, offset + limit - 1).execute()
        total = res.count or 0
        return jsonify({
            'transactions': res.data or [],
            'pagination': {
                'total': total,
                'limit': limit,
                'offset': offset,
                'hasMore': offset + limit < total,
            },
        }), 200
    except Exception:
        current_app.logger.exception("list_transactions error")
        return jsonify({'error': 'Internal server error'}), 500


@wallet_bp.route('/api/admin/transactions', methods=['GET'])
@require_admin
@limiter.limit("60 per minute")
def admin_list_transactions():
    """Monitor all transactions for admin."""
    try:
        try:
            page = max(int(request.args.get('page', 1)), 1)
            limit = min(max(int(request.args.get('limit', 50)), 1), 100)
        except ValueError:
            page, limit = 1, 50
        offset = (page - 1) * limit

        query = get_supabase().table('transactions').select('*', count='exact')
        query = _apply_transaction_filters(query)
        user_filter = request.args.get('user_id', '').strip()
        if user_filter:
            query = query.eq('user_id', user_filter)

        res = query.order('created_at', desc=True).range(offset, offset + limit - 1).execute()
        total = res.count or 0
        return jsonify({
            'transactions': res.data or [],
            'pagination': {
                'page': page,
                'limit': limit,
                'total': total,
                'pages': (total + limit - 1) // limit,
            },
        }), 200
    except Exception:
        current_app.logger.exception("admin_list_transactions error")
        return jsonify({'error': 'Internal server error'}), 500


# --------------------- Prices ---------------------
def fetch_usd_prices(coins) -> dict:
    """USD price per symbol; stablecoins are pinned to 1.0, lookups that fail are omitted."""
    prices = {}
    ids_by_symbol = {}
    for coin in coins:
        if coin.get('is_stablecoin'):
            prices[coin['symbol']] = 1.0
        elif coin.get('coingecko_id'):
            ids_by_symbol[coin['symbol']] = coin['coingecko_id']

    if not ids_by_symbol:
        return prices
    try:
        r = requests.get(
            config.COINGECKO_SIMPLE,
            params={'ids': ','.join(sorted(set(ids_by_symbol.values()))), 'vs_currencies': 'usd'},
            timeout=config.PRICE_TIMEOUT,
        )
        r.raise_for_status()
        data = r.json()
    except Exception as e:
        current_app.logger.error(f"Price fetch failed: {e}")
        return prices

    for symbol, cg_id in ids_by_symbol.items():
        usd = (data.get(cg_id) or {}).get('usd')
        if usd is not None:
            prices[symbol] = float(usd)
    return prices


@wallet_bp.route('/api/prices', methods=['GET'])
@limiter.limit("120 per minute")
def get_prices():
    try:
        coins = coin_cache.get_all_coins()
        symbols = request.args.get('symbols')
        if symbols:
            wanted = {s.strip().upper() for s in symbols.split(',') if s.strip()}
            coins = [c for c in coins if c['symbol'].upper() in wanted]
        return jsonify({'prices': fetch_usd_prices(coins)}), 200
    except Exception:
        current_app.logger.exception("get_prices error")
        return jsonify({'error': 'Internal server error'}), 500
