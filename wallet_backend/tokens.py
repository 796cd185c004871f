"""Base tokens and the public coin configuration."""
import time
from datetime import datetime, timezone
from threading import Lock

from flask import Blueprint, request, jsonify, current_app

from . import config
from .audit import log_admin_action
from .auth import require_super_admin
from .coin_cache import coin_cache
from .db import get_supabase, fetch_one, first_row

tokens_bp = Blueprint('tokens', __name__)

PUBLIC_TOKEN_FIELDS = 'id, code, symbol, name, token_type, is_stablecoin, decimals, icon, logo_url, is_active'
COIN_CONFIG_FIELDS = (
    'symbol', 'name', 'logo_url', 'network', 'icon', 'decimals', 'min_amount', 'is_stablecoin',
    'binance_id', 'coingecko_id', 'primary_provider', 'price_provider', 'price_provider_id',
)
TOKEN_UPDATE_FIELDS = (
    'symbol', 'name', 'token_type', 'decimals', 'is_stablecoin', 'binance_id',
    'coingecko_id', 'primary_provider', 'logo_url', 'icon', 'is_active',
)

# Response cache for /api/coins/config, expires on its own after the TTL
_config_cache = {'data': None, 'timestamp': 0.0}
_config_cache_lock = Lock()


def build_coin_config(coins) -> dict:
    return {
        'coins': [{k: coin.get(k) for k in COIN_CONFIG_FIELDS} for coin in coins],
        'providerMap': {
            coin['symbol']: {
                'binanceId': coin.get('binance_id'),
                'coingeckoId': coin.get('coingecko_id'),
                'primaryProvider': coin.get('primary_provider') or 'none',
                'isStablecoin': bool(coin.get('is_stablecoin')),
            }
            for coin in coins
        },
    }


def _refresh_coin_cache():
    try:
        coin_cache.force_refresh()
    except Exception as e:
        current_app.logger.error(f"Coin cache refresh failed: {e}")


@tokens_bp.route('/api/coins/config', methods=['GET'])
def coins_config():
    try:
        now = time.monotonic()
        with _config_cache_lock:
            cached = _config_cache['data']
            fresh = cached is not None and now - _config_cache['timestamp'] < config.COIN_CACHE_TTL
        if fresh:
            return jsonify(cached), 200

        data = build_coin_config(coin_cache.get_all_coins())
        with _config_cache_lock:
            _config_cache['data'] = data
            _config_cache['timestamp'] = now
        return jsonify(data), 200
    except Exception:
        current_app.logger.exception("coins_config error")
        return jsonify({'error': 'Failed to fetch coin configuration'}), 500


@tokens_bp.route('/api/base-tokens', methods=['GET'])
def list_base_tokens():
    try:
        tokens = (get_supabase().table('base_tokens').select(PUBLIC_TOKEN_FIELDS)
                  .eq('is_active', True).order('symbol').execute().data or [])
        return jsonify({'tokens': tokens, 'count': len(tokens)}), 200
    except Exception:
        current_app.logger.exception("list_base_tokens error")
        return jsonify({'error': 'Internal server error'}), 500


# --------------------- Admin ---------------------
@tokens_bp.route('/api/admin/base-tokens', methods=['GET'])
@require_super_admin
def admin_list_base_tokens():
    try:
        query = get_supabase().table('base_tokens').select('*')
        token_type = request.args.get('token_type')
        if token_type:
            query = query.eq('token_type', token_type)
        is_active = request.args.get('is_active')
        if is_active is not None:
            query = query.eq('is_active', is_active == 'true')
        search = (request.args.get('search') or '').strip()
        if search:
            query = query.or_(f"symbol.ilike.%{search}%,name.ilike.%{search}%,code.ilike.%{search}%")
        tokens = query.order('created_at', desc=True).execute().data or []
        return jsonify({'data': tokens, 'total': len(tokens)}), 200
    except Exception:
        current_app.logger.exception("admin_list_base_tokens error")
        return jsonify({'error': 'Internal server error'}), 500


@tokens_bp.route('/api/admin/base-tokens', methods=['POST'])
@require_super_admin
def admin_create_base_token():
    try:
        body = request.get_json(silent=True) or {}
        if not body.get('code') or not body.get('symbol') or not body.get('name'):
            return jsonify({'error': 'Code, symbol, and name are required'}), 400

        supabase = get_supabase()
        if fetch_one(supabase.table('base_tokens').select('id').eq('code', body['code'])):
            return jsonify({'error': 'Token code already exists'}), 409

        token = first_row(supabase.table('base_tokens').insert({
            'code': body['code'],
            'symbol': body['symbol'],
            'name': body['name'],
            'token_type': body.get('token_type') or 'native',
            'decimals': body.get('decimals') or 18,
            'is_stablecoin': bool(body.get('is_stablecoin')),
            'binance_id': body.get('binance_id') or None,
            'coingecko_id': body.get('coingecko_id') or None,
            'primary_provider': body.get('primary_provider') or 'binance_us',
            'logo_url': body.get('logo_url') or None,
            'icon': body.get('icon') or None,
            'is_active': body.get('is_active', True) is not False,
        }).execute())
        if not token:
            return jsonify({'error': 'Failed to create base token'}), 500

        _refresh_coin_cache()
        log_admin_action('base_token_created', None, {'token_id': token.get('id'), 'code': body['code']})
        return jsonify({'success': True, 'token': token}), 201
    except Exception:
        current_app.logger.exception("admin_create_base_token error")
        return jsonify({'error': 'Internal server error'}), 500


@tokens_bp.route('/api/admin/base-tokens/<token_id>', methods=['GET'])
@require_super_admin
def admin_get_base_token(token_id):
    try:
        token = fetch_one(get_supabase().table('base_tokens').select('*').eq('id', token_id))
        if not token:
            return jsonify({'error': 'Token not found'}), 404
        return jsonify({'token': token}), 200
    except Exception:
        current_app.logger.exception("admin_get_base_token error")
        return jsonify({'error': 'Internal server error'}), 500


@tokens_bp.route('/api/admin/base-tokens/<token_id>', methods=['PUT'])
@require_super_admin
def admin_update_base_token(token_id):
    try:
        body = request.get_json(silent=True) or {}
        if not body.get('symbol') or not body.get('name'):
            return jsonify({'error': 'Symbol and name are required'}), 400

        # code is the stable identifier and is not editable
        update = {k: body[k] for k in TOKEN_UPDATE_FIELDS if k in body}
        update['updated_at'] = datetime.now(timezone.utc).isoformat()

        token = first_row(get_supabase().table('base_tokens').update(update).eq('id', token_id).execute())
        if not token:
            return jsonify({'error': 'Token not found'}), 404

        _refresh_coin_cache()
        log_admin_action('base_token_updated', None, {'token_id': token_id, 'fields': sorted(update)})
        return jsonify({'success': True, 'token': token}), 200
    except Exception:
        current_app.logger.exception("admin_update_base_token error")
        return jsonify({'error': 'Internal server error'}), 500


@tokens_bp.route('/api/admin/base-tokens/<token_id>', methods=['DELETE'])
@require_super_admin
def admin_delete_base_token(token_id):
    try:
        supabase = get_supabase()
        if fetch_one(supabase.table('token_deployments').select('id').eq('base_token_id', token_id)):
            return jsonify({
                'error': 'Cannot delete base token with existing deployments. '
                         'Please delete or reassign deployments first.',
            }), 409

        supabase.table('base_tokens').delete().eq('id', token_id).execute()
        _refresh_coin_cache()
        log_admin_action('base_token_deleted', None, {'token_id': token_id})
        return jsonify({'success': True}), 200
    except Exception:
        current_app.logger.exception("admin_delete_base_token error")
        return jsonify({'error': 'Internal server error'}), 500
