"""In-memory coin configuration cache, keyed by base token symbol."""
import logging
import time
from threading import Lock

from . import config
from .db import get_supabase

logger = logging.getLogger(__name__)

BASE_TOKEN_FIELDS = (
    'id, symbol, name, logo_url, icon, decimals, is_stablecoin, is_active, '
    'binance_id, coingecko_id, primary_provider, price_provider, price_provider_id'
)
DEPLOYMENT_FIELDS = 'id, base_token_id, symbol, network_id, is_plisio, plisio_cid, default_address'


class CoinCache:
    """
    Symbol -> coin config map loaded from active base_tokens.

    Entries carry network data from the token's first deployment. Reads
    refresh the map once it is older than the TTL; refreshes running at the
    same time simply overwrite each other.
    """

    def __init__(self, ttl=config.COIN_CACHE_TTL):
        self.ttl = ttl
        self._coins = {}
        self._last_fetch = 0.0
        self._lock = Lock()

    def is_valid(self) -> bool:
        return time.monotonic() - self._last_fetch < self.ttl and self._last_fetch > 0

    def get_coin(self, symbol: str):
        if not self.is_valid():
            self._refresh()
        return self._coins.get(symbol)

    def get_all_coins(self) -> list:
        if not self.is_valid():
            self._refresh()
        return list(self._coins.values())

    def get_coins_by_provider(self, provider: str) -> list:
        return [c for c in self.get_all_coins() if c.get('price_provider') == provider and c.get('is_active')]

    def force_refresh(self):
        """Reload now; called after admin changes to base tokens."""
        self._refresh()

    def invalidate(self):
        with self._lock:
            self._last_fetch = 0.0

    def _refresh(self):
        supabase = get_supabase()
        tokens = supabase.table('base_tokens').select(BASE_TOKEN_FIELDS).eq('is_active', True).execute().data or []

        deployments = {}
        network_ids = set()
        token_ids = [t['id'] for t in tokens]
        if token_ids:
            rows = (supabase.table('token_deployments').select(DEPLOYMENT_FIELDS)
                    .in_('base_token_id', token_ids).order('id').execute().data or [])
            for row in rows:
                # first deployment per token wins
                if row['base_token_id'] not in deployments:
                    deployments[row['base_token_id']] = row
                    if row.get('network_id') is not None:
                        network_ids.add(row['network_id'])

        network_names = {}
        if network_ids:
            rows = supabase.table('networks').select('id, name').in_('id', list(network_ids)).execute().data or []
            network_names = {n['id']: n.get('name') for n in rows}

        coins = {}
        for token in tokens:
            first = deployments.get(token['id']) or {}
            coins[token['symbol']] = {
                'id': token['id'],
                'symbol': token['symbol'],
                'name': token.get('name'),
                'logo_url': token.get('logo_url'),
                'icon': token.get('icon'),
                'decimals': token.get('decimals'),
                'is_stablecoin': bool(token.get('is_stablecoin')),
                'is_active': bool(token.get('is_active')),
                'binance_id': token.get('binance_id'),
                'coingecko_id': token.get('coingecko_id'),
                'primary_provider': token.get('primary_provider'),
                'price_provider': token.get('price_provider'),
                'price_provider_id': token.get('price_provider_id'),
                'network': network_names.get(first.get('network_id')),
                'is_plisio': bool(first.get('is_plisio')),
                'plisio_cid': first.get('plisio_cid'),
                'default_address': first.get('default_address'),
                'min_amount': 0,
            }

        with self._lock:
            self._coins = coins
            self._last_fetch = time.monotonic()
        logger.info(f"CoinCache loaded {len(coins)} base tokens")


coin_cache = CoinCache()
