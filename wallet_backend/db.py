"""Supabase client access and small query helpers."""
from datetime import datetime, timezone
from threading import Lock
from typing import Optional

from supabase import create_client, Client

from . import config

_client: Optional[Client] = None
_client_lock = Lock()


def get_supabase() -> Client:
    """Return the shared service-role Supabase client, creating it on first use."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_KEY:
                    raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
                _client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_KEY)
    return _client


def fetch_one(query) -> Optional[dict]:
    """Execute a select query and return the first row, or None when nothing matched."""
    res = query.limit(1).execute()
    rows = res.data or []
    return rows[0] if rows else None


def first_row(res) -> Optional[dict]:
    """First row of an insert/update response (PostgREST returns a list)."""
    data = getattr(res, 'data', None)
    if isinstance(data, list):
        return data[0] if data else None
    return data


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a PostgREST timestamp; values without an offset are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
