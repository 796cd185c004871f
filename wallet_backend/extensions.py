from flask import request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from . import config


def _rate_limit_key():
    # Authenticated routes key by user, everything else by client address
    return getattr(request, 'user_id', None) or get_remote_address()


limiter = Limiter(
    key_func=_rate_limit_key,
    default_limits=[],
    storage_uri=config.RATELIMIT_STORAGE_URI,
    enabled=config.RATELIMIT_ENABLED,
)
