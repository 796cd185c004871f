from functools import wraps

import jwt
from flask import Blueprint, request, jsonify, make_response, current_app

from . import config
from .db import get_supabase, fetch_one

PROFILE_AUTH_FIELDS = 'id, email, full_name, role, is_banned, banned_reason, banned_at'


class AuthError(Exception):
    """Raised when a bearer token is missing or cannot be verified."""

    def __init__(self, message, status_code=401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def _bearer_token():
    auth_header = request.headers.get('Authorization')
    if not auth_header:
        raise AuthError('Unauthorized')
    parts = auth_header.split(' ')
    if len(parts) != 2 or parts[0].lower() != 'bearer' or not parts[1]:
        raise AuthError('Invalid token format')
    return parts[1]


def decode_access_token(token: str) -> dict:
    """Verify a Supabase access token and return its claims."""
    secret = config.jwt_secret()
    if not secret:
        current_app.logger.error("SUPABASE_JWT_SECRET not set")
        raise AuthError('Server configuration error', 500)
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=['HS256'],
            audience='authenticated',
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthError('Token expired')
    except jwt.InvalidTokenError as e:
        current_app.logger.warning(f"Invalid token: {e}")
        raise AuthError('Invalid token')


def _load_session():
    """Decode the bearer token and attach user id, email, role and profile to the request."""
    payload = decode_access_token(_bearer_token())
    user_id = payload.get('sub')
    if not user_id:
        raise AuthError('Invalid token')

    # Role always comes from profiles, never from the JWT claim
    profile = fetch_one(
        get_supabase().table('profiles').select(PROFILE_AUTH_FIELDS).eq('id', user_id)
    )
    if not profile:
        raise AuthError('Unauthorized')

    request.user_id = user_id
    request.user_email = payload.get('email') or profile.get('email')
    request.user_role = profile.get('role') or 'user'
    request.profile = profile
    return profile


def _authenticate(allow_banned=False):
    """Returns an error response tuple, or None when the caller is authenticated."""
    try:
        profile = _load_session()
    except AuthError as e:
        return jsonify({'error': e.message}), e.status_code
    except Exception:
        current_app.logger.exception("session lookup failed")
        return jsonify({'error': 'Internal server error'}), 500

    if profile.get('is_banned') and not allow_banned:
        return jsonify({
            'error': 'Account suspended',
            'banned_reason': profile.get('banned_reason'),
            'banned_at': profile.get('banned_at'),
        }), 403
    return None


def require_auth(f=None, *, allow_banned=False):
    """
    Require a valid bearer token.

    Usable bare (``@require_auth``) or as ``@require_auth(allow_banned=True)``
    for the few routes a suspended account still needs: its own session
    and the support desk it files ban appeals through.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # allow CORS preflight OPTIONS to bypass auth
            if request.method == 'OPTIONS':
                return make_response('', 204)
            failure = _authenticate(allow_banned=allow_banned)
            if failure is not None:
                return failure
            return f(*args, **kwargs)
        return decorated_function

    if f is None:
        return decorator
    return decorator(f)


def require_role(*roles):
    """Authenticate, then allow only callers whose profile role is in ``roles``."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if request.method == 'OPTIONS':
                return make_response('', 204)
            failure = _authenticate()
            if failure is not None:
                return failure
            if request.user_role not in roles:
                current_app.logger.warning(
                    f"Forbidden: user {request.user_id} with role {request.user_role} on {request.path}"
                )
                return jsonify({'error': 'Forbidden'}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


require_admin = require_role(*config.ADMIN_ROLES)
require_super_admin = require_role('super_admin')


def feature_required(feature):
    """404 before any auth or database work when the feature toggle is off."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not config.is_feature_enabled(feature):
                return jsonify({'error': 'Feature not available'}), 404
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def optional_auth(f):
    """Attach the session when a valid token is sent; anonymous callers get request.user_id = None."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        request.user_id = None
        request.user_role = None
        if request.headers.get('Authorization'):
            try:
                _load_session()
            except AuthError:
                request.user_id = None
                request.user_role = None
        return f(*args, **kwargs)
    return decorated_function


# --------------------- Session endpoint ---------------------

auth_bp = Blueprint('auth', __name__)


@auth_bp.route('/api/auth/me', methods=['GET'])
@require_auth(allow_banned=True)
def auth_me():
    """Return the caller's profile."""
    try:
        profile = fetch_one(get_supabase().table('profiles').select('*').eq('id', request.user_id))
        if not profile:
            return jsonify({'error': 'Profile not found'}), 404
        return jsonify({'user': {'id': request.user_id, 'email': request.user_email}, 'profile': profile}), 200
    except Exception:
        current_app.logger.exception("auth_me error")
        return jsonify({'error': 'Internal server error'}), 500
