import re
import logging
from datetime import datetime, timezone

from flask import Flask, request, jsonify, make_response
from flask_cors import CORS

from . import config, __version__
from .admin_kyc import admin_kyc_bp
from .admin_users import admin_users_bp
from .auth import auth_bp
from .copy_trade import copy_trade_bp
from .db import get_supabase
from .deposits import deposits_bp
from .earn import earn_bp
from .extensions import limiter
from .kyc import kyc_bp
from .support import support_bp
from .tokens import tokens_bp
from .wallet import wallet_bp
from .webhooks import webhooks_bp

app = Flask(__name__)
app.logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

# Localhost, Vercel previews and ngrok tunnels are always allowed
ALLOWED_ORIGIN_STRINGS = [
    config.FRONTEND_URL,
    'http://localhost:3000',
    'http://127.0.0.1:3000',
] + config.ADDITIONAL_ALLOWED_ORIGINS
ALLOWED_ORIGIN_REGEX_STRINGS = [
    r'^https://.*\.vercel\.app$',
    r'^https://.*\.ngrok(?:-free)?\.app$',
    r'^https://.*\.ngrok\.io$',
]
ALLOWED_ORIGIN_REGEXES = [re.compile(p) for p in ALLOWED_ORIGIN_REGEX_STRINGS]

CORS_ALLOW_HEADERS = [
    "Content-Type", "Authorization", "ngrok-skip-browser-warning", "Accept",
    "X-Requested-With", "Cache-Control", "x-nowpayments-sig",
]
app.config['CORS_HEADERS'] = 'Content-Type, Authorization, ngrok-skip-browser-warning'

CORS(
    app,
    resources={
        r"/api/*": {
            "origins": "*" if config.CORS_ALLOW_ALL else ALLOWED_ORIGIN_STRINGS + ALLOWED_ORIGIN_REGEX_STRINGS,
            "allow_headers": CORS_ALLOW_HEADERS,
            "expose_headers": ["Content-Type", "X-Total-Count"],
            "methods": ["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
            "max_age": 86400,
        }
    },
    supports_credentials=not config.CORS_ALLOW_ALL,
)

limiter.init_app(app)


def _is_origin_allowed(origin: str) -> bool:
    if not origin:
        return False
    if config.CORS_ALLOW_ALL or origin in ALLOWED_ORIGIN_STRINGS:
        return True
    return any(rx.match(origin) for rx in ALLOWED_ORIGIN_REGEXES)


@app.before_request
def _log_request():
    if request.path.startswith('/api/'):
        app.logger.debug(f"{request.method} {request.path}")


# Fallback preflight for any /api/* path
@app.route('/api/<path:unused>', methods=['OPTIONS'])
@limiter.exempt
def cors_preflight(unused):
    resp = make_response('', 204)
    origin = request.headers.get('Origin', '')
    if origin and _is_origin_allowed(origin):
        resp.headers['Access-Control-Allow-Origin'] = origin
        resp.headers['Vary'] = 'Origin'
    resp.headers['Access-Control-Allow-Headers'] = (
        request.headers.get('Access-Control-Request-Headers') or ', '.join(CORS_ALLOW_HEADERS)
    )
    resp.headers['Access-Control-Allow-Methods'] = 'GET,POST,PATCH,PUT,DELETE,OPTIONS'
    if not config.CORS_ALLOW_ALL:
        resp.headers['Access-Control-Allow-Credentials'] = 'true'
    resp.headers['Access-Control-Max-Age'] = '600'
    return resp


for blueprint in (
    auth_bp, webhooks_bp, kyc_bp, admin_kyc_bp, admin_users_bp,
    wallet_bp, tokens_bp, copy_trade_bp, earn_bp, support_bp, deposits_bp,
):
    app.register_blueprint(blueprint)


@app.route('/api/health', methods=['GET'])
@limiter.exempt
def health_check():
    """Database connectivity, feature toggles and version."""
    status = {
        'status': 'healthy',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'version': __version__,
        'services': {},
        'features': {
            'earn': config.earn_enabled(),
            'copy_trade': config.copy_trade_enabled(),
        },
    }
    try:
        get_supabase().table('profiles').select('id').limit(1).execute()
        status['services']['database'] = 'ok'
    except Exception as e:
        app.logger.error(f"Health check database error: {e}")
        status['services']['database'] = 'error'
        status['status'] = 'unhealthy'
    return jsonify(status), 200 if status['status'] == 'healthy' else 503


# --------------------- Error Handlers ---------------------
@app.errorhandler(404)
def not_found(e):
    return jsonify({'error': 'Not found'}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    # Unknown /api paths only match the OPTIONS preflight fallback
    valid_methods = set(getattr(e, 'valid_methods', None) or ())
    if valid_methods and valid_methods <= {'OPTIONS'}:
        return jsonify({'error': 'Not found'}), 404
    return jsonify({'error': 'Method not allowed'}), 405


@app.errorhandler(429)
def ratelimit_handler(e):
    return jsonify({'error': 'Rate limit exceeded', 'message': str(e.description)}), 429


@app.errorhandler(500)
def internal_error(e):
    app.logger.exception("Internal server error")
    return jsonify({'error': 'Internal server error'}), 500


def main():
    logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
    errors, warnings = config.validate_configuration()
    for warning in warnings:
        app.logger.warning(warning)
    if errors:
        for error in errors:
            app.logger.error(error)
        raise SystemExit(1)

    app.logger.info(f"Starting wallet backend on port {config.PORT}")
    app.run(host='0.0.0.0', port=config.PORT, debug=False)


if __name__ == '__main__':
    main()
