import os

from dotenv import load_dotenv

load_dotenv()

# --------------------- Supabase ---------------------
SUPABASE_URL = os.getenv('SUPABASE_URL')
SUPABASE_SERVICE_KEY = os.getenv('SUPABASE_SERVICE_KEY')

# --------------------- App ---------------------
FRONTEND_URL = os.getenv('FRONTEND_URL', 'http://localhost:3000')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
PORT = int(os.getenv('PORT', 5000))

# Comma-separated extra origins (custom domains)
ADDITIONAL_ALLOWED_ORIGINS = [
    o.strip() for o in (os.getenv('ADDITIONAL_ALLOWED_ORIGINS', '') or '').split(',') if o.strip()
]

CORS_ALLOW_ALL = (os.getenv('CORS_ALLOW_ALL', '') or '').lower() in ('1', 'true', 'yes')
if not CORS_ALLOW_ALL:
    # Anything explicitly non-production defaults to allow-all
    _env = (os.getenv('ENV') or os.getenv('FLASK_ENV') or '').lower()
    if _env and _env != 'production':
        CORS_ALLOW_ALL = True

# --------------------- Rate limiting ---------------------
RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')
RATELIMIT_ENABLED = (os.getenv('RATELIMIT_ENABLED', 'true') or '').lower() not in ('0', 'false', 'no')

# --------------------- Prices ---------------------
COINGECKO_SIMPLE = "https://api.coingecko.com/api/v3/simple/price"
PRICE_TIMEOUT = int(os.getenv('PRICE_TIMEOUT', '12'))

# --------------------- NOWPayments ---------------------
NOWPAYMENTS_API_BASE = os.getenv('NOWPAYMENTS_API_BASE', 'https://api.nowpayments.io/v1')
NOWPAYMENTS_TIMEOUT = int(os.getenv('NOWPAYMENTS_TIMEOUT', '15'))
# Public base URL the IPN callback is built from
APP_URL = os.getenv('APP_URL') or os.getenv('NEXT_PUBLIC_APP_URL', '')

# --------------------- Coin configuration ---------------------
COIN_CACHE_TTL = 5 * 60  # seconds

# --------------------- Domain constants ---------------------
ROLES = ('user', 'admin', 'super_admin')
ADMIN_ROLES = ('admin', 'super_admin')

KYC_TIERS = ('none', 'tier_1_basic', 'tier_2_advanced', 'tier_3_enhanced')
KYC_SUBMITTABLE_TIERS = ('tier_1_basic', 'tier_2_advanced')
KYC_DOCUMENT_TYPES = ('passport', 'drivers_license', 'national_id')
KYC_MIN_AGE = 18

USDT_CODE = 'usdt'


def jwt_secret():
    """Supabase JWT secret, read per call so it can be rotated without a restart."""
    return os.getenv('SUPABASE_JWT_SECRET')


def plisio_secret_key():
    return os.getenv('PLISIO_SECRET_KEY')


def nowpayments_ipn_secret():
    return os.getenv('NOWPAYMENTS_IPN_SECRET')


def nowpayments_api_key():
    return os.getenv('NOWPAYMENTS_API_KEY')


def _env_flag(*names) -> bool:
    for name in names:
        value = os.getenv(name)
        if value is not None:
            return value.strip().lower() == 'true'
    return False


def earn_enabled() -> bool:
    return _env_flag('EARN_ENABLED', 'NEXT_PUBLIC_EARN_ENABLED')


def copy_trade_enabled() -> bool:
    return _env_flag('COPY_TRADE_ENABLED', 'NEXT_PUBLIC_COPY_TRADE_ENABLED')


def is_feature_enabled(feature: str) -> bool:
    """Check a feature toggle by name ('earn' or 'copy-trade')."""
    if feature == 'earn':
        return earn_enabled()
    if feature == 'copy-trade':
        return copy_trade_enabled()
    return False


def validate_configuration():
    """
    Validate configuration on startup.

    Returns (errors, warnings). Missing Supabase credentials are errors,
    missing webhook secrets only disable the matching webhook.
    """
    errors = []
    warnings = []

    required_vars = [
        'SUPABASE_URL',
        'SUPABASE_SERVICE_KEY',
        'SUPABASE_JWT_SECRET',
    ]
    for var in required_vars:
        if not os.getenv(var):
            errors.append(f"Missing required environment variable: {var}")

    if not plisio_secret_key():
        warnings.append("PLISIO_SECRET_KEY not configured - Plisio webhooks will be rejected")
    if not nowpayments_ipn_secret():
        warnings.append("NOWPAYMENTS_IPN_SECRET not configured - NOWPayments webhooks will be rejected")
    if not nowpayments_api_key():
        warnings.append("NOWPAYMENTS_API_KEY not configured - invoice deposits cannot be created")
    if RATELIMIT_STORAGE_URI.startswith('memory://'):
        warnings.append("Rate limits use in-memory storage; set RATELIMIT_STORAGE_URI for multi-worker deployments")

    return errors, warnings
