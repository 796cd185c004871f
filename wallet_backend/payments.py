"""
Payment provider callback verification.

Plisio signs callbacks with HMAC-SHA1 over the JSON of the payload minus
``verify_hash`` (callback_url must carry ``?json=true``). NOWPayments signs
IPN bodies with HMAC-SHA512 over the key-sorted JSON and sends the digest
in the ``x-nowpayments-sig`` header.
"""
import hashlib
import hmac
import json
import logging

from . import config

logger = logging.getLogger(__name__)

PLISIO_REQUIRED_FIELDS = ('txn_id', 'amount', 'currency', 'status', 'verify_hash')
NOWPAYMENTS_REQUIRED_FIELDS = ('payment_id', 'payment_status', 'pay_address', 'pay_currency', 'actually_paid')

# confirmed credits and locks, finished settles; partially_paid waits for finished
NOWPAYMENTS_CREDIT_STATUSES = ('confirmed', 'finished', 'partially_paid')


def js_stringify(data) -> str:
    """Serialize like JavaScript's JSON.stringify: compact, key order kept, non-ASCII unescaped."""
    return json.dumps(data, separators=(',', ':'), ensure_ascii=False)


def _hmac_hex(secret: str, message: str, digestmod) -> str:
    return hmac.new(secret.encode('utf-8'), message.encode('utf-8'), digestmod).hexdigest()


# --------------------- Plisio ---------------------

def plisio_signature(data: dict, secret: str) -> str:
    ordered = {k: v for k, v in data.items() if k != 'verify_hash'}
    return _hmac_hex(secret, js_stringify(ordered), hashlib.sha1)


def verify_plisio_callback(data, secret: str = None) -> bool:
    """
    Verify a Plisio callback signature.

    Args:
        data: Parsed callback payload (dict, in received key order)
        secret: Shared secret; defaults to PLISIO_SECRET_KEY

    Returns:
        True only when the recomputed digest matches ``verify_hash`` exactly.
    """
    try:
        if not isinstance(data, dict) or not data.get('verify_hash'):
            logger.error("Missing verify_hash in callback data")
            return False

        secret_key = secret or config.plisio_secret_key()
        if not secret_key:
            logger.error("PLISIO_SECRET_KEY not configured")
            return False

        received = str(data['verify_hash'])
        expected = plisio_signature(data, secret_key)
        is_valid = hmac.compare_digest(expected, received)

        if not is_valid:
            logger.error(
                "Plisio signature verification failed: expected=%s received=%s payload=%s...",
                expected, received, js_stringify({k: v for k, v in data.items() if k != 'verify_hash'})[:200],
            )
        return is_valid
    except Exception as e:
        logger.error(f"Error verifying Plisio callback: {e}")
        return False


def validate_plisio_callback(data) -> bool:
    if not isinstance(data, dict):
        logger.error("Invalid callback data: not an object")
        return False
    for field in PLISIO_REQUIRED_FIELDS:
        if not data.get(field):
            logger.error(f"Missing required field: {field}")
            return False
    return True


# --------------------- NOWPayments ---------------------

def sort_object_keys(obj):
    """Recursively sort dict keys alphabetically (lists keep their order)."""
    if isinstance(obj, dict):
        return {k: sort_object_keys(obj[k]) for k in sorted(obj)}
    if isinstance(obj, list):
        return [sort_object_keys(item) for item in obj]
    return obj


def nowpayments_signature(body: dict, secret: str) -> str:
    return _hmac_hex(secret, js_stringify(sort_object_keys(body)), hashlib.sha512)


def verify_nowpayments_signature(body, signature: str, secret: str = None) -> bool:
    try:
        secret_key = secret or config.nowpayments_ipn_secret()
        if not secret_key:
            logger.error("NOWPAYMENTS_IPN_SECRET not configured")
            return False
        if not signature:
            logger.error("Missing signature in webhook request")
            return False

        expected = nowpayments_signature(body, secret_key)
        is_valid = hmac.compare_digest(expected, signature)
        if not is_valid:
            logger.error("NOWPayments signature verification failed: expected=%s received=%s", expected, signature)
        return is_valid
    except Exception as e:
        logger.error(f"Error verifying NOWPayments signature: {e}")
        return False


def validate_nowpayments_callback(data) -> bool:
    if not isinstance(data, dict):
        logger.error("Invalid callback data: not an object")
        return False
    for field in NOWPAYMENTS_REQUIRED_FIELDS:
        if data.get(field) is None:
            logger.error(f"Missing required field in payment callback: {field}")
            return False
    return True


def map_payment_status(status: str) -> str:
    """Map a NOWPayments payment status onto pending/completed/failed/expired."""
    if status in ('waiting', 'confirming', 'confirmed', 'sending'):
        return 'pending'
    if status in ('finished', 'partially_paid'):
        return 'completed'
    if status in ('failed', 'refunded'):
        return 'failed'
    if status == 'expired':
        return 'expired'
    logger.warning(f"Unknown NOWPayments status: {status}")
    return 'pending'


def should_credit_balance(status: str) -> bool:
    return status in NOWPAYMENTS_CREDIT_STATUSES
