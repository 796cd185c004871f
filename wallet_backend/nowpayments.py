"""
NOWPayments REST client for invoice-style deposits.

Memo/tag currencies (XRP, XLM) cannot reuse a deposit address, so every
deposit is a fresh NOWPayments payment whose ``order_id`` is the user id;
the IPN callback for it lands on ``/api/webhooks/nowpayments``.
"""
import requests

from . import config

# coin code -> NOWPayments currency code
NOWPAYMENTS_CURRENCY_MAP = {
    'SOL': 'sol',
    'XRP': 'xrp',
    'ADA': 'ada',
    'XLM': 'xlm',
}
INVOICE_REQUIRED_CURRENCIES = ('xrp', 'xlm')
WEBHOOK_PATH = '/api/webhooks/nowpayments'
PAYMENT_EXPIRY_MINUTES = 60
DEFAULT_MIN_AMOUNT_USD = 1.0


class NowPaymentsError(Exception):
    """Raised when the NOWPayments API answers with a non-2xx status."""


def currency_for(coin_code: str):
    """NOWPayments currency for a coin code, or None when unsupported."""
    return NOWPAYMENTS_CURRENCY_MAP.get((coin_code or '').upper())


def requires_invoice_flow(currency: str) -> bool:
    return (currency or '').lower() in INVOICE_REQUIRED_CURRENCIES


def webhook_url(base_url: str) -> str:
    return f"{(base_url or '').rstrip('/')}{WEBHOOK_PATH}"


class NowPaymentsClient:
    def __init__(self, base_url=None, timeout=None):
        self.base_url = base_url or config.NOWPAYMENTS_API_BASE
        self.timeout = timeout or config.NOWPAYMENTS_TIMEOUT

    def _headers(self):
        return {'x-api-key': config.nowpayments_api_key() or ''}

    def _handle(self, r):
        try:
            data = r.json()
        except ValueError:
            data = {}
        if not r.ok:
            raise NowPaymentsError(
                f"NOWPayments API error: {data.get('message') or 'Unknown error'} ({data.get('code') or r.status_code})"
            )
        return data

    def _get(self, endpoint, params=None):
        r = requests.get(f"{self.base_url}{endpoint}", params=params, headers=self._headers(), timeout=self.timeout)
        return self._handle(r)

    def _post(self, endpoint, body):
        r = requests.post(f"{self.base_url}{endpoint}", json=body, headers=self._headers(), timeout=self.timeout)
        return self._handle(r)

    def get_minimum_amount(self, currency_from: str, currency_to: str) -> dict:
        return self._get('/min-amount', {
            'currency_from': currency_from.lower(),
            'currency_to': currency_to.lower(),
        })

    def create_payment(self, price_amount, price_currency, pay_currency, order_id=None,
                       order_description=None, ipn_callback_url=None, is_fixed_rate=None) -> dict:
        body = {
            'price_amount': price_amount,
            'price_currency': price_currency.lower(),
            'pay_currency': pay_currency.lower(),
        }
        if order_id:
            body['order_id'] = order_id
        if order_description:
            body['order_description'] = order_description
        if ipn_callback_url:
            body['ipn_callback_url'] = ipn_callback_url
        if is_fixed_rate is not None:
            body['is_fixed_rate'] = is_fixed_rate
        return self._post('/payment', body)

    def get_payment_status(self, payment_id) -> dict:
        return self._get(f"/payment/{payment_id}")


nowpayments = NowPaymentsClient()
