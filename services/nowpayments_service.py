"""NOWPayments Cryptocurrency Payment API Service - asynchronous escrow-fee rail"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from config import Config

logger = logging.getLogger(__name__)


class NowPaymentsAPIError(Exception):
    """Custom exception for NOWPayments API errors"""
    pass


def _mask(value: Optional[str]) -> str:
    if not value:
        return "<unset>"
    return f"{value[:4]}...{value[-2:]}" if len(value) > 8 else "****"


class NowPaymentsService:
    """Opens and inspects crypto invoices with NOWPayments"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        ipn_callback_url: Optional[str] = None,
        timeout: Optional[int] = None,
        http=None,
    ):
        self.api_key = api_key if api_key is not None else Config.NOWPAYMENTS_API_KEY
        self.base_url = (base_url or Config.NOWPAYMENTS_BASE_URL).rstrip('/')
        self.ipn_callback_url = ipn_callback_url if ipn_callback_url is not None else Config.NOWPAYMENTS_IPN_CALLBACK_URL
        self.timeout = timeout or Config.NOWPAYMENTS_TIMEOUT_SECONDS
        self.http = http or requests.Session()

        if not self.api_key:
            logger.warning("NOWPayments API key not configured - crypto rail will not function")
        else:
            logger.info(f"NOWPayments API initialized with key: {_mask(self.api_key)}")

    def _get_headers(self) -> Dict[str, str]:
        return {
            'accept': 'application/json',
            'content-type': 'application/json',
            'x-api-key': self.api_key or '',
        }

    def _request(self, method: str, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.http.request(
                method, url, headers=self._get_headers(), json=payload, timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Network error connecting to NOWPayments: {e}")
            raise NowPaymentsAPIError(f"Network error: {e}") from e

        if response.status_code not in (200, 201):
            logger.error(f"NOWPayments API error: HTTP {response.status_code}: {response.text}")
            raise NowPaymentsAPIError(f"NOWPayments returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise NowPaymentsAPIError("NOWPayments returned a non-JSON response") from e

    def create_payment(
        self,
        price_amount: Decimal,
        order_id: str,
        order_description: str,
        pay_currency: Optional[str] = None,
        price_currency: str = 'usd',
        customer_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create an invoice; the processor later reports its progress to the IPN callback"""
        if not self.is_available():
            raise NowPaymentsAPIError("NOWPayments API key not configured")

        payload = {
            'price_amount': float(price_amount),
            'price_currency': price_currency.lower(),
            'pay_currency': (pay_currency or Config.NOWPAYMENTS_DEFAULT_PAY_CURRENCY).lower(),
            'order_id': order_id,
            'order_description': order_description,
            'ipn_callback_url': self.ipn_callback_url,
        }
        if customer_email:
            payload['customer_email'] = customer_email

        data = self._request('POST', '/payment', payload)
        if not data.get('payment_id'):
            logger.error(f"NOWPayments response missing payment_id for order {order_id}: {data}")
            raise NowPaymentsAPIError("NOWPayments response missing payment_id")

        logger.info(
            f"💳 NOWPAYMENTS_INVOICE: order {order_id} -> payment {data.get('payment_id')} "
            f"({data.get('payment_status')})"
        )
        return data

    def get_payment_status(self, payment_id: str) -> Dict[str, Any]:
        return self._request('GET', f"/payment/{payment_id}")

    def is_available(self) -> bool:
        return bool(self.api_key)
