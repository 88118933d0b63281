"""Payment provider port and adapters.

The engine treats the payment gateway as an opaque boundary: at checkout it
asks the provider for a redirect token, and later the provider calls the
notification webhook. MidtransSnapProvider talks to the Snap API over HTTP;
FakePaymentProvider answers locally for development and tests.

Notification signatures follow the Snap scheme:
    SHA512(order_id + status_code + gross_amount + server_key), hex encoded
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

import requests
from requests import RequestException
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from storefront.checkout.session_store import ShippingInfo
from storefront.shared.config import settings
from storefront.shared.errors import PaymentProviderError

logger = logging.getLogger(__name__)

SANDBOX_SNAP_URL = "https://app.sandbox.midtrans.com/snap/v1/transactions"
PRODUCTION_SNAP_URL = "https://app.midtrans.com/snap/v1/transactions"


@dataclass(frozen=True)
class PaymentTransaction:
    """Redirect handle issued by the provider for one checkout."""

    token: str
    redirect_url: str


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    payload = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(payload.encode("utf-8")).hexdigest()


def format_amount(amount: Decimal):
    """Snap expects whole numbers for IDR amounts."""
    if amount == amount.to_integral_value():
        return int(amount)
    return float(amount)


class PaymentProvider(ABC):
    """Abstract payment provider interface."""

    name = "provider"

    def __init__(self, server_key: Optional[str] = None):
        self.server_key = server_key or settings.payment_provider_server_key

    @abstractmethod
    def create_transaction(
        self,
        correlation_id: str,
        gross_amount: Decimal,
        shipping: ShippingInfo,
        customer_name: Optional[str] = None,
    ) -> PaymentTransaction:
        """Register a payment with the provider and return its redirect handle."""
        ...

    def verify_signature(self, order_id: str, status_code: str, gross_amount: str, signature: str) -> bool:
        """Check a notification signature against the server key."""
        expected = compute_signature(order_id, status_code, gross_amount, self.server_key)
        return hmac.compare_digest(expected, signature or "")


def http_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.3, min=0.3, max=3),
        retry=retry_if_exception_type(RequestException),
    )


class MidtransSnapProvider(PaymentProvider):
    """Snap API adapter."""

    name = "midtrans"

    def __init__(
        self,
        server_key: Optional[str] = None,
        base_url: Optional[str] = None,
        app_base_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        super().__init__(server_key)
        default_url = PRODUCTION_SNAP_URL if settings.payment_provider_production else settings.payment_provider_url
        self.base_url = base_url or default_url
        self.app_base_url = (app_base_url or settings.app_base_url).rstrip("/")
        self.timeout = timeout or settings.payment_provider_timeout_seconds

    def _build_request(
        self, correlation_id: str, gross_amount: Decimal, shipping: ShippingInfo, customer_name: Optional[str]
    ) -> Dict[str, Any]:
        return {
            "transaction_details": {
                "order_id": correlation_id,
                "gross_amount": format_amount(gross_amount),
            },
            "customer_details": {
                "first_name": customer_name or shipping.full_name,
                "email": shipping.email,
                "phone": shipping.phone,
            },
            "shipping_address": {
                "first_name": shipping.full_name,
                "phone": shipping.phone,
                "address": shipping.address,
                "city": shipping.city,
                "postal_code": shipping.postal_code,
            },
            "callbacks": {
                "finish": f"{self.app_base_url}/payment/success?order_id={correlation_id}",
                "error": f"{self.app_base_url}/payment/failure?order_id={correlation_id}",
                "pending": f"{self.app_base_url}/payment/pending?order_id={correlation_id}",
            },
        }

    @http_retry()
    def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Snap POST {self.base_url}")
        resp = requests.post(
            self.base_url,
            json=body,
            auth=(self.server_key, ""),
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def create_transaction(
        self,
        correlation_id: str,
        gross_amount: Decimal,
        shipping: ShippingInfo,
        customer_name: Optional[str] = None,
    ) -> PaymentTransaction:
        body = self._build_request(correlation_id, gross_amount, shipping, customer_name)
        try:
            data = self._post(body)
        except RequestException as e:
            logger.error(
                f"Payment creation failed for {correlation_id}: {e}",
                extra={"correlation_id": correlation_id},
            )
            raise PaymentProviderError("Payment creation failed", {"correlation_id": correlation_id}) from e

        if "token" not in data or "redirect_url" not in data:
            logger.error(f"Unexpected Snap response for {correlation_id}: {data}")
            raise PaymentProviderError("Payment creation failed", {"correlation_id": correlation_id})
        return PaymentTransaction(token=data["token"], redirect_url=data["redirect_url"])


class FakePaymentProvider(PaymentProvider):
    """Configurable provider that never leaves the process."""

    name = "fake"

    def __init__(self, server_key: Optional[str] = None):
        super().__init__(server_key)
        self.should_succeed = True
        self.failure_reason = "Provider unavailable"
        self.calls: List[Dict[str, Any]] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Provider unavailable") -> None:
        """Configure provider behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def create_transaction(
        self,
        correlation_id: str,
        gross_amount: Decimal,
        shipping: ShippingInfo,
        customer_name: Optional[str] = None,
    ) -> PaymentTransaction:
        self.calls.append(
            {
                "method": "create_transaction",
                "correlation_id": correlation_id,
                "gross_amount": gross_amount,
            }
        )
        if not self.should_succeed:
            raise PaymentProviderError(self.failure_reason, {"correlation_id": correlation_id})
        token = f"fake_token_{uuid4().hex[:12]}"
        return PaymentTransaction(token=token, redirect_url=f"https://pay.example.test/snap/{token}")

    def sign(self, order_id: str, status_code: str, gross_amount: str) -> str:
        """Produce the signature a real provider would attach."""
        return compute_signature(order_id, status_code, gross_amount, self.server_key)


def build_payment_provider() -> PaymentProvider:
    """Create the provider selected by PAYMENT_PROVIDER_NAME."""
    if settings.payment_provider_name == "fake":
        logger.info("Using fake payment provider")
        return FakePaymentProvider()
    return MidtransSnapProvider()
