"""
HTTP Payment Gateway

Talks to the payment server that fronts the card processor.

Endpoints:
- POST /create-payment-intent  {amount, currency} -> {clientSecret, paymentIntentId}
- POST /refund                 {paymentIntentId, amount} -> {status}

DESIGN DECISION: Charge creation is retried on connection errors (nothing
has been charged until the client confirms). Refunds are NEVER retried
here; a failed refund is recorded as refundFailed and the user retries.
"""

import asyncio
from typing import Any, Optional

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from goalstake.config import PaymentGatewaySettings, get_settings
from goalstake.models.goal import ChargeResult
from goalstake.services.payments.interface import (
    GatewayError,
    GatewayTimeoutError,
    PaymentGatewayInterface,
)


class HttpPaymentGateway(PaymentGatewayInterface):
    """Payment gateway backed by the payment server's JSON API."""

    def __init__(
        self,
        settings: Optional[PaymentGatewaySettings] = None,
        session: Optional[requests.Session] = None,
    ):
        self._settings = settings or get_settings().payment_gateway
        self._session = session or requests.Session()

    def _post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        url = self._settings.base_url.rstrip("/") + endpoint
        try:
            response = self._session.post(
                url,
                json=body,
                headers={
                    "Content-Type": "application/json",
                    "X-Environment": self._settings.environment,
                },
                timeout=self._settings.timeout_seconds,
            )
        except requests.Timeout as e:
            raise GatewayTimeoutError(f"Payment server timed out: {endpoint}") from e

        if response.status_code >= 400:
            raise GatewayError(
                f"Payment server returned {response.status_code} for {endpoint}: "
                f"{response.text[:200]}"
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayError(f"Invalid response from payment server: {endpoint}") from e
        if not isinstance(payload, dict):
            raise GatewayError(f"Unexpected response from payment server: {endpoint}")
        return payload

    @retry(
        retry=retry_if_exception_type(requests.ConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    def _post_with_retry(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        return self._post(endpoint, body)

    async def refund(self, payment_reference: str, amount_minor_units: int) -> None:
        try:
            payload = await asyncio.to_thread(
                self._post,
                "/refund",
                {"paymentIntentId": payment_reference, "amount": amount_minor_units},
            )
        except requests.RequestException as e:
            raise GatewayError(f"Network error: {e}") from e

        status = payload.get("status")
        if status not in ("succeeded", "pending"):
            raise GatewayError(f"Refund not accepted (status: {status})")

    async def create_charge(self, amount_minor_units: int, currency: str) -> ChargeResult:
        try:
            payload = await asyncio.to_thread(
                self._post_with_retry,
                "/create-payment-intent",
                {"amount": amount_minor_units, "currency": currency.lower()},
            )
        except requests.RequestException as e:
            raise GatewayError(f"Network error: {e}") from e

        client_secret = payload.get("clientSecret")
        reference = payload.get("paymentIntentId") or payload.get("id")
        if not client_secret or not reference:
            raise GatewayError("Client secret or payment reference missing from response")
        return ChargeResult(client_secret=client_secret, payment_reference=reference)
