"""
Payment gateway client.

Razorpay order creation and refunds over its REST API, and verification of
the checkout signature the gateway hands back to the browser.
"""

import hashlib
import hmac
import logging
from typing import Optional, Protocol

import httpx

from config import Settings, settings as default_settings
from errors import GatewayError
from schemas import SignaturePayload

logger = logging.getLogger("storefront.gateway")


class GatewayOrder:
    def __init__(self, gateway_order_id: str, amount: float, currency: str, gateway_key_id: str):
        self.gateway_order_id = gateway_order_id
        self.amount = amount
        self.currency = currency
        self.gateway_key_id = gateway_key_id


class PaymentGateway(Protocol):
    async def create_payment_order(self, amount: float, currency: str, receipt: str,
                                   notes: Optional[dict] = None) -> GatewayOrder: ...

    def verify_signature(self, payload: SignaturePayload) -> bool: ...

    async def refund(self, gateway_payment_id: str, amount: Optional[float] = None) -> dict: ...


def sign(secret: str, gateway_order_id: str, gateway_payment_id: str) -> str:
    message = f"{gateway_order_id}|{gateway_payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def to_paise(amount: float) -> int:
    return int(round(amount * 100))


def _error_description(response: httpx.Response) -> Optional[str]:
    try:
        return response.json().get("error", {}).get("description")
    except ValueError:
        return None


class RazorpayGateway:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or default_settings
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.razorpay_api_url,
                auth=(self.settings.razorpay_key_id, self.settings.razorpay_key_secret),
                timeout=self.settings.http_timeout,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def create_payment_order(self, amount: float, currency: str, receipt: str,
                                   notes: Optional[dict] = None) -> GatewayOrder:
        if amount <= 0:
            raise GatewayError("Payment amount must be positive")
        body = {"amount": to_paise(amount), "currency": currency, "receipt": receipt[:40], "notes": notes or {}}
        try:
            resp = await self._http().post("/orders", json=body)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _error_description(exc.response)
            logger.error("Gateway rejected order creation (%s): %s", exc.response.status_code, detail)
            raise GatewayError(detail or None) from exc
        except httpx.HTTPError as exc:
            logger.error("Gateway unreachable: %s", exc)
            raise GatewayError() from exc
        data = resp.json()
        return GatewayOrder(
            gateway_order_id=data["id"],
            amount=data["amount"] / 100,
            currency=data.get("currency", currency),
            gateway_key_id=self.settings.razorpay_key_id,
        )

    def verify_signature(self, payload: SignaturePayload) -> bool:
        if not self.settings.razorpay_key_secret:
            logger.error("Gateway secret not configured; refusing to verify payment")
            return False
        expected = sign(self.settings.razorpay_key_secret, payload.gateway_order_id, payload.gateway_payment_id)
        return hmac.compare_digest(expected, payload.signature)

    async def refund(self, gateway_payment_id: str, amount: Optional[float] = None) -> dict:
        body = {"amount": to_paise(amount)} if amount else {}
        try:
            resp = await self._http().post(f"/payments/{gateway_payment_id}/refund", json=body)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise GatewayError("Refund processing failed") from exc
        return resp.json()
