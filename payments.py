"""
Online payment flow.

A PaymentAttempt walks Created -> AuthorizationPending -> Verifying and ends
in exactly one of Verified, Failed or Cancelled. Attempts are single use:
once terminal they can be neither authorized nor verified again, and a retry
always starts from a fresh intent.
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Dict, Optional, Protocol

from errors import GatewayError, InvalidStateTransition, PaymentCancelled, VerificationFailure
from gateway import PaymentGateway
from schemas import PaymentIntent, SignaturePayload

logger = logging.getLogger("storefront.payments")


class PaymentState(str, Enum):
    CREATED = "Created"
    AUTHORIZATION_PENDING = "AuthorizationPending"
    VERIFYING = "Verifying"
    VERIFIED = "Verified"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


TERMINAL_STATES = {PaymentState.VERIFIED, PaymentState.FAILED, PaymentState.CANCELLED}


class AuthorizationResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DISMISSED = "dismissed"


class AuthorizationOutcome:
    """What the gateway's authorization UI reported back: one of three callbacks."""

    def __init__(self, result: AuthorizationResult, payload: Optional[SignaturePayload] = None,
                 error: Optional[str] = None):
        self.result = result
        self.payload = payload
        self.error = error

    @classmethod
    def success(cls, payload: SignaturePayload) -> "AuthorizationOutcome":
        return cls(AuthorizationResult.SUCCESS, payload=payload)

    @classmethod
    def failure(cls, error: Optional[str] = None) -> "AuthorizationOutcome":
        return cls(AuthorizationResult.FAILURE, error=error)

    @classmethod
    def dismissed(cls) -> "AuthorizationOutcome":
        return cls(AuthorizationResult.DISMISSED)


class AuthorizationLauncher(Protocol):
    async def open(self, intent: PaymentIntent, contact: dict) -> AuthorizationOutcome: ...


class PaymentAttempt:
    def __init__(self, intent: PaymentIntent, contact: Optional[dict] = None):
        self.attempt_id = uuid.uuid4().hex
        self.intent = intent
        self.contact = contact or {}
        self.state = PaymentState.CREATED
        self.gateway_payment_id: Optional[str] = None
        self.failure_reason: Optional[str] = None
        # set once the order backed by this payment exists
        self.order_id: Optional[str] = None

    @property
    def gateway_order_id(self) -> str:
        return self.intent.gateway_order_id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _move(self, expected: PaymentState, new: PaymentState) -> None:
        if self.state != expected:
            raise InvalidStateTransition(self.state, new)
        logger.info("Payment %s: %s -> %s", self.gateway_order_id, self.state.value, new.value)
        self.state = new

    def _fail(self, reason: str) -> None:
        logger.warning("Payment %s failed: %s", self.gateway_order_id, reason)
        self.state = PaymentState.FAILED
        self.failure_reason = reason


class PaymentOrchestrator:
    def __init__(self, gateway: PaymentGateway, currency: str = "INR"):
        self.gateway = gateway
        self.currency = currency

    async def create_intent(self, amount: float, customer_id: str, contact: Optional[dict] = None,
                            currency: Optional[str] = None) -> PaymentAttempt:
        currency = currency or self.currency
        receipt = f"rcpt_{uuid.uuid4().hex[:20]}"
        try:
            order = await self.gateway.create_payment_order(
                amount, currency, receipt, notes={"customer_id": customer_id},
            )
        except GatewayError:
            raise
        except Exception as exc:
            logger.exception("Payment order creation failed for customer %s", customer_id)
            raise GatewayError() from exc
        intent = PaymentIntent(
            amount=amount,
            currency=order.currency,
            gateway_order_id=order.gateway_order_id,
            gateway_key_id=order.gateway_key_id,
            customer_id=customer_id,
        )
        logger.info("Created payment intent %s for %s %s", intent.gateway_order_id, amount, currency)
        return PaymentAttempt(intent, contact)

    async def authorize(self, attempt: PaymentAttempt, launcher: AuthorizationLauncher) -> SignaturePayload:
        """
        Open the gateway's authorization UI and wait for its outcome.

        Returns the signature payload on success. Dismissal cancels the attempt
        and raises PaymentCancelled; a gateway-reported failure fails it and
        raises GatewayError.
        """
        attempt._move(PaymentState.CREATED, PaymentState.AUTHORIZATION_PENDING)
        try:
            outcome = await launcher.open(attempt.intent, attempt.contact)
        except asyncio.CancelledError:
            attempt.state = PaymentState.CANCELLED
            raise
        except Exception as exc:
            attempt._fail(str(exc))
            raise GatewayError() from exc

        if outcome.result == AuthorizationResult.DISMISSED:
            attempt._move(PaymentState.AUTHORIZATION_PENDING, PaymentState.CANCELLED)
            raise PaymentCancelled()
        if outcome.result == AuthorizationResult.FAILURE or outcome.payload is None:
            attempt._fail(outcome.error or "authorization failed")
            raise GatewayError(outcome.error or "Payment failed. Please try again.")

        attempt._move(PaymentState.AUTHORIZATION_PENDING, PaymentState.VERIFYING)
        return outcome.payload

    def verify(self, attempt: PaymentAttempt, payload: SignaturePayload) -> PaymentAttempt:
        if attempt.state != PaymentState.VERIFYING:
            raise InvalidStateTransition(attempt.state, PaymentState.VERIFIED)
        if payload.gateway_order_id != attempt.gateway_order_id:
            attempt._fail("signature payload names a different gateway order")
            raise VerificationFailure()
        try:
            ok = self.gateway.verify_signature(payload)
        except Exception as exc:
            attempt._fail(f"verification error: {exc}")
            raise VerificationFailure() from exc
        if not ok:
            attempt._fail("signature mismatch")
            raise VerificationFailure()
        attempt.gateway_payment_id = payload.gateway_payment_id
        attempt._move(PaymentState.VERIFYING, PaymentState.VERIFIED)
        return attempt


class CallbackLauncher:
    """
    Authorization launcher for the HTTP service.

    The browser runs the gateway checkout and reports the outcome to the
    callback endpoint, which resolves the future the orchestrator awaits.
    """

    def __init__(self):
        self._pending: Dict[str, asyncio.Future] = {}

    def expect(self, gateway_order_id: str) -> None:
        """Register an intent up front so a callback that beats `open` is kept."""
        if gateway_order_id not in self._pending:
            self._pending[gateway_order_id] = asyncio.get_running_loop().create_future()

    async def open(self, intent: PaymentIntent, contact: dict) -> AuthorizationOutcome:
        future = self._pending.get(intent.gateway_order_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._pending[intent.gateway_order_id] = future
        try:
            return await future
        finally:
            self._pending.pop(intent.gateway_order_id, None)

    def forget(self, gateway_order_id: str) -> None:
        future = self._pending.pop(gateway_order_id, None)
        if future is not None and not future.done():
            future.cancel()

    def is_pending(self, gateway_order_id: str) -> bool:
        return gateway_order_id in self._pending

    def resolve(self, gateway_order_id: str, outcome: AuthorizationOutcome) -> bool:
        future = self._pending.get(gateway_order_id)
        if future is None or future.done():
            return False
        future.set_result(outcome)
        return True
