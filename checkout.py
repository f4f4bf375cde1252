"""
Checkout orchestration.

A CheckoutSession owns the line items of one checkout from the moment they
are loaded until the order exists. Customer identity, the shipping form and
the payment method are passed in explicitly on every call.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from cart import CartReconciler
from config import Settings, settings as default_settings
from coupons import CouponValidator
from errors import CatalogUnavailable, CheckoutError, InvalidStateTransition, NotFound, ValidationError
from orders import OrderLifecycleManager
from payments import AuthorizationOutcome, CallbackLauncher, PaymentAttempt, PaymentOrchestrator
from pricing import compute_totals, shipping_cost
from repositories import CartStore
from schemas import (
    CheckoutContext,
    CouponValidation,
    DiscountType,
    LineItem,
    Order,
    PaymentMethod,
    ShippingForm,
    Totals,
)

logger = logging.getLogger("storefront.checkout")


class CheckoutMode(str, Enum):
    CART = "cart"
    BUY_NOW = "buyNow"


class CheckoutSession:
    def __init__(self, customer_id: str, mode: CheckoutMode, line_items: List[LineItem], now: datetime):
        self.session_id = uuid.uuid4().hex
        self.customer_id = customer_id
        self.mode = mode
        self.line_items = line_items
        self.coupon: Optional[CouponValidation] = None
        self.totals = Totals()
        self.attempt: Optional[PaymentAttempt] = None
        self.payment_task: Optional[asyncio.Task] = None
        self.order: Optional[Order] = None
        self.load_error: Optional[str] = None
        self.error: Optional[str] = None
        self.touched_at = now

    @property
    def payment_in_flight(self) -> bool:
        return self.attempt is not None and not self.attempt.is_terminal

    @property
    def product_ids(self) -> List[str]:
        return [i.product_id for i in self.line_items]

    def as_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "customer_id": self.customer_id,
            "mode": self.mode.value,
            "items": [dict(i.model_dump(), line_total=i.line_total) for i in self.line_items],
            "totals": self.totals.model_dump(),
            "coupon": self.coupon.model_dump() if self.coupon else None,
            "payment_state": self.attempt.state.value if self.attempt else None,
            "gateway_order_id": self.attempt.gateway_order_id if self.attempt else None,
            "order_id": self.order.order_id if self.order else None,
            "load_error": self.load_error,
            "error": self.error,
        }


class SettledCheckout:
    """What is left of a session once its order exists."""

    def __init__(self, snapshot: dict, order: Order, expires_at: datetime):
        self.snapshot = snapshot
        self.order = order
        self.expires_at = expires_at


def _consume_exception(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


class CheckoutService:
    def __init__(
        self,
        reconciler: CartReconciler,
        coupons: CouponValidator,
        payments: PaymentOrchestrator,
        lifecycle: OrderLifecycleManager,
        carts: CartStore,
        launcher: CallbackLauncher,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.reconciler = reconciler
        self.coupons = coupons
        self.payments = payments
        self.lifecycle = lifecycle
        self.carts = carts
        self.launcher = launcher
        self.settings = settings or default_settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.session_ttl = timedelta(minutes=self.settings.checkout_session_ttl_minutes)
        self.settled_ttl = timedelta(minutes=self.settings.settled_checkout_ttl_minutes)
        self.sessions: Dict[str, CheckoutSession] = {}
        self.settled: Dict[str, SettledCheckout] = {}
        # gateway order id -> session id, live or settled
        self._by_gateway_order: Dict[str, str] = {}

    # ── Loading ──────────────────────────────────────────────

    async def start(self, customer_id: str, buy_now_product_id: Optional[str] = None,
                    quantity: Optional[int] = None) -> CheckoutSession:
        self.evict_expired()
        now = self.clock()
        if buy_now_product_id:
            items = await self.reconciler.buy_now(buy_now_product_id, quantity)
            session = CheckoutSession(customer_id, CheckoutMode.BUY_NOW, items, now)
        else:
            entries = await self.carts.get_cart_by_customer_id(customer_id)
            try:
                items = await self.reconciler.reconcile(entries)
                session = CheckoutSession(customer_id, CheckoutMode.CART, items, now)
            except CatalogUnavailable as exc:
                # keep what we know on screen; placing the order stays blocked
                session = CheckoutSession(customer_id, CheckoutMode.CART, exc.partial, now)
                session.load_error = exc.message
        self._recalculate(session)
        self.sessions[session.session_id] = session
        logger.info("Checkout %s started for %s (%s, %d item(s))", session.session_id, customer_id,
                    session.mode.value, len(session.line_items))
        return session

    def get(self, session_id: str) -> CheckoutSession:
        self.evict_expired()
        if session_id in self.settled:
            raise InvalidStateTransition("order placed", None, "This order has already been placed")
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound("Checkout session not found")
        session.touched_at = self.clock()
        return session

    def describe(self, session_id: str) -> dict:
        self.evict_expired()
        settled = self.settled.get(session_id)
        if settled is not None:
            return settled.snapshot
        return self.get(session_id).as_dict()

    def discard(self, session_id: str) -> None:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return
        if session.attempt is not None:
            self._by_gateway_order.pop(session.attempt.gateway_order_id, None)
            self.launcher.forget(session.attempt.gateway_order_id)
        if session.payment_task is not None and not session.payment_task.done():
            session.payment_task.cancel()

    def evict_expired(self) -> None:
        """Drop sessions idle past their TTL and settled records past theirs."""
        now = self.clock()
        idle = [s.session_id for s in self.sessions.values() if now - s.touched_at > self.session_ttl]
        for session_id in idle:
            logger.info("Checkout %s expired after %s idle", session_id, self.session_ttl)
            self.discard(session_id)

        expired = {k for k, v in self.settled.items() if now >= v.expires_at}
        if expired:
            for session_id in expired:
                del self.settled[session_id]
            self._by_gateway_order = {k: v for k, v in self._by_gateway_order.items() if v not in expired}

    def _release(self, session: CheckoutSession) -> None:
        self.sessions.pop(session.session_id, None)
        self.settled[session.session_id] = SettledCheckout(session.as_dict(), session.order,
                                                           self.clock() + self.settled_ttl)
        logger.info("Checkout %s closed with order %s", session.session_id, session.order.order_id)

    # ── Coupons ──────────────────────────────────────────────

    def _discount(self, session: CheckoutSession) -> float:
        if session.coupon is None:
            return 0
        if session.coupon.discount_type == DiscountType.FREE_SHIPPING:
            subtotal = sum(i.line_total for i in session.line_items)
            return shipping_cost(subtotal, self.settings)
        return session.coupon.discount_amount

    def _recalculate(self, session: CheckoutSession) -> Totals:
        session.totals = compute_totals(session.line_items, self._discount(session), self.settings)
        return session.totals

    def _ensure_editable(self, session: CheckoutSession) -> None:
        if session.order is not None:
            raise InvalidStateTransition("order placed", None, "This order has already been placed")
        if session.payment_in_flight:
            raise ValidationError("Coupon cannot be changed while a payment is in progress")

    async def apply_coupon(self, session_id: str, code: str) -> CouponValidation:
        session = self.get(session_id)
        self._ensure_editable(session)
        validation = await self.coupons.validate(code, session.customer_id, session.totals.subtotal,
                                                 session.product_ids)
        if not validation.valid:
            raise ValidationError(validation.message or "Invalid coupon code")
        session.coupon = validation
        self._recalculate(session)
        return validation

    def remove_coupon(self, session_id: str) -> Totals:
        session = self.get(session_id)
        self._ensure_editable(session)
        session.coupon = None
        return self._recalculate(session)

    async def _revalidate_coupon(self, session: CheckoutSession) -> None:
        if session.coupon is None:
            return
        validation = await self.coupons.validate(session.coupon.code, session.customer_id,
                                                 session.totals.subtotal, session.product_ids)
        if validation.valid and validation.discount_amount == session.coupon.discount_amount:
            return
        session.coupon = validation if validation.valid else None
        self._recalculate(session)
        raise ValidationError(f"Coupon {validation.code} changed: {validation.message}. Please review your total.")

    # ── Placing the order ────────────────────────────────────

    async def place_order(self, session_id: str, shipping: ShippingForm,
                          payment_method: PaymentMethod) -> Union[Order, PaymentAttempt]:
        """
        Cash on delivery creates the order right away. Online payment creates
        a fresh payment intent and returns its attempt; the order is created
        later, only after the gateway callback verifies.
        """
        session = self.get(session_id)
        if session.order is not None:
            raise InvalidStateTransition("order placed", None, "This order has already been placed")
        if session.payment_in_flight:
            raise ValidationError("A payment is already in progress for this checkout")
        if session.load_error:
            raise CatalogUnavailable(session.load_error)
        self.reconciler.ensure_priced(session.line_items)
        session.error = None

        self._recalculate(session)
        await self._revalidate_coupon(session)
        totals = session.totals
        items = list(session.line_items)
        coupon_code = session.coupon.code if session.coupon else None
        context = CheckoutContext(customer_id=session.customer_id, shipping=shipping,
                                  payment_method=payment_method)

        if payment_method == PaymentMethod.COD:
            session.order = await self.lifecycle.create_order(context, items, totals, coupon_code)
            self._release(session)
            return session.order

        contact = {"name": shipping.full_name, "email": shipping.email, "contact": shipping.phone}
        attempt = await self.payments.create_intent(totals.final_amount, session.customer_id, contact)
        if session.attempt is not None:
            # a retry replaces the old intent; its callbacks are no longer ours
            self._by_gateway_order.pop(session.attempt.gateway_order_id, None)
        session.attempt = attempt
        self._by_gateway_order[attempt.gateway_order_id] = session.session_id
        self.launcher.expect(attempt.gateway_order_id)
        session.payment_task = asyncio.create_task(
            self._settle(session, attempt, context, items, totals, coupon_code)
        )
        session.payment_task.add_done_callback(_consume_exception)
        return attempt

    async def _settle(self, session: CheckoutSession, attempt: PaymentAttempt, context: CheckoutContext,
                      items: List[LineItem], totals: Totals, coupon_code: Optional[str]) -> Order:
        try:
            payload = await self.payments.authorize(attempt, self.launcher)
            self.payments.verify(attempt, payload)
            order = await self.lifecycle.create_order(context, items, totals, coupon_code, attempt)
        except CheckoutError as exc:
            session.error = exc.message
            logger.warning("Checkout %s payment %s ended: %s", session.session_id, attempt.gateway_order_id,
                           exc.message)
            raise
        session.order = order
        self._release(session)
        return order

    def find_by_gateway_order(self, gateway_order_id: str) -> CheckoutSession:
        self.evict_expired()
        session_id = self._by_gateway_order.get(gateway_order_id)
        if session_id in self.settled:
            raise InvalidStateTransition("order placed", None, "This payment attempt is no longer active")
        session = self.sessions.get(session_id) if session_id else None
        if session is None:
            raise NotFound("Payment not found")
        return session

    async def handle_callback(self, gateway_order_id: str, outcome: AuthorizationOutcome) -> Order:
        """Deliver the browser's authorization outcome and wait for the order (or the error)."""
        session = self.find_by_gateway_order(gateway_order_id)
        attempt = session.attempt
        if attempt.is_terminal or not self.launcher.resolve(gateway_order_id, outcome):
            # already answered, cancelled or failed
            raise InvalidStateTransition(attempt.state, None,
                                         "This payment attempt is no longer active")
        session.touched_at = self.clock()
        return await session.payment_task

    async def wait_for_payment(self, session_id: str) -> Order:
        settled = self.settled.get(session_id)
        if settled is not None:
            return settled.order
        session = self.get(session_id)
        if session.payment_task is None:
            raise ValidationError("No payment has been started for this checkout")
        return await session.payment_task
