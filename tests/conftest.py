"""
Shared fixtures: in-memory stand-ins for the catalog, stores, gateway and
email service, wired the same way main.py wires the Mongo implementations.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from cart import CartReconciler
from checkout import CheckoutService
from config import Settings
from coupons import CouponValidator
from errors import GatewayError, InvalidStateTransition, NotFound, PersistenceError
from gateway import GatewayOrder, sign
from notifications import CartBroadcaster, SideEffectOutbox
from orders import OrderLifecycleManager
from payments import AuthorizationOutcome, CallbackLauncher, PaymentOrchestrator
from returns import ReturnEligibilityEngine
from schemas import (
    CartEntry,
    CheckoutContext,
    Coupon,
    EmbeddedProduct,
    Order,
    PaymentMethod,
    Product,
    ProductId,
    ReturnRequest,
    ShippingForm,
    SignaturePayload,
)

SECRET = "test_secret"
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Fakes
# ============================================================================


class FakeCatalog:
    def __init__(self, products: List[Product]):
        self.products: Dict[str, Product] = {p.product_id: p for p in products}
        self.fail = False
        self.batch_calls: List[List[str]] = []

    async def get_products_by_ids(self, ids):
        self.batch_calls.append(list(ids))
        if self.fail:
            raise PersistenceError("catalog down")
        return [self.products[i] for i in ids if i in self.products]

    async def get_product_by_id(self, product_id):
        if self.fail:
            raise PersistenceError("catalog down")
        if product_id not in self.products:
            raise NotFound("Product not found")
        return self.products[product_id]


class FakeCartStore:
    def __init__(self):
        self.entries: Dict[str, CartEntry] = {}
        self.failing_deletes = set()
        self.deleted: List[str] = []
        self._seq = 0

    async def get_cart_by_customer_id(self, customer_id):
        return [e for e in self.entries.values() if e.customer_id == customer_id]

    async def register_cart(self, entry):
        self._seq += 1
        stored = entry.model_copy(update={"cart_id": f"cart{self._seq}"})
        self.entries[stored.cart_id] = stored
        return stored

    async def delete_cart_by_id(self, cart_id):
        if cart_id in self.failing_deletes:
            raise PersistenceError("delete failed")
        self.deleted.append(cart_id)
        return self.entries.pop(cart_id, None) is not None


class FakeCouponStore:
    def __init__(self):
        self.coupons: Dict[str, Coupon] = {}
        self.usage: List[tuple] = []

    async def get_coupon(self, code):
        return self.coupons.get(code)

    async def count_customer_usage(self, code, customer_id):
        return sum(1 for c, cust, _ in self.usage if c == code and cust == customer_id)

    async def record_usage(self, code, customer_id, order_id):
        self.usage.append((code, customer_id, order_id))
        coupon = self.coupons.get(code)
        if coupon is not None:
            self.coupons[code] = coupon.model_copy(update={"usage_count": coupon.usage_count + 1})


def _apply(model, fields: dict, history_key: str):
    update = {k: v for k, v in fields.items() if k != history_key}
    if history_key in fields:
        update[history_key] = list(getattr(model, history_key)) + list(fields[history_key])
    return model.model_copy(update=update)


class FakeOrderStore:
    def __init__(self):
        self.orders: Dict[str, Order] = {}
        self.fail_create = False
        self._seq = 0

    async def create_order(self, order):
        if self.fail_create:
            raise PersistenceError()
        self._seq += 1
        created = order.model_copy(update={"order_id": f"ord{self._seq}"})
        self.orders[created.order_id] = created
        return created

    async def get_order_by_id(self, order_id):
        if order_id not in self.orders:
            raise NotFound("Order not found.")
        return self.orders[order_id]

    async def get_orders_by_customer_id(self, customer_id):
        return [o for o in self.orders.values() if o.customer_id == customer_id]

    async def update_order(self, order_id, expected_status, fields):
        current = await self.get_order_by_id(order_id)
        if current.order_status != expected_status:
            raise InvalidStateTransition(current.order_status, fields.get("order_status"))
        self.orders[order_id] = _apply(current, fields, "status_history")
        return self.orders[order_id]


class FakeReturnStore:
    def __init__(self):
        self.returns: Dict[str, ReturnRequest] = {}
        self._seq = 0

    async def create_return(self, request):
        self._seq += 1
        created = request.model_copy(update={"return_id": f"ret{self._seq}"})
        self.returns[created.return_id] = created
        return created

    async def get_return(self, return_id):
        if return_id not in self.returns:
            raise NotFound("Return request not found")
        return self.returns[return_id]

    async def get_returns_by_order_id(self, order_id):
        return [r for r in self.returns.values() if r.order_id == order_id]

    async def update_return(self, return_id, expected_status, fields):
        current = await self.get_return(return_id)
        if current.status != expected_status:
            raise InvalidStateTransition(current.status, fields.get("status"))
        self.returns[return_id] = _apply(current, fields, "history")
        return self.returns[return_id]


class FakeGateway:
    def __init__(self, secret: str = SECRET):
        self.secret = secret
        self.created: List[dict] = []
        self.refunds: List[tuple] = []
        self.fail_create = False
        self.fail_refund = False

    async def create_payment_order(self, amount, currency, receipt, notes=None):
        if self.fail_create:
            raise GatewayError()
        self.created.append({"amount": amount, "currency": currency, "receipt": receipt})
        return GatewayOrder(f"order_{len(self.created)}", amount, currency, "rzp_test_key")

    def verify_signature(self, payload):
        return sign(self.secret, payload.gateway_order_id, payload.gateway_payment_id) == payload.signature

    async def refund(self, gateway_payment_id, amount=None):
        if self.fail_refund:
            raise GatewayError("Refund processing failed")
        self.refunds.append((gateway_payment_id, amount))
        return {"id": f"rfnd_{len(self.refunds)}"}


class FakeNotifier:
    def __init__(self):
        self.confirmations = []
        self.receipts = []
        self.fail = False

    async def send_order_confirmation_async(self, payload):
        if self.fail:
            raise RuntimeError("email service down")
        self.confirmations.append(payload)

    async def send_payment_success_email_async(self, payload):
        if self.fail:
            raise RuntimeError("email service down")
        self.receipts.append(payload)


class ScriptedLauncher(CallbackLauncher):
    """Answers every authorization with the next scripted outcome."""

    def __init__(self, *outcomes: AuthorizationOutcome):
        super().__init__()
        self.outcomes = list(outcomes)
        self.opened = []

    async def open(self, intent, contact):
        self.forget(intent.gateway_order_id)
        self.opened.append(intent.gateway_order_id)
        return self.outcomes.pop(0)


def signed_payload(gateway_order_id: str, payment_id: str = "pay_1", secret: str = SECRET) -> SignaturePayload:
    return SignaturePayload(
        gateway_order_id=gateway_order_id,
        gateway_payment_id=payment_id,
        signature=sign(secret, gateway_order_id, payment_id),
    )


def shipping_form(**overrides) -> ShippingForm:
    data = dict(
        full_name="Asha Rao",
        email="asha@example.com",
        phone="9876543210",
        address="12 MG Road, Indiranagar",
        city="Bengaluru",
        state="Karnataka",
        pin_code="560038",
    )
    data.update(overrides)
    return ShippingForm(**data)


def context(method: PaymentMethod = PaymentMethod.COD, customer_id: str = "cust1") -> CheckoutContext:
    return CheckoutContext(customer_id=customer_id, shipping=shipping_form(), payment_method=method)


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class World:
    """Everything a checkout needs, backed by the fakes above."""

    def __init__(self, launcher=None):
        self.settings = Settings(razorpay_key_id="rzp_test_key", razorpay_key_secret=SECRET)
        self.clock = Clock()
        self.catalog = FakeCatalog([
            Product(product_id="p1", product_name="Handloom Saree", price=300, vendor_id="v1",
                    vendor_name="Weaves"),
            Product(product_id="p2", product_name="Brass Lamp", price=150, vendor_id="v2",
                    vendor_name="Lumen"),
            Product(product_id="p3", product_name="Clay Pot", price=80, vendor_id="v2"),
        ])
        self.carts = FakeCartStore()
        self.coupon_store = FakeCouponStore()
        self.orders = FakeOrderStore()
        self.returns = FakeReturnStore()
        self.gateway = FakeGateway()
        self.notifier = FakeNotifier()
        self.outbox = SideEffectOutbox()
        self.broadcaster = CartBroadcaster()
        self.launcher = launcher or CallbackLauncher()
        self.reconciler = CartReconciler(self.catalog, self.settings)
        self.coupons = CouponValidator(self.coupon_store, clock=self.clock)
        self.payments = PaymentOrchestrator(self.gateway, self.settings.currency)
        self.lifecycle = OrderLifecycleManager(
            self.orders, self.carts, self.coupon_store, self.notifier, self.outbox,
            gateway=self.gateway, broadcaster=self.broadcaster, clock=self.clock,
        )
        self.checkout = CheckoutService(self.reconciler, self.coupons, self.payments, self.lifecycle,
                                        self.carts, self.launcher, self.settings, clock=self.clock)
        self.returns_engine = ReturnEligibilityEngine(self.returns, self.lifecycle,
                                                      self.settings.return_window_days, clock=self.clock)

    async def add_to_cart(self, product_id: str, quantity: int = 1, customer_id: str = "cust1",
                          embedded: Optional[Product] = None) -> CartEntry:
        product = EmbeddedProduct(product=embedded) if embedded else ProductId(product_id=product_id)
        return await self.carts.register_cart(
            CartEntry(customer_id=customer_id, product=product, quantity=quantity)
        )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def world():
    return World()


@pytest.fixture
def clock(world):
    return world.clock
