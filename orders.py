"""
Order lifecycle.

Orders move Placed -> Confirmed -> Shipped -> OutForDelivery -> Delivered,
one step at a time. Cancelled branches off Placed or Confirmed, Returned off
Delivered. An order is created exactly once per checkout, and its items and
amounts are frozen from then on.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from cart import as_cart_entry
from errors import InvalidStateTransition, NotFound, ValidationError
from gateway import PaymentGateway
from notifications import (
    CartBroadcaster,
    EmailOrderItem,
    NotificationSender,
    OrderConfirmationRequest,
    PaymentSuccessRequest,
    SideEffectOutbox,
)
from payments import PaymentAttempt, PaymentState
from repositories import CartStore, CouponStore, OrderStore
from schemas import (
    CartEntry,
    CheckoutContext,
    LineItem,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    StatusChange,
    Totals,
)

logger = logging.getLogger("storefront.orders")


TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PLACED: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.OUT_FOR_DELIVERY},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.RETURNED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.RETURNED: set(),
}

CANCELLABLE = {OrderStatus.PLACED, OrderStatus.CONFIRMED}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in TRANSITIONS.get(current, set())


def can_cancel(order: Order) -> bool:
    return order.order_status in CANCELLABLE


class CartCleanupResult:
    def __init__(self, deleted: int, failed: int):
        self.deleted = deleted
        self.failed = failed


class OrderLifecycleManager:
    def __init__(
        self,
        orders: OrderStore,
        carts: CartStore,
        coupons: CouponStore,
        notifier: NotificationSender,
        outbox: SideEffectOutbox,
        gateway: Optional[PaymentGateway] = None,
        broadcaster: Optional[CartBroadcaster] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.orders = orders
        self.carts = carts
        self.coupons = coupons
        self.notifier = notifier
        self.outbox = outbox
        self.gateway = gateway
        self.broadcaster = broadcaster or CartBroadcaster()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Creation ─────────────────────────────────────────────

    async def create_order(
        self,
        context: CheckoutContext,
        line_items: Sequence[LineItem],
        totals: Totals,
        coupon_code: Optional[str] = None,
        attempt: Optional[PaymentAttempt] = None,
    ) -> Order:
        """
        Persist the order for a settled checkout and schedule its side effects.

        Online orders require an attempt that reached Verified and has not
        already produced an order; cash-on-delivery orders take no attempt.
        Returns as soon as the order is stored: cart cleanup and
        notifications run in the outbox.
        """
        if not line_items:
            raise ValidationError("Cannot place order with an empty cart")

        if context.payment_method == PaymentMethod.COD:
            if attempt is not None:
                raise ValidationError("Cash on delivery orders take no online payment")
            order_status, payment_status, transaction_id = OrderStatus.PLACED, PaymentStatus.PENDING, None
        else:
            if attempt is None or attempt.state != PaymentState.VERIFIED:
                current = attempt.state if attempt is not None else "no payment"
                raise InvalidStateTransition(current, PaymentState.VERIFIED,
                                             "Payment has not been verified")
            if attempt.order_id is not None:
                raise InvalidStateTransition(attempt.state, None,
                                             "An order was already created for this payment")
            if abs(attempt.intent.amount - totals.final_amount) > 0.005:
                logger.error("Payment %s amount %s does not match order total %s",
                             attempt.gateway_order_id, attempt.intent.amount, totals.final_amount)
                raise ValidationError("Payment amount does not match the order total")
            order_status, payment_status = OrderStatus.CONFIRMED, PaymentStatus.PAID
            transaction_id = attempt.gateway_payment_id

        now = self.clock()
        items = [OrderItem.freeze(i) for i in line_items]
        order = Order(
            customer_id=context.customer_id,
            vendor_ids=sorted({i.vendor_id for i in items if i.vendor_id}),
            order_items=items,
            total_amount=totals.subtotal,
            tax_amount=totals.tax_amount,
            discount_amount=totals.discount_amount,
            delivery_charges=totals.shipping_cost,
            final_amount=totals.final_amount,
            coupon_code=coupon_code,
            payment_method=context.payment_method,
            payment_status=payment_status,
            payment_transaction_id=transaction_id,
            order_status=order_status,
            shipping_address=context.shipping.full_address(),
            created_at=now,
            status_history=[StatusChange(status=order_status.value, at=now, note="Order placed")],
        )

        created = await self.orders.create_order(order)
        if attempt is not None:
            attempt.order_id = created.order_id
        logger.info("Order %s created for customer %s (%s, %s)", created.order_id, created.customer_id,
                    created.payment_method.value, created.final_amount)

        self._schedule_side_effects(created, context, line_items, totals)
        return created

    def _schedule_side_effects(self, order: Order, context: CheckoutContext,
                               line_items: Sequence[LineItem], totals: Totals) -> None:
        cart_ids = [i.cart_id for i in line_items if i.cart_id]
        if cart_ids:
            self.outbox.enqueue(f"cart-cleanup:{order.order_id}",
                                lambda: self.clear_cart(order.customer_id, cart_ids))

        if order.coupon_code:
            self.outbox.enqueue(f"coupon-usage:{order.order_id}",
                                lambda: self.coupons.record_usage(order.coupon_code, order.customer_id,
                                                                  order.order_id))

        shipping = context.shipping
        confirmation = OrderConfirmationRequest(
            email=shipping.email,
            customer_name=shipping.full_name or "Customer",
            order_id=order.order_id or "",
            order_date=order.created_at.isoformat(),
            items=[EmailOrderItem(name=i.product_name, quantity=i.quantity, price=i.unit_price,
                                  image=i.product_image_url) for i in line_items],
            subtotal=totals.subtotal,
            shipping=totals.shipping_cost,
            tax=totals.tax_amount,
            discount=totals.discount_amount,
            total=totals.final_amount,
            shipping_address=order.shipping_address,
            payment_method="Online Payment" if order.payment_method == PaymentMethod.ONLINE else "Cash on Delivery",
        )
        self.outbox.enqueue(f"order-confirmation:{order.order_id}",
                            lambda: self.notifier.send_order_confirmation_async(confirmation))

        if order.payment_method == PaymentMethod.ONLINE and order.payment_transaction_id:
            receipt = PaymentSuccessRequest(
                email=shipping.email,
                customer_name=shipping.full_name or "Customer",
                order_id=order.order_id or "",
                transaction_id=order.payment_transaction_id,
                amount=order.final_amount,
                payment_method="Razorpay (Online)",
                payment_date=self.clock().isoformat(),
            )
            self.outbox.enqueue(f"payment-success:{order.order_id}",
                                lambda: self.notifier.send_payment_success_email_async(receipt))

    async def clear_cart(self, customer_id: str, cart_ids: Sequence[str]) -> CartCleanupResult:
        """Delete the ordered cart entries in parallel, then broadcast the cart once."""
        results = await asyncio.gather(
            *(self.carts.delete_cart_by_id(cart_id) for cart_id in cart_ids),
            return_exceptions=True,
        )
        failed = 0
        for cart_id, result in zip(cart_ids, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.error("Failed to delete cart item %s: %s", cart_id, result)
        self.broadcaster.publish(customer_id, [])
        return CartCleanupResult(deleted=len(cart_ids) - failed, failed=failed)

    # ── Status changes ───────────────────────────────────────

    async def get_order(self, order_id: str) -> Order:
        return await self.orders.get_order_by_id(order_id)

    async def list_orders(self, customer_id: str) -> List[Order]:
        return await self.orders.get_orders_by_customer_id(customer_id)

    async def advance(self, order_id: str, new_status: OrderStatus, tracking_number: Optional[str] = None,
                      note: Optional[str] = None) -> Order:
        order = await self.orders.get_order_by_id(order_id)
        if new_status in (OrderStatus.CANCELLED, OrderStatus.RETURNED) or not can_transition(order.order_status,
                                                                                                new_status):
            raise InvalidStateTransition(order.order_status, new_status)

        now = self.clock()
        fields = {"order_status": new_status, "status_history": [StatusChange(status=new_status.value, at=now,
                                                                              note=note)]}
        if tracking_number:
            fields["tracking_number"] = tracking_number
        if new_status == OrderStatus.DELIVERED:
            fields["delivered_at"] = now
            if order.payment_method == PaymentMethod.COD:
                fields["payment_status"] = PaymentStatus.PAID
        updated = await self.orders.update_order(order_id, order.order_status, fields)
        logger.info("Order %s: %s -> %s", order_id, order.order_status.value, new_status.value)
        return updated

    async def cancel(self, order_id: str, reason: str) -> Order:
        order = await self.orders.get_order_by_id(order_id)
        if not can_cancel(order):
            raise InvalidStateTransition(
                order.order_status, OrderStatus.CANCELLED,
                f"Order cannot be cancelled once it is {order.order_status.value}",
            )

        now = self.clock()
        refund = order.payment_status == PaymentStatus.PAID
        fields = {
            "order_status": OrderStatus.CANCELLED,
            "cancelled_at": now,
            "cancellation_reason": reason,
            "refund_scheduled": refund,
            "status_history": [StatusChange(status=OrderStatus.CANCELLED.value, at=now, note=reason)],
        }
        updated = await self.orders.update_order(order_id, order.order_status, fields)
        logger.info("Order %s cancelled: %s", order_id, reason)
        if refund:
            self._schedule_refund(updated)
        return updated

    async def record_refund(self, order_id: str, amount: float) -> Order:
        """Add a completed partial return's refund; the order stays Delivered."""
        order = await self.orders.get_order_by_id(order_id)
        if order.order_status != OrderStatus.DELIVERED:
            raise InvalidStateTransition(order.order_status, None, "Only delivered orders can be refunded")
        fields = {"refunded_amount": round(order.refunded_amount + amount, 2)}
        updated = await self.orders.update_order(order_id, order.order_status, fields)
        logger.info("Order %s refunded %s of %s", order_id, updated.refunded_amount, order.final_amount)
        return updated

    async def mark_returned(self, order_id: str, note: Optional[str] = None, refund_amount: float = 0) -> Order:
        """Every item is back: Delivered -> Returned, and a paid order becomes Refunded."""
        order = await self.orders.get_order_by_id(order_id)
        if not can_transition(order.order_status, OrderStatus.RETURNED):
            raise InvalidStateTransition(order.order_status, OrderStatus.RETURNED)
        fields = {
            "order_status": OrderStatus.RETURNED,
            "refunded_amount": round(order.refunded_amount + refund_amount, 2),
            "status_history": [StatusChange(status=OrderStatus.RETURNED.value, at=self.clock(), note=note)],
        }
        if order.payment_status == PaymentStatus.PAID:
            fields["payment_status"] = PaymentStatus.REFUNDED
        updated = await self.orders.update_order(order_id, order.order_status, fields)
        logger.info("Order %s returned in full", order_id)
        return updated

    def _schedule_refund(self, order: Order) -> None:
        if self.gateway is None or not order.payment_transaction_id:
            logger.warning("Refund for order %s needs manual processing", order.order_id)
            return
        payment_id, amount = order.payment_transaction_id, order.final_amount
        self.outbox.enqueue(f"refund:{order.order_id}", lambda: self.gateway.refund(payment_id, amount))

    # ── Reorder ──────────────────────────────────────────────

    async def reorder(self, order_id: str, customer_id: str) -> List[CartEntry]:
        """Add the order's products that are not already in the cart; prices come from the catalog later."""
        order = await self.orders.get_order_by_id(order_id)
        if order.customer_id != customer_id:
            raise NotFound("Order not found.")
        in_cart = {entry.product_id for entry in await self.carts.get_cart_by_customer_id(customer_id)}
        added = []
        for item in order.order_items:
            if item.product_id in in_cart:
                continue
            in_cart.add(item.product_id)
            added.append(await self.carts.register_cart(
                as_cart_entry(customer_id, item.product_id, 1, item.vendor_id)
            ))
        logger.info("Reorder of %s added %d item(s) to cart of %s", order_id, len(added), customer_id)
        return added
