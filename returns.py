"""
Return eligibility and the return request state machine.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from errors import InvalidStateTransition, NotFound, ValidationError
from orders import OrderLifecycleManager
from repositories import ReturnStore
from schemas import Order, OrderItem, OrderStatus, ReturnRequest, ReturnStatus, StatusChange

logger = logging.getLogger("storefront.returns")

DEFAULT_RETURN_WINDOW_DAYS = 15

RETURN_TRANSITIONS: Dict[ReturnStatus, Set[ReturnStatus]] = {
    ReturnStatus.PENDING: {ReturnStatus.APPROVED, ReturnStatus.REJECTED, ReturnStatus.CANCELLED},
    ReturnStatus.APPROVED: {ReturnStatus.PICKUP_SCHEDULED, ReturnStatus.REJECTED},
    ReturnStatus.PICKUP_SCHEDULED: {ReturnStatus.PICKED_UP},
    ReturnStatus.PICKED_UP: {ReturnStatus.RECEIVED},
    ReturnStatus.RECEIVED: {ReturnStatus.INSPECTING},
    ReturnStatus.INSPECTING: {ReturnStatus.REFUND_INITIATED},
    ReturnStatus.REFUND_INITIATED: {ReturnStatus.COMPLETED},
    ReturnStatus.COMPLETED: set(),
    ReturnStatus.REJECTED: set(),
    ReturnStatus.CANCELLED: set(),
}

OPEN_RETURN_STATES = {s for s, nxt in RETURN_TRANSITIONS.items() if nxt}


def completed_returns(returns: Sequence[ReturnRequest], product_id: str) -> List[ReturnRequest]:
    return [r for r in returns if r.product_id == product_id and r.status == ReturnStatus.COMPLETED]


def returned_quantity(returns: Sequence[ReturnRequest], product_id: str) -> int:
    return sum(r.quantity for r in completed_returns(returns, product_id))


class ReturnableItem:
    def __init__(self, item: OrderItem, deadline: Optional[datetime], is_returnable: bool,
                 returned_quantity: int = 0):
        self.item = item
        self.deadline = deadline
        self.is_returnable = is_returnable
        self.returned_quantity = returned_quantity

    @property
    def returnable_quantity(self) -> int:
        return self.item.quantity - self.returned_quantity if self.is_returnable else 0

    def as_dict(self) -> dict:
        return {
            "product_id": self.item.product_id,
            "product_name": self.item.product_name,
            "quantity": self.item.quantity,
            "price": self.item.unit_price,
            "is_returnable": self.is_returnable and self.returnable_quantity > 0,
            "returned_quantity": self.returned_quantity,
            "returnable_quantity": self.returnable_quantity,
            "return_deadline": self.deadline.isoformat() if self.deadline else None,
        }


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ReturnEligibilityEngine:
    def __init__(
        self,
        returns: ReturnStore,
        lifecycle: OrderLifecycleManager,
        window_days: int = DEFAULT_RETURN_WINDOW_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.returns = returns
        self.lifecycle = lifecycle
        self.window_days = window_days
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Eligibility ──────────────────────────────────────────

    def return_deadline(self, order: Order) -> Optional[datetime]:
        if order.delivered_at is None:
            return None
        return _aware(order.delivered_at) + timedelta(days=self.window_days)

    def is_within_window(self, order: Order, now: Optional[datetime] = None) -> bool:
        if order.order_status != OrderStatus.DELIVERED:
            return False
        deadline = self.return_deadline(order)
        return deadline is not None and (now or self.clock()) <= deadline

    def eligible_items(self, order: Order, now: Optional[datetime] = None,
                       returns: Sequence[ReturnRequest] = ()) -> List[ReturnableItem]:
        returnable = self.is_within_window(order, now)
        deadline = self.return_deadline(order)
        return [ReturnableItem(item, deadline, returnable, returned_quantity(returns, item.product_id))
                for item in order.order_items]

    # ── Requests ─────────────────────────────────────────────

    async def create_return(self, order_id: str, customer_id: str, product_id: str, reason: str,
                            quantity: Optional[int] = None, reason_details: Optional[str] = None) -> ReturnRequest:
        order = await self.lifecycle.get_order(order_id)
        if order.customer_id != customer_id:
            raise NotFound("Order not found.")
        item = next((i for i in order.order_items if i.product_id == product_id), None)
        if item is None:
            raise NotFound("Item not found in this order")
        if order.order_status != OrderStatus.DELIVERED:
            raise InvalidStateTransition(order.order_status, None,
                                         "Only delivered orders can be returned")
        if not self.is_within_window(order):
            raise ValidationError(f"The {self.window_days}-day return window for this order has closed")
        if not reason or not reason.strip():
            raise ValidationError("Please select a reason for the return")

        existing = await self.returns.get_returns_by_order_id(order_id)
        if any(r.product_id == product_id and r.status in OPEN_RETURN_STATES for r in existing):
            raise ValidationError("A return is already in progress for this item")
        done = completed_returns(existing, product_id)
        remaining = item.quantity - sum(r.quantity for r in done)
        if remaining < 1:
            raise ValidationError("This item has already been returned")

        quantity = remaining if quantity is None else quantity
        if quantity < 1 or quantity > remaining:
            raise ValidationError(f"Quantity must be between 1 and {remaining}")

        now = self.clock()
        if quantity == remaining:
            # the last units take whatever is left of the frozen total
            refund = round(item.total_price - sum(r.refund_amount for r in done), 2)
        else:
            refund = round(item.total_price * quantity / item.quantity, 2)
        request = ReturnRequest(
            order_id=order_id,
            customer_id=customer_id,
            product_id=product_id,
            quantity=quantity,
            reason=reason.strip(),
            reason_details=reason_details,
            refund_amount=refund,
            created_at=now,
            updated_at=now,
            history=[StatusChange(status=ReturnStatus.PENDING.value, at=now, note=reason.strip())],
        )
        created = await self.returns.create_return(request)
        logger.info("Return %s requested for order %s item %s", created.return_id, order_id, product_id)
        return created

    async def approve_return(self, return_id: str, note: Optional[str] = None) -> ReturnRequest:
        request = await self.returns.get_return(return_id)
        if request.status != ReturnStatus.PENDING:
            raise InvalidStateTransition(request.status, ReturnStatus.APPROVED)
        return await self._move(request, ReturnStatus.APPROVED, note or "Approved by vendor")

    async def reject_return(self, return_id: str, reason: str) -> ReturnRequest:
        request = await self.returns.get_return(return_id)
        if request.status != ReturnStatus.PENDING:
            raise InvalidStateTransition(request.status, ReturnStatus.REJECTED)
        if not reason or not reason.strip():
            raise ValidationError("Please provide a reason for rejection")
        return await self._move(request, ReturnStatus.REJECTED, reason.strip())

    async def cancel_return(self, return_id: str, customer_id: str) -> ReturnRequest:
        request = await self.returns.get_return(return_id)
        if request.customer_id != customer_id:
            raise NotFound("Return request not found")
        if request.status != ReturnStatus.PENDING:
            raise InvalidStateTransition(request.status, ReturnStatus.CANCELLED)
        return await self._move(request, ReturnStatus.CANCELLED, "Cancelled by customer")

    async def advance_return(self, return_id: str, new_status: ReturnStatus,
                             note: Optional[str] = None) -> ReturnRequest:
        """Logistics and refund progress after approval."""
        request = await self.returns.get_return(return_id)
        if new_status in (ReturnStatus.APPROVED, ReturnStatus.CANCELLED) \
                or new_status not in RETURN_TRANSITIONS[request.status] \
                or request.status == ReturnStatus.PENDING:
            raise InvalidStateTransition(request.status, new_status)
        updated = await self._move(request, new_status, note)
        if new_status == ReturnStatus.COMPLETED:
            await self._settle_order(updated)
        return updated

    async def _settle_order(self, completed: ReturnRequest) -> Order:
        order = await self.lifecycle.get_order(completed.order_id)
        returns = [r for r in await self.returns.get_returns_by_order_id(order.order_id)
                   if r.return_id != completed.return_id] + [completed]
        if all(returned_quantity(returns, i.product_id) >= i.quantity for i in order.order_items):
            return await self.lifecycle.mark_returned(order.order_id, f"Return {completed.return_id} completed",
                                                      completed.refund_amount)
        return await self.lifecycle.record_refund(order.order_id, completed.refund_amount)

    async def _move(self, request: ReturnRequest, new_status: ReturnStatus,
                    note: Optional[str]) -> ReturnRequest:
        now = self.clock()
        fields = {
            "status": new_status,
            "updated_at": now,
            "history": [StatusChange(status=new_status.value, at=now, note=note)],
        }
        if note:
            fields["note"] = note
        updated = await self.returns.update_return(request.return_id, request.status, fields)
        logger.info("Return %s: %s -> %s", request.return_id, request.status.value, new_status.value)
        return updated
