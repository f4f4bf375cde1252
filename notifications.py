"""
Best-effort side effects.

Work that must never affect the outcome of an order (confirmation emails,
cart cleanup, refund requests) is handed to the SideEffectOutbox. Each job
runs as its own task; a failing job is logged and dropped, and enqueueing
never raises.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Set

import httpx
from pydantic import BaseModel, ConfigDict, EmailStr
from pydantic.alias_generators import to_camel

from config import Settings, settings as default_settings

logger = logging.getLogger("storefront.notifications")


class EmailPayload(BaseModel):
    # the email service speaks camelCase
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EmailOrderItem(EmailPayload):
    name: str
    quantity: int
    price: float
    image: Optional[str] = None


class OrderConfirmationRequest(EmailPayload):
    email: EmailStr
    customer_name: str
    order_id: str
    order_date: str
    items: List[EmailOrderItem]
    subtotal: float
    shipping: float
    tax: float
    discount: float
    total: float
    shipping_address: str
    payment_method: str


class PaymentSuccessRequest(EmailPayload):
    email: EmailStr
    customer_name: str
    order_id: str
    transaction_id: str
    amount: float
    payment_method: str
    payment_date: str


class NotificationSender(Protocol):
    async def send_order_confirmation_async(self, payload: OrderConfirmationRequest) -> None: ...

    async def send_payment_success_email_async(self, payload: PaymentSuccessRequest) -> None: ...


class HttpNotificationSender:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or default_settings
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.settings.email_service_url or "",
                                             timeout=self.settings.http_timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _post(self, path: str, payload: BaseModel) -> None:
        if not self.settings.email_service_url:
            logger.info("EMAIL_SERVICE_URL not set; skipping %s", path)
            return
        resp = await self._http().post(path, json=payload.model_dump(mode="json", by_alias=True))
        resp.raise_for_status()

    async def send_order_confirmation_async(self, payload: OrderConfirmationRequest) -> None:
        await self._post("/email/order-confirmation/async", payload)

    async def send_payment_success_email_async(self, payload: PaymentSuccessRequest) -> None:
        await self._post("/email/payment-success/async", payload)


class SideEffectOutbox:
    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    def enqueue(self, name: str, job: Callable[[], Awaitable[object]]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._run(name, job))
        except RuntimeError:
            logger.error("No running event loop; dropped side effect %s", name)
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, name: str, job: Callable[[], Awaitable[object]]) -> None:
        try:
            await job()
            logger.debug("Side effect %s done", name)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception("Side effect %s failed", name)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every queued job, including jobs queued by other jobs."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class CartBroadcaster:
    """Publishes the customer's cart contents to subscribers after cart changes."""

    def __init__(self):
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, customer_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(customer_id, []).append(queue)
        return queue

    def unsubscribe(self, customer_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(customer_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(customer_id, None)

    def subscriber_count(self, customer_id: str) -> int:
        return len(self._subscribers.get(customer_id, []))

    def publish(self, customer_id: str, items: list) -> None:
        queues = self._subscribers.get(customer_id, [])
        logger.debug("Cart of %s (%d item(s)) sent to %d subscriber(s)", customer_id, len(items), len(queues))
        for queue in queues:
            queue.put_nowait(list(items))
