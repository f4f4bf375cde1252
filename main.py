import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from cart import CartReconciler, as_cart_entry
from checkout import CheckoutService
from config import configure_logging, settings
from coupons import CouponValidator
from database import db
from errors import CheckoutError, PersistenceError, ValidationError
from gateway import RazorpayGateway
from notifications import CartBroadcaster, HttpNotificationSender, SideEffectOutbox
from orders import OrderLifecycleManager
from payments import AuthorizationOutcome, CallbackLauncher, PaymentAttempt, PaymentOrchestrator
from pricing import compute_totals
from repositories import MongoCartStore, MongoCatalog, MongoCouponStore, MongoOrderStore, MongoReturnStore
from returns import ReturnEligibilityEngine
from schemas import Order, OrderStatus, PaymentMethod, ReturnStatus, ShippingForm, SignaturePayload

configure_logging()
logger = logging.getLogger("storefront.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _services is not None:
        await _services.close()


app = FastAPI(title="Storefront Order API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code,
                        content={"detail": exc.message, "error": type(exc).__name__})


# Wiring

class Services:
    def __init__(self, database):
        self.catalog = MongoCatalog(database)
        self.carts = MongoCartStore(database)
        self.coupon_store = MongoCouponStore(database)
        self.orders = MongoOrderStore(database)
        self.returns = MongoReturnStore(database)
        self.gateway = RazorpayGateway(settings)
        self.broadcaster = CartBroadcaster()
        self.outbox = SideEffectOutbox()
        self.notifier = HttpNotificationSender(settings)
        self.launcher = CallbackLauncher()
        self.reconciler = CartReconciler(self.catalog, settings)
        self.lifecycle = OrderLifecycleManager(
            self.orders, self.carts, self.coupon_store, self.notifier, self.outbox,
            gateway=self.gateway, broadcaster=self.broadcaster,
        )
        self.checkout = CheckoutService(
            self.reconciler, CouponValidator(self.coupon_store), PaymentOrchestrator(self.gateway, settings.currency),
            self.lifecycle, self.carts, self.launcher, settings,
        )
        self.returns_engine = ReturnEligibilityEngine(self.returns, self.lifecycle, settings.return_window_days)

    async def close(self):
        await self.outbox.drain()
        await self.gateway.aclose()
        await self.notifier.aclose()


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        if db is None:
            raise PersistenceError("Database not configured")
        _services = Services(db)
    return _services


def order_out(order: Order) -> dict:
    return order.model_dump(mode="json")


def attempt_out(attempt: PaymentAttempt) -> dict:
    intent = attempt.intent
    return {
        "gateway_order_id": intent.gateway_order_id,
        "key_id": intent.gateway_key_id,
        "amount": intent.amount,
        "currency": intent.currency,
        "state": attempt.state.value,
        "prefill": attempt.contact,
    }


@app.get("/")
def read_root():
    return {"message": "Storefront order backend is running"}


# Cart

class AddToCartRequest(BaseModel):
    customer_id: str
    product_id: str
    quantity: int = Field(1, ge=1)


@app.post("/api/cart/add")
async def add_to_cart(payload: AddToCartRequest, services: Services = Depends(get_services)):
    product = await services.catalog.get_product_by_id(payload.product_id)
    entry = await services.carts.register_cart(
        as_cart_entry(payload.customer_id, product.product_id, payload.quantity, product.vendor_id)
    )
    services.broadcaster.publish(payload.customer_id,
                                 await services.carts.get_cart_by_customer_id(payload.customer_id))
    return entry.model_dump(mode="json")


@app.get("/api/cart")
async def get_cart(customer_id: str = Query(...), services: Services = Depends(get_services)):
    entries = await services.carts.get_cart_by_customer_id(customer_id)
    items = await services.reconciler.reconcile(entries)
    totals = compute_totals(items, settings=settings)
    return {
        "items": [dict(i.model_dump(), line_total=i.line_total) for i in items],
        "totals": totals.model_dump(),
    }


@app.delete("/api/cart/{cart_id}")
async def remove_from_cart(cart_id: str, customer_id: str = Query(...),
                           services: Services = Depends(get_services)):
    deleted = await services.carts.delete_cart_by_id(cart_id)
    services.broadcaster.publish(customer_id, await services.carts.get_cart_by_customer_id(customer_id))
    return {"deleted": deleted}


@app.get("/api/cart/updates")
async def cart_updates(customer_id: str = Query(...), timeout: float = Query(25, gt=0, le=60),
                       services: Services = Depends(get_services)):
    """Long-poll for the next change to a customer's cart."""
    queue = services.broadcaster.subscribe(customer_id)
    try:
        entries = await asyncio.wait_for(queue.get(), timeout)
    except asyncio.TimeoutError:
        return {"changed": False, "items": []}
    finally:
        services.broadcaster.unsubscribe(customer_id, queue)
    return {"changed": True, "items": [e.model_dump(mode="json") for e in entries]}


# Checkout

class StartCheckoutRequest(BaseModel):
    customer_id: str
    product_id: Optional[str] = Field(None, description="Buy-now product; omit to check out the cart")
    quantity: Optional[int] = None


class CouponRequest(BaseModel):
    code: str


class PlaceOrderRequest(BaseModel):
    shipping: ShippingForm
    payment_method: PaymentMethod = PaymentMethod.ONLINE


class PaymentCallback(BaseModel):
    result: str = Field(..., pattern="^(success|failure|dismissed)$")
    gateway_payment_id: Optional[str] = None
    signature: Optional[str] = None
    error: Optional[str] = None


@app.post("/api/checkout/sessions")
async def start_checkout(payload: StartCheckoutRequest, services: Services = Depends(get_services)):
    session = await services.checkout.start(payload.customer_id, payload.product_id, payload.quantity)
    return session.as_dict()


@app.get("/api/checkout/sessions/{session_id}")
def get_checkout(session_id: str, services: Services = Depends(get_services)):
    return services.checkout.describe(session_id)


@app.post("/api/checkout/sessions/{session_id}/coupon")
async def apply_coupon(session_id: str, payload: CouponRequest, services: Services = Depends(get_services)):
    validation = await services.checkout.apply_coupon(session_id, payload.code)
    session = services.checkout.get(session_id)
    return {"coupon": validation.model_dump(), "totals": session.totals.model_dump()}


@app.delete("/api/checkout/sessions/{session_id}/coupon")
def remove_coupon(session_id: str, services: Services = Depends(get_services)):
    totals = services.checkout.remove_coupon(session_id)
    return {"coupon": None, "totals": totals.model_dump()}


@app.post("/api/checkout/sessions/{session_id}/place")
async def place_order(session_id: str, payload: PlaceOrderRequest, services: Services = Depends(get_services)):
    result = await services.checkout.place_order(session_id, payload.shipping, payload.payment_method)
    if isinstance(result, PaymentAttempt):
        return {"status": "payment_required", "payment": attempt_out(result)}
    return {"status": "placed", "order": order_out(result)}


@app.post("/api/payments/{gateway_order_id}/callback")
async def payment_callback(gateway_order_id: str, payload: PaymentCallback,
                           services: Services = Depends(get_services)):
    if payload.result == "dismissed":
        outcome = AuthorizationOutcome.dismissed()
    elif payload.result == "failure":
        outcome = AuthorizationOutcome.failure(payload.error)
    else:
        if not payload.gateway_payment_id or not payload.signature:
            raise ValidationError("Payment id and signature are required")
        outcome = AuthorizationOutcome.success(SignaturePayload(
            gateway_order_id=gateway_order_id,
            gateway_payment_id=payload.gateway_payment_id,
            signature=payload.signature,
        ))
    order = await services.checkout.handle_callback(gateway_order_id, outcome)
    return {"status": "placed", "order": order_out(order)}


# Orders

class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class StatusRequest(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None
    note: Optional[str] = None


class ReorderRequest(BaseModel):
    customer_id: str


@app.get("/api/orders")
async def list_orders(customer_id: str = Query(...), services: Services = Depends(get_services)):
    orders = await services.lifecycle.list_orders(customer_id)
    return [order_out(o) for o in orders]


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, services: Services = Depends(get_services)):
    return order_out(await services.lifecycle.get_order(order_id))


@app.post("/api/orders/{order_id}/cancel")
async def cancel_order(order_id: str, payload: CancelRequest, services: Services = Depends(get_services)):
    return order_out(await services.lifecycle.cancel(order_id, payload.reason))


@app.post("/api/orders/{order_id}/status")
async def update_order_status(order_id: str, payload: StatusRequest, services: Services = Depends(get_services)):
    order = await services.lifecycle.advance(order_id, payload.status, payload.tracking_number, payload.note)
    return order_out(order)


@app.post("/api/orders/{order_id}/reorder")
async def reorder(order_id: str, payload: ReorderRequest, services: Services = Depends(get_services)):
    added = await services.lifecycle.reorder(order_id, payload.customer_id)
    return {"added": [e.model_dump(mode="json") for e in added]}


# Returns

class CreateReturnRequest(BaseModel):
    order_id: str
    customer_id: str
    product_id: str
    reason: str
    quantity: Optional[int] = None
    reason_details: Optional[str] = None


class ReturnNoteRequest(BaseModel):
    note: Optional[str] = None


class RejectReturnRequest(BaseModel):
    reason: str


class CancelReturnRequest(BaseModel):
    customer_id: str


class ReturnStatusRequest(BaseModel):
    status: ReturnStatus
    note: Optional[str] = None


@app.get("/api/orders/{order_id}/returnable-items")
async def returnable_items(order_id: str, services: Services = Depends(get_services)):
    order = await services.lifecycle.get_order(order_id)
    returns = await services.returns.get_returns_by_order_id(order_id)
    engine = services.returns_engine
    deadline = engine.return_deadline(order)
    return {
        "order_id": order_id,
        "is_within_window": engine.is_within_window(order),
        "return_deadline": deadline.isoformat() if deadline else None,
        "items": [i.as_dict() for i in engine.eligible_items(order, returns=returns)],
    }


@app.post("/api/returns")
async def create_return(payload: CreateReturnRequest, services: Services = Depends(get_services)):
    request = await services.returns_engine.create_return(
        payload.order_id, payload.customer_id, payload.product_id, payload.reason,
        quantity=payload.quantity, reason_details=payload.reason_details,
    )
    return request.model_dump(mode="json")


@app.post("/api/returns/{return_id}/approve")
async def approve_return(return_id: str, payload: ReturnNoteRequest, services: Services = Depends(get_services)):
    return (await services.returns_engine.approve_return(return_id, payload.note)).model_dump(mode="json")


@app.post("/api/returns/{return_id}/reject")
async def reject_return(return_id: str, payload: RejectReturnRequest, services: Services = Depends(get_services)):
    return (await services.returns_engine.reject_return(return_id, payload.reason)).model_dump(mode="json")


@app.post("/api/returns/{return_id}/cancel")
async def cancel_return(return_id: str, payload: CancelReturnRequest, services: Services = Depends(get_services)):
    return (await services.returns_engine.cancel_return(return_id, payload.customer_id)).model_dump(mode="json")


@app.post("/api/returns/{return_id}/status")
async def advance_return(return_id: str, payload: ReturnStatusRequest, services: Services = Depends(get_services)):
    request = await services.returns_engine.advance_return(return_id, payload.status, payload.note)
    return request.model_dump(mode="json")


@app.get("/test")
def test_database():
    """Test endpoint to check if database is available and accessible"""
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
        "database_name": "✅ Set" if settings.database_name else "❌ Not Set",
        "payment_gateway": "✅ Configured" if settings.razorpay_key_id else "❌ Not Configured",
        "email_service": "✅ Configured" if settings.email_service_url else "❌ Not Configured",
        "connection_status": "Not Connected",
        "collections": [],
    }

    if db is None:
        response["database"] = "⚠️  Available but not initialized"
        return response

    response["connection_status"] = "Connected"
    try:
        collections: List[str] = db.list_collection_names()
        response["collections"] = collections[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
