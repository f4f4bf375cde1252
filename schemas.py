"""
Database Schemas

Pydantic models for the order lifecycle. Models backed by a MongoDB
collection name it in their docstring:
- Product -> "product" collection
- CartEntry -> "cart" collection
- Coupon -> "coupon" collection
- Order -> "order" collection
- ReturnRequest -> "return_request" collection
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _first(doc: dict, *keys, default=None):
    for key in keys:
        if doc.get(key) not in (None, ""):
            return doc[key]
    return default


# -----------------------------
# Enums
# -----------------------------

class OrderStatus(str, Enum):
    PLACED = "Placed"
    CONFIRMED = "Confirmed"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "OutForDelivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    REFUNDED = "Refunded"


class PaymentMethod(str, Enum):
    ONLINE = "online"
    COD = "cod"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_SHIPPING = "FREE_SHIPPING"


class ReturnStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    PICKUP_SCHEDULED = "PickupScheduled"
    PICKED_UP = "PickedUp"
    RECEIVED = "Received"
    INSPECTING = "Inspecting"
    REFUND_INITIATED = "RefundInitiated"
    COMPLETED = "Completed"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"


# -----------------------------
# Catalog & Cart
# -----------------------------

class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    product_id: str = Field(..., description="Product identifier")
    product_name: str = Field("", description="Display name")
    price: float = Field(0, ge=0, description="Unit price in rupees")
    product_image_url: Optional[str] = Field(None, description="Main image URL")
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None

    @classmethod
    def from_document(cls, doc: dict) -> "Product":
        # vendor may be a bare id or a populated vendor object
        vendor = _first(doc, "vendor_id", "vendorId", "vendor_ref", "vendorRef")
        vendor_name = _first(doc, "vendor_name", "vendorName")
        if isinstance(vendor, dict):
            vendor_name = vendor_name or _first(vendor, "shop_name", "shopName")
            vendor = _first(vendor, "vendor_id", "vendorId")
        product_id = _first(doc, "product_id", "productId", "id")
        if product_id is None and doc.get("_id") is not None:
            product_id = str(doc["_id"])
        return cls(
            product_id=str(product_id),
            product_name=_first(doc, "product_name", "productName", "name", "title", default=""),
            price=float(_first(doc, "price", "product_price", "productPrice", default=0)),
            product_image_url=_first(doc, "product_image_url", "productImageURL", "product_main_image", "image"),
            vendor_id=str(vendor) if vendor is not None else None,
            vendor_name=vendor_name,
        )


class ProductId(BaseModel):
    kind: Literal["id"] = "id"
    product_id: str


class EmbeddedProduct(BaseModel):
    kind: Literal["embedded"] = "embedded"
    product: Product


ProductRef = Annotated[Union[ProductId, EmbeddedProduct], Field(discriminator="kind")]


class CartEntry(BaseModel):
    """
    Cart collection schema
    Collection name: "cart"
    """
    cart_id: Optional[str] = None
    customer_id: str
    product: ProductRef
    vendor_id: Optional[str] = None
    quantity: int = Field(1, ge=1)

    @property
    def product_id(self) -> str:
        if isinstance(self.product, EmbeddedProduct):
            return self.product.product.product_id
        return self.product.product_id

    @classmethod
    def from_document(cls, doc: dict) -> "CartEntry":
        raw = doc.get("product") or _first(doc, "product_id", "productId")
        if raw is None:
            raise ValueError("Cart entry has no product")
        if isinstance(raw, dict):
            product: Union[ProductId, EmbeddedProduct] = EmbeddedProduct(product=Product.from_document(raw))
        else:
            product = ProductId(product_id=str(raw))
        cart_id = _first(doc, "cart_id", "cartId")
        if cart_id is None and doc.get("_id") is not None:
            cart_id = str(doc["_id"])
        vendor = _first(doc, "vendor_id", "vendorId")
        return cls(
            cart_id=cart_id,
            customer_id=str(_first(doc, "customer_id", "customerId", default="")),
            product=product,
            vendor_id=str(vendor) if vendor is not None else None,
            quantity=max(int(doc.get("quantity") or 1), 1),
        )


class LineItem(BaseModel):
    product_id: str
    product_name: str = ""
    product_image_url: Optional[str] = None
    unit_price: float = Field(0, ge=0)
    quantity: int = Field(1, ge=1)
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    cart_id: Optional[str] = Field(None, description="Source cart entry, None for buy-now")

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity


class Totals(BaseModel):
    subtotal: float = 0
    shipping_cost: float = 0
    tax_amount: float = 0
    discount_amount: float = 0
    final_amount: float = 0


# -----------------------------
# Coupons
# -----------------------------

class Coupon(BaseModel):
    """
    Coupons collection schema
    Collection name: "coupon"
    """
    code: str
    description: Optional[str] = None
    discount_type: DiscountType = DiscountType.FIXED_AMOUNT
    discount_value: float = Field(0, ge=0)
    minimum_order_amount: float = Field(0, ge=0)
    maximum_discount: Optional[float] = Field(None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    usage_count: int = Field(0, ge=0)
    per_user_limit: Optional[int] = Field(None, ge=0)
    is_active: bool = True
    applicable_products: List[str] = Field(default_factory=list)
    excluded_products: List[str] = Field(default_factory=list)


class CouponValidation(BaseModel):
    valid: bool
    discount_amount: float = 0
    message: str = ""
    code: Optional[str] = None
    discount_type: Optional[DiscountType] = None


# -----------------------------
# Payments
# -----------------------------

class PaymentIntent(BaseModel):
    amount: float = Field(..., ge=0)
    currency: str = "INR"
    gateway_order_id: str
    gateway_key_id: str = ""
    customer_id: str
    created_at: datetime = Field(default_factory=utcnow)


class SignaturePayload(BaseModel):
    gateway_order_id: str
    gateway_payment_id: str
    signature: str


# -----------------------------
# Orders
# -----------------------------

class ShippingForm(BaseModel):
    full_name: str = Field(..., min_length=3)
    email: EmailStr
    phone: str = Field(..., pattern=r"^[0-9]{10}$")
    address: str = Field(..., min_length=10)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pin_code: str = Field(..., pattern=r"^[0-9]{6}$")
    country: str = "India"

    def full_address(self) -> str:
        return f"{self.address}, {self.city}, {self.state} - {self.pin_code}, {self.country}"


class CheckoutContext(BaseModel):
    customer_id: str
    shipping: ShippingForm
    payment_method: PaymentMethod = PaymentMethod.ONLINE


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    product_name: str
    product_image_url: Optional[str] = None
    vendor_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    discount: float = 0
    total_price: float = Field(..., ge=0)

    @classmethod
    def freeze(cls, item: LineItem) -> "OrderItem":
        return cls(
            product_id=item.product_id,
            product_name=item.product_name,
            product_image_url=item.product_image_url,
            vendor_id=item.vendor_id,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=item.line_total,
        )


class StatusChange(BaseModel):
    status: str
    at: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    order_id: Optional[str] = None
    customer_id: str
    vendor_ids: List[str] = Field(default_factory=list)
    order_items: List[OrderItem]
    total_amount: float = Field(..., ge=0, description="Subtotal before discount")
    tax_amount: float = Field(0, ge=0)
    discount_amount: float = Field(0, ge=0)
    delivery_charges: float = Field(0, ge=0)
    final_amount: float = Field(..., ge=0)
    coupon_code: Optional[str] = None
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_transaction_id: Optional[str] = None
    order_status: OrderStatus = OrderStatus.PLACED
    shipping_address: str
    tracking_number: Optional[str] = None
    cancellation_reason: Optional[str] = None
    refund_scheduled: bool = False
    refunded_amount: float = Field(0, ge=0, description="Sum of completed return refunds")
    created_at: datetime = Field(default_factory=utcnow)
    cancelled_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    status_history: List[StatusChange] = Field(default_factory=list)


class ReturnRequest(BaseModel):
    """
    Return requests collection schema
    Collection name: "return_request"
    """
    return_id: Optional[str] = None
    order_id: str
    customer_id: str
    product_id: str = Field(..., description="Line item reference within the order")
    quantity: int = Field(1, ge=1)
    reason: str
    reason_details: Optional[str] = None
    status: ReturnStatus = ReturnStatus.PENDING
    refund_amount: float = Field(0, ge=0)
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    history: List[StatusChange] = Field(default_factory=list)
