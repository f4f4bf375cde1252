import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from errors import ValidationError
from repositories import CouponStore
from schemas import Coupon, CouponValidation, DiscountType

logger = logging.getLogger("storefront.coupons")

INVALID_CODE = "Invalid coupon code"


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class CouponValidator:
    """
    Validates a coupon code for one checkout attempt.

    Validation never records usage; usage is recorded once, when an order is
    created with the coupon. Validating the same code against the same cart
    twice yields the same discount.
    """

    def __init__(self, store: CouponStore, clock: Callable[[], datetime] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def validate(self, code: str, customer_id: str, order_amount: float,
                       product_ids: Sequence[str] = ()) -> CouponValidation:
        normalized = normalize_code(code)
        if not normalized:
            raise ValidationError("Please enter a coupon code")

        coupon = await self.store.get_coupon(normalized)
        if coupon is None:
            return self._reject(normalized, INVALID_CODE)

        reason = self._check_window(coupon) or self._check_amount(coupon, order_amount) \
            or self._check_products(coupon, product_ids)
        if reason is None:
            reason = await self._check_usage(coupon, customer_id)
        if reason is not None:
            return self._reject(normalized, reason, coupon.discount_type)

        discount = self.discount_for(coupon, order_amount)
        if coupon.discount_type != DiscountType.FREE_SHIPPING and discount <= 0:
            return self._reject(normalized, "Coupon does not apply to this order", coupon.discount_type)

        logger.info("Coupon %s valid for customer %s: discount %s", normalized, customer_id, discount)
        return CouponValidation(
            valid=True,
            discount_amount=discount,
            message=self._applied_message(coupon, discount),
            code=normalized,
            discount_type=coupon.discount_type,
        )

    @staticmethod
    def discount_for(coupon: Coupon, order_amount: float) -> float:
        if coupon.discount_type == DiscountType.PERCENTAGE:
            discount = order_amount * coupon.discount_value / 100
            if coupon.maximum_discount is not None:
                discount = min(discount, coupon.maximum_discount)
        elif coupon.discount_type == DiscountType.FIXED_AMOUNT:
            discount = min(coupon.discount_value, order_amount)
        else:
            # free shipping is priced from the shipping cost by the caller
            discount = 0
        return round(max(discount, 0), 2)

    def _check_window(self, coupon: Coupon) -> Optional[str]:
        if not coupon.is_active:
            return "This coupon is no longer active"
        now = self.clock()
        if coupon.valid_from and _aware(coupon.valid_from) > now:
            return "This coupon is not yet active"
        if coupon.valid_until and _aware(coupon.valid_until) < now:
            return "This coupon has expired"
        return None

    @staticmethod
    def _check_amount(coupon: Coupon, order_amount: float) -> Optional[str]:
        if order_amount < coupon.minimum_order_amount:
            return f"Minimum order amount of ₹{coupon.minimum_order_amount:g} required for this coupon"
        return None

    @staticmethod
    def _check_products(coupon: Coupon, product_ids: Sequence[str]) -> Optional[str]:
        ids = set(product_ids)
        if coupon.excluded_products:
            ids -= set(coupon.excluded_products)
            if not ids:
                return "This coupon is not valid for the products in your cart"
        if coupon.applicable_products and not ids & set(coupon.applicable_products):
            return "This coupon is not valid for the products in your cart"
        return None

    async def _check_usage(self, coupon: Coupon, customer_id: str) -> Optional[str]:
        if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
            return "This coupon has reached its usage limit"
        if coupon.per_user_limit is not None:
            used = await self.store.count_customer_usage(coupon.code, customer_id)
            if used >= coupon.per_user_limit:
                return "You have already used this coupon"
        return None

    @staticmethod
    def _applied_message(coupon: Coupon, discount: float) -> str:
        if coupon.discount_type == DiscountType.FREE_SHIPPING:
            return "Coupon applied! Free shipping on this order"
        return f"Coupon applied! You saved ₹{discount:g}"

    @staticmethod
    def _reject(code: str, message: str, discount_type: Optional[DiscountType] = None) -> CouponValidation:
        logger.info("Coupon %s rejected: %s", code, message)
        return CouponValidation(valid=False, discount_amount=0, message=message, code=code,
                                discount_type=discount_type)
