"""
Order totals.

Pure functions: the same line items and discount always produce the same
totals, and the totals of a persisted order can be re-derived from its frozen
items for auditing.
"""

import math
from typing import Iterable, Optional

from config import Settings, settings as default_settings
from schemas import LineItem, Order, Totals


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_subtotal(line_items: Iterable[LineItem]) -> float:
    return round(sum(item.unit_price * item.quantity for item in line_items), 2)


def shipping_cost(subtotal: float, settings: Optional[Settings] = None) -> float:
    settings = settings or default_settings
    return 0 if subtotal >= settings.free_shipping_threshold else settings.flat_shipping_cost


def compute_totals(line_items: Iterable[LineItem], discount_amount: float = 0,
                   settings: Optional[Settings] = None) -> Totals:
    settings = settings or default_settings
    subtotal = compute_subtotal(line_items)
    shipping = shipping_cost(subtotal, settings)
    # GST applies to the subtotal before any discount
    tax = round_half_up(subtotal * settings.gst_rate)
    discount = max(float(discount_amount or 0), 0)
    final = max(subtotal + shipping + tax - discount, 0)
    return Totals(
        subtotal=subtotal,
        shipping_cost=shipping,
        tax_amount=tax,
        discount_amount=discount,
        final_amount=round(final, 2),
    )


def totals_from_order(order: Order) -> Totals:
    return Totals(
        subtotal=order.total_amount,
        shipping_cost=order.delivery_charges,
        tax_amount=order.tax_amount,
        discount_amount=order.discount_amount,
        final_amount=order.final_amount,
    )


def audit_order(order: Order, settings: Optional[Settings] = None) -> bool:
    """True when the order's persisted totals match a recomputation from its frozen items."""
    items = [
        LineItem(product_id=i.product_id, product_name=i.product_name,
                 unit_price=i.unit_price, quantity=i.quantity)
        for i in order.order_items
    ]
    return compute_totals(items, order.discount_amount, settings) == totals_from_order(order)
