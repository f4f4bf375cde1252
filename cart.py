"""
Cart reconciliation.

Cart entries carry denormalized product data that may be stale or missing.
Before anything is priced, every entry is normalized to a LineItem and its
price, name and vendor are taken from the catalog.
"""

import logging
from typing import Dict, List, Optional, Sequence

from config import Settings, settings as default_settings
from errors import CatalogUnavailable, PersistenceError, ValidationError
from repositories import Catalog
from schemas import CartEntry, EmbeddedProduct, LineItem, Product, ProductId

logger = logging.getLogger("storefront.cart")


def resolve_product(entry: CartEntry) -> Optional[Product]:
    """Embedded product snapshot of a cart entry, or None when only the id is known."""
    if isinstance(entry.product, EmbeddedProduct):
        return entry.product.product
    return None


def _line_item(entry: CartEntry, product: Optional[Product]) -> LineItem:
    return LineItem(
        product_id=entry.product_id,
        product_name=product.product_name if product else "",
        product_image_url=product.product_image_url if product else None,
        unit_price=product.price if product else 0,
        quantity=entry.quantity,
        vendor_id=(product.vendor_id if product else None) or entry.vendor_id,
        vendor_name=product.vendor_name if product else None,
        cart_id=entry.cart_id,
    )


def _patch(item: LineItem, product: Product) -> LineItem:
    return item.model_copy(update={
        "product_name": product.product_name,
        "unit_price": product.price,
        "product_image_url": product.product_image_url or item.product_image_url,
        "vendor_id": product.vendor_id or item.vendor_id,
        "vendor_name": product.vendor_name or item.vendor_name,
    })


def _unavailable(item: LineItem) -> LineItem:
    # no catalog record: keep the quantity, drop the snapshot price and name
    return item.model_copy(update={"product_name": "", "unit_price": 0})


class CartReconciler:
    def __init__(self, catalog: Catalog, settings: Optional[Settings] = None):
        self.catalog = catalog
        self.settings = settings or default_settings

    async def reconcile(self, entries: Sequence[CartEntry]) -> List[LineItem]:
        items = [_line_item(entry, resolve_product(entry)) for entry in entries]

        # price and name on a cart entry are never trusted at checkout, so
        # every product goes through one batched lookup
        ids = list(dict.fromkeys(item.product_id for item in items))
        if not ids:
            return items
        try:
            products = await self.catalog.get_products_by_ids(ids)
        except PersistenceError as exc:
            logger.warning("Catalog lookup for %d products failed: %s", len(ids), exc)
            raise CatalogUnavailable("Failed to load cart items", partial=items) from exc

        by_id: Dict[str, Product] = {p.product_id: p for p in products}
        missing = [i for i in ids if i not in by_id]
        if missing:
            logger.warning("Catalog has no record of products %s", missing)
        return [_patch(item, by_id[item.product_id]) if item.product_id in by_id else _unavailable(item)
                for item in items]

    async def buy_now(self, product_id: str, quantity: Optional[int] = None) -> List[LineItem]:
        quantity = 1 if quantity is None else quantity
        if quantity < 1 or quantity > self.settings.max_buy_now_quantity:
            raise ValidationError(
                f"Quantity must be between 1 and {self.settings.max_buy_now_quantity}"
            )
        try:
            product = await self.catalog.get_product_by_id(product_id)
        except PersistenceError as exc:
            raise CatalogUnavailable("Failed to load product details") from exc
        entry = CartEntry(
            customer_id="",
            product=EmbeddedProduct(product=product),
            vendor_id=product.vendor_id,
            quantity=quantity,
        )
        return [_line_item(entry, product)]

    @staticmethod
    def ensure_priced(items: Sequence[LineItem]) -> None:
        if not items:
            raise ValidationError("Cart is empty")
        unavailable = [i.product_id for i in items if not i.product_name]
        if unavailable:
            logger.info("Checkout blocked by unavailable products %s", unavailable)
            raise ValidationError("Some items in your cart are no longer available")


def as_cart_entry(customer_id: str, product_id: str, quantity: int = 1,
                  vendor_id: Optional[str] = None) -> CartEntry:
    return CartEntry(customer_id=customer_id, product=ProductId(product_id=product_id),
                     vendor_id=vendor_id, quantity=quantity)
