"""
Persistence collaborators.

The lifecycle core talks to the catalog, cart, coupon, order and return
backends only through the protocols below. The Mongo* classes are the
default implementations on top of pymongo; blocking calls are pushed to the
thread pool so the event loop never waits on the database.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from bson import ObjectId
from bson.errors import InvalidId
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from pymongo.errors import PyMongoError

from errors import CatalogUnavailable, InvalidStateTransition, NotFound, PersistenceError, ValidationError
from schemas import CartEntry, Coupon, EmbeddedProduct, Order, Product, ReturnRequest

logger = logging.getLogger("storefront.repositories")


class Catalog(Protocol):
    async def get_products_by_ids(self, ids: Sequence[str]) -> List[Product]: ...

    async def get_product_by_id(self, product_id: str) -> Product: ...


class CartStore(Protocol):
    async def get_cart_by_customer_id(self, customer_id: str) -> List[CartEntry]: ...

    async def register_cart(self, entry: CartEntry) -> CartEntry: ...

    async def delete_cart_by_id(self, cart_id: str) -> bool: ...


class CouponStore(Protocol):
    async def get_coupon(self, code: str) -> Optional[Coupon]: ...

    async def count_customer_usage(self, code: str, customer_id: str) -> int: ...

    async def record_usage(self, code: str, customer_id: str, order_id: str) -> None: ...


class OrderStore(Protocol):
    async def create_order(self, order: Order) -> Order: ...

    async def get_order_by_id(self, order_id: str) -> Order: ...

    async def get_orders_by_customer_id(self, customer_id: str) -> List[Order]: ...

    async def update_order(self, order_id: str, expected_status: str, fields: Dict[str, Any]) -> Order: ...


class ReturnStore(Protocol):
    async def create_return(self, request: ReturnRequest) -> ReturnRequest: ...

    async def get_return(self, return_id: str) -> ReturnRequest: ...

    async def get_returns_by_order_id(self, order_id: str) -> List[ReturnRequest]: ...

    async def update_return(self, return_id: str, expected_status: str, fields: Dict[str, Any]) -> ReturnRequest: ...


# Utilities

def to_str_id(doc: dict, key: str) -> dict:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d[key] = str(d.pop("_id"))
    return d


def object_id(id_str: str, label: str = "id") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}")


def _plain(value):
    # BSON has no encoder for Enum members
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return _plain(value.model_dump())
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _dump(model) -> dict:
    return _plain(model.model_dump())


async def _run(fn, *args, **kwargs):
    try:
        return await run_in_threadpool(fn, *args, **kwargs)
    except PyMongoError as exc:
        logger.exception("Database call %s failed", getattr(fn, "__name__", fn))
        raise PersistenceError() from exc


class MongoCatalog:
    def __init__(self, db):
        self.collection = db["product"]

    async def get_products_by_ids(self, ids: Sequence[str]) -> List[Product]:
        keys = []
        for i in ids:
            try:
                keys.append(ObjectId(i))
            except (InvalidId, TypeError):
                # not a catalog id; reconciliation treats it as unavailable
                continue
        try:
            docs = await _run(lambda: list(self.collection.find({"_id": {"$in": keys}})))
        except PersistenceError as exc:
            raise CatalogUnavailable() from exc
        return [Product.from_document(d) for d in docs]

    async def get_product_by_id(self, product_id: str) -> Product:
        _id = object_id(product_id, "product id")
        try:
            doc = await _run(self.collection.find_one, {"_id": _id})
        except PersistenceError as exc:
            raise CatalogUnavailable() from exc
        if not doc:
            raise NotFound("Product not found")
        return Product.from_document(doc)


class MongoCartStore:
    def __init__(self, db):
        self.collection = db["cart"]

    async def get_cart_by_customer_id(self, customer_id: str) -> List[CartEntry]:
        docs = await _run(lambda: list(self.collection.find({"customer_id": customer_id})))
        return [CartEntry.from_document(d) for d in docs]

    async def register_cart(self, entry: CartEntry) -> CartEntry:
        doc = {
            "customer_id": entry.customer_id,
            "product_id": entry.product_id,
            "vendor_id": entry.vendor_id,
            "quantity": entry.quantity,
            "created_at": datetime.now(timezone.utc),
        }
        if isinstance(entry.product, EmbeddedProduct):
            doc["product"] = _dump(entry.product.product)
        result = await _run(self.collection.insert_one, doc)
        return entry.model_copy(update={"cart_id": str(result.inserted_id)})

    async def delete_cart_by_id(self, cart_id: str) -> bool:
        result = await _run(self.collection.delete_one, {"_id": object_id(cart_id, "cart id")})
        return result.deleted_count > 0


class MongoCouponStore:
    def __init__(self, db):
        self.collection = db["coupon"]
        self.usage = db["coupon_usage"]

    async def get_coupon(self, code: str) -> Optional[Coupon]:
        doc = await _run(self.collection.find_one, {"code": code})
        if not doc:
            return None
        doc.pop("_id", None)
        return Coupon(**doc)

    async def count_customer_usage(self, code: str, customer_id: str) -> int:
        return await _run(self.usage.count_documents, {"code": code, "customer_id": customer_id})

    async def record_usage(self, code: str, customer_id: str, order_id: str) -> None:
        await _run(self.usage.insert_one, {
            "code": code,
            "customer_id": customer_id,
            "order_id": order_id,
            "created_at": datetime.now(timezone.utc),
        })
        await _run(self.collection.update_one, {"code": code}, {"$inc": {"usage_count": 1}})


class MongoOrderStore:
    def __init__(self, db):
        self.collection = db["order"]

    def _to_model(self, doc: dict) -> Order:
        return Order(**to_str_id(doc, "order_id"))

    async def create_order(self, order: Order) -> Order:
        doc = _dump(order)
        doc.pop("order_id", None)
        result = await _run(self.collection.insert_one, doc)
        return order.model_copy(update={"order_id": str(result.inserted_id)})

    async def get_order_by_id(self, order_id: str) -> Order:
        doc = await _run(self.collection.find_one, {"_id": object_id(order_id, "order id")})
        if not doc:
            raise NotFound("Order not found.")
        return self._to_model(doc)

    async def get_orders_by_customer_id(self, customer_id: str) -> List[Order]:
        docs = await _run(
            lambda: list(self.collection.find({"customer_id": customer_id}).sort("created_at", -1))
        )
        return [self._to_model(d) for d in docs]

    async def update_order(self, order_id: str, expected_status: str, fields: Dict[str, Any]) -> Order:
        _id = object_id(order_id, "order id")
        fields = _plain(fields)
        update: Dict[str, Any] = {"$set": {k: v for k, v in fields.items() if k != "status_history"}}
        if "status_history" in fields:
            update["$push"] = {"status_history": {"$each": fields["status_history"]}}
        result = await _run(self.collection.update_one, {"_id": _id, "order_status": _plain(expected_status)}, update)
        if result.matched_count == 0:
            # lost a race with another status change, or the order is gone
            current = await self.get_order_by_id(order_id)
            raise InvalidStateTransition(current.order_status, fields.get("order_status"))
        return await self.get_order_by_id(order_id)


class MongoReturnStore:
    def __init__(self, db):
        self.collection = db["return_request"]

    def _to_model(self, doc: dict) -> ReturnRequest:
        return ReturnRequest(**to_str_id(doc, "return_id"))

    async def create_return(self, request: ReturnRequest) -> ReturnRequest:
        doc = _dump(request)
        doc.pop("return_id", None)
        result = await _run(self.collection.insert_one, doc)
        return request.model_copy(update={"return_id": str(result.inserted_id)})

    async def get_return(self, return_id: str) -> ReturnRequest:
        doc = await _run(self.collection.find_one, {"_id": object_id(return_id, "return id")})
        if not doc:
            raise NotFound("Return request not found")
        return self._to_model(doc)

    async def get_returns_by_order_id(self, order_id: str) -> List[ReturnRequest]:
        docs = await _run(lambda: list(self.collection.find({"order_id": order_id})))
        return [self._to_model(d) for d in docs]

    async def update_return(self, return_id: str, expected_status: str, fields: Dict[str, Any]) -> ReturnRequest:
        _id = object_id(return_id, "return id")
        fields = _plain(fields)
        update: Dict[str, Any] = {"$set": {k: v for k, v in fields.items() if k != "history"}}
        if "history" in fields:
            update["$push"] = {"history": {"$each": fields["history"]}}
        result = await _run(self.collection.update_one, {"_id": _id, "status": _plain(expected_status)}, update)
        if result.matched_count == 0:
            current = await self.get_return(return_id)
            raise InvalidStateTransition(current.status, fields.get("status"))
        return await self.get_return(return_id)
