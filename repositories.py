"""
Mongo persistence for the order core.

Repositories only translate between pydantic models and documents and expose the
atomic updates the services need. Business rules live in the service modules.
"""
import time
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from bson import ObjectId
from pymongo import ReturnDocument, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from schemas import Order, Coupon, Product, Customer


def to_object_id(value: str) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


class OrderRepository:
    def __init__(self, db: Database):
        self.collection = db["order"]

    def insert(self, order: Order) -> Order:
        """Insert a new order. Raises DuplicateKeyError if the order number is taken."""
        inserted_id = self.collection.insert_one(order.to_document()).inserted_id
        return order.model_copy(update={"id": str(inserted_id)})

    def get(self, order_id: str) -> Optional[Order]:
        oid = to_object_id(order_id)
        if oid is None:
            return None
        doc = self.collection.find_one({"_id": oid})
        return Order.from_document(doc) if doc else None

    def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        doc = self.collection.find_one({"payment_id": payment_id})
        return Order.from_document(doc) if doc else None

    def list_for_customer(self, customer_id: Optional[str], page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        filt: Dict[str, Any] = {} if customer_id is None else {"customer_id": customer_id}
        total = self.collection.count_documents(filt)
        cursor = (
            self.collection.find(filt)
            .sort("created_at", DESCENDING)
            .skip((page - 1) * page_size)
            .limit(page_size)
        )
        return {"items": [Order.from_document(d) for d in cursor], "page": page, "page_size": page_size, "total": total}

    def save(self, order: Order) -> Optional[Order]:
        """
        Write back a modified order if nobody else has written since it was read.

        Returns the stored order with its version bumped, or None on a version conflict.
        """
        stored = order.model_copy(update={"version": order.version + 1, "updated_at": datetime.now(timezone.utc)})
        result = self.collection.update_one(
            {"_id": ObjectId(order.id), "version": order.version},
            {"$set": stored.to_document()},
        )
        if result.matched_count == 0:
            return None
        return stored


class CouponRepository:
    def __init__(self, db: Database):
        self.collection = db["coupon"]

    def get(self, code: str) -> Optional[Coupon]:
        doc = self.collection.find_one({"code": code.strip().upper()})
        return Coupon.from_document(doc) if doc else None

    def insert(self, coupon: Coupon) -> Coupon:
        inserted_id = self.collection.insert_one(coupon.to_document()).inserted_id
        return coupon.model_copy(update={"id": str(inserted_id)})

    def increment_usage(self, code: str) -> None:
        self.collection.update_one({"code": code.upper()}, {"$inc": {"usage_count": 1}})


class ProductRepository:
    def __init__(self, db: Database):
        self.collection = db["product"]

    def get(self, product_id: str) -> Optional[Product]:
        oid = to_object_id(product_id)
        if oid is None:
            return None
        doc = self.collection.find_one({"_id": oid})
        return Product.from_document(doc) if doc else None

    def get_by_sku(self, sku: str) -> Optional[Product]:
        doc = self.collection.find_one({"sku": sku})
        return Product.from_document(doc) if doc else None

    def list_active(self) -> List[Product]:
        cursor = self.collection.find({"is_active": True}).sort("stock", 1)
        return [Product.from_document(d) for d in cursor]

    def decrement_if_available(self, sku: str, quantity: int) -> bool:
        """Single conditional update: only matches while stock still covers the quantity."""
        result = self.collection.update_one(
            {"sku": sku, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity, "sales_count": quantity}},
        )
        return result.modified_count == 1

    def increment(self, sku: str, quantity: int) -> bool:
        result = self.collection.update_one(
            {"sku": sku},
            {"$inc": {"stock": quantity, "sales_count": -quantity}},
        )
        return result.matched_count == 1


class CustomerDirectory:
    def __init__(self, db: Database):
        self.users = db["user"]
        self.orders = db["order"]

    def get(self, customer_id: str) -> Optional[Customer]:
        oid = to_object_id(customer_id)
        if oid is None:
            return None
        doc = self.users.find_one({"_id": oid})
        if not doc:
            return None
        return Customer(
            id=str(doc["_id"]),
            name=doc.get("name", ""),
            email=doc["email"],
            is_active=doc.get("is_active", True),
            is_admin=doc.get("is_admin", False),
        )

    def coupon_usage_count(self, customer_id: str, code: str) -> int:
        return self.orders.count_documents({"customer_id": customer_id, "coupon_code": code.upper()})


class CounterRepository:
    def __init__(self, db: Database):
        self.collection = db["counter"]

    def next_value(self, name: str) -> int:
        doc = self.collection.find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["seq"])


class CheckoutRepository:
    """
    Claims on idempotency keys so one cart submission builds at most one order.

    A claim with no order that is older than `claim_timeout` seconds belongs to a
    build that died before completing or abandoning it, and may be taken over.
    """

    def __init__(self, db: Database, claim_timeout: int = 300):
        self.collection = db["checkout"]
        self.claim_timeout = claim_timeout

    def claim(self, key: str, customer_id: str) -> Optional[Dict[str, Any]]:
        """Returns None when the key was claimed now, else the existing claim."""
        now = time.time()
        try:
            self.collection.insert_one({
                "_id": key,
                "customer_id": customer_id,
                "order_id": None,
                "claimed_at": now,
                "created_at": datetime.now(timezone.utc),
            })
            return None
        except DuplicateKeyError:
            pass
        stale = self.collection.find_one_and_update(
            {"_id": key, "order_id": None, "claimed_at": {"$lt": now - self.claim_timeout}},
            {"$set": {"claimed_at": now}},
        )
        if stale is not None:
            return None
        return self.collection.find_one({"_id": key}) or {"_id": key, "order_id": None}

    def complete(self, key: str, order_id: str) -> None:
        self.collection.update_one({"_id": key}, {"$set": {"order_id": order_id}})

    def abandon(self, key: str) -> None:
        self.collection.delete_one({"_id": key, "order_id": None})


class PaymentEventRepository:
    def __init__(self, db: Database):
        self.collection = db["payment_event"]

    def record(self, event_id: str, event_type: str) -> bool:
        """Returns False when the event id was already recorded."""
        try:
            self.collection.insert_one({
                "_id": event_id,
                "type": event_type,
                "received_at": datetime.now(timezone.utc),
            })
            return True
        except DuplicateKeyError:
            return False

    def forget(self, event_id: str) -> None:
        self.collection.delete_one({"_id": event_id})


class SettingsRepository:
    def __init__(self, db: Database):
        self.collection = db["settings"]

    def load(self) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({})
