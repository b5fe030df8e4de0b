"""Pytest fixtures for the order core tests."""

from datetime import datetime, timedelta, timezone

import jwt
import mongomock
import pytest
from bson import ObjectId

from config import StoreSettings, JWT_SECRET, JWT_ALGORITHM
from main import build_services
from schemas import CartLine, CheckoutRequest, Coupon

WEBHOOK_SECRET = "whsec_test"


class RecordingNotifier:
    """Keeps every notification so tests can count them."""

    def __init__(self, fail=False):
        self.fail = fail
        self.confirmations = []
        self.status_updates = []

    def send_order_confirmation(self, order):
        if self.fail:
            raise ConnectionError("smtp down")
        self.confirmations.append(order.order_number)

    def send_order_status_update(self, order, status, tracking=None):
        if self.fail:
            raise ConnectionError("smtp down")
        self.status_updates.append((order.order_number, status, tracking))


@pytest.fixture
def db():
    """A fresh in-process Mongo database."""
    return mongomock.MongoClient()["order_core_test"]


@pytest.fixture
def settings():
    return StoreSettings(
        tax_enabled=True,
        tax_rate=0.10,
        shipping_flat_rate=5.0,
        free_shipping_threshold=50.0,
        express_shipping_rate=15.0,
        low_stock_threshold=3,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(db, settings, notifier):
    return build_services(db, settings=settings, notifier=notifier, webhook_secret=WEBHOOK_SECRET)


def add_product(db, sku, price, stock, name=None, is_active=True, **extra):
    doc = {
        "name": name or f"Product {sku}",
        "sku": sku,
        "price": price,
        "stock": stock,
        "images": [f"https://img.example.com/{sku}.jpg"],
        "sales_count": 0,
        "is_active": is_active,
    }
    doc.update(extra)
    return str(db["product"].insert_one(doc).inserted_id)


def stock_of(db, sku):
    return db["product"].find_one({"sku": sku})["stock"]


def add_user(db, name="Ada", email="ada@example.com", is_admin=False):
    return str(db["user"].insert_one({
        "name": name,
        "email": email,
        "is_active": True,
        "is_admin": is_admin,
    }).inserted_id)


def token_for(user_id):
    payload = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def address(**overrides):
    addr = {
        "name": "Ada Lovelace",
        "phone": "+44 20 7946 0000",
        "street": "12 St James's Square",
        "city": "London",
        "state": "London",
        "zip_code": "SW1Y 4JH",
        "country": "GB",
    }
    addr.update(overrides)
    return addr


def checkout(customer_id, lines, **kwargs):
    """Build a CheckoutRequest from (product_id, quantity) pairs."""
    kwargs.setdefault("shipping_address", address())
    kwargs.setdefault("payment_method", "stripe")
    return CheckoutRequest(
        customer_id=customer_id,
        items=[CartLine(product_id=pid, quantity=qty) for pid, qty in lines],
        **kwargs,
    )


def make_coupon(code="SAVE10", discount_type="fixed", discount_value=5, **kwargs):
    now = datetime.now(timezone.utc)
    kwargs.setdefault("valid_from", now - timedelta(days=1))
    kwargs.setdefault("valid_until", now + timedelta(days=30))
    return Coupon(code=code, discount_type=discount_type, discount_value=discount_value, **kwargs)


@pytest.fixture
def customer_id(db):
    return add_user(db)


@pytest.fixture
def other_customer_id(db):
    return add_user(db, name="Grace", email="grace@example.com")


@pytest.fixture
def admin_id(db):
    return add_user(db, name="Admin", email="admin@example.com", is_admin=True)


@pytest.fixture
def unknown_order_id():
    return str(ObjectId())
