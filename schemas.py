"""
Database Schemas for the order transaction core

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class Order -> collection "order"

Enums are stored as their string values so documents round-trip through Mongo unchanged.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# Status and policy enums

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    SSLCOMMERZ = "sslcommerz"
    RAZORPAY = "razorpay"
    COD = "cod"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"


# Core domain models

class Address(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)

    @field_validator("*", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class Customer(BaseModel):
    id: str
    name: str
    email: EmailStr
    is_active: bool = True
    is_admin: bool = False


class Product(BaseModel):
    id: Optional[str] = None
    name: str
    sku: str
    price: float = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    sales_count: int = 0
    is_active: bool = True

    @property
    def image(self) -> str:
        return self.images[0] if self.images else ""

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Product":
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return cls(**doc)


class Variant(BaseModel):
    name: str
    value: str


class CartLine(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    variant: Optional[Variant] = None


class OrderItem(BaseModel):
    product_id: str
    name: str
    image: str = ""
    sku: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    variant: Optional[Variant] = None

    @property
    def line_total(self) -> float:
        return self.price * self.quantity


class CheckoutRequest(BaseModel):
    customer_id: str
    items: List[CartLine] = Field(..., min_length=1)
    shipping_address: Dict[str, Any]
    billing_address: Optional[Dict[str, Any]] = None
    payment_method: PaymentMethod
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: Optional[str] = None
    order_number: str
    customer_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    coupon_code: Optional[str] = None
    currency: str = "USD"
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_id: Optional[str] = None
    order_status: OrderStatus = OrderStatus.PENDING
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    courier_name: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    refund_amount: Optional[float] = Field(None, ge=0)
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    stock_released: bool = False
    idempotency_key: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("coupon_code")
    @classmethod
    def upper_code(cls, v):
        return v.strip().upper() if v else v

    @field_validator("estimated_delivery", "delivered_at", "cancelled_at", "refunded_at", "created_at", "updated_at")
    @classmethod
    def attach_utc(cls, v):
        return as_utc(v)

    @model_validator(mode="after")
    def check_money(self):
        expected = self.subtotal + self.tax + self.shipping - self.discount
        if abs(self.total - expected) > 0.005:
            raise ValueError(f"total {self.total} does not equal subtotal + tax + shipping - discount ({expected:.2f})")
        if self.refund_amount is not None and self.refund_amount > self.total + 0.005:
            raise ValueError("refund_amount cannot exceed total")
        return self

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(exclude={"id"})
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Order":
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return cls(**doc)


class Coupon(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: Optional[str] = None
    code: str = Field(..., min_length=1)
    description: Optional[str] = Field(None, max_length=200)
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0)
    min_order_value: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_count: int = Field(0, ge=0)
    usage_per_customer: Optional[int] = Field(None, ge=1)
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def upper_code(cls, v):
        return v.strip().upper()

    @field_validator("valid_from", "valid_until")
    @classmethod
    def attach_utc(cls, v):
        return as_utc(v)

    @model_validator(mode="after")
    def check_terms(self):
        if self.valid_from >= self.valid_until:
            raise ValueError("valid_from must be before valid_until")
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id"})

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Coupon":
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return cls(**doc)


class PaymentEvent(BaseModel):
    """A provider webhook reduced to the fields reconciliation needs."""

    id: Optional[str] = None
    type: str
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[float] = Field(None, ge=0)
    error_message: Optional[str] = None
    amount_is_cumulative: bool = False
