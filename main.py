import os
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field, ValidationError
from pymongo.database import Database
import jwt

import database
from config import (
    JWT_SECRET,
    JWT_ALGORITHM,
    LOG_LEVEL,
    PAYMENT_WEBHOOK_SECRET,
    PAYMENT_WEBHOOK_TOLERANCE,
    CHECKOUT_CLAIM_TIMEOUT,
    StoreSettings,
)
from coupons import CouponEngine
from errors import (
    OrderCoreError,
    OutOfStock,
    ProductUnavailable,
    CouponNotFound,
    CouponNotApplicable,
    CouponRejected,
    InvalidCoupon,
    InvalidAddress,
    RefundExceedsTotal,
    RefundNotAllowed,
    InvalidTransition,
    CancellationNotAllowed,
    OrderNotFound,
    CheckoutInProgress,
    ConcurrentModification,
    SignatureVerificationError,
    InvalidPaymentEvent,
)
from inventory import InventoryLedger
from lifecycle import OrderLifecycle
from notifications import LogNotifier, Notifier
from order_builder import OrderBuilder, OrderNumberGenerator
from payments import PaymentReconciler
from repositories import (
    CheckoutRepository,
    CounterRepository,
    CouponRepository,
    CustomerDirectory,
    OrderRepository,
    PaymentEventRepository,
    ProductRepository,
    SettingsRepository,
)
from schemas import (
    CartLine,
    CheckoutRequest,
    Coupon,
    Customer,
    DiscountType,
    Order,
    OrderStatus,
    PaymentMethod,
    ShippingMethod,
)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# App setup
app = FastAPI(title="Order Core API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

security = HTTPBearer()


# Wiring
@dataclass
class Services:
    db: Database
    settings: StoreSettings
    orders: OrderRepository
    products: ProductRepository
    customers: CustomerDirectory
    coupons: CouponEngine
    ledger: InventoryLedger
    builder: OrderBuilder
    lifecycle: OrderLifecycle
    payments: PaymentReconciler


def build_services(db: Database, settings: Optional[StoreSettings] = None, notifier: Optional[Notifier] = None,
                   webhook_secret: str = PAYMENT_WEBHOOK_SECRET,
                   webhook_tolerance: int = PAYMENT_WEBHOOK_TOLERANCE) -> Services:
    database.ensure_indexes(db)
    settings = settings or StoreSettings.from_env().merged(SettingsRepository(db).load())
    notifier = notifier or LogNotifier()

    orders = OrderRepository(db)
    products = ProductRepository(db)
    customers = CustomerDirectory(db)
    coupons = CouponEngine(CouponRepository(db))
    ledger = InventoryLedger(products, settings.low_stock_threshold)
    lifecycle = OrderLifecycle(orders, ledger, notifier)
    builder = OrderBuilder(
        products=products,
        coupons=coupons,
        ledger=ledger,
        orders=orders,
        customers=customers,
        numbers=OrderNumberGenerator(CounterRepository(db)),
        checkouts=CheckoutRepository(db, CHECKOUT_CLAIM_TIMEOUT),
        settings=settings,
    )
    payments = PaymentReconciler(orders, lifecycle, PaymentEventRepository(db), webhook_secret, webhook_tolerance)
    return Services(db, settings, orders, products, customers, coupons, ledger, builder, lifecycle, payments)


def get_services() -> Services:
    services = getattr(app.state, "services", None)
    if services is None:
        if database.db is None:
            raise HTTPException(status_code=503, detail="Database not configured")
        services = app.state.services = build_services(database.db)
    return services


# Errors
ERROR_STATUS_CODES = {
    OrderNotFound: 404,
    CouponNotFound: 404,
    OutOfStock: 409,
    CheckoutInProgress: 409,
    ConcurrentModification: 409,
    ProductUnavailable: 400,
    CouponNotApplicable: 400,
    CouponRejected: 400,
    InvalidCoupon: 400,
    InvalidAddress: 400,
    RefundExceedsTotal: 400,
    RefundNotAllowed: 400,
    InvalidTransition: 400,
    CancellationNotAllowed: 400,
    SignatureVerificationError: 400,
    InvalidPaymentEvent: 400,
}


@app.exception_handler(OrderCoreError)
async def order_core_error_handler(request: Request, exc: OrderCoreError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


# Security/JWT: tokens are issued by the auth service, we only check them
def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security),
                     services: Services = Depends(get_services)) -> Customer:
    payload = decode_token(credentials.credentials)
    user = services.customers.get(payload.get("sub", ""))
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_admin(user: Customer = Depends(get_current_user)) -> Customer:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def order_out(order: Order) -> Dict[str, Any]:
    return order.model_dump(mode="json")


def load_visible_order(order_id: str, user: Customer, services: Services) -> Order:
    order = services.lifecycle.get(order_id)
    if not user.is_admin and order.customer_id != user.id:
        # don't reveal other customers' orders
        raise OrderNotFound(order_id)
    return order


# Schemas (request/response)
class CheckoutBody(BaseModel):
    items: List[CartLine] = Field(..., min_length=1)
    shipping_address: Dict[str, Any]
    billing_address: Optional[Dict[str, Any]] = None
    payment_method: PaymentMethod
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    coupon_code: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)


class CancelBody(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class StatusBody(BaseModel):
    status: OrderStatus


class TrackingBody(BaseModel):
    tracking_number: str = Field(..., min_length=1)
    courier_name: str = Field(..., min_length=1)
    tracking_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class RefundBody(BaseModel):
    amount: float = Field(..., ge=0.01)
    reason: str = Field(..., min_length=1)


class NoteBody(BaseModel):
    note: str = Field(..., min_length=1, max_length=1000)


class CouponIn(BaseModel):
    code: str = Field(..., min_length=1)
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0)
    min_order_value: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_per_customer: Optional[int] = Field(None, ge=1)
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True


class CouponValidateRequest(BaseModel):
    code: str = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)


# Health and helpers
@app.get("/")
def root():
    return {"message": "Order Core API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        db = getattr(app.state, "services", None)
        db = db.db if db is not None else database.db
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Checkout & Orders
@app.post("/orders", status_code=201)
def create_order(payload: CheckoutBody, user: Customer = Depends(get_current_user),
                 services: Services = Depends(get_services),
                 idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")):
    request = CheckoutRequest(
        customer_id=user.id,
        idempotency_key=idempotency_key,
        **payload.model_dump(),
    )
    order = services.builder.build(request)
    return {"order": order_out(order)}


@app.get("/orders")
def list_orders(page: int = 1, page_size: int = 20, user: Customer = Depends(get_current_user),
                services: Services = Depends(get_services)):
    page = max(page, 1)
    page_size = min(max(page_size, 1), 100)
    customer_id = None if user.is_admin else user.id
    result = services.orders.list_for_customer(customer_id, page, page_size)
    result["items"] = [order_out(o) for o in result["items"]]
    return result


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: Customer = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"order": order_out(load_visible_order(order_id, user, services))}


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: CancelBody, user: Customer = Depends(get_current_user),
                 services: Services = Depends(get_services)):
    load_visible_order(order_id, user, services)
    order = services.lifecycle.cancel(order_id, by_admin=user.is_admin, reason=payload.reason)
    return {"order": order_out(order)}


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusBody, user: Customer = Depends(require_admin),
                        services: Services = Depends(get_services)):
    order = services.lifecycle.update_status(order_id, payload.status)
    return {"order": order_out(order)}


@app.post("/orders/{order_id}/tracking")
def add_order_tracking(order_id: str, payload: TrackingBody, user: Customer = Depends(require_admin),
                       services: Services = Depends(get_services)):
    order = services.lifecycle.add_tracking(
        order_id,
        payload.tracking_number,
        payload.courier_name,
        payload.tracking_url,
        payload.estimated_delivery,
    )
    return {"order": order_out(order)}


@app.post("/orders/{order_id}/refund")
def refund_order(order_id: str, payload: RefundBody, user: Customer = Depends(require_admin),
                 services: Services = Depends(get_services)):
    order = services.lifecycle.process_refund(order_id, payload.amount, payload.reason)
    return {"order": order_out(order)}


@app.post("/orders/{order_id}/notes")
def add_order_note(order_id: str, payload: NoteBody, user: Customer = Depends(require_admin),
                   services: Services = Depends(get_services)):
    order = services.lifecycle.add_admin_note(order_id, payload.note)
    return {"order": order_out(order)}


# Coupons
@app.post("/coupons", status_code=201)
def create_coupon(payload: CouponIn, user: Customer = Depends(require_admin), services: Services = Depends(get_services)):
    try:
        coupon = Coupon(**payload.model_dump())
    except ValidationError as e:
        raise InvalidCoupon(e.errors()[0]["msg"])
    created = services.coupons.create(coupon)
    return {"coupon": created.model_dump(mode="json")}


@app.post("/coupons/validate")
def validate_coupon(payload: CouponValidateRequest, user: Customer = Depends(get_current_user),
                    services: Services = Depends(get_services)):
    prior = services.customers.coupon_usage_count(user.id, payload.code)
    evaluation = services.coupons.evaluate(payload.code, payload.subtotal, prior)
    return {
        "code": evaluation.code,
        "accepted": evaluation.accepted,
        "discount": evaluation.discount_amount,
        "reason": evaluation.reason,
    }


# Inventory
@app.get("/inventory")
def get_inventory(low_stock: bool = False, user: Customer = Depends(require_admin),
                  services: Services = Depends(get_services)):
    products = services.ledger.inventory(low_stock_only=low_stock)
    items = [
        {
            "id": p.id,
            "name": p.name,
            "sku": p.sku,
            "price": p.price,
            "stock": p.stock,
            "low_stock_threshold": services.ledger.threshold_for(p),
            "is_low_stock": p.stock <= services.ledger.threshold_for(p),
        }
        for p in products
    ]
    return {"items": items, "count": len(items)}


# Payment provider webhooks
@app.post("/webhooks/payments")
async def payment_webhook(request: Request, services: Services = Depends(get_services)):
    payload = await request.body()
    signature = request.headers.get("Payment-Signature") or request.headers.get("Stripe-Signature")
    try:
        result = await run_in_threadpool(services.payments.handle_webhook, payload, signature)
    except SignatureVerificationError as e:
        logger.warning("Rejected payment webhook: %s", e.reason)
        raise
    return result


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
