"""
Order Builder: turns a cart, addresses and payment method into a persisted pending order.

Steps run strictly in order and any of them can abort the build. Nothing is visible
outside until the order document is written: stock taken for a build that later
fails is put back before the error reaches the caller, and the coupon usage counter
moves only after the order is stored.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError

from config import StoreSettings
from coupons import CouponEngine
from errors import (
    CheckoutInProgress,
    CouponNotApplicable,
    CouponNotFound,
    CouponRejected,
    InvalidAddress,
    ProductUnavailable,
)
from inventory import InventoryLedger, lines_of
from pricing import compute_shipping, compute_tax, compute_total, subtotal_of
from repositories import CheckoutRepository, CounterRepository, CustomerDirectory, OrderRepository, ProductRepository
from schemas import Address, CheckoutRequest, Order, OrderItem, utcnow

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5


def format_order_number(year: int, seq: int) -> str:
    return f"ORD-{year}-{seq:05d}"


def validate_address(raw: Optional[Dict[str, Any]], kind: str) -> Address:
    if not raw:
        raise InvalidAddress(kind)
    try:
        return Address(**raw)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"]) or kind
        raise InvalidAddress(f"{kind}.{field}")


class OrderNumberGenerator:
    """Year-scoped sequence backed by an atomic counter document per year."""

    def __init__(self, counters: CounterRepository):
        self.counters = counters

    def next(self, now: Optional[datetime] = None) -> str:
        year = (now or utcnow()).year
        return format_order_number(year, self.counters.next_value(f"order-{year}"))


class OrderBuilder:
    def __init__(
        self,
        products: ProductRepository,
        coupons: CouponEngine,
        ledger: InventoryLedger,
        orders: OrderRepository,
        customers: CustomerDirectory,
        numbers: OrderNumberGenerator,
        checkouts: CheckoutRepository,
        settings: StoreSettings,
    ):
        self.products = products
        self.coupons = coupons
        self.ledger = ledger
        self.orders = orders
        self.customers = customers
        self.numbers = numbers
        self.checkouts = checkouts
        self.settings = settings

    def build(self, request: CheckoutRequest, now: Optional[datetime] = None) -> Order:
        """
        Build and persist an order for `request`.

        With an idempotency key, a resubmission of a completed checkout returns the
        order it already produced, and a resubmission while the first is still
        building raises CheckoutInProgress.

        Raises:
            InvalidAddress, ProductUnavailable, CouponRejected, OutOfStock,
            CheckoutInProgress; persistence errors propagate unchanged.
        """
        key = None
        if request.idempotency_key:
            key = f"{request.customer_id}:{request.idempotency_key}"
            existing = self.checkouts.claim(key, request.customer_id)
            if existing is not None:
                if existing.get("order_id"):
                    order = self.orders.get(existing["order_id"])
                    if order is not None:
                        logger.info("Checkout %s replayed, returning %s", key, order.order_number)
                        return order
                raise CheckoutInProgress(request.idempotency_key)

        try:
            order = self._build(request, key, now or utcnow())
        except Exception:
            if key is not None:
                self.checkouts.abandon(key)
            raise

        if key is not None:
            self.checkouts.complete(key, order.id)
        return order

    def _build(self, request: CheckoutRequest, key: Optional[str], now: datetime) -> Order:
        shipping_address = validate_address(request.shipping_address, "shipping_address")
        if request.billing_address:
            billing_address = validate_address(request.billing_address, "billing_address")
        else:
            billing_address = shipping_address

        items = self._price_items(request)
        subtotal = subtotal_of(items)

        discount = 0.0
        coupon_code = None
        if request.coupon_code:
            coupon_code = request.coupon_code.strip().upper()
            prior = self.customers.coupon_usage_count(request.customer_id, coupon_code)
            try:
                discount = self.coupons.apply(coupon_code, subtotal, prior, now).discount_amount
            except CouponNotApplicable as e:
                raise CouponRejected(e.reason)
            except CouponNotFound as e:
                raise CouponRejected(str(e))

        tax = compute_tax(subtotal, discount, self.settings)
        shipping = compute_shipping(subtotal, discount, request.shipping_method, self.settings)
        total = compute_total(subtotal, tax, shipping, discount)

        self.ledger.reserve_all(lines_of(items))
        try:
            order = self._persist(
                items=items,
                subtotal=subtotal,
                tax=tax,
                shipping=shipping,
                discount=discount,
                total=total,
                coupon_code=coupon_code,
                currency=self.settings.currency,
                customer_id=request.customer_id,
                shipping_address=shipping_address,
                billing_address=billing_address,
                payment_method=request.payment_method,
                shipping_method=request.shipping_method,
                notes=request.notes,
                idempotency_key=key,
                created_at=now,
                updated_at=now,
            )
        except Exception:
            self.ledger.release_all(lines_of(items))
            raise

        logger.info("Order %s created for customer %s, total %.2f", order.order_number, order.customer_id, order.total)

        if coupon_code:
            try:
                self.coupons.increment_usage(coupon_code)
            except Exception:
                # the order stands; the counter lags by one until reconciled by hand
                logger.exception("Failed to record redemption of %s for %s", coupon_code, order.order_number)
        return order

    def _price_items(self, request: CheckoutRequest) -> List[OrderItem]:
        items = []
        for line in request.items:
            product = self.products.get(line.product_id)
            if product is None or not product.is_active:
                raise ProductUnavailable(line.product_id)
            items.append(OrderItem(
                product_id=product.id,
                name=product.name,
                image=product.image,
                sku=product.sku,
                quantity=line.quantity,
                price=product.price,
                variant=line.variant,
            ))
        return items

    def _persist(self, **fields) -> Order:
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            order = Order(order_number=self.numbers.next(fields["created_at"]), **fields)
            try:
                return self.orders.insert(order)
            except DuplicateKeyError:
                logger.warning("Order number %s already taken (attempt %d)", order.order_number, attempt)
        raise RuntimeError(f"Could not allocate a unique order number after {ORDER_NUMBER_ATTEMPTS} attempts")
