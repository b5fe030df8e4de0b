"""
Coupon Engine: validates and prices a discount code against an order subtotal.

The policy functions take an explicit Coupon and clock so they can be exercised
without a database; CouponEngine adds lookup and the usage counter.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pymongo.errors import DuplicateKeyError

from errors import CouponNotFound, CouponNotApplicable, InvalidCoupon
from pricing import round_money
from repositories import CouponRepository
from schemas import Coupon, DiscountType, utcnow, as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CouponEvaluation:
    code: str
    accepted: bool
    discount_amount: float
    reason: Optional[str] = None


def rejection_reason(coupon: Coupon, now: Optional[datetime] = None) -> Optional[str]:
    """Why the coupon is not currently redeemable by anyone, or None if it is."""
    now = as_utc(now) or utcnow()
    if not coupon.is_active:
        return "Coupon is not active"
    if now < coupon.valid_from:
        return "Coupon is not valid yet"
    if now >= coupon.valid_until:
        return "Coupon has expired"
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        return "Coupon usage limit reached"
    return None


def is_valid(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    return rejection_reason(coupon, now) is None


def can_be_used_by(coupon: Coupon, customer_prior_usage_count: int, now: Optional[datetime] = None) -> bool:
    if not is_valid(coupon, now):
        return False
    if coupon.usage_per_customer is not None and customer_prior_usage_count >= coupon.usage_per_customer:
        return False
    return True


def calculate_discount(coupon: Coupon, order_subtotal: float, now: Optional[datetime] = None) -> float:
    if not is_valid(coupon, now):
        return 0.0
    if coupon.min_order_value is not None and order_subtotal < coupon.min_order_value:
        return 0.0

    subtotal = Decimal(str(order_subtotal))
    value = Decimal(str(coupon.discount_value))
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = subtotal * value / Decimal(100)
        if coupon.max_discount_amount is not None:
            discount = min(discount, Decimal(str(coupon.max_discount_amount)))
        discount = min(discount, subtotal)
    else:
        # a fixed discount never pushes the order below zero
        discount = min(value, subtotal)
    return round_money(discount)


def evaluate_coupon(coupon: Coupon, order_subtotal: float, customer_prior_usage_count: int,
                    now: Optional[datetime] = None) -> CouponEvaluation:
    reason = rejection_reason(coupon, now)
    if reason is None and not can_be_used_by(coupon, customer_prior_usage_count, now):
        reason = "You have reached the usage limit for this coupon"
    if reason is None and coupon.min_order_value is not None and order_subtotal < coupon.min_order_value:
        reason = f"Order subtotal is below the minimum of {coupon.min_order_value:.2f} for this coupon"
    if reason is not None:
        return CouponEvaluation(code=coupon.code, accepted=False, discount_amount=0.0, reason=reason)
    return CouponEvaluation(
        code=coupon.code,
        accepted=True,
        discount_amount=calculate_discount(coupon, order_subtotal, now),
    )


class CouponEngine:
    def __init__(self, coupons: CouponRepository):
        self.coupons = coupons

    def evaluate(self, code: str, order_subtotal: float, customer_prior_usage_count: int = 0,
                 now: Optional[datetime] = None) -> CouponEvaluation:
        """Price `code` against a subtotal. Raises CouponNotFound for unknown codes."""
        coupon = self.coupons.get(code)
        if coupon is None:
            raise CouponNotFound(code.strip().upper())
        return evaluate_coupon(coupon, order_subtotal, customer_prior_usage_count, now)

    def apply(self, code: str, order_subtotal: float, customer_prior_usage_count: int = 0,
              now: Optional[datetime] = None) -> CouponEvaluation:
        """Like evaluate, but a refused coupon raises CouponNotApplicable."""
        evaluation = self.evaluate(code, order_subtotal, customer_prior_usage_count, now)
        if not evaluation.accepted:
            raise CouponNotApplicable(evaluation.code, evaluation.reason)
        return evaluation

    def increment_usage(self, code: str) -> None:
        # only called once the order carrying this coupon is durably stored
        self.coupons.increment_usage(code)
        logger.info("Coupon %s redeemed", code.upper())

    def create(self, coupon: Coupon) -> Coupon:
        try:
            created = self.coupons.insert(coupon)
        except DuplicateKeyError:
            raise InvalidCoupon(f"Coupon code {coupon.code} already exists")
        logger.info("Coupon %s created", created.code)
        return created
