"""Money rounding, tax and shipping for order totals."""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from config import StoreSettings
from schemas import OrderItem, ShippingMethod

CENT = Decimal("0.01")


def round_money(value) -> float:
    """Round half-up to the currency minor unit."""
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def subtotal_of(items: Iterable[OrderItem]) -> float:
    total = sum((Decimal(str(i.price)) * i.quantity for i in items), Decimal("0"))
    return round_money(total)


def taxable_amount(subtotal: float, discount: float) -> float:
    return max(round_money(Decimal(str(subtotal)) - Decimal(str(discount))), 0.0)


def compute_tax(subtotal: float, discount: float, settings: StoreSettings) -> float:
    if not settings.tax_enabled:
        return 0.0
    return round_money(Decimal(str(taxable_amount(subtotal, discount))) * Decimal(str(settings.tax_rate)))


def compute_shipping(subtotal: float, discount: float, method: ShippingMethod, settings: StoreSettings) -> float:
    if ShippingMethod(method) is ShippingMethod.EXPRESS:
        return round_money(settings.express_shipping_rate)
    threshold = settings.free_shipping_threshold
    if threshold is not None and taxable_amount(subtotal, discount) >= threshold:
        return 0.0
    return round_money(settings.shipping_flat_rate)


def compute_total(subtotal: float, tax: float, shipping: float, discount: float) -> float:
    parts = [Decimal(str(v)) for v in (subtotal, tax, shipping)]
    return round_money(sum(parts, Decimal("0")) - Decimal(str(discount)))
