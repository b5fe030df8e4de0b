"""Exceptions raised by the order transaction core."""


class OrderCoreError(Exception):
    """Base exception for all order core errors."""

    pass


# User-correctable

class OutOfStock(OrderCoreError):
    """Raised when a SKU cannot cover the requested quantity."""

    def __init__(self, sku: str, requested: int | None = None):
        self.sku = sku
        self.requested = requested
        super().__init__(f"Insufficient stock for SKU {sku}")


class ProductUnavailable(OrderCoreError):
    """Raised when a cart line references a missing or inactive product."""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found or inactive")


class CouponNotFound(OrderCoreError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Invalid coupon code: {code}")


class CouponNotApplicable(OrderCoreError):
    """Raised when a known coupon cannot be applied (expired, exhausted, below minimum)."""

    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(f"Coupon {code} cannot be applied: {reason}")


class CouponRejected(OrderCoreError):
    """Raised by the order builder when the requested coupon was refused."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class InvalidCoupon(OrderCoreError):
    """Raised when a coupon definition itself is malformed or duplicated."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class InvalidAddress(OrderCoreError):
    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Invalid address: {field} is required")


class RefundExceedsTotal(OrderCoreError):
    def __init__(self, requested: float, remaining: float):
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Refund amount {requested:.2f} exceeds the refundable balance {remaining:.2f}"
        )


class RefundNotAllowed(OrderCoreError):
    def __init__(self, payment_status: str):
        self.payment_status = payment_status
        super().__init__(f"Order payment status '{payment_status}' does not allow refund")


class InvalidTransition(OrderCoreError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move order from '{current}' to '{requested}'")


class CancellationNotAllowed(OrderCoreError):
    def __init__(self, status: str, reason: str | None = None):
        self.status = status
        msg = f"Cannot cancel order with status: {status}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class OrderNotFound(OrderCoreError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class CheckoutInProgress(OrderCoreError):
    """Raised when the same cart is submitted while an earlier submission is still building."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Checkout {key} is already being processed")


# Transient

class ConcurrentModification(OrderCoreError):
    """Raised when an order keeps changing underneath an update."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} was modified concurrently, retry the request")


# Security

class SignatureVerificationError(OrderCoreError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Webhook signature verification failed: {reason}")


class InvalidPaymentEvent(OrderCoreError):
    """Raised when a correctly signed webhook body cannot be understood."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid payment event: {reason}")
