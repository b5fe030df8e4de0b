"""
Order Lifecycle State Machine.

The module-level functions are the transitions: each takes an Order, checks the move
is one of the allowed edges and returns a new, re-validated Order, or raises. They
never touch storage. OrderLifecycle loads, applies one transition, writes back with
an optimistic version check (retrying on conflict) and then runs the side effects:
stock release and customer notification.

    pending -> confirmed -> processing -> shipped -> delivered -> returned
       |           |            |
       +-----------+------------+--> cancelled
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from errors import (
    CancellationNotAllowed,
    ConcurrentModification,
    InvalidTransition,
    OrderNotFound,
    RefundExceedsTotal,
    RefundNotAllowed,
)
from inventory import InventoryLedger, lines_of
from notifications import Notifier, notify_confirmation, notify_status
from pricing import round_money
from repositories import OrderRepository
from schemas import Order, OrderStatus, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

SAVE_ATTEMPTS = 3

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.RETURNED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.RETURNED: set(),
}

# a customer may only withdraw an order nobody has started on
CUSTOMER_CANCELLABLE = {OrderStatus.PENDING}
ADMIN_CANCELLABLE = {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}

REFUNDABLE = {PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED}
UNSHIPPED = {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.CANCELLED}


def evolve(order: Order, **changes) -> Order:
    return Order.model_validate({**order.model_dump(), **changes})


def append_note(existing: Optional[str], line: str) -> str:
    return f"{existing}\n{line}" if existing else line


def can_transition(current: str, new: str) -> bool:
    return OrderStatus(new) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def update_status(order: Order, new_status: str, now: Optional[datetime] = None) -> Order:
    try:
        target = OrderStatus(new_status)
    except ValueError:
        raise InvalidTransition(order.order_status, str(new_status))
    if not can_transition(order.order_status, target):
        raise InvalidTransition(order.order_status, target.value)
    changes = {"order_status": target}
    now = now or utcnow()
    if target is OrderStatus.DELIVERED:
        changes["delivered_at"] = now
    elif target is OrderStatus.CANCELLED:
        changes["cancelled_at"] = now
    return evolve(order, **changes)


def add_tracking(order: Order, tracking_number: str, courier_name: str, tracking_url: Optional[str] = None,
                 estimated_delivery: Optional[datetime] = None) -> Order:
    """Record shipment details and force the order into `shipped`."""
    if order.order_status != OrderStatus.SHIPPED and not can_transition(order.order_status, OrderStatus.SHIPPED):
        raise InvalidTransition(order.order_status, OrderStatus.SHIPPED.value)
    changes = {
        "tracking_number": tracking_number,
        "courier_name": courier_name,
        "order_status": OrderStatus.SHIPPED,
    }
    if tracking_url:
        changes["tracking_url"] = tracking_url
    if estimated_delivery:
        changes["estimated_delivery"] = estimated_delivery
    return evolve(order, **changes)


def cancel(order: Order, by_admin: bool = False, reason: Optional[str] = None, now: Optional[datetime] = None) -> Order:
    allowed = ADMIN_CANCELLABLE if by_admin else CUSTOMER_CANCELLABLE
    if OrderStatus(order.order_status) not in allowed:
        raise CancellationNotAllowed(order.order_status, None if by_admin else "only pending orders can be cancelled")
    cancelled = update_status(order, OrderStatus.CANCELLED, now)
    if reason:
        cancelled = evolve(cancelled, notes=append_note(order.notes, f"Cancellation reason: {reason}"))
    return cancelled


def process_refund(order: Order, amount: float, reason: str, now: Optional[datetime] = None) -> Order:
    """
    Add `amount` to the cumulative refund.

    The payment becomes `refunded` once refunds cover the total, `partially_refunded`
    before that. Order status is left alone; a return is a separate admin decision.
    """
    if PaymentStatus(order.payment_status) not in REFUNDABLE:
        raise RefundNotAllowed(order.payment_status)
    # refunds are recorded in whole cents
    amount = round_money(amount)
    if amount <= 0:
        raise ValueError("Refund amount must be at least one cent")
    already = Decimal(str(round_money(order.refund_amount or 0)))
    total = Decimal(str(round_money(order.total)))
    after = already + Decimal(str(amount))
    if after > total:
        raise RefundExceedsTotal(amount, float(total - already))
    status = PaymentStatus.REFUNDED if after >= total else PaymentStatus.PARTIALLY_REFUNDED
    return evolve(
        order,
        refund_amount=float(after),
        refund_reason=reason,
        refunded_at=now or utcnow(),
        payment_status=status,
    )


def mark_paid(order: Order, payment_id: Optional[str]) -> Order:
    """
    Apply a successful payment. Pending orders advance to confirmed; any later status
    is left where it is.
    """
    changes = {"payment_status": PaymentStatus.PAID}
    if payment_id:
        changes["payment_id"] = payment_id
    if order.order_status == OrderStatus.PENDING:
        changes["order_status"] = OrderStatus.CONFIRMED
    return evolve(order, **changes)


def mark_payment_failed(order: Order, error_message: Optional[str]) -> Order:
    return evolve(
        order,
        payment_status=PaymentStatus.FAILED,
        notes=append_note(order.notes, f"Payment failed: {error_message or 'Unknown error'}"),
    )


def add_admin_note(order: Order, note: str) -> Order:
    return evolve(order, admin_notes=append_note(order.admin_notes, note))


def needs_stock_release(before: Order, after: Order) -> bool:
    if after.stock_released:
        return False
    if after.order_status == OrderStatus.CANCELLED and before.order_status != OrderStatus.CANCELLED:
        return True
    # fully refunded before anything left the warehouse
    return (
        after.payment_status == PaymentStatus.REFUNDED
        and before.payment_status != PaymentStatus.REFUNDED
        and OrderStatus(after.order_status) in UNSHIPPED
    )


class OrderLifecycle:
    def __init__(self, orders: OrderRepository, ledger: InventoryLedger, notifier: Notifier):
        self.orders = orders
        self.ledger = ledger
        self.notifier = notifier

    def get(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def _apply(self, order_id: str, transition: Callable[[Order], Optional[Order]]):
        """
        Run `transition` against the latest stored order until the write lands.

        A transition returning None means there is nothing to change; the order is
        returned as stored paired with None.
        """
        for _ in range(SAVE_ATTEMPTS):
            before = self.get(order_id)
            after = transition(before)
            if after is None:
                return before, None
            release = needs_stock_release(before, after)
            if release:
                after = evolve(after, stock_released=True)
            saved = self.orders.save(after)
            if saved is None:
                logger.info("Order %s changed during update, retrying", before.order_number)
                continue
            if release:
                self.ledger.release_all(lines_of(saved.items))
                logger.info("Stock released for order %s", saved.order_number)
            return before, saved
        raise ConcurrentModification(order_id)

    def update_status(self, order_id: str, new_status: str) -> Order:
        before, order = self._apply(order_id, lambda o: update_status(o, new_status))
        logger.info("Order %s moved %s -> %s", order.order_number, before.order_status, order.order_status)
        notify_status(self.notifier, order)
        return order

    def add_tracking(self, order_id: str, tracking_number: str, courier_name: str,
                     tracking_url: Optional[str] = None, estimated_delivery: Optional[datetime] = None) -> Order:
        _, order = self._apply(
            order_id,
            lambda o: add_tracking(o, tracking_number, courier_name, tracking_url, estimated_delivery),
        )
        logger.info("Order %s shipped via %s (%s)", order.order_number, courier_name, tracking_number)
        notify_status(self.notifier, order)
        return order

    def cancel(self, order_id: str, by_admin: bool = False, reason: Optional[str] = None) -> Order:
        _, order = self._apply(order_id, lambda o: cancel(o, by_admin=by_admin, reason=reason))
        logger.info("Order %s cancelled by %s", order.order_number, "admin" if by_admin else "customer")
        notify_status(self.notifier, order)
        return order

    def process_refund(self, order_id: str, amount: float, reason: str) -> Order:
        _, order = self._apply(order_id, lambda o: process_refund(o, amount, reason))
        logger.info("Refund of %.2f recorded for %s (cumulative %.2f, %s)",
                    amount, order.order_number, order.refund_amount, order.payment_status)
        return order

    def add_admin_note(self, order_id: str, note: str) -> Order:
        _, order = self._apply(order_id, lambda o: add_admin_note(o, note))
        return order

    def confirm_payment(self, order_id: str, payment_id: Optional[str]) -> Optional[Order]:
        """
        Apply a payment success. Returns the updated order, or None when the order was
        already paid (or refunded since), so a repeated event changes nothing.
        """
        def transition(o: Order) -> Optional[Order]:
            if o.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                return None
            return mark_paid(o, payment_id)

        before, order = self._apply(order_id, transition)
        if order is None:
            return None
        logger.info("Payment %s applied to order %s", payment_id, order.order_number)
        if before.order_status != order.order_status:
            notify_confirmation(self.notifier, order)
        elif order.order_status == OrderStatus.CANCELLED:
            logger.warning("Payment %s captured for cancelled order %s", payment_id, order.order_number)
        return order

    def fail_payment(self, order_id: str, error_message: Optional[str]) -> Optional[Order]:
        """Record a failed payment attempt. The order stays pending and keeps its stock."""
        def transition(o: Order) -> Optional[Order]:
            if o.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                return None
            return mark_payment_failed(o, error_message)

        _, order = self._apply(order_id, transition)
        if order is not None:
            logger.info("Payment failed for order %s", order.order_number)
        return order
