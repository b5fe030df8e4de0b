"""
Customer notifications for order events.

Delivery (templates, SMTP) belongs to the notification service. The core only hands
over the order and never lets a failed notification affect the state change that
triggered it.
"""
import logging
from typing import Optional, Protocol, Dict, Any

from schemas import Order

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send_order_confirmation(self, order: Order) -> None: ...

    def send_order_status_update(self, order: Order, status: str, tracking: Optional[Dict[str, Any]] = None) -> None: ...


class LogNotifier:
    """Default notifier: records what would be sent."""

    def send_order_confirmation(self, order: Order) -> None:
        logger.info("Order confirmation for %s queued (customer %s, total %.2f)",
                    order.order_number, order.customer_id, order.total)

    def send_order_status_update(self, order: Order, status: str, tracking: Optional[Dict[str, Any]] = None) -> None:
        logger.info("Status update for %s queued: %s%s", order.order_number, status,
                    f" (tracking {tracking['tracking_number']})" if tracking else "")


def tracking_of(order: Order) -> Optional[Dict[str, Any]]:
    if not order.tracking_number:
        return None
    return {
        "tracking_number": order.tracking_number,
        "courier_name": order.courier_name,
        "tracking_url": order.tracking_url,
    }


def notify_confirmation(notifier: Notifier, order: Order) -> bool:
    try:
        notifier.send_order_confirmation(order)
        return True
    except Exception:
        logger.exception("Failed to send order confirmation for %s", order.order_number)
        return False


def notify_status(notifier: Notifier, order: Order) -> bool:
    try:
        notifier.send_order_status_update(order, order.order_status, tracking_of(order))
        return True
    except Exception:
        logger.exception("Failed to send status update for %s", order.order_number)
        return False
