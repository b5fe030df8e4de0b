"""
Payment Reconciliation: applies payment-provider webhook events to local orders.

Events are delivered at least once and in any order relative to each other and to
order creation. Every handler is idempotent: provider event ids are recorded so a
redelivery is acknowledged without reprocessing, and each state change is guarded
by the order's current payment status.

Authenticity is checked before anything is parsed. The signature header follows the
widely used `t=<unix seconds>,v1=<hex>` layout where the digest is
HMAC-SHA256(secret, "<t>.<raw body>").
"""
import hashlib
import hmac
import json
import logging
import time
from typing import Optional, Dict, Any

from pydantic import ValidationError

from errors import InvalidPaymentEvent, OrderCoreError, SignatureVerificationError
from lifecycle import OrderLifecycle
from pricing import round_money
from repositories import OrderRepository, PaymentEventRepository, to_object_id
from schemas import PaymentEvent

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
CHARGE_REFUNDED = "charge_refunded"

STRIPE_EVENT_TYPES = {
    "payment_intent.succeeded": PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": PAYMENT_FAILED,
    "charge.refunded": CHARGE_REFUNDED,
}


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def signature_header(secret: str, payload: bytes, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(secret, timestamp, payload)}"


def verify_signature(payload: bytes, header: Optional[str], secret: str, tolerance: int = 300,
                     now: Optional[float] = None) -> None:
    """Raise SignatureVerificationError unless `header` signs `payload` with `secret`."""
    if not header:
        raise SignatureVerificationError("missing signature header")
    timestamp = None
    candidates = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureVerificationError("malformed timestamp")
        elif key == "v1":
            candidates.append(value)
    if timestamp is None or not candidates:
        raise SignatureVerificationError("malformed signature header")

    now = time.time() if now is None else now
    if tolerance and abs(now - timestamp) > tolerance:
        raise SignatureVerificationError("timestamp outside the tolerance window")

    expected = compute_signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected, c) for c in candidates):
        raise SignatureVerificationError("no matching signature")


def parse_event(body: Dict[str, Any]) -> PaymentEvent:
    """
    Normalise a webhook body.

    Accepts the flat shape {"id", "type", "data": {"order_id", "payment_id", "amount",
    "error_message"}} and Stripe-style events whose `data.object` is a PaymentIntent
    or Charge with the order id in `metadata.orderId` and amounts in minor units.
    """
    event_type = body.get("type", "")
    data = body.get("data") or {}
    if event_type in STRIPE_EVENT_TYPES:
        obj = data.get("object") or {}
        metadata = obj.get("metadata") or {}
        kind = STRIPE_EVENT_TYPES[event_type]
        if kind == CHARGE_REFUNDED:
            amount = obj.get("amount_refunded")
            return PaymentEvent(
                id=body.get("id"),
                type=kind,
                order_id=metadata.get("orderId"),
                payment_id=obj.get("payment_intent"),
                amount=amount / 100 if amount is not None else None,
                amount_is_cumulative=True,
            )
        error = obj.get("last_payment_error") or {}
        return PaymentEvent(
            id=body.get("id"),
            type=kind,
            order_id=metadata.get("orderId"),
            payment_id=obj.get("id"),
            error_message=error.get("message"),
        )
    return PaymentEvent(
        id=body.get("id"),
        type=event_type,
        order_id=data.get("order_id"),
        payment_id=data.get("payment_id"),
        amount=data.get("amount"),
        error_message=data.get("error_message"),
    )


class PaymentReconciler:
    def __init__(self, orders: OrderRepository, lifecycle: OrderLifecycle, events: PaymentEventRepository,
                 secret: str, tolerance: int = 300):
        self.orders = orders
        self.lifecycle = lifecycle
        self.events = events
        self.secret = secret
        self.tolerance = tolerance

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify, decode and dispatch one webhook delivery."""
        verify_signature(payload, signature, self.secret, self.tolerance)
        try:
            body = json.loads(payload)
        except ValueError as e:
            raise InvalidPaymentEvent(f"body is not JSON ({e})")
        if not isinstance(body, dict):
            raise InvalidPaymentEvent("body must be a JSON object")
        try:
            event = parse_event(body)
        except ValidationError as e:
            raise InvalidPaymentEvent(str(e))
        return self.dispatch(event)

    def dispatch(self, event: PaymentEvent) -> Dict[str, Any]:
        handlers = {
            PAYMENT_SUCCEEDED: lambda: self.on_payment_succeeded(event.order_id, event.payment_id),
            PAYMENT_FAILED: lambda: self.on_payment_failed(event.order_id, event.error_message),
            CHARGE_REFUNDED: lambda: self.on_charge_refunded(event.payment_id, event.amount, event.amount_is_cumulative),
        }
        handler = handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled payment event type: %s", event.type)
            return {"received": True, "handled": False}

        if event.id and not self.events.record(event.id, event.type):
            logger.info("Payment event %s already processed", event.id)
            return {"received": True, "handled": False, "duplicate": True}
        try:
            handled = handler()
        except Exception:
            # let the provider redeliver
            if event.id:
                self.events.forget(event.id)
            raise
        return {"received": True, "handled": handled}

    def on_payment_succeeded(self, order_id: Optional[str], provider_payment_id: Optional[str]) -> bool:
        if not self._known(order_id):
            logger.warning("Payment success for unknown order %s dropped", order_id)
            return False
        order = self.lifecycle.confirm_payment(order_id, provider_payment_id)
        return order is not None

    def on_payment_failed(self, order_id: Optional[str], error_message: Optional[str]) -> bool:
        if not self._known(order_id):
            logger.warning("Payment failure for unknown order %s dropped", order_id)
            return False
        order = self.lifecycle.fail_payment(order_id, error_message)
        return order is not None

    def on_charge_refunded(self, provider_payment_id: Optional[str], amount: Optional[float],
                           cumulative: bool = False) -> bool:
        order = self.orders.get_by_payment_id(provider_payment_id) if provider_payment_id else None
        if order is None:
            logger.warning("Refund for unknown payment %s dropped", provider_payment_id)
            return False
        if amount is None:
            # no amount means the whole remaining balance
            amount = round_money(order.total - (order.refund_amount or 0))
        elif cumulative:
            # provider reports the running total refunded on the charge
            amount = amount - (order.refund_amount or 0)
        amount = round_money(amount)
        if amount <= 0:
            logger.info("Refund event for %s carries nothing to refund", order.order_number)
            return False
        try:
            self.lifecycle.process_refund(order.id, amount, "Refunded by payment provider")
        except OrderCoreError as e:
            # the provider already moved the money; an admin has to look at it
            logger.error("Refund of %.2f for %s could not be recorded: %s", amount, order.order_number, e)
            return False
        return True

    def _known(self, order_id: Optional[str]) -> bool:
        if not order_id or to_object_id(order_id) is None:
            return False
        return self.orders.get(order_id) is not None
