"""Applies Stripe webhook events to orders, stock, carts and subscriptions.

Stripe delivers at least once and in no particular order, so every handler
is idempotent and the event id is recorded in the same transaction as its
effects. Events that match no order or user are logged and acknowledged.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from ecommerce_admin.db.models import Order, ProcessedEvent, User, now_utc
from ecommerce_admin.db.session import commit_or_conflict
from ecommerce_admin.kafka.producer import emit
from ecommerce_admin.services.order_status import (
    mark_paid, mark_payment_canceled, mark_payment_failed, mark_refunded, order_event,
)
from ecommerce_admin.services.stripe_gateway import StripeGateway
from ecommerce_admin.store.cart_store import empty_cart, find_cart

logger = logging.getLogger(__name__)

Outcome = tuple[str, list[dict]]

def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None

def find_order(db: Session, intent_id: Optional[str], metadata: Optional[dict] = None) -> Optional[Order]:
    """Prefer the order id carried in the intent metadata, then the intent id."""
    order_id = _to_int((metadata or {}).get("order_id") or (metadata or {}).get("orderId"))
    if order_id is not None:
        order = db.get(Order, order_id)
        if order and order.payment_intent_id in (None, intent_id):
            return order
    if intent_id:
        return db.query(Order).filter(Order.payment_intent_id == intent_id).one_or_none()
    return None

def on_intent_succeeded(db: Session, pi: dict) -> Outcome:
    intent_id = pi.get("id")
    metadata = pi.get("metadata") or {}
    order = find_order(db, intent_id, metadata)
    if not order:
        logger.warning("No order found for payment intent %s", intent_id)
        return "no_order", []
    result = {
        "id": intent_id,
        "status": pi.get("status"),
        "amount": pi.get("amount_received", pi.get("amount")),
        "currency": pi.get("currency"),
        "update_time": now_utc().isoformat(),
        "email_address": pi.get("receipt_email") or metadata.get("email"),
    }
    if not mark_paid(db, order, intent_id, result):
        logger.info("Order %s already settled (%s), ignoring success for %s", order.id, order.payment_status.value, intent_id)
        return "already_settled", []
    cart = find_cart(db, order.user_id)
    if cart:
        empty_cart(cart)
    logger.info("Order %s paid via %s", order.id, intent_id)
    return "paid", [order_event("payment.succeeded", order, payment_intent_id=intent_id)]

def on_intent_failed(db: Session, pi: dict) -> Outcome:
    intent_id = pi.get("id")
    err = pi.get("last_payment_error") or {}
    logger.info("Payment failed for intent %s: %s", intent_id, err.get("message"))
    order = find_order(db, intent_id, pi.get("metadata"))
    if not order:
        logger.warning("No order found for payment intent %s", intent_id)
        return "no_order", []
    error = {"code": err.get("code"), "message": err.get("message"), "type": err.get("type")}
    if not mark_payment_failed(order, error):
        return "ignored", []
    return "payment_failed", [order_event("payment.failed", order, payment_intent_id=intent_id, error=error)]

def on_intent_canceled(db: Session, pi: dict) -> Outcome:
    intent_id = pi.get("id")
    order = find_order(db, intent_id, pi.get("metadata"))
    if not order:
        logger.warning("No order found for payment intent %s", intent_id)
        return "no_order", []
    previous = order.status
    if not mark_payment_canceled(order):
        return "ignored", []
    logger.info("Payment canceled for intent %s, order %s", intent_id, order.id)
    if order.status != previous:
        ev = order_event("order.status_changed", order, payment_intent_id=intent_id, previous_status=previous.value)
    else:
        ev = order_event("payment.canceled", order, payment_intent_id=intent_id)
    return "canceled", [ev]

def on_charge_succeeded(db: Session, charge: dict) -> Outcome:
    logger.info("Charge %s succeeded for %s %s", charge.get("id"), charge.get("amount"), charge.get("currency"))
    return "logged", []

def on_charge_refunded(db: Session, charge: dict) -> Outcome:
    intent_id = charge.get("payment_intent")
    order = find_order(db, intent_id)
    if not order:
        logger.warning("No order found for refunded charge %s (intent %s)", charge.get("id"), intent_id)
        return "no_order", []
    refunds = (charge.get("refunds") or {}).get("data") or []
    latest = refunds[0] if refunds else {}
    details = {
        "charge_id": charge.get("id"),
        "refund_id": latest.get("id"),
        "amount": latest.get("amount", charge.get("amount_refunded")),
        "reason": latest.get("reason"),
    }
    if charge.get("refunded") is False:
        # partial refund: keep the sale, remember the refund
        order.refund_details = details
        logger.info("Partial refund on charge %s for order %s", charge.get("id"), order.id)
        return "partial_refund", []
    if not mark_refunded(db, order, details):
        return "ignored", []
    logger.info("Order %s refunded (charge %s)", order.id, charge.get("id"))
    return "refunded", [order_event("payment.refunded", order, payment_intent_id=intent_id, refund=details)]

def on_subscription_event(event_type: str) -> Callable[[Session, dict], Outcome]:
    def _handle(db: Session, sub: dict) -> Outcome:
        metadata = sub.get("metadata") or {}
        user_id = _to_int(metadata.get("user_id") or metadata.get("userId"))
        user = db.get(User, user_id) if user_id is not None else None
        if not user:
            logger.warning("No user found for subscription %s", sub.get("id"))
            return "no_user", []
        items = (sub.get("items") or {}).get("data") or []
        period_end = sub.get("current_period_end")
        user.subscription_id = sub.get("id")
        user.stripe_customer_id = sub.get("customer") or user.stripe_customer_id
        user.subscription_status = sub.get("status")
        user.subscription_plan = ((items[0].get("price") or {}).get("id") if items else None) or "default"
        user.subscription_current_period_end = (
            datetime.fromtimestamp(period_end, timezone.utc).replace(tzinfo=None) if period_end else None
        )
        if event_type == "customer.subscription.deleted":
            user.subscription_status = "canceled"
            user.subscription_canceled_at = now_utc()
        logger.info("Subscription %s for user %s: %s", sub.get("id"), user.id, user.subscription_status)
        return "subscription_updated", []
    return _handle

HANDLERS: dict[str, Callable[[Session, dict], Outcome]] = {
    "payment_intent.succeeded": on_intent_succeeded,
    "payment_intent.payment_failed": on_intent_failed,
    "payment_intent.canceled": on_intent_canceled,
    "charge.succeeded": on_charge_succeeded,
    "charge.refunded": on_charge_refunded,
    "customer.subscription.created": on_subscription_event("customer.subscription.created"),
    "customer.subscription.updated": on_subscription_event("customer.subscription.updated"),
    "customer.subscription.deleted": on_subscription_event("customer.subscription.deleted"),
}

def process_event(db: Session, event: dict) -> dict:
    event_id = event.get("id")
    event_type = event.get("type", "")
    if event_id and db.get(ProcessedEvent, event_id):
        logger.info("Event %s (%s) already processed", event_id, event_type)
        return {"received": True, "outcome": "duplicate"}

    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled event type: %s", event_type)
        outcome, events = "unhandled", []
    else:
        obj = (event.get("data") or {}).get("object") or {}
        outcome, events = handler(db, obj)

    if event_id:
        db.add(ProcessedEvent(id=event_id, type=event_type))
    try:
        commit_or_conflict(db)
    except IntegrityError:
        # the same event committed concurrently
        db.rollback()
        logger.info("Event %s committed by a concurrent delivery", event_id)
        return {"received": True, "outcome": "duplicate"}

    for ev in events:
        emit(ev)
    return {"received": True, "outcome": outcome}

def handle_webhook(db: Session, gateway: StripeGateway, payload: bytes, sig_header: Optional[str]) -> dict:
    event = gateway.verify_event(payload, sig_header)
    logger.info("Received Stripe event %s (%s)", event.get("id"), event.get("type"))
    return process_event(db, event)
