"""Creates Stripe payment intents from the live cart.

The amount charged is always recomputed server side; the client's figure is
only used to detect a stale checkout page.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from sqlalchemy.orm import Session
from ecommerce_admin.core.config import settings
from ecommerce_admin.core.errors import (
    AmountMismatchError, AuthorizationError, InvalidStateError, NotFoundError, PaymentProviderError, ValidationError,
)
from ecommerce_admin.db.models import Order, PaymentMethod, PaymentStatus, User
from ecommerce_admin.db.session import commit_or_conflict
from ecommerce_admin.services.checkout import cart_lines, new_order, resolve_shipping_address, snapshot_lines, subtotal_cents
from ecommerce_admin.services.stripe_gateway import Refund, StripeGateway
from ecommerce_admin.store.cart_store import find_cart

logger = logging.getLogger(__name__)

REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")

@dataclass(frozen=True)
class Quote:
    subtotal_cents: int
    shipping_cents: int
    tax_cents: int

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.shipping_cents + self.tax_cents

@dataclass(frozen=True)
class IntentResult:
    client_secret: str
    intent_id: str
    order_id: int
    customer_id: str
    amount_cents: int
    currency: str
    created: int

def quote(subtotal: int) -> Quote:
    tax = (Decimal(subtotal) * Decimal(str(settings.TAX_RATE))).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return Quote(subtotal, settings.SHIPPING_FEE_CENTS, int(tax))

def ensure_customer(db: Session, gateway: StripeGateway, user: User) -> str:
    """Return the user's Stripe customer, creating and persisting one if needed."""
    if user.stripe_customer_id:
        existing = gateway.retrieve_customer(user.stripe_customer_id)
        if existing:
            return existing
    customer_id = gateway.create_customer(user.email, user.name or user.email, user.id)
    user.stripe_customer_id = customer_id
    # persisted on its own so a later failure does not orphan the customer
    commit_or_conflict(db)
    logger.info("Created Stripe customer %s for user %s", customer_id, user.id)
    return customer_id

def _check_amount(user: User, q: Quote, client_amount_cents: int):
    if abs(q.total_cents - client_amount_cents) > settings.AMOUNT_TOLERANCE_CENTS:
        logger.warning("Amount mismatch for user %s: server %s, client %s", user.id, q.total_cents, client_amount_cents)
        raise AmountMismatchError(q.total_cents, client_amount_cents)

def create_payment_intent(db: Session, gateway: StripeGateway, user: User, client_amount_cents: int,
                          currency: Optional[str] = None, metadata: Optional[dict] = None,
                          shipping_address: Optional[dict] = None) -> IntentResult:
    if client_amount_cents is None or client_amount_cents <= 0:
        raise ValidationError("Valid amount is required")
    cart = find_cart(db, user.id)
    lines = cart_lines(cart)
    _check_amount(user, quote(subtotal_cents(snapshot_lines(db, lines, lock=False))), client_amount_cents)
    address = resolve_shipping_address(shipping_address, user)
    currency = (currency or settings.DEFAULT_CURRENCY).upper()

    # may commit, so it runs before any product row is locked
    customer_id = ensure_customer(db, gateway, user)

    snaps = snapshot_lines(db, lines)
    q = quote(subtotal_cents(snaps))
    _check_amount(user, q, client_amount_cents)

    order = new_order(user, snaps, address, PaymentMethod.CARD, currency,
                      shipping_cents=q.shipping_cents, tax_cents=q.tax_cents)
    db.add(order)
    db.flush()  # order id goes into the intent metadata

    meta = dict(metadata or {})
    meta.update({"user_id": user.id, "order_id": order.id, "cart_id": cart.id})
    try:
        intent = gateway.create_payment_intent(
            q.total_cents, currency, customer_id, meta,
            description=f"Payment for order from {user.email}",
            shipping={
                "name": user.name or user.email,
                "address": {
                    "line1": address["street"],
                    "city": address["city"],
                    "postal_code": address["postal_code"],
                    "country": address["country"],
                },
            },
        )
    except PaymentProviderError:
        db.rollback()
        raise
    order.payment_intent_id = intent.id
    commit_or_conflict(db)

    logger.info("Payment intent %s created for order %s (%s %s)", intent.id, order.id, q.total_cents, currency)
    return IntentResult(
        client_secret=intent.client_secret,
        intent_id=intent.id,
        order_id=order.id,
        customer_id=customer_id,
        amount_cents=q.total_cents,
        currency=currency,
        created=intent.created,
    )

def get_payment_intent_status(db: Session, gateway: StripeGateway, user: User, intent_id: str) -> dict:
    order = (
        db.query(Order)
        .filter(Order.payment_intent_id == intent_id, Order.user_id == user.id)
        .one_or_none()
    )
    if not order:
        raise NotFoundError("Payment intent not found")
    intent = gateway.retrieve_payment_intent(intent_id)
    return {
        "status": intent.status,
        "amount_cents": intent.amount,
        "currency": intent.currency,
        "created": intent.created,
        "order_id": order.id,
        "order_status": order.status.value,
        "payment_status": order.payment_status.value,
    }

def create_refund(db: Session, gateway: StripeGateway, actor: User, intent_id: str,
                  amount_cents: Optional[int] = None, reason: Optional[str] = None) -> Refund:
    """Ask Stripe for a refund; stock and status follow via the charge.refunded webhook."""
    if not actor.is_admin:
        raise AuthorizationError("Only admins can issue refunds")
    reason = reason or "requested_by_customer"
    if reason not in REFUND_REASONS:
        raise ValidationError(f"Refund reason must be one of {', '.join(REFUND_REASONS)}")
    order = db.query(Order).filter(Order.payment_intent_id == intent_id).one_or_none()
    if not order:
        raise NotFoundError("Payment intent not found")
    if order.payment_status != PaymentStatus.PAID:
        raise InvalidStateError(f"Cannot refund an order whose payment is {order.payment_status.value}")
    if amount_cents is not None and not 0 < amount_cents <= order.amount_due_cents:
        raise ValidationError("Refund amount must be positive and at most the amount paid")
    refund = gateway.create_refund(intent_id, amount_cents, reason)
    logger.info("Refund %s requested for order %s by user %s", refund.id, order.id, actor.id)
    return refund
