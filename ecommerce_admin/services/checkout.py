"""Turns a cart (or an explicit item list) into an immutable order.

Prices and names are copied onto the order lines at conversion time, so
later catalog edits never rewrite order history.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from sqlalchemy.orm import Session
from ecommerce_admin.core.config import settings
from ecommerce_admin.core.errors import EmptyCartError, StockError, ValidationError
from ecommerce_admin.db.models import Cart, Order, OrderItem, OrderStatus, PaymentMethod, PaymentStatus, Product, User
from ecommerce_admin.db.session import commit_or_conflict
from ecommerce_admin.kafka.producer import emit
from ecommerce_admin.services.order_status import order_event, record_history
from ecommerce_admin.store.cart_store import empty_cart, find_cart

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("street", "city", "country", "postal_code")

@dataclass(frozen=True)
class LineSnapshot:
    product_id: int
    name: str
    unit_price_cents: int
    qty: int
    image: Optional[str] = None

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.qty

def resolve_shipping_address(address: Optional[dict], user: User) -> dict:
    """Use the given address, or the user's saved one; every field is required."""
    source = address if address else {f: getattr(user, f) for f in ADDRESS_FIELDS}
    missing = [f for f in ADDRESS_FIELDS if not str(source.get(f) or "").strip()]
    if missing:
        raise ValidationError(f"Shipping address is missing: {', '.join(missing)}")
    return {f: str(source[f]).strip() for f in ADDRESS_FIELDS}

def cart_lines(cart: Optional[Cart]) -> list[tuple[int, int]]:
    if not cart or not cart.items:
        raise EmptyCartError()
    return [(it.product_id, it.qty) for it in cart.items]

def _merge(lines: Iterable[tuple[int, int]]) -> dict[int, int]:
    merged: dict[int, int] = {}
    for product_id, qty in lines:
        if product_id is None:
            raise ValidationError("Every item needs a product reference")
        if qty is None or qty < 1:
            raise ValidationError(f"Quantity for product {product_id} must be at least 1")
        merged[product_id] = merged.get(product_id, 0) + qty
    return merged

def snapshot_lines(db: Session, lines: Iterable[tuple[int, int]], lock: bool = True) -> list[LineSnapshot]:
    """Validate every line against the live product and freeze it.

    With ``lock`` the products are read with a row lock so the stock check
    holds until commit. All lines are checked before anything is written.
    """
    merged = _merge(lines)
    if not merged:
        raise EmptyCartError()
    snaps = []
    for product_id, qty in merged.items():
        q = db.query(Product).filter(Product.id == product_id)
        if lock:
            q = q.with_for_update().populate_existing()
        product = q.one_or_none()
        if not product or not product.active:
            raise ValidationError(f"Product {product_id} not found")
        if not (product.name or "").strip():
            raise ValidationError(f"Product {product_id} has no name")
        if product.price_cents is None or product.price_cents <= 0:
            raise ValidationError(f"Product {product_id} has no valid price")
        if qty > (product.stock or 0):
            raise StockError(f"Insufficient stock for {product.name}: {product.stock} available, {qty} requested")
        snaps.append(LineSnapshot(product.id, product.name, product.price_cents, qty, product.image))
    return snaps

def subtotal_cents(snaps: Iterable[LineSnapshot]) -> int:
    return sum(s.line_total_cents for s in snaps)

def new_order(user: User, snaps: list[LineSnapshot], address: dict,
              payment_method: PaymentMethod = PaymentMethod.COD,
              currency: Optional[str] = None, shipping_cents: int = 0, tax_cents: int = 0) -> Order:
    order = Order(
        user_id=user.id,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
        payment_method=PaymentMethod(payment_method),
        total_cents=subtotal_cents(snaps),
        shipping_cents=shipping_cents,
        tax_cents=tax_cents,
        currency=(currency or settings.DEFAULT_CURRENCY).upper(),
        shipping_street=address["street"],
        shipping_city=address["city"],
        shipping_country=address["country"],
        shipping_postal_code=address["postal_code"],
        stock_committed=False,
    )
    for s in snaps:
        order.items.append(OrderItem(
            product_id=s.product_id,
            qty=s.qty,
            unit_price_cents=s.unit_price_cents,
            name_snapshot=s.name,
            image_snapshot=s.image,
        ))
    record_history(order, user.id, "Order created")
    return order

def create_order_from_cart(db: Session, user: User, shipping_address: Optional[dict] = None,
                           payment_method: PaymentMethod = PaymentMethod.COD,
                           items: Optional[list[tuple[int, int]]] = None) -> Order:
    cart = None
    if items:
        lines = items
    else:
        cart = find_cart(db, user.id)
        lines = cart_lines(cart)
    address = resolve_shipping_address(shipping_address, user)
    snaps = snapshot_lines(db, lines)

    order = new_order(user, snaps, address, payment_method)
    db.add(order)
    if cart is not None:
        empty_cart(cart)
    commit_or_conflict(db)

    logger.info("Order %s created for user %s, total %s %s", order.id, user.id, order.total_cents, order.currency)
    emit(order_event("order.created", order, user_email=user.email))
    return order
