
import logging
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from ecommerce_admin.core.errors import NotFoundError, StockError, ValidationError
from ecommerce_admin.db.models import Cart, CartItem, Product, User, now_utc
from ecommerce_admin.db.session import commit_or_conflict

logger = logging.getLogger(__name__)

def find_cart(db: Session, user_id: int) -> Cart | None:
    return db.query(Cart).filter(Cart.user_id == user_id).one_or_none()

def get_or_create_cart(db: Session, user_id: int) -> Cart:
    cart = find_cart(db, user_id)
    if cart:
        return cart
    cart = Cart(user_id=user_id, total_cents=0)
    db.add(cart)
    try:
        db.flush()
    except IntegrityError:
        # another request created it first
        db.rollback()
        cart = find_cart(db, user_id)
    return cart

def compute_total(cart: Cart) -> int:
    """Sum of live product price x quantity; lines whose product is gone count as 0."""
    return sum(it.product.price_cents * it.qty for it in cart.items if it.product is not None)

def touch(cart: Cart):
    cart.total_cents = compute_total(cart)
    # always dirties the row so the version column moves on every mutation
    cart.updated_at = now_utc()

def empty_cart(cart: Cart):
    """Clear lines without committing; the caller owns the transaction."""
    cart.items.clear()
    cart.total_cents = 0
    cart.updated_at = now_utc()

def _line(cart: Cart, product_id: int) -> CartItem | None:
    return next((it for it in cart.items if it.product_id == product_id), None)

def _product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product or not product.active:
        raise NotFoundError("Product not found")
    return product

def get_cart(db: Session, user: User) -> Cart:
    cart = get_or_create_cart(db, user.id)
    total = compute_total(cart)
    if total != cart.total_cents:
        cart.total_cents = total
    commit_or_conflict(db)
    return cart

def put_item(db: Session, user: User, product_id: int, qty: int) -> Cart:
    if qty < 1:
        raise ValidationError("Quantity must be greater than 0")
    product = _product(db, product_id)
    cart = get_or_create_cart(db, user.id)
    existing = _line(cart, product_id)
    new_qty = qty + (existing.qty if existing else 0)
    if new_qty > product.stock:
        if existing:
            raise StockError(f"Cannot add more items. Total would exceed available stock of {product.stock}")
        raise StockError(f"Only {product.stock} items available in stock")
    if existing:
        existing.qty = new_qty
    else:
        cart.items.append(CartItem(product=product, product_id=product.id, qty=qty))
    touch(cart)
    commit_or_conflict(db)
    return cart

def set_item_qty(db: Session, user: User, product_id: int, qty: int) -> Cart:
    if qty < 0:
        raise ValidationError("Quantity cannot be negative")
    product = _product(db, product_id)
    cart = find_cart(db, user.id)
    if not cart:
        raise NotFoundError("Cart not found")
    existing = _line(cart, product_id)
    if not existing:
        raise NotFoundError("Item not found in cart")
    if qty == 0:
        cart.items.remove(existing)
    else:
        if qty > product.stock:
            raise StockError(f"Only {product.stock} items available in stock")
        existing.qty = qty
    touch(cart)
    commit_or_conflict(db)
    return cart

def delete_item(db: Session, user: User, product_id: int) -> Cart:
    cart = find_cart(db, user.id)
    if not cart:
        raise NotFoundError("Cart not found")
    existing = _line(cart, product_id)
    if not existing:
        raise NotFoundError("Item not found in cart")
    cart.items.remove(existing)
    touch(cart)
    commit_or_conflict(db)
    return cart

def clear_cart(db: Session, user: User) -> Cart:
    cart = find_cart(db, user.id)
    if not cart:
        raise NotFoundError("Cart not found")
    empty_cart(cart)
    commit_or_conflict(db)
    logger.info("Cleared cart for user %s", user.id)
    return cart
