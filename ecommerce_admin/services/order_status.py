"""Order lifecycle.

Fulfilment and payment are tracked as two separate fields:

    status          pending -> processing -> shipped -> delivered
                    pending -> cancelled
    payment_status  unpaid -> paid | failed, failed -> paid, paid -> refunded

Only admins write fulfilment status. Payment transitions are driven by the
webhook reconciler and are no-ops when replayed.
"""
import logging, math
from datetime import datetime
from typing import Optional
from sqlalchemy import func, update
from sqlalchemy.orm import Session
from ecommerce_admin.core.errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from ecommerce_admin.db.models import Order, OrderStatus, OrderStatusHistory, PaymentStatus, Product, User, now_utc
from ecommerce_admin.db.session import commit_or_conflict
from ecommerce_admin.kafka.producer import emit

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise ValidationError(f"Valid status is required ({allowed})")

def parse_payment_status(value) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in PaymentStatus)
        raise ValidationError(f"Valid payment status is required ({allowed})")

def record_history(order: Order, actor_id: Optional[int], note: str = ""):
    order.history.append(OrderStatusHistory(
        status=order.status,
        payment_status=order.payment_status,
        updated_by=actor_id,
        note=note,
        created_at=now_utc(),
    ))

def order_event(event_type: str, order: Order, **extra) -> dict:
    ev = {
        "type": event_type,
        "order_id": order.id,
        "user_id": order.user_id,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "amount_cents": order.total_cents,
        "currency": order.currency,
        "items": [
            {"product_id": it.product_id, "qty": it.qty, "unit_price_cents": it.unit_price_cents}
            for it in order.items
        ],
    }
    ev.update(extra)
    return ev

# --- reads ---

def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order

def get_order_for(db: Session, order_id: int, actor: User) -> Order:
    order = get_order(db, order_id)
    if order.user_id != actor.id and not actor.is_admin:
        raise AuthorizationError("Not authorized to view this order")
    return order

def list_user_orders(db: Session, user: User) -> list[Order]:
    return (
        db.query(Order)
        .filter(Order.user_id == user.id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )

def list_orders_admin(db: Session, page: int = 1, limit: int = 10, status: Optional[str] = None,
                      payment_status: Optional[str] = None, start_date: Optional[datetime] = None,
                      end_date: Optional[datetime] = None, sort_order: str = "desc") -> dict:
    page = max(1, page)
    limit = max(1, min(limit, 100))
    q = db.query(Order)
    if status and status != "all":
        q = q.filter(Order.status == parse_status(status))
    if payment_status and payment_status != "all":
        q = q.filter(Order.payment_status == parse_payment_status(payment_status))
    if start_date:
        q = q.filter(Order.created_at >= start_date)
    if end_date:
        q = q.filter(Order.created_at <= end_date)

    total = q.count()
    if sort_order == "asc":
        q = q.order_by(Order.created_at.asc(), Order.id.asc())
    else:
        q = q.order_by(Order.created_at.desc(), Order.id.desc())
    orders = q.offset((page - 1) * limit).limit(limit).all()

    counts = dict(db.query(Order.status, func.count(Order.id)).group_by(Order.status).all())
    summary = {"total_orders": sum(counts.values())}
    summary.update({s.value: counts.get(s, 0) for s in OrderStatus})
    return {
        "orders": orders,
        "total": total,
        "total_pages": math.ceil(total / limit) if total else 0,
        "current_page": page,
        "summary": summary,
    }

# --- fulfilment writes ---

def update_status(db: Session, order_id: int, requested_status, actor: User) -> Order:
    if not actor.is_admin:
        raise AuthorizationError("Only admins can change order status")
    new_status = parse_status(requested_status)
    order = get_order(db, order_id)
    if new_status not in TRANSITIONS[order.status]:
        raise InvalidStateError(f"Cannot change order status from {order.status.value} to {new_status.value}")
    previous = order.status
    order.status = new_status
    record_history(order, actor.id, f"Status changed from {previous.value}")
    commit_or_conflict(db)
    logger.info("Order %s moved %s -> %s by user %s", order.id, previous.value, new_status.value, actor.id)
    emit(order_event("order.status_changed", order, previous_status=previous.value))
    return order

def delete_order(db: Session, order_id: int, actor: User):
    order = get_order(db, order_id)
    if order.user_id != actor.id and not actor.is_admin:
        raise AuthorizationError("Not authorized to delete this order")
    if order.status != OrderStatus.PENDING:
        raise InvalidStateError("Cannot delete order with status other than pending")
    db.delete(order)
    commit_or_conflict(db)
    logger.info("Order %s deleted by user %s", order_id, actor.id)

# --- payment writes (no commit; the caller owns the transaction) ---

def take_stock(db: Session, order: Order) -> list[int]:
    """Decrement stock for every line that still has enough; return the product ids that did not."""
    short = []
    for it in order.items:
        res = db.execute(
            update(Product)
            .where(Product.id == it.product_id, Product.stock >= it.qty)
            .values(stock=Product.stock - it.qty)
        )
        if res.rowcount == 0:
            short.append(it.product_id)
    return short

def restock(db: Session, order: Order):
    # lines that were oversold never left the shelf
    skip = set((order.payment_result or {}).get("oversold") or [])
    for it in order.items:
        if it.product_id in skip:
            continue
        db.execute(
            update(Product)
            .where(Product.id == it.product_id)
            .values(stock=Product.stock + it.qty)
        )

def mark_paid(db: Session, order: Order, intent_id: str, result: dict, actor_id: Optional[int] = None) -> bool:
    if order.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
        return False
    order.payment_status = PaymentStatus.PAID
    order.paid_at = now_utc()
    order.payment_intent_id = order.payment_intent_id or intent_id
    order.payment_error = None
    note = "Payment succeeded"
    if order.status == OrderStatus.PENDING:
        order.status = OrderStatus.PROCESSING
    if order.status == OrderStatus.CANCELLED:
        logger.warning("Order %s was paid after cancellation; stock left untouched, refund required", order.id)
    elif not order.stock_committed:
        short = take_stock(db, order)
        order.stock_committed = True
        if short:
            result = {**result, "oversold": short}
            note = f"Payment succeeded; oversold products {', '.join(str(p) for p in short)}"
            logger.warning("Order %s paid but oversold products %s; stock left at its current level", order.id, short)
    order.payment_result = result
    record_history(order, actor_id, note)
    return True

def mark_payment_failed(order: Order, error: dict) -> bool:
    if order.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
        return False
    if order.payment_status == PaymentStatus.FAILED and order.payment_error == error:
        return False
    order.payment_status = PaymentStatus.FAILED
    order.payment_error = error
    record_history(order, None, f"Payment failed: {error.get('message') or 'unknown error'}")
    return True

def mark_payment_canceled(order: Order) -> bool:
    if order.canceled_at is not None or order.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
        return False
    order.canceled_at = now_utc()
    if order.status == OrderStatus.PENDING:
        order.status = OrderStatus.CANCELLED
    record_history(order, None, "Payment canceled")
    return True

def mark_refunded(db: Session, order: Order, details: dict, actor_id: Optional[int] = None) -> bool:
    if order.payment_status == PaymentStatus.REFUNDED:
        return False
    order.payment_status = PaymentStatus.REFUNDED
    order.refunded_at = now_utc()
    order.refund_details = details
    if order.stock_committed:
        restock(db, order)
        order.stock_committed = False
    record_history(order, actor_id, "Payment refunded")
    return True
