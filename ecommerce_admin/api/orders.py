from datetime import datetime
from typing import Literal, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ecommerce_admin.api.deps import get_current_user, get_db, require_admin
from ecommerce_admin.db.models import User
from ecommerce_admin.schemas import AdminOrderList, CreateOrder, OrderList, OrderRead, StatusUpdate
from ecommerce_admin.services.checkout import create_order_from_cart
from ecommerce_admin.services import order_status

router = APIRouter()

@router.post("", response_model=OrderRead, status_code=201)
def create_order(payload: CreateOrder, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    items = [(it.product_id, it.quantity) for it in payload.items] if payload.items else None
    address = payload.shipping_address.model_dump() if payload.shipping_address else None
    order = create_order_from_cart(db, user, address, payload.payment_method, items)
    return OrderRead.from_order(order)

@router.get("/my-orders", response_model=OrderList)
def my_orders(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    orders = order_status.list_user_orders(db, user)
    return OrderList(orders=[OrderRead.from_order(o) for o in orders], count=len(orders))

@router.get("/admin/all", response_model=AdminOrderList)
def all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort_order: Literal["asc", "desc"] = "desc",
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    res = order_status.list_orders_admin(db, page, limit, status, payment_status, start_date, end_date, sort_order)
    res["orders"] = [OrderRead.from_order(o) for o in res["orders"]]
    return AdminOrderList(**res)

@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return OrderRead.from_order(order_status.get_order_for(db, order_id, user))

@router.put("/{order_id}", response_model=OrderRead)
def update_order_status(order_id: int, payload: StatusUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return OrderRead.from_order(order_status.update_status(db, order_id, payload.status, user))

@router.delete("/{order_id}")
def delete_order(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    order_status.delete_order(db, order_id, user)
    return {"status": "deleted", "order_id": order_id}
