
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ecommerce_admin.api.deps import get_current_user, get_db
from ecommerce_admin.db.models import User
from ecommerce_admin.schemas import CartItemAdd, CartItemUpdate, CartRead
from ecommerce_admin.store.cart_store import clear_cart, delete_item, get_cart, put_item, set_item_qty

router = APIRouter()

@router.get("", response_model=CartRead)
def get_my_cart(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return CartRead.from_cart(get_cart(db, user))

@router.post("/items", response_model=CartRead, status_code=201)
def add_item(payload: CartItemAdd, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return CartRead.from_cart(put_item(db, user, payload.product_id, payload.qty))

@router.put("/items/{product_id}", response_model=CartRead)
def update_item(product_id: int, payload: CartItemUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return CartRead.from_cart(set_item_qty(db, user, product_id, payload.qty))

@router.delete("/items/{product_id}", response_model=CartRead)
def remove_item(product_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return CartRead.from_cart(delete_item(db, user, product_id))

@router.delete("", response_model=CartRead)
def clear(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return CartRead.from_cart(clear_cart(db, user))
