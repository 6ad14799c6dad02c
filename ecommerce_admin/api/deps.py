from functools import lru_cache
from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session
from ecommerce_admin.core.auth import get_current_identity
from ecommerce_admin.core.config import settings
from ecommerce_admin.db.session import SessionLocal
from ecommerce_admin.db.models import User
from ecommerce_admin.services.stripe_gateway import StripeGateway

def get_db():
    db = SessionLocal()
    try: yield db
    finally: db.close()

def get_current_user(identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)) -> User:
    user = db.query(User).filter(User.email == identity.get("sub")).first()
    if not user: raise HTTPException(status_code=401, detail="User not found")
    return user

def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Not authorized as admin")
    return user

@lru_cache
def get_gateway() -> StripeGateway:
    # one configured client per process
    return StripeGateway.from_settings(settings)
