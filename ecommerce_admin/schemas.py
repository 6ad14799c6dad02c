from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from ecommerce_admin.db.models import Cart, Order, OrderStatus, PaymentMethod, PaymentStatus

class ShippingAddress(BaseModel):
    # completeness is checked by the checkout service
    street: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None

# ---- cart ----

class CartItemAdd(BaseModel):
    product_id: int
    qty: int = Field(ge=1)

class CartItemUpdate(BaseModel):
    qty: int = Field(ge=0)

class CartItemRead(BaseModel):
    product_id: int
    name: str
    unit_price_cents: int
    qty: int
    image: Optional[str] = None
    line_total_cents: int

class CartRead(BaseModel):
    id: int
    items: List[CartItemRead] = []
    total_cents: int

    @classmethod
    def from_cart(cls, cart: Cart) -> "CartRead":
        items = [
            CartItemRead(
                product_id=it.product_id,
                name=it.product.name,
                unit_price_cents=it.product.price_cents,
                qty=it.qty,
                image=it.product.image,
                line_total_cents=it.product.price_cents * it.qty,
            )
            for it in cart.items if it.product is not None
        ]
        return cls(id=cart.id, items=items, total_cents=cart.total_cents)

# ---- orders ----

class OrderLineIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)

class CreateOrder(BaseModel):
    shipping_address: Optional[ShippingAddress] = None
    payment_method: PaymentMethod = PaymentMethod.COD
    items: Optional[List[OrderLineIn]] = None

class StatusUpdate(BaseModel):
    status: str

class OrderItemRead(BaseModel):
    product_id: int
    name: str
    unit_price_cents: int
    qty: int
    image: Optional[str] = None
    line_total_cents: int

class StatusHistoryRead(BaseModel):
    status: OrderStatus
    payment_status: PaymentStatus
    updated_by: Optional[int] = None
    note: str = ""
    created_at: datetime

class OrderRead(BaseModel):
    id: int
    order_number: str
    user_id: int
    items: List[OrderItemRead]
    total_cents: int
    shipping_cents: int
    tax_cents: int
    amount_due_cents: int
    currency: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    shipping_address: Dict[str, str]
    payment_intent_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    payment_error: Optional[dict] = None
    refund_details: Optional[dict] = None
    created_at: datetime
    updated_at: datetime
    history: List[StatusHistoryRead] = []

    @classmethod
    def from_order(cls, o: Order) -> "OrderRead":
        return cls(
            id=o.id,
            order_number=f"ORD-{o.id:06d}",
            user_id=o.user_id,
            items=[
                OrderItemRead(
                    product_id=it.product_id,
                    name=it.name_snapshot,
                    unit_price_cents=it.unit_price_cents,
                    qty=it.qty,
                    image=it.image_snapshot,
                    line_total_cents=it.unit_price_cents * it.qty,
                )
                for it in o.items
            ],
            total_cents=o.total_cents,
            shipping_cents=o.shipping_cents or 0,
            tax_cents=o.tax_cents or 0,
            amount_due_cents=o.amount_due_cents,
            currency=o.currency,
            status=o.status,
            payment_status=o.payment_status,
            payment_method=o.payment_method,
            shipping_address=o.shipping_address,
            payment_intent_id=o.payment_intent_id,
            paid_at=o.paid_at,
            canceled_at=o.canceled_at,
            refunded_at=o.refunded_at,
            payment_error=o.payment_error,
            refund_details=o.refund_details,
            created_at=o.created_at,
            updated_at=o.updated_at,
            history=[
                StatusHistoryRead(
                    status=h.status,
                    payment_status=h.payment_status,
                    updated_by=h.updated_by,
                    note=h.note or "",
                    created_at=h.created_at,
                )
                for h in o.history
            ],
        )

class OrderList(BaseModel):
    orders: List[OrderRead]
    count: int

class AdminOrderList(BaseModel):
    orders: List[OrderRead]
    total: int
    total_pages: int
    current_page: int
    summary: Dict[str, int]

# ---- payments ----

class CreateIntent(BaseModel):
    amount_cents: int
    currency: Optional[str] = None
    metadata: Dict[str, str] = {}
    shipping_address: Optional[ShippingAddress] = None

class IntentResponse(BaseModel):
    client_secret: str
    payment_intent_id: str
    order_id: int
    customer_id: str
    amount_cents: int
    currency: str
    created: int

class IntentStatus(BaseModel):
    status: str
    amount_cents: int
    currency: str
    created: int
    order_id: int
    order_status: OrderStatus
    payment_status: PaymentStatus

class RefundRequest(BaseModel):
    payment_intent_id: str
    amount_cents: Optional[int] = None
    reason: Optional[str] = None

class RefundResponse(BaseModel):
    refund_id: str
    status: str
    amount_cents: int
    currency: str

class WebhookAck(BaseModel):
    received: bool
    outcome: str
