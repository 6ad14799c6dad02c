
from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ecommerce_admin.api.deps import get_current_user, get_db, get_gateway, require_admin
from ecommerce_admin.db.models import User
from ecommerce_admin.schemas import CreateIntent, IntentResponse, IntentStatus, RefundRequest, RefundResponse, WebhookAck
from ecommerce_admin.services import payment_intents
from ecommerce_admin.services.stripe_gateway import StripeGateway
from ecommerce_admin.services.webhooks import handle_webhook

router = APIRouter()

@router.post("/create-intent", response_model=IntentResponse)
def create_intent(payload: CreateIntent, user: User = Depends(get_current_user),
                  db: Session = Depends(get_db), gateway: StripeGateway = Depends(get_gateway)):
    address = payload.shipping_address.model_dump() if payload.shipping_address else None
    res = payment_intents.create_payment_intent(
        db, gateway, user, payload.amount_cents, payload.currency, payload.metadata, address,
    )
    return IntentResponse(
        client_secret=res.client_secret,
        payment_intent_id=res.intent_id,
        order_id=res.order_id,
        customer_id=res.customer_id,
        amount_cents=res.amount_cents,
        currency=res.currency,
        created=res.created,
    )

@router.get("/intent/{intent_id}", response_model=IntentStatus)
def intent_status(intent_id: str, user: User = Depends(get_current_user),
                  db: Session = Depends(get_db), gateway: StripeGateway = Depends(get_gateway)):
    return IntentStatus(**payment_intents.get_payment_intent_status(db, gateway, user, intent_id))

@router.post("/refund", response_model=RefundResponse)
def refund(payload: RefundRequest, admin: User = Depends(require_admin),
           db: Session = Depends(get_db), gateway: StripeGateway = Depends(get_gateway)):
    r = payment_intents.create_refund(db, gateway, admin, payload.payment_intent_id, payload.amount_cents, payload.reason)
    return RefundResponse(refund_id=r.id, status=r.status, amount_cents=r.amount, currency=r.currency)

@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(request: Request, stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
                         db: Session = Depends(get_db), gateway: StripeGateway = Depends(get_gateway)):
    # signature is computed over the raw body
    payload = await request.body()
    return await run_in_threadpool(handle_webhook, db, gateway, payload, stripe_signature)
