"""Thin adapter over the Stripe SDK.

A single ``StripeGateway`` is built per process from settings and injected
into the payment services; services only ever see the small records below,
never raw Stripe objects.
"""
import json, logging
from dataclasses import dataclass, field
from typing import Optional
import stripe
from ecommerce_admin.core.errors import PaymentProviderError, SignatureError

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class Intent:
    id: str
    client_secret: str
    status: str
    amount: int
    currency: str
    created: int = 0
    metadata: dict = field(default_factory=dict)

@dataclass(frozen=True)
class Refund:
    id: str
    status: str
    amount: int
    currency: str

def _plain(obj) -> dict:
    to_dict = getattr(obj, "to_dict", None)
    return dict(to_dict()) if callable(to_dict) else dict(obj)

class StripeGateway:
    def __init__(self, api_key: str, webhook_secret: str, webhook_tolerance: int = 300,
                 timeout: int = 15, max_network_retries: int = 2):
        self.client = stripe.StripeClient(
            api_key,
            max_network_retries=max_network_retries,
            http_client=stripe.RequestsClient(timeout=timeout),
        )
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance

    @classmethod
    def from_settings(cls, s) -> "StripeGateway":
        return cls(
            s.STRIPE_SECRET_KEY,
            s.STRIPE_WEBHOOK_SECRET,
            webhook_tolerance=s.STRIPE_WEBHOOK_TOLERANCE,
            timeout=s.STRIPE_TIMEOUT_SECONDS,
            max_network_retries=s.STRIPE_MAX_NETWORK_RETRIES,
        )

    # --- customers ---
    def retrieve_customer(self, customer_id: str) -> Optional[str]:
        """Return the id if the customer still exists, else None."""
        try:
            customer = self.client.customers.retrieve(customer_id)
        except stripe.InvalidRequestError:
            logger.info("Stripe customer %s not found, a new one will be created", customer_id)
            return None
        except stripe.StripeError as exc:
            raise self._provider_error("retrieve customer", exc)
        if getattr(customer, "deleted", False):
            return None
        return customer.id

    def create_customer(self, email: str, name: str, user_id: int) -> str:
        try:
            customer = self.client.customers.create(params={
                "email": email,
                "name": name,
                "metadata": {"user_id": str(user_id)},
            })
        except stripe.StripeError as exc:
            raise self._provider_error("create customer", exc)
        return customer.id

    # --- payment intents ---
    def create_payment_intent(self, amount_cents: int, currency: str, customer_id: str,
                              metadata: dict, description: str = "", shipping: Optional[dict] = None) -> Intent:
        params = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "customer": customer_id,
            "payment_method_types": ["card"],
            "metadata": {k: str(v) for k, v in metadata.items()},
            "description": description,
        }
        if shipping:
            params["shipping"] = shipping
        try:
            pi = self.client.payment_intents.create(params=params)
        except stripe.StripeError as exc:
            raise self._provider_error("create payment intent", exc)
        return self._intent(pi)

    def retrieve_payment_intent(self, intent_id: str) -> Intent:
        try:
            pi = self.client.payment_intents.retrieve(intent_id)
        except stripe.StripeError as exc:
            raise self._provider_error("retrieve payment intent", exc)
        return self._intent(pi)

    def create_refund(self, intent_id: str, amount_cents: Optional[int] = None, reason: str = "requested_by_customer") -> Refund:
        params = {"payment_intent": intent_id, "reason": reason}
        if amount_cents is not None:
            params["amount"] = amount_cents
        try:
            r = self.client.refunds.create(params=params)
        except stripe.StripeError as exc:
            raise self._provider_error("create refund", exc)
        return Refund(id=r.id, status=r.status, amount=r.amount, currency=r.currency)

    # --- webhooks ---
    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> dict:
        """Check the Stripe-Signature header and return the decoded event."""
        if not sig_header:
            raise SignatureError("Missing Stripe-Signature header")
        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError:
            raise SignatureError("Webhook payload is not valid UTF-8")
        try:
            stripe.WebhookSignature.verify_header(body, sig_header, self.webhook_secret, self.webhook_tolerance)
        except stripe.SignatureVerificationError as exc:
            raise SignatureError(f"Webhook signature verification failed: {exc}")
        try:
            event = json.loads(body)
        except ValueError:
            raise SignatureError("Webhook payload is not valid JSON")
        if not isinstance(event, dict) or "type" not in event:
            raise SignatureError("Webhook payload is not a Stripe event")
        return event

    @staticmethod
    def _intent(pi) -> Intent:
        metadata = getattr(pi, "metadata", None)
        return Intent(
            id=pi.id,
            client_secret=pi.client_secret or "",
            status=pi.status,
            amount=pi.amount,
            currency=pi.currency,
            created=getattr(pi, "created", 0) or 0,
            metadata=_plain(metadata) if metadata else {},
        )

    @staticmethod
    def _provider_error(action: str, exc: Exception) -> PaymentProviderError:
        logger.error("Stripe %s failed: %s", action, exc)
        return PaymentProviderError(f"Payment provider error during {action}")
