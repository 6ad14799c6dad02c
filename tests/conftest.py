"""Pytest fixtures for the order/payment service tests."""

import json
import os
from datetime import datetime, timedelta, timezone

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "testsecret"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["KAFKA_BOOTSTRAP"] = ""

import jwt
import pytest
from fastapi.testclient import TestClient

from ecommerce_admin.core.errors import PaymentProviderError
from ecommerce_admin.db.models import Product, User
from ecommerce_admin.db.session import Base, SessionLocal, engine
from ecommerce_admin.services.stripe_gateway import Intent, Refund, StripeGateway
from stripe_helpers import WEBHOOK_SECRET, sign_payload


class FakeGateway:
    """In-memory stand-in for StripeGateway; signatures are checked for real."""

    def __init__(self):
        self.customers = {}
        self.intents = {}
        self.refunds = []
        self.fail_intents = False
        self._verifier = StripeGateway("sk_test_fake", WEBHOOK_SECRET)

    def retrieve_customer(self, customer_id):
        return customer_id if customer_id in self.customers else None

    def create_customer(self, email, name, user_id):
        cid = f"cus_{len(self.customers) + 1}"
        self.customers[cid] = {"email": email, "name": name, "user_id": user_id}
        return cid

    def create_payment_intent(self, amount_cents, currency, customer_id, metadata, description="", shipping=None):
        if self.fail_intents:
            raise PaymentProviderError("Payment provider error during create payment intent")
        iid = f"pi_test_{len(self.intents) + 1}"
        intent = Intent(
            id=iid,
            client_secret=f"{iid}_secret_abc",
            status="requires_payment_method",
            amount=amount_cents,
            currency=currency.lower(),
            created=1700000000,
            metadata={k: str(v) for k, v in metadata.items()},
        )
        self.intents[iid] = intent
        return intent

    def retrieve_payment_intent(self, intent_id):
        return self.intents[intent_id]

    def create_refund(self, intent_id, amount_cents=None, reason="requested_by_customer"):
        amount = amount_cents if amount_cents is not None else self.intents[intent_id].amount
        refund = Refund(id=f"re_{len(self.refunds) + 1}", status="succeeded", amount=amount, currency="usd")
        self.refunds.append((intent_id, refund, reason))
        return refund

    def verify_event(self, payload, sig_header):
        return self._verifier.verify_event(payload, sig_header)


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def customer(db):
    user = User(
        email="cust@example.com",
        name="Casey Customer",
        role="customer",
        street="1 Main St",
        city="Dublin",
        country="IE",
        postal_code="D01",
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def other_customer(db):
    user = User(email="other@example.com", name="Other", role="customer")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def admin(db):
    user = User(email="admin@example.com", name="Admin", role="admin")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def product(db):
    p = Product(name="Raw Honey", price_cents=1000, stock=10, image="/img/honey.png")
    db.add(p)
    db.commit()
    return p


@pytest.fixture
def product2(db):
    p = Product(name="Beeswax Candle", price_cents=550, stock=3)
    db.add(p)
    db.commit()
    return p


@pytest.fixture
def address():
    return {"street": "22 Quay Rd", "city": "Cork", "country": "IE", "postal_code": "T12"}


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def token_for():
    def _token(user, token_type="access"):
        payload = {
            "sub": user.email,
            "role": user.role,
            "type": token_type,
            "exp": datetime.now(timezone.utc) + timedelta(minutes=15),
        }
        return jwt.encode(payload, "testsecret", algorithm="HS256")
    return _token


@pytest.fixture
def auth_headers(token_for):
    def _headers(user):
        return {"Authorization": f"Bearer {token_for(user)}"}
    return _headers


@pytest.fixture
def client(gateway):
    from ecommerce_admin.api.deps import get_gateway
    from ecommerce_admin.main import app

    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def post_webhook(client):
    def _post(event, secret=WEBHOOK_SECRET):
        body = json.dumps(event)
        return client.post(
            "/payment/webhook",
            content=body,
            headers={"Stripe-Signature": sign_payload(body, secret), "Content-Type": "application/json"},
        )
    return _post
