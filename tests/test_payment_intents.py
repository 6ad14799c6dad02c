import pytest

from ecommerce_admin.core.errors import (
    AmountMismatchError, AuthorizationError, EmptyCartError, InvalidStateError, NotFoundError,
    PaymentProviderError, ValidationError,
)
from ecommerce_admin.db.models import Order, OrderStatus, PaymentMethod, PaymentStatus, Product
from ecommerce_admin.db.session import SessionLocal
from ecommerce_admin.services import payment_intents
from ecommerce_admin.services.order_status import mark_paid
from ecommerce_admin.store.cart_store import find_cart, put_item


@pytest.fixture
def filled_cart(db, customer, product):
    return put_item(db, customer, product.id, 2)


def test_quote_adds_shipping_and_tax():
    q = payment_intents.quote(2000)
    assert (q.subtotal_cents, q.shipping_cents, q.tax_cents) == (2000, 500, 160)
    assert q.total_cents == 2660


def test_quote_rounds_tax_half_up():
    assert payment_intents.quote(1006).tax_cents == 80
    assert payment_intents.quote(1007).tax_cents == 81


class TestCreatePaymentIntent:
    def test_creates_order_and_intent(self, db, gateway, customer, filled_cart, address):
        res = payment_intents.create_payment_intent(db, gateway, customer, 2660, "usd", {"source": "web"}, address)

        assert res.amount_cents == 2660
        assert res.currency == "USD"
        assert res.intent_id == "pi_test_1"
        assert res.client_secret == "pi_test_1_secret_abc"
        assert res.customer_id == "cus_1"

        order = db.get(Order, res.order_id)
        assert order.payment_intent_id == "pi_test_1"
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.UNPAID
        assert order.payment_method == PaymentMethod.CARD
        assert order.total_cents == 2000
        assert order.amount_due_cents == 2660
        assert not order.stock_committed

        intent = gateway.intents["pi_test_1"]
        assert intent.amount == 2660
        assert intent.metadata == {
            "source": "web", "user_id": str(customer.id), "order_id": str(order.id), "cart_id": str(filled_cart.id),
        }

        db.expire_all()
        assert customer.stripe_customer_id == "cus_1"
        # the cart is only emptied once the payment succeeds
        assert len(find_cart(db, customer.id).items) == 1

    def test_amount_mismatch_creates_nothing(self, db, gateway, customer, filled_cart, address):
        with pytest.raises(AmountMismatchError) as exc:
            payment_intents.create_payment_intent(db, gateway, customer, 2000, "usd", None, address)

        assert exc.value.server_cents == 2660
        assert exc.value.client_cents == 2000
        assert exc.value.status_code == 400
        db.rollback()
        assert db.query(Order).count() == 0
        assert gateway.intents == {}
        assert gateway.customers == {}

    def test_amount_within_tolerance(self, db, gateway, customer, filled_cart, address):
        res = payment_intents.create_payment_intent(db, gateway, customer, 2700, "usd", None, address)

        assert res.amount_cents == 2660
        assert gateway.intents[res.intent_id].amount == 2660

    def test_rejects_non_positive_amount(self, db, gateway, customer, filled_cart, address):
        with pytest.raises(ValidationError):
            payment_intents.create_payment_intent(db, gateway, customer, 0, "usd", None, address)

    def test_empty_cart(self, db, gateway, customer, address):
        with pytest.raises(EmptyCartError):
            payment_intents.create_payment_intent(db, gateway, customer, 500, "usd", None, address)

    def test_reuses_existing_customer(self, db, gateway, customer, filled_cart, address):
        gateway.customers["cus_existing"] = {"email": customer.email}
        customer.stripe_customer_id = "cus_existing"
        db.commit()

        res = payment_intents.create_payment_intent(db, gateway, customer, 2660, "usd", None, address)

        assert res.customer_id == "cus_existing"
        assert list(gateway.customers) == ["cus_existing"]

    def test_replaces_stale_customer(self, db, gateway, customer, filled_cart, address):
        customer.stripe_customer_id = "cus_deleted"
        db.commit()

        res = payment_intents.create_payment_intent(db, gateway, customer, 2660, "usd", None, address)

        assert res.customer_id == "cus_1"
        db.expire_all()
        assert customer.stripe_customer_id == "cus_1"

    def test_provider_failure_leaves_no_order(self, db, gateway, customer, filled_cart, address):
        gateway.fail_intents = True

        with pytest.raises(PaymentProviderError):
            payment_intents.create_payment_intent(db, gateway, customer, 2660, "usd", None, address)

        assert db.query(Order).count() == 0
        # the customer survives the failed attempt
        assert customer.stripe_customer_id == "cus_1"


@pytest.fixture
def paid_intent(db, gateway, customer, filled_cart, address):
    res = payment_intents.create_payment_intent(db, gateway, customer, 2660, "usd", None, address)
    order = db.get(Order, res.order_id)
    mark_paid(db, order, res.intent_id, {"id": res.intent_id})
    db.commit()
    return res.intent_id


class TestIntentStatus:
    def test_owner_sees_status(self, db, gateway, customer, filled_cart, address):
        res = payment_intents.create_payment_intent(db, gateway, customer, 2660, "usd", None, address)

        status = payment_intents.get_payment_intent_status(db, gateway, customer, res.intent_id)

        assert status["status"] == "requires_payment_method"
        assert status["order_id"] == res.order_id
        assert status["order_status"] == "pending"
        assert status["payment_status"] == "unpaid"

    def test_other_user_cannot_see_it(self, db, gateway, customer, other_customer, filled_cart, address):
        res = payment_intents.create_payment_intent(db, gateway, customer, 2660, "usd", None, address)

        with pytest.raises(NotFoundError):
            payment_intents.get_payment_intent_status(db, gateway, other_customer, res.intent_id)


class TestCreateRefund:
    def test_full_refund(self, db, gateway, admin, paid_intent):
        refund = payment_intents.create_refund(db, gateway, admin, paid_intent)

        assert refund.amount == 2660
        assert gateway.refunds[0][0] == paid_intent
        assert gateway.refunds[0][2] == "requested_by_customer"

    def test_partial_refund(self, db, gateway, admin, paid_intent):
        refund = payment_intents.create_refund(db, gateway, admin, paid_intent, 1000, "duplicate")
        assert refund.amount == 1000

    def test_admin_only(self, db, gateway, customer, paid_intent):
        with pytest.raises(AuthorizationError):
            payment_intents.create_refund(db, gateway, customer, paid_intent)
        assert gateway.refunds == []

    def test_reason_is_checked(self, db, gateway, admin, paid_intent):
        with pytest.raises(ValidationError):
            payment_intents.create_refund(db, gateway, admin, paid_intent, reason="changed_my_mind")

    def test_amount_bounds(self, db, gateway, admin, paid_intent):
        with pytest.raises(ValidationError):
            payment_intents.create_refund(db, gateway, admin, paid_intent, 2661)
        with pytest.raises(ValidationError):
            payment_intents.create_refund(db, gateway, admin, paid_intent, 0)

    def test_unpaid_order(self, db, gateway, admin, customer, filled_cart, address):
        res = payment_intents.create_payment_intent(db, gateway, customer, 2660, "usd", None, address)

        with pytest.raises(InvalidStateError):
            payment_intents.create_refund(db, gateway, admin, res.intent_id)

    def test_unknown_intent(self, db, gateway, admin):
        with pytest.raises(NotFoundError):
            payment_intents.create_refund(db, gateway, admin, "pi_nope")


def test_price_change_while_creating_customer(db, gateway, customer, product, filled_cart, address, monkeypatch):
    create_customer = gateway.create_customer

    def create_and_reprice(email, name, user_id):
        other = SessionLocal()
        try:
            other.get(Product, product.id).price_cents = 2000
            other.commit()
        finally:
            other.close()
        return create_customer(email, name, user_id)

    monkeypatch.setattr(gateway, "create_customer", create_and_reprice)

    with pytest.raises(AmountMismatchError) as exc:
        payment_intents.create_payment_intent(db, gateway, customer, 2660, "usd", None, address)

    assert exc.value.server_cents == 4000 + 500 + 320
    db.rollback()
    assert db.query(Order).count() == 0
    assert gateway.intents == {}
