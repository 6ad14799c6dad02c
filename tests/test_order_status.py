import pytest

from ecommerce_admin.core.errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from ecommerce_admin.db.models import Order, OrderStatus, PaymentStatus
from ecommerce_admin.services import order_status
from ecommerce_admin.services.checkout import create_order_from_cart


@pytest.fixture
def order(db, customer, product, address):
    return create_order_from_cart(db, customer, address, items=[(product.id, 2)])


def _advance(db, order, admin, *steps):
    for s in steps:
        order_status.update_status(db, order.id, s, admin)


class TestUpdateStatus:
    def test_valid_transition_appends_history(self, db, order, admin):
        updated = order_status.update_status(db, order.id, "processing", admin)

        assert updated.status == OrderStatus.PROCESSING
        assert len(updated.history) == 2
        last = updated.history[-1]
        assert last.status == OrderStatus.PROCESSING
        assert last.updated_by == admin.id
        assert "pending" in last.note

    def test_full_lifecycle(self, db, order, admin):
        _advance(db, order, admin, "processing", "shipped", "delivered")

        db.refresh(order)
        assert order.status == OrderStatus.DELIVERED
        assert [h.status for h in order.history] == [
            OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED,
        ]

    def test_unknown_status_value(self, db, order, admin):
        with pytest.raises(ValidationError, match="Valid status is required"):
            order_status.update_status(db, order.id, "lost", admin)

        db.refresh(order)
        assert order.status == OrderStatus.PENDING
        assert len(order.history) == 1

    def test_non_admin_rejected(self, db, order, customer):
        with pytest.raises(AuthorizationError):
            order_status.update_status(db, order.id, "processing", customer)

        db.refresh(order)
        assert order.status == OrderStatus.PENDING

    def test_missing_order(self, db, admin):
        with pytest.raises(NotFoundError):
            order_status.update_status(db, 31337, "processing", admin)

    def test_skipping_a_step(self, db, order, admin):
        with pytest.raises(InvalidStateError, match="from pending to shipped"):
            order_status.update_status(db, order.id, "shipped", admin)

    @pytest.mark.parametrize("terminal", ["delivered", "cancelled"])
    def test_terminal_states_are_final(self, db, order, admin, terminal):
        if terminal == "delivered":
            _advance(db, order, admin, "processing", "shipped", "delivered")
        else:
            _advance(db, order, admin, "cancelled")

        with pytest.raises(InvalidStateError):
            order_status.update_status(db, order.id, "processing", admin)


class TestDeleteOrder:
    def test_owner_deletes_pending(self, db, order, customer):
        oid = order.id

        order_status.delete_order(db, oid, customer)

        assert db.get(Order, oid) is None

    def test_admin_deletes_pending(self, db, order, admin):
        order_status.delete_order(db, order.id, admin)
        assert db.query(Order).count() == 0

    def test_non_pending_is_kept(self, db, order, admin, customer):
        _advance(db, order, admin, "processing", "shipped")

        with pytest.raises(InvalidStateError):
            order_status.delete_order(db, order.id, customer)

        assert db.get(Order, order.id) is not None

    def test_other_user_rejected(self, db, order, other_customer):
        with pytest.raises(AuthorizationError):
            order_status.delete_order(db, order.id, other_customer)

        assert db.get(Order, order.id) is not None


class TestReads:
    def test_get_order_for_owner_and_admin(self, db, order, customer, admin, other_customer):
        assert order_status.get_order_for(db, order.id, customer).id == order.id
        assert order_status.get_order_for(db, order.id, admin).id == order.id
        with pytest.raises(AuthorizationError):
            order_status.get_order_for(db, order.id, other_customer)

    def test_list_user_orders_newest_first(self, db, customer, other_customer, product, address):
        first = create_order_from_cart(db, customer, address, items=[(product.id, 1)])
        second = create_order_from_cart(db, customer, address, items=[(product.id, 1)])
        create_order_from_cart(db, other_customer, address, items=[(product.id, 1)])

        ids = [o.id for o in order_status.list_user_orders(db, customer)]

        assert ids == [second.id, first.id]

    def test_admin_list_filters_and_summary(self, db, customer, admin, product, address):
        orders = [create_order_from_cart(db, customer, address, items=[(product.id, 1)]) for _ in range(3)]
        order_status.update_status(db, orders[0].id, "processing", admin)
        order_status.update_status(db, orders[1].id, "cancelled", admin)

        res = order_status.list_orders_admin(db, status="pending")
        assert [o.id for o in res["orders"]] == [orders[2].id]
        assert res["total"] == 1

        res = order_status.list_orders_admin(db, status="all", limit=2, page=2, sort_order="asc")
        assert [o.id for o in res["orders"]] == [orders[2].id]
        assert res["total"] == 3
        assert res["total_pages"] == 2
        assert res["current_page"] == 2
        assert res["summary"]["total_orders"] == 3
        assert res["summary"]["pending"] == 1
        assert res["summary"]["processing"] == 1
        assert res["summary"]["cancelled"] == 1
        assert res["summary"]["delivered"] == 0

    def test_admin_list_rejects_bad_filter(self, db):
        with pytest.raises(ValidationError):
            order_status.list_orders_admin(db, payment_status="sorta")


class TestPaymentWrites:
    def test_mark_paid_once(self, db, order, product):
        assert order_status.mark_paid(db, order, "pi_1", {"id": "pi_1"})
        db.commit()
        db.refresh(product)
        assert product.stock == 8
        assert order.status == OrderStatus.PROCESSING
        assert order.payment_status == PaymentStatus.PAID

        assert not order_status.mark_paid(db, order, "pi_1", {"id": "pi_1"})
        db.commit()
        db.refresh(product)
        assert product.stock == 8

    def test_refund_restores_stock(self, db, order, product):
        order_status.mark_paid(db, order, "pi_1", {})
        db.commit()

        assert order_status.mark_refunded(db, order, {"amount": 2000})
        db.commit()
        db.refresh(product)

        assert product.stock == 10
        assert order.payment_status == PaymentStatus.REFUNDED
        assert not order.stock_committed
        assert not order_status.mark_refunded(db, order, {"amount": 2000})

    def test_paid_after_cancel_leaves_stock(self, db, order, admin, product):
        order_status.update_status(db, order.id, "cancelled", admin)

        assert order_status.mark_paid(db, order, "pi_1", {})
        db.commit()
        db.refresh(product)

        assert order.status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.PAID
        assert product.stock == 10

    def test_failure_then_success(self, db, order):
        assert order_status.mark_payment_failed(order, {"message": "card declined"})
        assert not order_status.mark_payment_failed(order, {"message": "card declined"})
        assert order.payment_status == PaymentStatus.FAILED

        assert order_status.mark_paid(db, order, "pi_1", {})
        assert order.payment_status == PaymentStatus.PAID
        assert order.payment_error is None
