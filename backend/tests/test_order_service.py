"""
Checkout and order lifecycle tests.
"""

import re

import pytest

from shopledger.models import Order, DiscountUsage, InventoryItem, Payment
from shopledger.services import discount_service, order_service, payment_service
from shopledger.services.discount_service import DiscountCommand, DiscountError
from shopledger.services.inventory_service import InventoryError
from shopledger.services.order_service import (
    CheckoutCommand,
    CheckoutLine,
    FulfillLine,
    OrderError,
    UpdateOrderStatusCommand,
)
from shopledger.services.payment_service import PaymentError, RefundCommand, RefundLineInput
from shopledger.validation import NotFoundError, ValidationError


ADDRESS = {"name": "Asha Rao", "line1": "1 MG Road", "city": "Pune", "postal_code": "411001"}


def _checkout(store, variant, quantity=2, **overrides):
    fields = dict(
        store_id=store.id,
        email="Buyer@Example.com",
        lines=[CheckoutLine(variant_id=variant.id, quantity=quantity)],
        shipping_address=ADDRESS,
    )
    fields.update(overrides)
    return order_service.create_order(CheckoutCommand(**fields))


def _stock(db_session, variant, location):
    return db_session.query(InventoryItem).filter_by(variant_id=variant.id, location_id=location.id).one()


def _pay(order, actor):
    payment = _pending_payment(order)
    payment_service.authorize_payment(payment.id)
    payment_service.capture_payment(payment.id, actor=actor)
    return payment


def _pending_payment(order):
    return next(p for p in payment_service.get_order_payments(order.id) if p.status == "pending")


class TestCheckout:

    def test_totals_reservation_and_payment(self, db_session, store, stocked_variant, location):
        order = _checkout(store, stocked_variant)

        assert re.fullmatch(r"ORD-\d{8}-0001", order.order_number)
        assert order.email == "buyer@example.com"
        assert order.subtotal_amount == 10000
        assert order.tax_amount == 1800
        assert order.total_amount == 11800
        assert (order.status, order.payment_status, order.fulfillment_status) == (
            "pending", "pending", "unfulfilled",
        )
        assert order.billing_address == ADDRESS

        payments = payment_service.get_order_payments(order.id)
        assert [(p.amount, p.status) for p in payments] == [(11800, "pending")]
        assert _stock(db_session, stocked_variant, location).reserved_quantity == 2

    def test_discount_is_recorded_against_order(self, db_session, store, stocked_variant, location):
        discount = discount_service.create_discount(
            store.id,
            DiscountCommand(code="SAVE10", title="Ten off", type="percentage", value=1000,
                            minimum_amount=5000, status="active"),
        )

        order = _checkout(store, stocked_variant, discount_code="save10")

        assert order.discount_amount == 1000
        assert order.tax_amount == 1620
        assert order.total_amount == 10620
        assert order.discount_codes == ["SAVE10"]
        assert order.items[0].discount_amount == 1000
        assert order.items[0].total == 9000

        usage = db_session.query(DiscountUsage).filter_by(discount_id=discount.id).one()
        assert usage.order_id == order.id
        assert usage.discount_amount == 1000
        assert discount_service.check_usage_consistency(discount.id)["current_usage"] == 1

    def test_free_shipping_does_not_reduce_tax_base(self, db_session, store, stocked_variant, location):
        discount_service.create_discount(
            store.id,
            DiscountCommand(code="SHIPFREE", title="Free shipping", type="free_shipping", status="active"),
        )

        order = _checkout(store, stocked_variant, quantity=4, shipping_method="express", discount_code="SHIPFREE")

        assert order.shipping_amount == 15000
        assert order.discount_amount == 15000
        assert order.tax_amount == 3600
        assert order.total_amount == 23600
        assert order.items[0].discount_amount == 0

    def test_rejected_discount_rolls_back_everything(self, db_session, store, stocked_variant, location):
        discount_service.create_discount(
            store.id,
            DiscountCommand(code="BIG", title="Big spender", type="fixed_amount", value=500,
                            minimum_amount=50000, status="active"),
        )

        with pytest.raises(DiscountError, match="Minimum order amount of 500.00 required"):
            _checkout(store, stocked_variant, discount_code="BIG")

        assert db_session.query(Order).count() == 0
        assert _stock(db_session, stocked_variant, location).reserved_quantity == 0

    def test_insufficient_stock(self, db_session, store, stocked_variant, location):
        with pytest.raises(InventoryError, match="Insufficient stock"):
            _checkout(store, stocked_variant, quantity=11)
        assert db_session.query(Order).count() == 0

    def test_duplicate_lines_are_merged(self, db_session, store, stocked_variant, location):
        lines = [CheckoutLine(stocked_variant.id, 6), CheckoutLine(stocked_variant.id, 5)]
        with pytest.raises(InventoryError):
            _checkout(store, stocked_variant, lines=lines)

    def test_variant_from_other_store(self, db_session, other_store, stocked_variant):
        with pytest.raises(NotFoundError):
            _checkout(other_store, stocked_variant)

    def test_zero_total_order_is_paid_without_payment(self, db_session, store, stocked_variant, location):
        discount_service.create_discount(store.id, DiscountCommand(
            code="FREEBIE", title="On the house", type="fixed_amount", value=20000, status="active",
        ))

        order = _checkout(store, stocked_variant, discount_code="FREEBIE")

        assert order.total_amount == 0
        assert order.payment_status == "paid"
        assert order.refunded_amount == 0
        assert payment_service.get_order_payments(order.id) == []

    def test_empty_cart(self, db_session, store):
        with pytest.raises(ValidationError):
            order_service.create_order(CheckoutCommand(store_id=store.id, email="a@b.c", lines=[],
                                                       shipping_address=ADDRESS))

    def test_unknown_shipping_method(self, db_session, store, stocked_variant):
        with pytest.raises(ValidationError):
            _checkout(store, stocked_variant, shipping_method="drone")


class TestTimeline:

    def test_create_confirm_note(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant)
        order_service.update_order_status(
            UpdateOrderStatusCommand(order_id=order.id, status="confirmed"), actor=admin_user
        )
        order_service.add_order_note(order.id, admin_user, "Gift wrap requested", is_internal=True)

        entries = order_service.get_timeline(order.id, store.id)
        assert [(e.status_type, e.from_status, e.to_status) for e in entries] == [
            ("order", None, "pending"),
            ("order", "pending", "confirmed"),
            ("note", "note", "note"),
        ]
        assert entries[2].is_internal is True
        assert entries[2].changed_by_email == admin_user.email

        public = order_service.get_timeline(order.id, store.id, include_internal=False)
        assert len(public) == 2

    def test_status_change_sets_timestamp(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant)
        order = order_service.update_order_status(
            UpdateOrderStatusCommand(order_id=order.id, status="confirmed", tracking_number="TRK1"),
            actor=admin_user,
        )
        assert order.confirmed_at is not None
        assert order.tracking_number == "TRK1"


class TestStatusTransitions:

    def test_illegal_transition(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant)
        with pytest.raises(OrderError):
            order_service.update_order_status(
                UpdateOrderStatusCommand(order_id=order.id, status="delivered"), actor=admin_user
            )
        assert db_session.get(Order, order.id).status == "pending"

    def test_cancel_through_status_update_rejected(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant)
        with pytest.raises(OrderError, match="Use cancel"):
            order_service.update_order_status(
                UpdateOrderStatusCommand(order_id=order.id, status="cancelled"), actor=admin_user
            )

    def test_refund_statuses_are_ledger_only(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant)
        with pytest.raises(OrderError):
            order_service.update_order_status(
                UpdateOrderStatusCommand(order_id=order.id, payment_status="refunded"), actor=admin_user
            )

    def test_other_store_cannot_see_order(self, db_session, store, stocked_variant, location, other_admin):
        order = _checkout(store, stocked_variant)
        with pytest.raises(NotFoundError):
            order_service.get_order_detail(order.id, other_admin.store_id)
        with pytest.raises(NotFoundError):
            order_service.add_order_note(order.id, other_admin, "hello")


class TestFulfillment:

    def test_fulfill_everything(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant, quantity=3)

        order = order_service.fulfill_order(order.id, actor=admin_user)

        assert order.fulfillment_status == "fulfilled"
        assert order.fulfilled_at is not None
        item = _stock(db_session, stocked_variant, location)
        assert (item.quantity, item.reserved_quantity) == (7, 0)

        with pytest.raises(OrderError, match="Nothing left"):
            order_service.fulfill_order(order.id, actor=admin_user)

    def test_partial_fulfillment(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant, quantity=3)
        line = order.items[0]

        order = order_service.fulfill_order(order.id, actor=admin_user, lines=[FulfillLine(line.id, 1)])

        assert order.fulfillment_status == "partially_fulfilled"
        item = _stock(db_session, stocked_variant, location)
        assert (item.quantity, item.reserved_quantity) == (9, 2)


class TestCancel:

    def test_cancel_releases_stock_and_closes_payment(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant)

        order = order_service.cancel_order(order.id, actor=admin_user, reason="Customer changed mind")

        assert order.status == "cancelled"
        assert order.cancel_reason == "Customer changed mind"
        assert order.payment_status == "cancelled"
        assert order.fulfillment_status == "cancelled"
        assert _stock(db_session, stocked_variant, location).reserved_quantity == 0
        assert [p.status for p in payment_service.get_order_payments(order.id)] == ["failed"]

        with pytest.raises(OrderError, match="already cancelled"):
            order_service.cancel_order(order.id, actor=admin_user)

    def test_cancel_voids_authorized_payment(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant)
        payment = _pending_payment(order)
        payment_service.authorize_payment(payment.id)

        order_service.cancel_order(order.id, actor=admin_user)

        assert db_session.get(Payment, payment.id).status == "cancelled"

    def test_shipped_order_cannot_be_cancelled(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant)
        for status in ("confirmed", "shipped"):
            order_service.update_order_status(
                UpdateOrderStatusCommand(order_id=order.id, status=status), actor=admin_user
            )

        with pytest.raises(OrderError):
            order_service.cancel_order(order.id, actor=admin_user)


class TestRefundRestock:

    def test_restock_capped_by_fulfilled(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant, quantity=2)
        payment = _pay(order, admin_user)
        order_service.fulfill_order(order.id, actor=admin_user)
        line = order.items[0]
        assert _stock(db_session, stocked_variant, location).quantity == 8

        payment_service.refund_payment(
            RefundCommand(payment_id=payment.id, reason="Returned", amount=5900, restock=True,
                          lines=[RefundLineInput(line.id, 1)]),
            actor=admin_user,
        )
        assert _stock(db_session, stocked_variant, location).quantity == 9

        with pytest.raises(PaymentError, match="only 1 fulfilled and not yet restocked"):
            payment_service.refund_payment(
                RefundCommand(payment_id=payment.id, reason="Returned", amount=100, restock=True,
                              lines=[RefundLineInput(line.id, 2)]),
                actor=admin_user,
            )
        assert _stock(db_session, stocked_variant, location).quantity == 9

    def test_detail_includes_ledgers(self, db_session, store, stocked_variant, location, admin_user):
        order = _checkout(store, stocked_variant)
        payment = _pay(order, admin_user)
        payment_service.refund_payment(RefundCommand(payment_id=payment.id, reason="x", amount=800))

        detail = order_service.get_order_detail(order.id, store.id)

        assert detail["payment_status"] == "partially_refunded"
        assert detail["refundable_amount"] == 11000
        assert len(detail["items"]) == 1
        assert [p["amount"] for p in detail["payments"]] == [11800, -800]
        assert len(detail["refunds"]) == 1
        assert detail["payment_summary"]["net_amount"] == 11000
        assert detail["timeline"][0]["to_status"] == "pending"
