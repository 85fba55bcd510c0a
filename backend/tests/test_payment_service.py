"""
Payment ledger tests: capture, void, refunds and retries.
"""

import pytest
from sqlalchemy.exc import OperationalError

from shopledger.extensions import db
from shopledger.models import Order, Payment, Refund, OrderStatusHistory, AuditLog
from shopledger.services import payment_service
from shopledger.services.gateway_service import (
    GatewayError,
    GatewayUnavailableError,
    ManualGateway,
    register_gateway,
    unregister_gateway,
)
from shopledger.services.payment_service import PaymentError, RefundCommand
from shopledger.validation import NotFoundError, ValidationError


_sequence = {"n": 0}


def _order(db_session, store, total=20000):
    _sequence["n"] += 1
    order = Order(
        store_id=store.id,
        order_number=f"ORD-TEST-{_sequence['n']:04d}",
        email="buyer@example.com",
        currency=store.currency,
        subtotal_amount=total,
        total_amount=total,
        shipping_address={"line1": "1 MG Road", "city": "Pune"},
        billing_address={"line1": "1 MG Road", "city": "Pune"},
    )
    db_session.add(order)
    db_session.commit()
    return order


def _captured(db_session, store, admin_user, amount=20000, gateway="manual"):
    order = _order(db_session, store, amount)
    payment = payment_service.create_payment(order.id, amount, gateway=gateway)
    payment_service.authorize_payment(payment.id, gateway_transaction_id="txn_1")
    payment_service.capture_payment(payment.id, actor=admin_user)
    return order, payment


class FlakyGateway(ManualGateway):
    name = "flaky"

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.calls = 0

    def refund(self, *, transaction_id, amount, currency, idempotency_key):
        self.calls += 1
        if self.calls <= self.failures:
            raise GatewayUnavailableError("processor timeout")
        return super().refund(
            transaction_id=transaction_id, amount=amount, currency=currency, idempotency_key=idempotency_key
        )


class CountingGateway(ManualGateway):
    name = "counting"

    def __init__(self):
        super().__init__()
        self.captures = 0
        self.refunds = 0

    def capture(self, *, transaction_id, amount, currency, idempotency_key):
        self.captures += 1
        return super().capture(
            transaction_id=transaction_id, amount=amount, currency=currency, idempotency_key=idempotency_key
        )

    def refund(self, *, transaction_id, amount, currency, idempotency_key):
        self.refunds += 1
        return super().refund(
            transaction_id=transaction_id, amount=amount, currency=currency, idempotency_key=idempotency_key
        )


def _commit_failing_once(monkeypatch):
    original_commit = db.session.commit
    state = {"failed": False}

    def commit():
        if not state["failed"]:
            state["failed"] = True
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        return original_commit()

    monkeypatch.setattr(db.session, "commit", commit)


class TestCaptureAndVoid:

    def test_capture_marks_order_paid(self, db_session, store, admin_user):
        order, payment = _captured(db_session, store, admin_user)

        assert payment.status == "captured"
        assert payment.captured_at is not None
        assert db_session.get(Order, order.id).payment_status == "paid"

    def test_partial_capture(self, db_session, store, admin_user):
        order = _order(db_session, store, 20000)
        payment = payment_service.create_payment(order.id, 5000)
        payment_service.authorize_payment(payment.id)
        payment_service.capture_payment(payment.id, actor=admin_user)

        assert db_session.get(Order, order.id).payment_status == "partially_paid"

    def test_capture_requires_authorized(self, db_session, store, admin_user):
        order = _order(db_session, store)
        payment = payment_service.create_payment(order.id, 20000)

        with pytest.raises(PaymentError):
            payment_service.capture_payment(payment.id, actor=admin_user)

    def test_void_authorized(self, db_session, store, admin_user):
        order = _order(db_session, store)
        payment = payment_service.create_payment(order.id, 20000)
        payment_service.authorize_payment(payment.id)

        voided = payment_service.void_payment(payment.id, actor=admin_user)

        assert voided.status == "cancelled"
        assert voided.failure_message == "Payment voided by admin"
        assert db_session.get(Order, order.id).payment_status == "cancelled"

    def test_captured_payment_cannot_be_voided(self, db_session, store, admin_user):
        _, payment = _captured(db_session, store, admin_user)
        with pytest.raises(PaymentError):
            payment_service.void_payment(payment.id, actor=admin_user)

    def test_other_store_sees_not_found(self, db_session, store, admin_user, other_admin):
        _, payment = _captured(db_session, store, admin_user)
        with pytest.raises(NotFoundError):
            payment_service.refund_payment(RefundCommand(payment_id=payment.id, reason="x"), actor=other_admin)


class TestRefunds:

    def test_partial_then_full_then_rejected(self, db_session, store, admin_user):
        order, payment = _captured(db_session, store, admin_user)

        payment_service.refund_payment(
            RefundCommand(payment_id=payment.id, reason="Damaged", amount=5000), actor=admin_user
        )
        order = db_session.get(Order, order.id)
        assert order.refunded_amount == 5000
        assert order.payment_status == "partially_refunded"

        payment_service.refund_payment(
            RefundCommand(payment_id=payment.id, reason="Customer request", amount=15000), actor=admin_user
        )
        order = db_session.get(Order, order.id)
        assert order.refunded_amount == 20000
        assert order.payment_status == "refunded"

        with pytest.raises(PaymentError):
            payment_service.refund_payment(
                RefundCommand(payment_id=payment.id, reason="Again", amount=1), actor=admin_user
            )

        order = db_session.get(Order, order.id)
        assert order.refunded_amount == 20000
        assert order.payment_status == "refunded"
        assert db_session.query(Refund).filter_by(order_id=order.id).count() == 2

    def test_refund_rows_are_negative_and_linked(self, db_session, store, admin_user):
        order, payment = _captured(db_session, store, admin_user)
        refund = payment_service.refund_payment(
            RefundCommand(payment_id=payment.id, reason="Late delivery", amount=3000), actor=admin_user
        )

        row = db_session.get(Payment, refund.refund_payment_id)
        assert row.amount == -3000
        assert row.status == "refunded"
        assert row.original_payment_id == payment.id
        assert db_session.get(Payment, payment.id).status == "captured"

        summary = payment_service.get_payment_summary(order.id)
        assert summary["captured_amount"] == 20000
        assert summary["refunded_amount"] == 3000
        assert summary["net_amount"] == 17000

        audit = db_session.query(AuditLog).filter_by(action="payment.refunded").one()
        assert audit.entity_id == order.id

    def test_default_amount_is_remaining(self, db_session, store, admin_user):
        order, payment = _captured(db_session, store, admin_user)
        payment_service.refund_payment(RefundCommand(payment_id=payment.id, reason="x", amount=2000))

        refund = payment_service.refund_payment(RefundCommand(payment_id=payment.id, reason="rest"))

        assert refund.amount == 18000
        assert db_session.get(Order, order.id).payment_status == "refunded"

    def test_over_refund_rejected(self, db_session, store, admin_user):
        order, payment = _captured(db_session, store, admin_user)
        with pytest.raises(PaymentError, match="exceeds refundable"):
            payment_service.refund_payment(RefundCommand(payment_id=payment.id, reason="x", amount=20001))
        assert db_session.get(Order, order.id).refunded_amount == 0

    def test_refund_requires_reason(self, db_session, store, admin_user):
        _, payment = _captured(db_session, store, admin_user)
        with pytest.raises(ValidationError):
            payment_service.refund_payment(RefundCommand(payment_id=payment.id, reason=" "))

    def test_restock_requires_lines(self, db_session, store, admin_user):
        _, payment = _captured(db_session, store, admin_user)
        with pytest.raises(ValidationError):
            payment_service.refund_payment(RefundCommand(payment_id=payment.id, reason="x", restock=True))

    def test_each_refund_appends_timeline(self, db_session, store, admin_user):
        order, payment = _captured(db_session, store, admin_user)
        for amount in (1000, 2000):
            payment_service.refund_payment(RefundCommand(payment_id=payment.id, reason="x", amount=amount))

        refund_entries = (
            db_session.query(OrderStatusHistory)
            .filter(OrderStatusHistory.order_id == order.id, OrderStatusHistory.note.like("Refunded%"))
            .all()
        )
        assert len(refund_entries) == 2

    def test_bulk_refund_reports_each_payment(self, db_session, store, admin_user):
        _, first = _captured(db_session, store, admin_user)
        second_order = _order(db_session, store)
        second = payment_service.create_payment(second_order.id, 20000)

        result = payment_service.bulk_refund([first.id, second.id, 999999], "Recall", actor=admin_user)

        assert result["succeeded"] == 1
        assert result["failed"] == 2
        assert [r["success"] for r in result["results"]] == [True, False, False]


class TestGatewayRetry:

    def test_transient_failure_is_retried(self, app, db_session, store, admin_user):
        gateway = FlakyGateway(failures=2)
        register_gateway(gateway)
        try:
            order, payment = _captured(db_session, store, admin_user, gateway="flaky")
            payment_service.refund_payment(RefundCommand(payment_id=payment.id, reason="x", amount=1000))
        finally:
            unregister_gateway("flaky")

        assert gateway.calls == 3
        assert db_session.get(Order, order.id).refunded_amount == 1000

    def test_exhausted_retries_leave_state_unchanged(self, app, db_session, store, admin_user):
        gateway = FlakyGateway(failures=10)
        register_gateway(gateway)
        try:
            order, payment = _captured(db_session, store, admin_user, gateway="flaky")
            with pytest.raises(GatewayError):
                payment_service.refund_payment(RefundCommand(payment_id=payment.id, reason="x", amount=1000))
        finally:
            unregister_gateway("flaky")

        assert gateway.calls == app.config["GATEWAY_RETRY_ATTEMPTS"]
        assert db_session.get(Order, order.id).refunded_amount == 0
        assert db_session.query(Refund).filter_by(order_id=order.id).count() == 0

    def test_commit_retry_does_not_refund_twice(self, app, db_session, store, admin_user, monkeypatch):
        gateway = CountingGateway()
        register_gateway(gateway)
        try:
            order, payment = _captured(db_session, store, admin_user, gateway="counting")
            _commit_failing_once(monkeypatch)
            refund = payment_service.refund_payment(
                RefundCommand(payment_id=payment.id, reason="Damaged", amount=5000), actor=admin_user
            )
        finally:
            unregister_gateway("counting")

        assert gateway.refunds == 1
        assert refund.amount == 5000
        assert db_session.get(Order, order.id).refunded_amount == 5000
        assert db_session.query(Refund).filter_by(order_id=order.id).count() == 1

    def test_commit_retry_does_not_capture_twice(self, app, db_session, store, admin_user, monkeypatch):
        gateway = CountingGateway()
        register_gateway(gateway)
        try:
            order = _order(db_session, store)
            payment = payment_service.create_payment(order.id, 20000, gateway="counting")
            payment_service.authorize_payment(payment.id)
            _commit_failing_once(monkeypatch)
            captured = payment_service.capture_payment(payment.id, actor=admin_user)
        finally:
            unregister_gateway("counting")

        assert gateway.captures == 1
        assert captured.status == "captured"
        assert db_session.get(Order, order.id).payment_status == "paid"

    def test_next_refund_reaches_gateway_again(self, app, db_session, store, admin_user):
        gateway = CountingGateway()
        register_gateway(gateway)
        try:
            order, payment = _captured(db_session, store, admin_user, gateway="counting")
            for _ in range(2):
                payment_service.refund_payment(RefundCommand(payment_id=payment.id, reason="x", amount=1000))
        finally:
            unregister_gateway("counting")

        assert gateway.refunds == 2
        assert db_session.get(Order, order.id).refunded_amount == 2000


class TestFailuresAndRetry:

    def test_failed_payment_retry_opens_new_attempt(self, db_session, store, admin_user):
        order = _order(db_session, store)
        payment = payment_service.create_payment(order.id, 20000)
        payment_service.fail_payment(payment.id, "Card declined")
        assert db_session.get(Order, order.id).payment_status == "failed"

        attempt = payment_service.retry_failed_payment(payment.id, actor=admin_user)

        assert attempt.id != payment.id
        assert attempt.status == "pending"
        assert attempt.retry_count == 1
        assert db_session.get(Order, order.id).payment_status == "pending"

        with pytest.raises(PaymentError, match="open payment attempt"):
            payment_service.retry_failed_payment(payment.id, actor=admin_user)

    def test_retry_limit(self, app, db_session, store, admin_user):
        order = _order(db_session, store)
        payment = payment_service.create_payment(order.id, 20000)
        payment_service.fail_payment(payment.id)

        for _ in range(app.config["PAYMENT_MAX_RETRIES"]):
            payment = payment_service.retry_failed_payment(payment.id, actor=admin_user)
            payment_service.fail_payment(payment.id)

        with pytest.raises(PaymentError, match="Maximum payment retries"):
            payment_service.retry_failed_payment(payment.id, actor=admin_user)


class TestWebhookRedelivery:

    def test_repeated_authorization_is_ignored(self, db_session, store):
        order = _order(db_session, store)
        payment = payment_service.create_payment(order.id, 20000)

        payment_service.authorize_payment(payment.id, gateway_transaction_id="txn_9")
        again = payment_service.authorize_payment(payment.id, gateway_transaction_id="txn_9")

        assert again.status == "authorized"
        entries = db_session.query(OrderStatusHistory).filter_by(order_id=order.id, to_status="authorized").count()
        assert entries == 1

    def test_authorization_after_capture_is_ignored(self, db_session, store, admin_user):
        order, payment = _captured(db_session, store, admin_user)

        again = payment_service.authorize_payment(payment.id)

        assert again.status == "captured"
        assert db_session.get(Order, order.id).payment_status == "paid"

    def test_repeated_failure_is_ignored(self, db_session, store):
        order = _order(db_session, store)
        payment = payment_service.create_payment(order.id, 20000)

        payment_service.fail_payment(payment.id, "Card declined")
        again = payment_service.fail_payment(payment.id, "Card declined again")

        assert again.status == "failed"
        assert again.failure_message == "Card declined"

    def test_failure_after_capture_still_conflicts(self, db_session, store, admin_user):
        _, payment = _captured(db_session, store, admin_user)
        with pytest.raises(PaymentError):
            payment_service.fail_payment(payment.id)


class TestAtomicity:

    def test_audit_failure_rolls_back_refund(self, db_session, store, admin_user, monkeypatch):
        order, payment = _captured(db_session, store, admin_user)

        def broken_audit(**kwargs):
            raise RuntimeError("audit log unavailable")

        monkeypatch.setattr(payment_service, "log_admin_action", broken_audit)

        with pytest.raises(RuntimeError):
            payment_service.refund_payment(
                RefundCommand(payment_id=payment.id, reason="Damaged", amount=5000), actor=admin_user
            )

        assert db_session.get(Order, order.id).refunded_amount == 0
        assert db_session.get(Order, order.id).payment_status == "paid"
        assert db_session.query(Refund).filter_by(order_id=order.id).count() == 0
        assert db_session.query(Payment).filter_by(original_payment_id=payment.id).count() == 0
