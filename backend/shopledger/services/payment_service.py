# Overview: Service-layer operations for order payments; capture, void, refund and retry state transitions.

"""
Payment Ledger Service

WHY: Track money movements against orders as immutable events, and keep
the order's payment_status and refunded_amount consistent with them.

STATE MACHINE (per Payment row):
- pending -> authorized -> captured
- authorized -> cancelled (void)
- pending | authorized -> failed
Terminal rows are never re-opened. A failed payment is retried by opening
a NEW pending attempt.

REFUNDS:
- Only a captured, positive payment can be refunded.
- Each refund appends a negative 'refunded' Payment pointing at the original,
  plus a Refund document. The original stays 'captured'.
- Order.refunded_amount grows by the refund amount and never exceeds
  Order.total_amount; payment_status becomes 'refunded' exactly when the two
  are equal, 'partially_refunded' otherwise.
- Stock comes back only for explicit refund lines with restock=True, capped
  by each line's fulfilled-and-not-yet-restocked quantity.

Every operation runs in one transaction: payment and order rows are locked,
the gateway is called, timeline and audit rows are written, then commit.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Order, OrderItem, Payment, Refund, RefundLine, User
from shopledger.time_utils import utcnow
from shopledger.validation import ConflictError, NotFoundError, ValidationError
from . import inventory_service, timeline_service
from .audit_service import log_admin_action
from .concurrency import lock_for_update, run_with_retry
from .gateway_service import call_gateway


class PaymentError(ConflictError):
    """Raised for payment operation errors."""
    pass


# =============================================================================
# STATUS CONSTANTS
# =============================================================================

PAYMENT_PENDING = "pending"
PAYMENT_AUTHORIZED = "authorized"
PAYMENT_CAPTURED = "captured"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"
PAYMENT_CANCELLED = "cancelled"

ORDER_PAYMENT_PENDING = "pending"
ORDER_PAYMENT_AUTHORIZED = "authorized"
ORDER_PAYMENT_PAID = "paid"
ORDER_PAYMENT_PARTIALLY_PAID = "partially_paid"
ORDER_PAYMENT_REFUNDED = "refunded"
ORDER_PAYMENT_PARTIALLY_REFUNDED = "partially_refunded"
ORDER_PAYMENT_FAILED = "failed"
ORDER_PAYMENT_CANCELLED = "cancelled"


@dataclass(frozen=True)
class RefundLineInput:
    order_item_id: int
    quantity: int


@dataclass
class RefundCommand:
    payment_id: int
    reason: str
    amount: int | None = None
    notes: str | None = None
    restock: bool = False
    notify_customer: bool = False
    lines: list[RefundLineInput] = field(default_factory=list)


# =============================================================================
# INTERNAL HELPERS (no commit)
# =============================================================================

def _scope_store_id(actor: User | None) -> int | None:
    return actor.store_id if actor else None


def _locked_payment(payment_id: int, store_id: int | None = None) -> Payment:
    payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found")
    if store_id is not None and payment.order.store_id != store_id:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def _locked_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def _set_order_payment_status(order: Order, new_status: str, *, note: str | None, actor: User | None) -> None:
    previous = order.payment_status
    if previous == new_status:
        return
    order.payment_status = new_status
    timeline_service.append_entry(order.id, "payment", previous, new_status, note=note, actor=actor)


def captured_total(order_id: int) -> int:
    return (
        db.session.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.order_id == order_id, Payment.status == PAYMENT_CAPTURED, Payment.amount > 0)
        .scalar()
    )


def refunded_total_for_payment(payment_id: int) -> int:
    """Sum of refund magnitudes already issued against one captured payment."""
    total = (
        db.session.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.original_payment_id == payment_id, Payment.status == PAYMENT_REFUNDED)
        .scalar()
    )
    return -total


def create_payment_inner(
    order: Order,
    amount: int,
    *,
    gateway: str = "manual",
    payment_method: str | None = None,
    actor: User | None = None,
    retry_count: int = 0,
) -> Payment:
    if amount <= 0:
        raise PaymentError("Payment amount must be positive")
    payment = Payment(
        order_id=order.id,
        amount=amount,
        currency=order.currency,
        status=PAYMENT_PENDING,
        gateway=gateway or "manual",
        payment_method=payment_method,
        retry_count=retry_count,
        created_by_user_id=actor.id if actor else None,
        created_at=utcnow(),
    )
    db.session.add(payment)
    db.session.flush()
    return payment


# =============================================================================
# GATEWAY-DRIVEN TRANSITIONS
# =============================================================================

def create_payment(
    order_id: int,
    amount: int,
    gateway: str = "manual",
    payment_method: str | None = None,
    actor: User | None = None,
) -> Payment:
    """Open a pending payment for an order."""
    def _op():
        order = _locked_order(order_id)
        if order.status == "cancelled":
            raise PaymentError("Cannot add payment to a cancelled order")
        payment = create_payment_inner(
            order, amount, gateway=gateway, payment_method=payment_method, actor=actor
        )
        db.session.commit()
        return payment

    return run_with_retry(_op)


def authorize_payment(payment_id: int, gateway_transaction_id: str | None = None) -> Payment:
    """
    pending -> authorized. Entry point for the gateway webhook.

    Gateways redeliver until they see a 2xx, so a payment that is already
    authorized or captured is returned unchanged.
    """
    def _op():
        payment = _locked_payment(payment_id)
        if not payment.is_refund and payment.status in (PAYMENT_AUTHORIZED, PAYMENT_CAPTURED):
            current_app.logger.info("Payment %s already %s; authorization ignored", payment.id, payment.status)
            db.session.rollback()
            return payment
        if payment.status != PAYMENT_PENDING or payment.is_refund:
            raise PaymentError(f"Cannot authorize payment with status {payment.status}")
        order = _locked_order(payment.order_id)

        payment.status = PAYMENT_AUTHORIZED
        payment.authorized_at = utcnow()
        if gateway_transaction_id:
            payment.gateway_transaction_id = gateway_transaction_id

        _set_order_payment_status(order, ORDER_PAYMENT_AUTHORIZED, note="Payment authorized", actor=None)
        db.session.commit()
        return payment

    return run_with_retry(_op)


def fail_payment(payment_id: int, message: str | None = None) -> Payment:
    """pending|authorized -> failed. Entry point for the gateway webhook; a repeat is a no-op."""
    def _op():
        payment = _locked_payment(payment_id)
        if not payment.is_refund and payment.status == PAYMENT_FAILED:
            current_app.logger.info("Payment %s already failed; failure ignored", payment.id)
            db.session.rollback()
            return payment
        if payment.status not in (PAYMENT_PENDING, PAYMENT_AUTHORIZED) or payment.is_refund:
            raise PaymentError(f"Cannot fail payment with status {payment.status}")
        order = _locked_order(payment.order_id)

        payment.status = PAYMENT_FAILED
        payment.failed_at = utcnow()
        payment.failure_message = (message or "Payment failed")[:255]

        _set_order_payment_status(order, ORDER_PAYMENT_FAILED, note=payment.failure_message, actor=None)
        db.session.commit()
        return payment

    return run_with_retry(_op)


# =============================================================================
# ADMIN TRANSITIONS
# =============================================================================

def capture_payment(payment_id: int, actor: User | None = None) -> Payment:
    """
    authorized -> captured.

    Order payment_status becomes 'paid', or 'partially_paid' while the
    captured total is still below the order total.
    """
    def _op():
        payment = _locked_payment(payment_id, _scope_store_id(actor))
        if payment.is_refund or payment.status != PAYMENT_AUTHORIZED:
            raise PaymentError(f"Only authorized payments can be captured (status is {payment.status})")
        order = _locked_order(payment.order_id)

        payment.gateway_transaction_id = call_gateway(
            payment.gateway,
            "capture",
            f"capture:{payment.id}",
            lambda gw, key: gw.capture(
                transaction_id=payment.gateway_transaction_id,
                amount=payment.amount,
                currency=payment.currency,
                idempotency_key=key,
            ),
        )
        payment.status = PAYMENT_CAPTURED
        payment.captured_at = utcnow()
        db.session.flush()

        total_captured = captured_total(order.id)
        new_status = ORDER_PAYMENT_PAID if total_captured >= order.total_amount else ORDER_PAYMENT_PARTIALLY_PAID
        _set_order_payment_status(order, new_status, note=f"Captured {payment.amount}", actor=actor)

        log_admin_action(
            action="payment.captured",
            entity="payment",
            entity_id=payment.id,
            user_id=actor.id if actor else None,
            store_id=order.store_id,
            metadata={"order_id": order.id, "amount": payment.amount},
        )
        db.session.commit()
        current_app.logger.info("Captured payment %s for order %s (%s)", payment.id, order.id, payment.amount)
        return payment

    return run_with_retry(_op)


def void_payment(payment_id: int, actor: User | None = None, reason: str | None = None) -> Payment:
    """authorized -> cancelled."""
    def _op():
        payment = _locked_payment(payment_id, _scope_store_id(actor))
        if payment.is_refund or payment.status != PAYMENT_AUTHORIZED:
            raise PaymentError(f"Only authorized payments can be voided (status is {payment.status})")
        order = _locked_order(payment.order_id)

        call_gateway(
            payment.gateway,
            "void",
            f"void:{payment.id}",
            lambda gw, key: gw.void(transaction_id=payment.gateway_transaction_id, idempotency_key=key),
        )
        payment.status = PAYMENT_CANCELLED
        payment.failure_message = (reason or "Payment voided by admin")[:255]

        _set_order_payment_status(order, ORDER_PAYMENT_CANCELLED, note=payment.failure_message, actor=actor)
        log_admin_action(
            action="payment.voided",
            entity="payment",
            entity_id=payment.id,
            user_id=actor.id if actor else None,
            store_id=order.store_id,
            metadata={"order_id": order.id, "reason": payment.failure_message},
        )
        db.session.commit()
        return payment

    return run_with_retry(_op)


def _validate_refund_command(cmd: RefundCommand) -> None:
    if not cmd.reason or not cmd.reason.strip():
        raise ValidationError("Refund reason is required")
    if cmd.amount is not None and cmd.amount <= 0:
        raise ValidationError("Refund amount must be positive")
    for line in cmd.lines:
        if line.quantity <= 0:
            raise ValidationError("Refund line quantity must be positive")
    if cmd.restock and not cmd.lines:
        raise ValidationError("Refund lines are required to restock items")


def restock_order_item(
    order: Order,
    item: OrderItem,
    quantity: int,
    *,
    reference_type: str,
    reference_id: int,
    actor: User | None,
) -> None:
    """
    Return fulfilled units of one order line to stock (no commit).

    Capped by the line's fulfilled-and-not-yet-restocked quantity. Units go
    back to the location they were reserved at, or the store default.
    """
    returnable = item.fulfilled_quantity - item.restocked_quantity
    if quantity > returnable:
        raise PaymentError(
            f"Cannot restock {quantity} of '{item.product_title}': "
            f"only {returnable} fulfilled and not yet restocked"
        )
    if item.variant_id is None:
        return

    location_id = item.location_id
    if location_id is None:
        default_location = inventory_service.get_default_location(order.store_id)
        if default_location is None:
            raise PaymentError("No inventory location available for restocking")
        location_id = default_location.id

    inventory_service.restock(
        item.variant_id,
        location_id,
        quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        user_id=actor.id if actor else None,
    )
    item.restocked_quantity += quantity


def _apply_refund_lines(
    refund: Refund,
    order: Order,
    cmd: RefundCommand,
    actor: User | None,
) -> None:
    requested: dict[int, int] = {}
    for line in cmd.lines:
        requested[line.order_item_id] = requested.get(line.order_item_id, 0) + line.quantity

    items = {
        item.id: item
        for item in lock_for_update(
            db.session.query(OrderItem).filter(OrderItem.order_id == order.id)
        ).all()
    }

    for item_id, quantity in sorted(requested.items()):
        item = items.get(item_id)
        if item is None:
            raise PaymentError(f"Order item {item_id} does not belong to order {order.order_number}")
        if quantity > item.quantity:
            raise PaymentError(f"Refund quantity exceeds ordered quantity for '{item.product_title}'")

        db.session.add(RefundLine(refund_id=refund.id, order_item_id=item.id, quantity=quantity))

        if cmd.restock:
            restock_order_item(
                order, item, quantity, reference_type="refund", reference_id=refund.id, actor=actor
            )

    refund.restocked = bool(cmd.restock)
    db.session.flush()


def refund_payment_inner(cmd: RefundCommand, actor: User | None = None) -> Refund:
    """
    Refund within the caller's transaction (flush, no commit).

    Used by refund_payment and by return processing.
    """
    _validate_refund_command(cmd)

    payment = _locked_payment(cmd.payment_id, _scope_store_id(actor))
    if payment.is_refund or payment.status != PAYMENT_CAPTURED:
        raise PaymentError(f"Only captured payments can be refunded (status is {payment.status})")
    order = _locked_order(payment.order_id)

    already_refunded = refunded_total_for_payment(payment.id)
    remaining_on_payment = payment.amount - already_refunded
    amount = cmd.amount if cmd.amount is not None else remaining_on_payment
    if amount <= 0:
        raise PaymentError("Payment has already been fully refunded")
    if amount > remaining_on_payment:
        raise PaymentError(
            f"Refund amount {amount} exceeds refundable amount {remaining_on_payment} on this payment"
        )
    if order.refunded_amount + amount > order.total_amount:
        raise PaymentError(
            f"Refund amount {amount} exceeds refundable amount {order.refundable_amount} on this order"
        )

    gateway_reference = call_gateway(
        payment.gateway,
        "refund",
        f"refund:{payment.id}:{already_refunded}:{amount}",
        lambda gw, key: gw.refund(
            transaction_id=payment.gateway_transaction_id,
            amount=amount,
            currency=payment.currency,
            idempotency_key=key,
        ),
    )

    now = utcnow()
    reason = cmd.reason.strip()
    refund_row = Payment(
        order_id=order.id,
        amount=-amount,
        currency=payment.currency,
        status=PAYMENT_REFUNDED,
        gateway=payment.gateway,
        gateway_transaction_id=gateway_reference,
        payment_method=payment.payment_method,
        refund_reason=reason,
        refunded_at=now,
        original_payment_id=payment.id,
        created_by_user_id=actor.id if actor else None,
        created_at=now,
    )
    db.session.add(refund_row)
    db.session.flush()

    refund = Refund(
        order_id=order.id,
        payment_id=payment.id,
        refund_payment_id=refund_row.id,
        amount=amount,
        reason=reason,
        notes=cmd.notes,
        notify_customer=cmd.notify_customer,
        status="success",
        created_by_user_id=actor.id if actor else None,
        processed_at=now,
        created_at=now,
    )
    db.session.add(refund)
    db.session.flush()

    if cmd.lines:
        _apply_refund_lines(refund, order, cmd, actor)

    order.refunded_amount += amount
    new_status = (
        ORDER_PAYMENT_REFUNDED
        if order.refunded_amount == order.total_amount
        else ORDER_PAYMENT_PARTIALLY_REFUNDED
    )
    note = f"Refunded {amount}: {reason}"
    if order.payment_status == new_status:
        # Repeated partial refunds still leave a trace on the timeline.
        timeline_service.append_entry(order.id, "payment", new_status, new_status, note=note, actor=actor)
    else:
        _set_order_payment_status(order, new_status, note=note, actor=actor)

    log_admin_action(
        action="payment.refunded",
        entity="order",
        entity_id=order.id,
        user_id=actor.id if actor else None,
        store_id=order.store_id,
        metadata={
            "payment_id": payment.id,
            "refund_id": refund.id,
            "amount": amount,
            "reason": reason,
            "restocked": refund.restocked,
        },
    )
    return refund


def refund_payment(cmd: RefundCommand, actor: User | None = None) -> Refund:
    """
    Refund all or part of a captured payment.

    Amount defaults to what is still refundable on that payment.

    Raises:
        ValidationError: missing reason, non-positive amount, bad lines
        NotFoundError: unknown payment
        PaymentError: payment not captured, amount over what remains on the
            payment or on the order, or restock over returnable quantity
    """
    _validate_refund_command(cmd)

    def _op():
        refund = refund_payment_inner(cmd, actor)
        db.session.commit()
        current_app.logger.info(
            "Refunded %s on payment %s (order %s, total refunded %s)",
            refund.amount, refund.payment_id, refund.order_id, refund.order.refunded_amount,
        )
        return refund

    return run_with_retry(_op)


def bulk_refund(payment_ids: list[int], reason: str, actor: User | None = None) -> dict:
    """
    Fully refund several payments. Each refund is its own transaction, so one
    failure does not undo the others.
    """
    if not payment_ids:
        raise ValidationError("payment_ids must not be empty")
    if not reason or not reason.strip():
        raise ValidationError("Refund reason is required")

    results = []
    for payment_id in payment_ids:
        try:
            refund = refund_payment(RefundCommand(payment_id=payment_id, reason=reason), actor=actor)
            results.append({"payment_id": payment_id, "success": True, "refund": refund.to_dict()})
        except (ConflictError, NotFoundError, ValidationError) as exc:
            results.append({"payment_id": payment_id, "success": False, "error": str(exc)})

    succeeded = sum(1 for r in results if r["success"])
    return {
        "results": results,
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
    }


def retry_failed_payment(payment_id: int, actor: User | None = None) -> Payment:
    """Open a new pending attempt for a failed payment, bounded by PAYMENT_MAX_RETRIES."""
    max_retries = int(current_app.config.get("PAYMENT_MAX_RETRIES", 3))

    def _op():
        payment = _locked_payment(payment_id, _scope_store_id(actor))
        if payment.is_refund or payment.status != PAYMENT_FAILED:
            raise PaymentError(f"Only failed payments can be retried (status is {payment.status})")
        if payment.retry_count >= max_retries:
            raise PaymentError(f"Maximum payment retries ({max_retries}) reached")
        order = _locked_order(payment.order_id)
        if order.status == "cancelled":
            raise PaymentError("Cannot retry payment on a cancelled order")

        open_attempt = (
            db.session.query(Payment.id)
            .filter(
                Payment.order_id == order.id,
                Payment.status.in_([PAYMENT_PENDING, PAYMENT_AUTHORIZED]),
                Payment.amount > 0,
            )
            .first()
        )
        if open_attempt:
            raise PaymentError("Order already has an open payment attempt")

        attempt = create_payment_inner(
            order,
            payment.amount,
            gateway=payment.gateway,
            payment_method=payment.payment_method,
            actor=actor,
            retry_count=payment.retry_count + 1,
        )
        _set_order_payment_status(
            order, ORDER_PAYMENT_PENDING, note=f"Retry attempt {attempt.retry_count}", actor=actor
        )
        log_admin_action(
            action="payment.retried",
            entity="payment",
            entity_id=attempt.id,
            user_id=actor.id if actor else None,
            store_id=order.store_id,
            metadata={"failed_payment_id": payment.id, "retry_count": attempt.retry_count},
        )
        db.session.commit()
        return attempt

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_order_payments(order_id: int) -> list[Payment]:
    return db.session.query(Payment).filter_by(order_id=order_id).order_by(Payment.id).all()


def get_payment_summary(order_id: int) -> dict:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    captured = captured_total(order_id)
    refunded = -(
        db.session.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.order_id == order_id, Payment.status == PAYMENT_REFUNDED)
        .scalar()
    )
    return {
        "order_id": order.id,
        "total_amount": order.total_amount,
        "captured_amount": captured,
        "refunded_amount": order.refunded_amount,
        "refund_payments_amount": refunded,
        "net_amount": captured - refunded,
        "payment_status": order.payment_status,
    }
