# Overview: Service-layer operations for customer returns; request, approve/reject and process.

"""
Return Processing Service

WHY: A return is the business process around units coming back from a
shipped order. The money side reuses the payment ledger (a refund with
lines) so refunded_amount and payment_status stay ledger-derived; the stock
side reuses the same capped restock as refunds.

LIFECYCLE:
1. request (requested): staff log which fulfilled units are coming back
2. approve / reject (admin decision)
3. process (approved -> processed) with a resolution:
   - refund: line totals (after discount) plus their share of order tax are
     refunded against a captured payment, capped by what the payment and
     the order still allow
   - exchange / store_credit: no money moves here
   Restockable items go back to stock for every resolution.

Fulfillment status becomes 'returned' once processed returns cover every
fulfilled unit of the order.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Order, OrderItem, Payment, Refund, Return, ReturnItem, User
from shopledger.time_utils import utcnow
from shopledger.validation import ConflictError, NotFoundError, ValidationError
from . import payment_service, timeline_service
from .audit_service import log_admin_action
from .concurrency import lock_for_update, run_with_retry
from .discount_service import round_half_up_div


class ReturnError(ConflictError):
    """Raised for return operation errors."""
    pass


# =============================================================================
# RETURN STATUS CONSTANTS
# =============================================================================

RETURN_REQUESTED = "requested"
RETURN_APPROVED = "approved"
RETURN_REJECTED = "rejected"
RETURN_PROCESSED = "processed"

RETURN_STATUSES = {RETURN_REQUESTED, RETURN_APPROVED, RETURN_REJECTED, RETURN_PROCESSED}
RETURN_REASONS = {"damaged", "wrong_item", "not_as_described", "quality", "other"}
RESOLUTIONS = {"refund", "exchange", "store_credit"}


@dataclass(frozen=True)
class ReturnLineInput:
    order_item_id: int
    quantity: int
    restockable: bool = True
    reason: str | None = None


@dataclass
class RequestReturnCommand:
    order_id: int
    reason: str
    lines: list[ReturnLineInput] = field(default_factory=list)
    notes: str | None = None
    customer_id: int | None = None


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _scope_store_id(actor: User | None) -> int | None:
    return actor.store_id if actor else None


def _get_return(return_id: int, store_id: int | None = None, *, lock: bool = False) -> Return:
    q = db.session.query(Return).filter_by(id=return_id)
    if lock:
        q = lock_for_update(q)
    return_doc = q.first()
    if not return_doc or (store_id is not None and return_doc.store_id != store_id):
        raise NotFoundError(f"Return {return_id} not found")
    return return_doc


def _next_return_number(store_id: int) -> str:
    count = db.session.query(func.count(Return.id)).filter_by(store_id=store_id).scalar() or 0
    return f"R-{count + 1:06d}"


def _units_on_open_returns(order_item_id: int) -> int:
    """Units of one order line already claimed by a return that was not rejected."""
    return (
        db.session.query(func.coalesce(func.sum(ReturnItem.quantity), 0))
        .join(Return, Return.id == ReturnItem.return_id)
        .filter(ReturnItem.order_item_id == order_item_id, Return.status != RETURN_REJECTED)
        .scalar()
    )


def _processed_units(order_id: int) -> int:
    return (
        db.session.query(func.coalesce(func.sum(ReturnItem.quantity), 0))
        .join(Return, Return.id == ReturnItem.return_id)
        .filter(Return.order_id == order_id, Return.status == RETURN_PROCESSED)
        .scalar()
    )


def _validate_request(cmd: RequestReturnCommand) -> None:
    if cmd.reason not in RETURN_REASONS:
        raise ValidationError(f"reason must be one of {sorted(RETURN_REASONS)}")
    if not cmd.lines:
        raise ValidationError("At least one return line is required")
    seen = set()
    for line in cmd.lines:
        if line.quantity <= 0:
            raise ValidationError("Return quantity must be positive")
        if line.order_item_id in seen:
            raise ValidationError(f"Order item {line.order_item_id} is listed twice")
        seen.add(line.order_item_id)


def _line_refund_amount(order: Order, item: OrderItem, quantity: int, items_total: int) -> int:
    """Returned units at their discounted line price plus their share of order tax."""
    amount = round_half_up_div(item.total * quantity, item.quantity)
    if items_total <= 0:
        return amount
    return amount + round_half_up_div(order.tax_amount * amount, items_total)


def _refundable_payment(order: Order, payment_id: int | None) -> Payment:
    """The given captured payment, or the oldest one with money left on it."""
    q = db.session.query(Payment).filter(
        Payment.order_id == order.id,
        Payment.status == payment_service.PAYMENT_CAPTURED,
        Payment.amount > 0,
    )
    if payment_id is not None:
        payment = q.filter(Payment.id == payment_id).first()
        if payment is None:
            raise NotFoundError(f"Captured payment {payment_id} not found on this order")
        return payment
    for payment in q.order_by(Payment.id).all():
        if payment.amount - payment_service.refunded_total_for_payment(payment.id) > 0:
            return payment
    raise ReturnError("Order has no captured payment left to refund")


# =============================================================================
# REQUEST
# =============================================================================

def request_return(cmd: RequestReturnCommand, actor: User | None = None) -> Return:
    """
    Open a return for fulfilled units of an order.

    Each line is capped by the fulfilled quantity minus units already on
    returns that were not rejected.
    """
    _validate_request(cmd)
    if cmd.notes is not None and len(cmd.notes) > 5000:
        raise ValidationError("notes must be at most 5000 characters")

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=cmd.order_id)).first()
        store_id = _scope_store_id(actor)
        if not order or (store_id is not None and order.store_id != store_id):
            raise NotFoundError(f"Order {cmd.order_id} not found")
        if order.status == "cancelled":
            raise ReturnError("Cannot return items from a cancelled order")
        if cmd.customer_id is not None and order.customer_id not in (None, cmd.customer_id):
            raise ReturnError("Customer does not match the order")

        items = {item.id: item for item in order.items}
        now = utcnow()
        return_doc = Return(
            store_id=order.store_id,
            order_id=order.id,
            return_number=_next_return_number(order.store_id),
            status=RETURN_REQUESTED,
            reason=cmd.reason,
            notes=cmd.notes,
            customer_id=cmd.customer_id or order.customer_id,
            created_by_user_id=actor.id if actor else None,
            created_at=now,
        )
        db.session.add(return_doc)
        db.session.flush()

        for line in cmd.lines:
            item = items.get(line.order_item_id)
            if item is None:
                raise ReturnError(f"Order item {line.order_item_id} does not belong to order {order.order_number}")
            available = item.fulfilled_quantity - _units_on_open_returns(item.id)
            if line.quantity > available:
                raise ReturnError(
                    f"Cannot return {line.quantity} of '{item.product_title}': "
                    f"only {max(0, available)} fulfilled and not already on a return"
                )
            db.session.add(ReturnItem(
                return_id=return_doc.id,
                order_item_id=item.id,
                quantity=line.quantity,
                reason=line.reason,
                restockable=line.restockable,
                created_at=now,
            ))
        db.session.flush()

        timeline_service.append_entry(
            order.id, "note", "note", "note",
            note=f"Return {return_doc.return_number} requested ({cmd.reason})",
            is_internal=True,
            actor=actor,
        )
        log_admin_action(
            action="return.requested",
            entity="return",
            entity_id=return_doc.id,
            user_id=actor.id if actor else None,
            store_id=order.store_id,
            metadata={"order_id": order.id, "reason": cmd.reason},
        )
        db.session.commit()
        return return_doc

    return run_with_retry(_op)


# =============================================================================
# APPROVAL / REJECTION
# =============================================================================

def approve_return(return_id: int, actor: User | None = None) -> Return:
    def _op():
        return_doc = _get_return(return_id, _scope_store_id(actor), lock=True)
        if return_doc.status != RETURN_REQUESTED:
            raise ReturnError(f"Can only approve requested returns (status is {return_doc.status})")

        return_doc.status = RETURN_APPROVED
        return_doc.approved_at = utcnow()
        return_doc.approved_by_user_id = actor.id if actor else None

        timeline_service.append_entry(
            return_doc.order_id, "note", "note", "note",
            note=f"Return {return_doc.return_number} approved",
            is_internal=True,
            actor=actor,
        )
        log_admin_action(
            action="return.approved",
            entity="return",
            entity_id=return_doc.id,
            user_id=actor.id if actor else None,
            store_id=return_doc.store_id,
            metadata={"order_id": return_doc.order_id},
        )
        db.session.commit()
        return return_doc

    return run_with_retry(_op)


def reject_return(return_id: int, actor: User | None = None, reason: str | None = None) -> Return:
    if not reason or not reason.strip():
        raise ValidationError("Rejection reason is required")
    if len(reason) > 255:
        raise ValidationError("reason must be at most 255 characters")

    def _op():
        return_doc = _get_return(return_id, _scope_store_id(actor), lock=True)
        if return_doc.status != RETURN_REQUESTED:
            raise ReturnError(f"Can only reject requested returns (status is {return_doc.status})")

        return_doc.status = RETURN_REJECTED
        return_doc.rejected_at = utcnow()
        return_doc.rejection_reason = reason.strip()

        timeline_service.append_entry(
            return_doc.order_id, "note", "note", "note",
            note=f"Return {return_doc.return_number} rejected: {return_doc.rejection_reason}",
            is_internal=True,
            actor=actor,
        )
        log_admin_action(
            action="return.rejected",
            entity="return",
            entity_id=return_doc.id,
            user_id=actor.id if actor else None,
            store_id=return_doc.store_id,
            metadata={"order_id": return_doc.order_id, "reason": return_doc.rejection_reason},
        )
        db.session.commit()
        return return_doc

    return run_with_retry(_op)


# =============================================================================
# PROCESSING
# =============================================================================

def process_return(
    return_id: int,
    resolution: str,
    actor: User | None = None,
    payment_id: int | None = None,
) -> Return:
    """
    Resolve an approved return in one transaction.

    The refund resolution goes through payment_service.refund_payment_inner,
    so a declined gateway or an over-refund rolls back the restock too.
    """
    if resolution not in RESOLUTIONS:
        raise ValidationError(f"resolution must be one of {sorted(RESOLUTIONS)}")

    def _op():
        return_doc = _get_return(return_id, _scope_store_id(actor), lock=True)
        if return_doc.status != RETURN_APPROVED:
            raise ReturnError(f"Can only process approved returns (status is {return_doc.status})")
        order = lock_for_update(db.session.query(Order).filter_by(id=return_doc.order_id)).first()

        items = {
            item.id: item
            for item in lock_for_update(
                db.session.query(OrderItem).filter(OrderItem.order_id == order.id)
            ).all()
        }

        if resolution == "refund":
            items_total = sum(item.total for item in items.values())
            amount = sum(
                _line_refund_amount(order, items[line.order_item_id], line.quantity, items_total)
                for line in return_doc.items
            )
            payment = _refundable_payment(order, payment_id)
            remaining = payment.amount - payment_service.refunded_total_for_payment(payment.id)
            amount = min(amount, remaining, order.refundable_amount)
            if amount <= 0:
                raise ReturnError("Nothing left to refund on this order")
            refund = payment_service.refund_payment_inner(
                payment_service.RefundCommand(
                    payment_id=payment.id,
                    reason=f"Return {return_doc.return_number} ({return_doc.reason})",
                    amount=amount,
                    lines=[
                        payment_service.RefundLineInput(order_item_id=line.order_item_id, quantity=line.quantity)
                        for line in return_doc.items
                    ],
                ),
                actor=actor,
            )
            return_doc.refund_id = refund.id

        restocked_units = 0
        for line in return_doc.items:
            if line.restockable:
                payment_service.restock_order_item(
                    order,
                    items[line.order_item_id],
                    line.quantity,
                    reference_type="return",
                    reference_id=return_doc.id,
                    actor=actor,
                )
                restocked_units += line.quantity
        if return_doc.refund_id is not None and restocked_units:
            db.session.get(Refund, return_doc.refund_id).restocked = True

        now = utcnow()
        return_doc.status = RETURN_PROCESSED
        return_doc.resolution = resolution
        return_doc.processed_at = now
        return_doc.processed_by_user_id = actor.id if actor else None
        db.session.flush()

        fulfilled_units = sum(item.fulfilled_quantity for item in items.values())
        if fulfilled_units and _processed_units(order.id) >= fulfilled_units and order.fulfillment_status != "returned":
            previous = order.fulfillment_status
            order.fulfillment_status = "returned"
            timeline_service.append_entry(
                order.id, "fulfillment", previous, "returned",
                note=f"Return {return_doc.return_number} processed ({resolution})",
                actor=actor,
            )
        else:
            timeline_service.append_entry(
                order.id, "note", "note", "note",
                note=f"Return {return_doc.return_number} processed ({resolution})",
                is_internal=True,
                actor=actor,
            )

        log_admin_action(
            action="return.processed",
            entity="return",
            entity_id=return_doc.id,
            user_id=actor.id if actor else None,
            store_id=order.store_id,
            metadata={
                "order_id": order.id,
                "resolution": resolution,
                "refund_id": return_doc.refund_id,
                "restocked_units": restocked_units,
            },
        )
        db.session.commit()
        current_app.logger.info(
            "Processed return %s for order %s as %s", return_doc.return_number, order.id, resolution
        )
        return return_doc

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_return(return_id: int, store_id: int | None = None) -> Return:
    return _get_return(return_id, store_id)


def list_returns(store_id: int, status: str | None = None, order_id: int | None = None) -> list[Return]:
    if status is not None and status not in RETURN_STATUSES:
        raise ValidationError(f"status must be one of {sorted(RETURN_STATUSES)}")
    q = db.session.query(Return).filter_by(store_id=store_id)
    if status:
        q = q.filter_by(status=status)
    if order_id is not None:
        q = q.filter_by(order_id=order_id)
    return q.order_by(Return.id.desc()).all()
