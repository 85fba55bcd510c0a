# Overview: Service-layer operations for orders; checkout, status transitions, fulfillment and the timeline.

"""
Order Service

WHY: The order is the aggregate every other ledger hangs off. Checkout
builds it in one transaction (totals, discount usage, stock reservation,
pending payment, creation timeline entry); later actions move its three
status fields and append to the timeline.

LIFECYCLE (order.status):
- pending -> confirmed | processing | failed
- confirmed -> processing | shipped
- processing -> shipped
- shipped -> delivered
- any not yet shipped -> cancelled (cancel_order only)
cancelled, failed and delivered are terminal.

Timeline:
- Creation is recorded as None -> pending.
- Each status, payment_status or fulfillment_status change appends a typed entry.
- Notes are recorded as note -> note.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import (
    Customer,
    DiscountUsage,
    Order,
    OrderItem,
    Payment,
    Product,
    ProductVariant,
    Store,
    User,
)
from shopledger.time_utils import utcnow
from shopledger.validation import ConflictError, NotFoundError, ValidationError
from . import discount_service, inventory_service, payment_service, timeline_service
from .audit_service import log_admin_action
from .concurrency import lock_for_update, run_with_retry
from .discount_service import CartLine, round_half_up_div
from .gateway_service import call_gateway


class OrderError(ConflictError):
    """Raised for order lifecycle violations."""
    pass


# Shipping rates in minor units
SHIPPING_RATES = {
    "standard": 0,
    "express": 15000,
    "overnight": 30000,
}

ORDER_STATUSES = {"pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "failed"}
PAYMENT_STATUSES = {
    "pending", "authorized", "paid", "partially_paid",
    "refunded", "partially_refunded", "failed", "cancelled",
}
FULFILLMENT_STATUSES = {"unfulfilled", "partially_fulfilled", "fulfilled", "returned", "cancelled"}

ORDER_TRANSITIONS = {
    "pending": {"confirmed", "processing", "failed"},
    "confirmed": {"processing", "shipped"},
    "processing": {"shipped"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
    "failed": set(),
}

# Derived from the refund ledger only
LEDGER_PAYMENT_STATUSES = {"refunded", "partially_refunded"}

STATUS_TIMESTAMPS = {
    "confirmed": "confirmed_at",
    "processing": "processed_at",
    "shipped": "shipped_at",
    "delivered": "delivered_at",
}

MAX_NOTE_LENGTH = 5000


# =============================================================================
# COMMANDS
# =============================================================================

@dataclass(frozen=True)
class CheckoutLine:
    variant_id: int
    quantity: int


@dataclass
class CheckoutCommand:
    store_id: int
    email: str
    lines: list[CheckoutLine]
    shipping_address: dict
    billing_address: dict | None = None
    shipping_method: str = "standard"
    customer_id: int | None = None
    discount_code: str | None = None
    payment_method: str | None = None
    gateway: str = "manual"
    notes: str | None = None


@dataclass
class UpdateOrderStatusCommand:
    order_id: int
    status: str | None = None
    payment_status: str | None = None
    fulfillment_status: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None
    carrier: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class FulfillLine:
    order_item_id: int
    quantity: int


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _get_order(order_id: int, store_id: int | None = None, *, lock: bool = False) -> Order:
    q = db.session.query(Order).filter_by(id=order_id)
    if lock:
        q = lock_for_update(q)
    order = q.first()
    if not order or (store_id is not None and order.store_id != store_id):
        raise NotFoundError(f"Order {order_id} not found")
    return order


def _scope_store_id(actor: User | None) -> int | None:
    return actor.store_id if actor else None


def _next_order_number(now) -> str:
    prefix = f"ORD-{now.strftime('%Y%m%d')}-"
    count = (
        db.session.query(func.count(Order.id))
        .filter(Order.order_number.like(f"{prefix}%"))
        .scalar()
    ) or 0
    return f"{prefix}{count + 1:04d}"


def _allocate_discount(items: list[OrderItem], discount_amount: int) -> None:
    """Spread an order-level discount over lines by subtotal; remainder on the last line."""
    subtotal = sum(item.subtotal for item in items)
    if discount_amount <= 0 or subtotal <= 0:
        for item in items:
            item.discount_amount = 0
            item.total = item.subtotal
        return

    allocated = 0
    for index, item in enumerate(items):
        if index == len(items) - 1:
            share = discount_amount - allocated
        else:
            share = (discount_amount * item.subtotal) // subtotal
        allocated += share
        item.discount_amount = share
        item.total = item.subtotal - share


def _recompute_fulfillment_status(items: list[OrderItem]) -> str:
    fulfilled = sum(item.fulfilled_quantity for item in items)
    ordered = sum(item.quantity for item in items)
    if fulfilled == 0:
        return "unfulfilled"
    if fulfilled >= ordered:
        return "fulfilled"
    return "partially_fulfilled"


def _validate_checkout(cmd: CheckoutCommand) -> None:
    if not cmd.email or "@" not in cmd.email:
        raise ValidationError("A valid email is required")
    if not cmd.lines:
        raise ValidationError("Cart is empty")
    for line in cmd.lines:
        if line.quantity <= 0:
            raise ValidationError("Line quantity must be positive")
    if cmd.shipping_method not in SHIPPING_RATES:
        raise ValidationError(f"shipping_method must be one of {sorted(SHIPPING_RATES)}")
    if not isinstance(cmd.shipping_address, dict) or not cmd.shipping_address:
        raise ValidationError("shipping_address is required")
    if cmd.billing_address is not None and not isinstance(cmd.billing_address, dict):
        raise ValidationError("billing_address must be an object")


# =============================================================================
# CHECKOUT
# =============================================================================

def create_order(cmd: CheckoutCommand, actor: User | None = None) -> Order:
    """
    Place an order.

    One transaction: totals from current variant prices, optional discount
    (usage recorded against this order), stock reserved at the default
    location, a pending payment for the total, and the creation timeline entry.
    """
    _validate_checkout(cmd)
    tax_rate_bps = int(current_app.config.get("TAX_RATE_BPS", 1800))

    def _op():
        store = db.session.query(Store).filter_by(id=cmd.store_id).first()
        if not store or not store.is_active:
            raise NotFoundError(f"Store {cmd.store_id} not found")

        if cmd.customer_id is not None:
            customer = db.session.query(Customer).filter_by(id=cmd.customer_id, store_id=store.id).first()
            if not customer:
                raise NotFoundError(f"Customer {cmd.customer_id} not found")

        # Merge duplicate variants so reservation checks see the full quantity
        quantities: dict[int, int] = {}
        for line in cmd.lines:
            quantities[line.variant_id] = quantities.get(line.variant_id, 0) + line.quantity

        resolved = []
        for variant_id, quantity in quantities.items():
            row = (
                db.session.query(ProductVariant, Product)
                .join(Product, Product.id == ProductVariant.product_id)
                .filter(ProductVariant.id == variant_id, Product.store_id == store.id)
                .first()
            )
            if not row:
                raise NotFoundError(f"Variant {variant_id} not found")
            variant, product = row
            if not product.is_active:
                raise OrderError(f"'{product.title}' is no longer available")
            resolved.append((variant, product, quantity))

        location = inventory_service.get_default_location(store.id)
        if location is None:
            raise OrderError("No inventory location available for online orders")

        now = utcnow()
        subtotal = sum(variant.price * quantity for variant, _, quantity in resolved)
        shipping = SHIPPING_RATES[cmd.shipping_method]

        order = Order(
            store_id=store.id,
            order_number=_next_order_number(now),
            customer_id=cmd.customer_id,
            email=cmd.email.strip().lower(),
            currency=store.currency,
            subtotal_amount=subtotal,
            discount_amount=0,
            shipping_amount=shipping,
            tax_amount=0,
            total_amount=subtotal + shipping,
            refunded_amount=0,
            status="pending",
            payment_status="pending",
            fulfillment_status="unfulfilled",
            shipping_address=cmd.shipping_address,
            billing_address=cmd.billing_address or cmd.shipping_address,
            shipping_method=cmd.shipping_method,
            notes=cmd.notes,
            created_at=now,
        )
        db.session.add(order)
        db.session.flush()

        items = []
        for variant, product, quantity in resolved:
            inventory_service.reserve_stock(variant.id, location.id, quantity)
            item = OrderItem(
                order_id=order.id,
                product_id=product.id,
                variant_id=variant.id,
                product_title=product.title,
                variant_title=variant.title,
                sku=variant.sku,
                quantity=quantity,
                price=variant.price,
                subtotal=variant.price * quantity,
                discount_amount=0,
                total=variant.price * quantity,
                location_id=location.id,
                created_at=now,
            )
            db.session.add(item)
            items.append(item)

        discount_amount = 0
        discount_is_shipping = False
        if cmd.discount_code:
            discount, discount_amount = discount_service.apply_discount_inner(
                store_id=store.id,
                code=cmd.discount_code,
                order_id=order.id,
                customer_id=cmd.customer_id,
                order_amount=subtotal,
                items=[CartLine(product_id=p.id, price=v.price, quantity=q) for v, p, q in resolved],
                shipping_amount=shipping,
                currency=store.currency,
            )
            discount_is_shipping = discount.type == discount_service.TYPE_FREE_SHIPPING
            order.discount_codes = [discount.code]

        if not discount_is_shipping:
            _allocate_discount(items, discount_amount)
        taxable = subtotal - (0 if discount_is_shipping else discount_amount)
        tax = round_half_up_div(max(0, taxable) * tax_rate_bps, 10000)

        order.discount_amount = discount_amount
        order.tax_amount = tax
        order.total_amount = subtotal - discount_amount + shipping + tax

        if order.total_amount > 0:
            payment_service.create_payment_inner(
                order,
                order.total_amount,
                gateway=cmd.gateway,
                payment_method=cmd.payment_method,
                actor=actor,
            )
        else:
            order.payment_status = "paid"

        timeline_service.append_entry(order.id, "order", None, "pending", note="Order created", actor=actor)

        db.session.commit()
        current_app.logger.info("Created order %s (total %s)", order.order_number, order.total_amount)
        return order

    return run_with_retry(_op)


# =============================================================================
# ADMIN TRANSITIONS
# =============================================================================

def _validate_status_command(cmd: UpdateOrderStatusCommand) -> None:
    if cmd.status is not None and cmd.status not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of {sorted(ORDER_STATUSES)}")
    if cmd.payment_status is not None and cmd.payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"payment_status must be one of {sorted(PAYMENT_STATUSES)}")
    if cmd.fulfillment_status is not None and cmd.fulfillment_status not in FULFILLMENT_STATUSES:
        raise ValidationError(f"fulfillment_status must be one of {sorted(FULFILLMENT_STATUSES)}")
    if cmd.note is not None and len(cmd.note) > MAX_NOTE_LENGTH:
        raise ValidationError(f"note must be at most {MAX_NOTE_LENGTH} characters")


def update_order_status(cmd: UpdateOrderStatusCommand, actor: User | None = None) -> Order:
    """Move any of the three status fields, each change appending a typed timeline entry."""
    _validate_status_command(cmd)

    def _op():
        order = _get_order(cmd.order_id, _scope_store_id(actor), lock=True)
        now = utcnow()
        changes = {}

        if cmd.status is not None and cmd.status != order.status:
            if cmd.status == "cancelled":
                raise OrderError("Use cancel to cancel an order")
            if cmd.status not in ORDER_TRANSITIONS[order.status]:
                raise OrderError(f"Cannot change order status from {order.status} to {cmd.status}")
            previous = order.status
            order.status = cmd.status
            stamp = STATUS_TIMESTAMPS.get(cmd.status)
            if stamp:
                setattr(order, stamp, now)
            timeline_service.append_entry(order.id, "order", previous, cmd.status, note=cmd.note, actor=actor)
            changes["status"] = [previous, cmd.status]

        if cmd.payment_status is not None and cmd.payment_status != order.payment_status:
            if cmd.payment_status in LEDGER_PAYMENT_STATUSES or order.payment_status in LEDGER_PAYMENT_STATUSES:
                raise OrderError("Refund payment statuses are set by refunds only")
            previous = order.payment_status
            order.payment_status = cmd.payment_status
            timeline_service.append_entry(
                order.id, "payment", previous, cmd.payment_status, note=cmd.note, actor=actor
            )
            changes["payment_status"] = [previous, cmd.payment_status]

        if cmd.fulfillment_status is not None and cmd.fulfillment_status != order.fulfillment_status:
            if order.status == "cancelled":
                raise OrderError("Cannot change fulfillment of a cancelled order")
            previous = order.fulfillment_status
            order.fulfillment_status = cmd.fulfillment_status
            if cmd.fulfillment_status == "fulfilled":
                order.fulfilled_at = now
            timeline_service.append_entry(
                order.id, "fulfillment", previous, cmd.fulfillment_status, note=cmd.note, actor=actor
            )
            changes["fulfillment_status"] = [previous, cmd.fulfillment_status]

        for name in ("tracking_number", "tracking_url", "carrier"):
            value = getattr(cmd, name)
            if value is not None and value != getattr(order, name):
                setattr(order, name, value)
                changes[name] = value

        if not changes and cmd.note:
            timeline_service.append_entry(order.id, "note", "note", "note", note=cmd.note, actor=actor)

        if changes:
            log_admin_action(
                action="order.status_updated",
                entity="order",
                entity_id=order.id,
                user_id=actor.id if actor else None,
                store_id=order.store_id,
                metadata=changes,
            )
        db.session.commit()
        return order

    return run_with_retry(_op)


def fulfill_order(order_id: int, actor: User | None = None, lines: list[FulfillLine] | None = None) -> Order:
    """
    Ship all remaining units, or just the given lines.

    Requested quantities are capped at what is still unfulfilled on each line.
    Shipped units leave both on-hand and reserved stock.
    """
    for line in lines or []:
        if line.quantity <= 0:
            raise ValidationError("Fulfillment quantity must be positive")

    def _op():
        order = _get_order(order_id, _scope_store_id(actor), lock=True)
        if order.status in ("cancelled", "failed"):
            raise OrderError(f"Cannot fulfill a {order.status} order")

        items = lock_for_update(
            db.session.query(OrderItem).filter(OrderItem.order_id == order.id).order_by(OrderItem.id)
        ).all()
        by_id = {item.id: item for item in items}

        if lines:
            requested: dict[int, int] = {}
            for line in lines:
                if line.order_item_id not in by_id:
                    raise OrderError(f"Order item {line.order_item_id} does not belong to order {order.order_number}")
                requested[line.order_item_id] = requested.get(line.order_item_id, 0) + line.quantity
        else:
            requested = {item.id: item.quantity - item.fulfilled_quantity for item in items}

        shipped_units = 0
        for item_id, quantity in sorted(requested.items()):
            item = by_id[item_id]
            quantity = min(quantity, item.quantity - item.fulfilled_quantity)
            if quantity <= 0:
                continue
            if item.variant_id is not None and item.location_id is not None:
                inventory_service.deduct_for_fulfillment(
                    item.variant_id,
                    item.location_id,
                    quantity,
                    order_id=order.id,
                    user_id=actor.id if actor else None,
                )
            item.fulfilled_quantity += quantity
            shipped_units += quantity

        if shipped_units == 0:
            raise OrderError("Nothing left to fulfill on this order")

        previous = order.fulfillment_status
        new_status = _recompute_fulfillment_status(items)
        order.fulfillment_status = new_status
        if new_status == "fulfilled":
            order.fulfilled_at = utcnow()
        timeline_service.append_entry(
            order.id,
            "fulfillment",
            previous,
            new_status,
            note=f"Fulfilled {shipped_units} item(s)",
            actor=actor,
        )
        log_admin_action(
            action="order.fulfilled",
            entity="order",
            entity_id=order.id,
            user_id=actor.id if actor else None,
            store_id=order.store_id,
            metadata={"units": shipped_units, "fulfillment_status": new_status},
        )
        db.session.commit()
        return order

    return run_with_retry(_op)


def cancel_order(order_id: int, actor: User | None = None, reason: str | None = None) -> Order:
    """
    Cancel an order that has not shipped.

    Unfulfilled reservations are released. Open payments are closed: a
    pending attempt fails, an authorized one is voided at the gateway.
    """
    if reason is not None and len(reason) > 255:
        raise ValidationError("reason must be at most 255 characters")

    def _op():
        order = _get_order(order_id, _scope_store_id(actor), lock=True)
        if order.status == "cancelled":
            raise OrderError("Order is already cancelled")
        if order.status in ("shipped", "delivered"):
            raise OrderError(f"Cannot cancel an order that has been {order.status}")

        now = utcnow()
        cancel_reason = (reason or "").strip() or "Cancelled by admin"

        for item in db.session.query(OrderItem).filter_by(order_id=order.id).all():
            outstanding = item.quantity - item.fulfilled_quantity
            if outstanding > 0 and item.variant_id is not None and item.location_id is not None:
                inventory_service.release_reservation(item.variant_id, item.location_id, outstanding)

        open_payments = lock_for_update(
            db.session.query(Payment).filter(
                Payment.order_id == order.id,
                Payment.status.in_([payment_service.PAYMENT_PENDING, payment_service.PAYMENT_AUTHORIZED]),
                Payment.amount > 0,
            )
        ).all()
        for payment in open_payments:
            if payment.status == payment_service.PAYMENT_AUTHORIZED:
                call_gateway(
                    payment.gateway,
                    "void",
                    f"void:{payment.id}",
                    lambda gw, key, p=payment: gw.void(transaction_id=p.gateway_transaction_id, idempotency_key=key),
                )
                payment.status = payment_service.PAYMENT_CANCELLED
            else:
                payment.status = payment_service.PAYMENT_FAILED
                payment.failed_at = now
            payment.failure_message = f"Order cancelled: {cancel_reason}"[:255]

        previous = order.status
        order.status = "cancelled"
        order.cancelled_at = now
        order.cancel_reason = cancel_reason
        timeline_service.append_entry(order.id, "order", previous, "cancelled", note=cancel_reason, actor=actor)

        if order.payment_status in ("pending", "authorized"):
            previous_payment = order.payment_status
            order.payment_status = "cancelled"
            timeline_service.append_entry(order.id, "payment", previous_payment, "cancelled", actor=actor)

        if order.fulfillment_status == "unfulfilled":
            order.fulfillment_status = "cancelled"
            timeline_service.append_entry(order.id, "fulfillment", "unfulfilled", "cancelled", actor=actor)

        log_admin_action(
            action="order.cancelled",
            entity="order",
            entity_id=order.id,
            user_id=actor.id if actor else None,
            store_id=order.store_id,
            metadata={"reason": cancel_reason, "from_status": previous},
        )
        db.session.commit()
        return order

    return run_with_retry(_op)


def add_order_note(order_id: int, actor: User | None, note: str, is_internal: bool = True):
    if not note or not note.strip():
        raise ValidationError("note is required")
    if len(note) > MAX_NOTE_LENGTH:
        raise ValidationError(f"note must be at most {MAX_NOTE_LENGTH} characters")

    def _op():
        order = _get_order(order_id, _scope_store_id(actor), lock=True)
        entry = timeline_service.append_entry(
            order.id, "note", "note", "note", note=note.strip(), is_internal=is_internal, actor=actor
        )
        db.session.commit()
        return entry

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int, store_id: int | None = None) -> Order:
    return _get_order(order_id, store_id)


def get_timeline(order_id: int, store_id: int | None = None, include_internal: bool = True):
    order = _get_order(order_id, store_id)
    return timeline_service.list_entries(order.id, include_internal=include_internal)


def get_order_detail(order_id: int, store_id: int | None = None) -> dict:
    order = _get_order(order_id, store_id)
    usages = (
        db.session.query(DiscountUsage)
        .filter_by(order_id=order.id)
        .order_by(DiscountUsage.id)
        .all()
    )
    detail = order.to_dict()
    detail["refundable_amount"] = order.refundable_amount
    detail["items"] = [item.to_dict() for item in order.items]
    detail["payments"] = [p.to_dict() for p in order.payments]
    detail["refunds"] = [r.to_dict() for r in order.refunds]
    detail["timeline"] = [e.to_dict() for e in timeline_service.list_entries(order.id)]
    detail["discount_usages"] = [u.to_dict() for u in usages]
    detail["payment_summary"] = payment_service.get_payment_summary(order.id)
    return detail
