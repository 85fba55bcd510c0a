from __future__ import annotations

from ..extensions import db
from shopledger.time_utils import to_utc_z


class Order(db.Model):
    """
    Order aggregate.

    WHY: Owns totals and the three independent status fields (order,
    payment, fulfillment). Current status fields are the source of truth;
    OrderStatusHistory is an append-only log of how they got there.

    MONEY: All amounts are integer minor units.

    INVARIANTS:
    - 0 <= refunded_amount <= total_amount
    - refunded_amount only ever grows
    - payment_status is 'refunded' iff refunded_amount == total_amount (> 0)
    - Orders are never deleted; they are cancelled
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_store_status_created", "store_id", "status", "created_at"),
        db.CheckConstraint("refunded_amount >= 0", name="ck_orders_refunded_nonneg"),
        db.CheckConstraint("refunded_amount <= total_amount", name="ck_orders_refunded_le_total"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    # Human-readable order number (e.g., "ORD-20261019-0042")
    order_number = db.Column(db.String(64), nullable=False, unique=True, index=True)

    # Nullable for guest checkout
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    email = db.Column(db.String(255), nullable=False)

    currency = db.Column(db.String(3), nullable=False, default="INR")
    subtotal_amount = db.Column(db.Integer, nullable=False, default=0)
    discount_amount = db.Column(db.Integer, nullable=False, default=0)
    shipping_amount = db.Column(db.Integer, nullable=False, default=0)
    tax_amount = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Integer, nullable=False)
    refunded_amount = db.Column(db.Integer, nullable=False, default=0)

    discount_codes = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    fulfillment_status = db.Column(db.String(24), nullable=False, default="unfulfilled", index=True)

    shipping_address = db.Column(db.JSON, nullable=False)
    billing_address = db.Column(db.JSON, nullable=False)
    shipping_method = db.Column(db.String(32), nullable=True)

    tracking_number = db.Column(db.String(128), nullable=True)
    tracking_url = db.Column(db.String(512), nullable=True)
    carrier = db.Column(db.String(64), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    fulfilled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store", backref=db.backref("orders", lazy=True))
    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def refundable_amount(self) -> int:
        return self.total_amount - (self.refunded_amount or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "email": self.email,
            "currency": self.currency,
            "subtotal_amount": self.subtotal_amount,
            "discount_amount": self.discount_amount,
            "shipping_amount": self.shipping_amount,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
            "refunded_amount": self.refunded_amount,
            "discount_codes": self.discount_codes or [],
            "status": self.status,
            "payment_status": self.payment_status,
            "fulfillment_status": self.fulfillment_status,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "shipping_method": self.shipping_method,
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "carrier": self.carrier,
            "notes": self.notes,
            "cancel_reason": self.cancel_reason,
            "confirmed_at": to_utc_z(self.confirmed_at),
            "processed_at": to_utc_z(self.processed_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "fulfilled_at": to_utc_z(self.fulfilled_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class OrderItem(db.Model):
    """Line item with a product/variant snapshot taken at checkout."""
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)

    # Snapshot (catalog rows may change after checkout)
    product_title = db.Column(db.String(255), nullable=False)
    variant_title = db.Column(db.String(255), nullable=False, default="Default Title")
    sku = db.Column(db.String(64), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Integer, nullable=False)
    discount_amount = db.Column(db.Integer, nullable=False, default=0)
    subtotal = db.Column(db.Integer, nullable=False)
    total = db.Column(db.Integer, nullable=False)

    fulfilled_quantity = db.Column(db.Integer, nullable=False, default=0)
    restocked_quantity = db.Column(db.Integer, nullable=False, default=0)

    # Location stock was reserved at checkout
    location_id = db.Column(db.Integer, db.ForeignKey("inventory_locations.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship(
        "Order",
        backref=db.backref("items", lazy=True, order_by="OrderItem.id"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "product_title": self.product_title,
            "variant_title": self.variant_title,
            "sku": self.sku,
            "quantity": self.quantity,
            "price": self.price,
            "discount_amount": self.discount_amount,
            "subtotal": self.subtotal,
            "total": self.total,
            "fulfilled_quantity": self.fulfilled_quantity,
            "restocked_quantity": self.restocked_quantity,
            "location_id": self.location_id,
        }


class Payment(db.Model):
    """
    Payment event against an order.

    STATE MACHINE (one-directional, terminal rows never re-open):
    - pending -> authorized -> captured
    - authorized -> cancelled (void)
    - pending|authorized -> failed

    REFUNDS: A refund is its own row with a NEGATIVE amount and status
    'refunded', pointing back at the captured original through
    original_payment_id. The original stays 'captured'.
    """
    __tablename__ = "payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    # Signed minor units; negative for refunds
    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="INR")

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    gateway = db.Column(db.String(32), nullable=False, default="manual", index=True)
    gateway_transaction_id = db.Column(db.String(128), nullable=True)
    payment_method = db.Column(db.String(32), nullable=True)

    failure_message = db.Column(db.String(255), nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    original_payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)

    authorized_at = db.Column(db.DateTime(timezone=True), nullable=True)
    captured_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship(
        "Order",
        backref=db.backref("payments", lazy=True, order_by="Payment.id"),
    )
    original_payment = db.relationship("Payment", remote_side=[id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_refund(self) -> bool:
        return self.amount < 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "gateway": self.gateway,
            "gateway_transaction_id": self.gateway_transaction_id,
            "payment_method": self.payment_method,
            "failure_message": self.failure_message,
            "refund_reason": self.refund_reason,
            "refunded_at": to_utc_z(self.refunded_at),
            "original_payment_id": self.original_payment_id,
            "retry_count": self.retry_count,
            "authorized_at": to_utc_z(self.authorized_at),
            "captured_at": to_utc_z(self.captured_at),
            "failed_at": to_utc_z(self.failed_at),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class Refund(db.Model):
    """
    Refund document.

    WHY: The negative Payment row is the money movement; the Refund row
    carries the business context (reason, notes, which lines came back and
    whether they were restocked).
    """
    __tablename__ = "refunds"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_refunds_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    refund_payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, unique=True)

    amount = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    restocked = db.Column(db.Boolean, nullable=False, default=False)
    notify_customer = db.Column(db.Boolean, nullable=False, default=False)

    status = db.Column(db.String(16), nullable=False, default="success")
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("refunds", lazy=True, order_by="Refund.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "payment_id": self.payment_id,
            "refund_payment_id": self.refund_payment_id,
            "amount": self.amount,
            "reason": self.reason,
            "notes": self.notes,
            "restocked": self.restocked,
            "notify_customer": self.notify_customer,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "processed_at": to_utc_z(self.processed_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class RefundLine(db.Model):
    """Order lines selected on a refund (used for restocking)."""
    __tablename__ = "refund_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_refund_lines_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    refund = db.relationship("Refund", backref=db.backref("lines", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_item_id": self.order_item_id,
            "quantity": self.quantity,
        }


class OrderStatusHistory(db.Model):
    """
    Append-only order timeline.

    status_type is one of: order, payment, fulfillment, note.
    Notes are recorded as from_status = to_status = 'note' so commentary is
    distinguishable from transitions in the shared feed. The creation entry
    has from_status = NULL.
    """
    __tablename__ = "order_status_history"
    __table_args__ = (
        db.Index("ix_order_status_history_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    status_type = db.Column(db.String(16), nullable=False, index=True)
    from_status = db.Column(db.String(32), nullable=True)
    to_status = db.Column(db.String(32), nullable=False)

    note = db.Column(db.Text, nullable=True)
    is_internal = db.Column(db.Boolean, nullable=False, default=False)

    changed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    changed_by_email = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "status_type": self.status_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "note": self.note,
            "is_internal": self.is_internal,
            "changed_by_user_id": self.changed_by_user_id,
            "changed_by_email": self.changed_by_email,
            "created_at": to_utc_z(self.created_at),
        }
