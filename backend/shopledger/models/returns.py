from __future__ import annotations

from ..extensions import db
from shopledger.time_utils import to_utc_z


class Return(db.Model):
    """
    Customer return request against a fulfilled order.

    LIFECYCLE:
    1. requested: staff logged the request, awaiting a decision
    2. approved / rejected: admin decision
    3. processed: resolved as refund, exchange or store_credit; restockable
       items are back in stock

    Money only moves for the refund resolution, through the payment ledger;
    refund_id points at the resulting Refund document.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.UniqueConstraint("store_id", "return_number", name="uq_returns_store_number"),
        db.Index("ix_returns_store_status_created", "store_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    return_number = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="requested", index=True)
    reason = db.Column(db.String(32), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    resolution = db.Column(db.String(16), nullable=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=True)
    rejection_reason = db.Column(db.String(255), nullable=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    processed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("returns", lazy=True, order_by="Return.id"))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "order_id": self.order_id,
            "return_number": self.return_number,
            "status": self.status,
            "reason": self.reason,
            "notes": self.notes,
            "resolution": self.resolution,
            "refund_id": self.refund_id,
            "rejection_reason": self.rejection_reason,
            "customer_id": self.customer_id,
            "approved_by_user_id": self.approved_by_user_id,
            "processed_by_user_id": self.processed_by_user_id,
            "approved_at": to_utc_z(self.approved_at),
            "rejected_at": to_utc_z(self.rejected_at),
            "processed_at": to_utc_z(self.processed_at),
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class ReturnItem(db.Model):
    """Order line units coming back on a return."""
    __tablename__ = "return_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_return_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    restockable = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    return_request = db.relationship("Return", backref=db.backref("items", lazy=True, order_by="ReturnItem.id"))
    order_item = db.relationship("OrderItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_item_id": self.order_item_id,
            "quantity": self.quantity,
            "reason": self.reason,
            "restockable": self.restockable,
        }
