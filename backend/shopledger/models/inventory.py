from __future__ import annotations

from ..extensions import db
from shopledger.time_utils import to_utc_z


class InventoryLocation(db.Model):
    """Warehouse, store or other stock-holding location."""
    __tablename__ = "inventory_locations"
    __table_args__ = (
        db.UniqueConstraint("store_id", "code", name="uq_inventory_locations_store_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=False)
    type = db.Column(db.String(16), nullable=False, default="warehouse")  # warehouse, store, dropship, supplier

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    fulfills_online_orders = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "code": self.code,
            "type": self.type,
            "is_active": self.is_active,
            "is_default": self.is_default,
            "fulfills_online_orders": self.fulfills_online_orders,
        }


class InventoryItem(db.Model):
    """
    Stock level for one variant at one location.

    INVARIANTS:
    - quantity >= 0 (checked before commit, and by the database)
    - reserved_quantity >= 0
    - stock status (out/low/good) is derived on read, never stored
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.UniqueConstraint("variant_id", "location_id", name="uq_inventory_items_variant_location"),
        db.CheckConstraint("quantity >= 0", name="ck_inventory_items_qty_nonneg"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_inventory_items_reserved_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("inventory_locations.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)
    incoming_quantity = db.Column(db.Integer, nullable=False, default=0)

    reorder_point = db.Column(db.Integer, nullable=True)
    reorder_quantity = db.Column(db.Integer, nullable=True)

    last_restocked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_sold_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    variant = db.relationship("ProductVariant")
    location = db.relationship("InventoryLocation")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity

    def to_dict(self) -> dict:
        from shopledger.services.inventory_service import stock_status

        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "location_id": self.location_id,
            "quantity": self.quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_quantity": self.available_quantity,
            "incoming_quantity": self.incoming_quantity,
            "reorder_point": self.reorder_point,
            "reorder_quantity": self.reorder_quantity,
            "stock_status": stock_status(self),
            "last_restocked_at": to_utc_z(self.last_restocked_at),
            "last_sold_at": to_utc_z(self.last_sold_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryAdjustment(db.Model):
    """
    Append-only stock movement log.

    Every change to InventoryItem.quantity writes one row here in the same
    transaction; quantity_after is the resulting on-hand quantity.
    """
    __tablename__ = "inventory_adjustments"
    __table_args__ = (
        db.Index("ix_inventory_adjustments_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("inventory_locations.id"), nullable=False, index=True)

    # correction, received, returned, damaged, lost, sold, set_quantity
    type = db.Column(db.String(16), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    reference_type = db.Column(db.String(16), nullable=True)  # order, refund, return
    reference_id = db.Column(db.Integer, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "variant_id": self.variant_id,
            "location_id": self.location_id,
            "type": self.type,
            "quantity_delta": self.quantity_delta,
            "quantity_after": self.quantity_after,
            "reason": self.reason,
            "notes": self.notes,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
