from __future__ import annotations

from ..extensions import db
from shopledger.time_utils import to_utc_z


class Discount(db.Model):
    """
    Discount code.

    value: basis points for PERCENTAGE (1000 = 10.00%), minor units for
    FIXED_AMOUNT. Unused for FREE_SHIPPING.

    status is partly manual (draft, disabled) and partly derived from the
    validity window (scheduled, active, expired). The derived part is
    recomputed by discount_service.compute_status on read and before any
    status-dependent write, never by a background job.

    current_usage is a cache of COUNT(discount_usages) maintained in the
    same transaction as each usage insert.
    """
    __tablename__ = "discounts"
    __table_args__ = (
        db.UniqueConstraint("store_id", "code", name="uq_discounts_store_code"),
        db.CheckConstraint("current_usage >= 0", name="ck_discounts_usage_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    code = db.Column(db.String(64), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    type = db.Column(db.String(24), nullable=False, index=True)  # percentage, fixed_amount, free_shipping, buy_x_get_y
    value = db.Column(db.Integer, nullable=False, default=0)

    applies_to = db.Column(db.String(16), nullable=False, default="all")  # all, products, collections
    minimum_amount = db.Column(db.Integer, nullable=True)
    maximum_amount = db.Column(db.Integer, nullable=True)

    usage_limit = db.Column(db.Integer, nullable=True)
    usage_limit_per_customer = db.Column(db.Integer, nullable=True)
    current_usage = db.Column(db.Integer, nullable=False, default=0)
    once_per_customer = db.Column(db.Boolean, nullable=False, default=False)

    # Buy X get Y
    prerequisite_quantity = db.Column(db.Integer, nullable=True)
    entitled_quantity = db.Column(db.Integer, nullable=True)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="draft", index=True)

    combines_with_product = db.Column(db.Boolean, nullable=False, default=False)
    combines_with_order = db.Column(db.Boolean, nullable=False, default=False)
    combines_with_shipping = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    products = db.relationship("DiscountProduct", lazy=True, cascade="all, delete-orphan")
    collections = db.relationship("DiscountCollection", lazy=True, cascade="all, delete-orphan")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "code": self.code,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "value": self.value,
            "applies_to": self.applies_to,
            "product_ids": sorted(p.product_id for p in self.products),
            "collection_ids": sorted(c.collection_id for c in self.collections),
            "minimum_amount": self.minimum_amount,
            "maximum_amount": self.maximum_amount,
            "usage_limit": self.usage_limit,
            "usage_limit_per_customer": self.usage_limit_per_customer,
            "current_usage": self.current_usage,
            "once_per_customer": self.once_per_customer,
            "prerequisite_quantity": self.prerequisite_quantity,
            "entitled_quantity": self.entitled_quantity,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "status": self.status,
            "combines_with": {
                "product_discounts": self.combines_with_product,
                "order_discounts": self.combines_with_order,
                "shipping_discounts": self.combines_with_shipping,
            },
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class DiscountProduct(db.Model):
    __tablename__ = "discount_products"

    discount_id = db.Column(db.Integer, db.ForeignKey("discounts.id"), primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), primary_key=True, index=True)


class DiscountCollection(db.Model):
    __tablename__ = "discount_collections"

    discount_id = db.Column(db.Integer, db.ForeignKey("discounts.id"), primary_key=True)
    collection_id = db.Column(db.Integer, db.ForeignKey("collections.id"), primary_key=True, index=True)


class DiscountUsage(db.Model):
    """Append-only usage ledger. Source of truth for discount usage."""
    __tablename__ = "discount_usages"
    __table_args__ = (
        db.Index("ix_discount_usages_discount_customer", "discount_id", "customer_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    discount_id = db.Column(db.Integer, db.ForeignKey("discounts.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    discount_amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="INR")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "discount_id": self.discount_id,
            "customer_id": self.customer_id,
            "order_id": self.order_id,
            "discount_amount": self.discount_amount,
            "currency": self.currency,
            "created_at": to_utc_z(self.created_at),
        }
