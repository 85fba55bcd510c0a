from __future__ import annotations

from ..extensions import db


class Product(db.Model):
    """
    Minimal product master data.

    Only what the order and discount core needs: discount scope checks
    (product and collection membership) and line item snapshots.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("store_id", "handle", name="uq_products_store_handle"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    handle = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "title": self.title,
            "handle": self.handle,
            "is_active": self.is_active,
        }


class ProductVariant(db.Model):
    __tablename__ = "product_variants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False, default="Default Title")
    sku = db.Column(db.String(64), nullable=True, index=True)

    # Unit price in minor units
    price = db.Column(db.Integer, nullable=False)

    product = db.relationship("Product", backref=db.backref("variants", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "title": self.title,
            "sku": self.sku,
            "price": self.price,
        }


class Collection(db.Model):
    __tablename__ = "collections"
    __table_args__ = (
        db.UniqueConstraint("store_id", "handle", name="uq_collections_store_handle"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    handle = db.Column(db.String(255), nullable=False)


class CollectionProduct(db.Model):
    __tablename__ = "collection_products"

    collection_id = db.Column(db.Integer, db.ForeignKey("collections.id"), primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), primary_key=True, index=True)
