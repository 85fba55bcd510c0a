# Overview: Service-layer operations for per-location inventory; encapsulates stock movements and reorder settings.

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..models import InventoryItem, InventoryAdjustment, InventoryLocation, ProductVariant, Product
from shopledger.time_utils import utcnow
from shopledger.validation import ConflictError, NotFoundError, ValidationError
from .audit_service import log_admin_action
from .concurrency import lock_for_update, run_with_retry
"""
Inventory Invariants

Stock model:
- One InventoryItem per (variant, location). quantity is the on-hand count,
  reserved_quantity is held for unfulfilled orders.
- Every change to quantity appends one InventoryAdjustment in the same
  DB transaction, carrying the typed reason and the resulting quantity.
- Stock status (out / low / good) is derived on read by stock_status().

Business invariants:
- quantity may never go negative; a rejected movement leaves the row untouched.
- reserved_quantity may never go negative or exceed quantity.
- Reorder settings never touch quantity.

Items are created on first touch, but only by movements that add stock.
"""


class InventoryError(ConflictError):
    """Raised for inventory invariant violations."""
    pass


ADJUSTMENT_REASON_TYPES = {"correction", "received", "returned", "damaged", "lost"}

STOCK_OUT = "out"
STOCK_LOW = "low"
STOCK_GOOD = "good"


# =============================================================================
# COMMANDS
# =============================================================================

@dataclass(frozen=True)
class AdjustInventoryCommand:
    variant_id: int
    location_id: int
    delta: int
    reason_type: str
    reason: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class SetQuantityCommand:
    variant_id: int
    location_id: int
    quantity: int
    reason: str


@dataclass(frozen=True)
class UpdateReorderSettingsCommand:
    variant_id: int
    location_id: int
    reorder_point: int | None = None
    reorder_quantity: int | None = None


def stock_status(item: InventoryItem) -> str:
    """Derive stock status. Pure; never persisted."""
    quantity = item.quantity or 0
    if quantity <= 0:
        return STOCK_OUT
    if item.reorder_point is not None and quantity <= item.reorder_point:
        return STOCK_LOW
    return STOCK_GOOD


# =============================================================================
# INTERNAL HELPERS (no commit)
# =============================================================================

def _ensure_location(location_id: int, store_id: int | None = None) -> InventoryLocation:
    location = db.session.query(InventoryLocation).filter_by(id=location_id).first()
    if not location or (store_id is not None and location.store_id != store_id):
        raise NotFoundError(f"Location {location_id} not found")
    if not location.is_active:
        raise InventoryError(f"Location {location.code} is not active")
    return location


def _ensure_variant(variant_id: int, store_id: int | None = None) -> ProductVariant:
    q = db.session.query(ProductVariant).filter(ProductVariant.id == variant_id)
    if store_id is not None:
        q = q.join(Product, Product.id == ProductVariant.product_id).filter(Product.store_id == store_id)
    variant = q.first()
    if not variant:
        raise NotFoundError(f"Variant {variant_id} not found")
    return variant


def _locked_item(variant_id: int, location_id: int) -> InventoryItem | None:
    return lock_for_update(
        db.session.query(InventoryItem).filter_by(variant_id=variant_id, location_id=location_id)
    ).first()


def _get_or_create_item(variant_id: int, location_id: int) -> InventoryItem:
    item = _locked_item(variant_id, location_id)
    if item is None:
        item = InventoryItem(
            variant_id=variant_id,
            location_id=location_id,
            quantity=0,
            reserved_quantity=0,
            incoming_quantity=0,
        )
        db.session.add(item)
        db.session.flush()
    return item


def _record_movement(
    item: InventoryItem,
    *,
    delta: int,
    adjustment_type: str,
    reason: str | None = None,
    notes: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    user_id: int | None = None,
) -> InventoryAdjustment:
    """Apply delta to a locked item and append the movement row."""
    new_quantity = item.quantity + delta
    if new_quantity < 0:
        raise InventoryError(
            f"Adjustment would make quantity negative (on hand {item.quantity}, delta {delta})"
        )
    if new_quantity < item.reserved_quantity:
        raise InventoryError(
            f"Adjustment would leave less stock than is reserved ({item.reserved_quantity})"
        )

    item.quantity = new_quantity
    if delta > 0 and adjustment_type in ("received", "returned"):
        item.last_restocked_at = utcnow()

    adjustment = InventoryAdjustment(
        item_id=item.id,
        variant_id=item.variant_id,
        location_id=item.location_id,
        type=adjustment_type,
        quantity_delta=delta,
        quantity_after=new_quantity,
        reason=reason,
        notes=notes,
        reference_type=reference_type,
        reference_id=reference_id,
        created_by_user_id=user_id,
        created_at=utcnow(),
    )
    db.session.add(adjustment)
    db.session.flush()
    return adjustment


def _validate_adjust_command(cmd: AdjustInventoryCommand) -> None:
    if cmd.reason_type not in ADJUSTMENT_REASON_TYPES:
        raise ValidationError(
            f"Invalid reason_type: {cmd.reason_type}. Must be one of {sorted(ADJUSTMENT_REASON_TYPES)}"
        )
    if cmd.delta == 0:
        raise ValidationError("delta must be non-zero")


def _adjust_inventory_inner(
    cmd: AdjustInventoryCommand,
    *,
    store_id: int | None,
    user_id: int | None,
) -> InventoryItem:
    """Core adjust logic without retry or commit. Shared with bulk_adjust."""
    _validate_adjust_command(cmd)
    _ensure_location(cmd.location_id, store_id)
    _ensure_variant(cmd.variant_id, store_id)

    if cmd.delta > 0:
        item = _get_or_create_item(cmd.variant_id, cmd.location_id)
    else:
        item = _locked_item(cmd.variant_id, cmd.location_id)
        if item is None:
            raise InventoryError("Adjustment would make quantity negative (no stock at this location)")

    _record_movement(
        item,
        delta=cmd.delta,
        adjustment_type=cmd.reason_type,
        reason=cmd.reason,
        notes=cmd.notes,
        user_id=user_id,
    )
    return item


# =============================================================================
# ADMIN OPERATIONS
# =============================================================================

def adjust_inventory(
    cmd: AdjustInventoryCommand,
    *,
    store_id: int | None = None,
    user_id: int | None = None,
) -> InventoryItem:
    """
    Apply a typed relative adjustment.

    Raises:
        ValidationError: unknown reason type or zero delta
        NotFoundError: unknown variant or location
        InventoryError: resulting quantity would be negative
    """
    _validate_adjust_command(cmd)

    def _op():
        item = _adjust_inventory_inner(cmd, store_id=store_id, user_id=user_id)
        log_admin_action(
            action="inventory.adjusted",
            entity="inventory_item",
            entity_id=item.id,
            user_id=user_id,
            store_id=store_id,
            metadata={"delta": cmd.delta, "reason_type": cmd.reason_type, "quantity_after": item.quantity},
        )
        db.session.commit()
        return item

    return run_with_retry(_op)


def bulk_adjust(
    commands: list[AdjustInventoryCommand],
    *,
    store_id: int | None = None,
    user_id: int | None = None,
) -> list[InventoryItem]:
    """All-or-nothing: the first rejected adjustment rolls back the whole batch."""
    if not commands:
        raise ValidationError("adjustments must not be empty")
    for cmd in commands:
        _validate_adjust_command(cmd)

    def _op():
        items = [_adjust_inventory_inner(cmd, store_id=store_id, user_id=user_id) for cmd in commands]
        log_admin_action(
            action="inventory.bulk_adjusted",
            entity="inventory_item",
            entity_id=None,
            user_id=user_id,
            store_id=store_id,
            metadata={"count": len(commands), "item_ids": [i.id for i in items]},
        )
        db.session.commit()
        return items

    return run_with_retry(_op)


def set_quantity(
    cmd: SetQuantityCommand,
    *,
    store_id: int | None = None,
    user_id: int | None = None,
) -> InventoryItem:
    """Absolute overwrite of on-hand quantity. No-op when unchanged."""
    if cmd.quantity < 0:
        raise ValidationError("quantity must be >= 0")
    if not cmd.reason or not cmd.reason.strip():
        raise ValidationError("reason is required")

    def _op():
        _ensure_location(cmd.location_id, store_id)
        _ensure_variant(cmd.variant_id, store_id)
        item = _get_or_create_item(cmd.variant_id, cmd.location_id)

        delta = cmd.quantity - item.quantity
        if delta == 0:
            db.session.commit()
            return item

        _record_movement(
            item,
            delta=delta,
            adjustment_type="set_quantity",
            reason=cmd.reason.strip(),
            user_id=user_id,
        )
        log_admin_action(
            action="inventory.quantity_set",
            entity="inventory_item",
            entity_id=item.id,
            user_id=user_id,
            store_id=store_id,
            metadata={"quantity": cmd.quantity, "delta": delta, "reason": cmd.reason.strip()},
        )
        db.session.commit()
        return item

    return run_with_retry(_op)


def update_reorder_settings(
    cmd: UpdateReorderSettingsCommand,
    *,
    store_id: int | None = None,
) -> InventoryItem:
    if cmd.reorder_point is not None and cmd.reorder_point < 0:
        raise ValidationError("reorder_point must be >= 0")
    if cmd.reorder_quantity is not None and cmd.reorder_quantity < 1:
        raise ValidationError("reorder_quantity must be >= 1")

    def _op():
        _ensure_location(cmd.location_id, store_id)
        _ensure_variant(cmd.variant_id, store_id)
        item = _get_or_create_item(cmd.variant_id, cmd.location_id)
        if cmd.reorder_point is not None:
            item.reorder_point = cmd.reorder_point
        if cmd.reorder_quantity is not None:
            item.reorder_quantity = cmd.reorder_quantity
        db.session.commit()
        return item

    return run_with_retry(_op)


# =============================================================================
# ORDER-DRIVEN MOVEMENTS (called inside the order/refund transaction, no commit)
# =============================================================================

def reserve_stock(variant_id: int, location_id: int, quantity: int) -> InventoryItem:
    item = _locked_item(variant_id, location_id)
    available = item.available_quantity if item else 0
    if item is None or available < quantity:
        raise InventoryError(
            f"Insufficient stock for variant {variant_id} (available {available}, requested {quantity})"
        )
    item.reserved_quantity += quantity
    return item


def release_reservation(variant_id: int, location_id: int, quantity: int) -> InventoryItem | None:
    item = _locked_item(variant_id, location_id)
    if item is None:
        return None
    item.reserved_quantity = max(0, item.reserved_quantity - quantity)
    return item


def deduct_for_fulfillment(
    variant_id: int,
    location_id: int,
    quantity: int,
    *,
    order_id: int,
    user_id: int | None = None,
) -> InventoryItem:
    """Ship reserved units: on-hand and reserved both drop by quantity."""
    item = _locked_item(variant_id, location_id)
    if item is None:
        raise InventoryError(f"No stock record for variant {variant_id} at location {location_id}")
    item.reserved_quantity = max(0, item.reserved_quantity - quantity)
    _record_movement(
        item,
        delta=-quantity,
        adjustment_type="sold",
        reference_type="order",
        reference_id=order_id,
        user_id=user_id,
    )
    item.last_sold_at = utcnow()
    return item


def restock(
    variant_id: int,
    location_id: int,
    quantity: int,
    *,
    reference_type: str,
    reference_id: int,
    user_id: int | None = None,
) -> InventoryItem:
    """Put returned units back on hand; reference_type is "refund" or "return"."""
    item = _get_or_create_item(variant_id, location_id)
    _record_movement(
        item,
        delta=quantity,
        adjustment_type="returned",
        reason=f"{reference_type.capitalize()} restock",
        reference_type=reference_type,
        reference_id=reference_id,
        user_id=user_id,
    )
    return item


# =============================================================================
# QUERIES
# =============================================================================

def get_item(variant_id: int, location_id: int) -> InventoryItem | None:
    return db.session.query(InventoryItem).filter_by(variant_id=variant_id, location_id=location_id).first()


def list_adjustments(item_id: int, limit: int = 200) -> list[InventoryAdjustment]:
    return (
        db.session.query(InventoryAdjustment)
        .filter_by(item_id=item_id)
        .order_by(InventoryAdjustment.id.desc())
        .limit(limit)
        .all()
    )


def list_low_stock(store_id: int, location_id: int | None = None) -> list[InventoryItem]:
    """Items at or below their reorder point, plus items that are out of stock."""
    q = (
        db.session.query(InventoryItem)
        .join(InventoryLocation, InventoryLocation.id == InventoryItem.location_id)
        .filter(InventoryLocation.store_id == store_id)
    )
    if location_id is not None:
        q = q.filter(InventoryItem.location_id == location_id)
    q = q.filter(
        (InventoryItem.quantity <= 0)
        | (InventoryItem.reorder_point.isnot(None) & (InventoryItem.quantity <= InventoryItem.reorder_point))
    )
    return q.order_by(InventoryItem.quantity, InventoryItem.id).all()


def get_default_location(store_id: int) -> InventoryLocation | None:
    q = db.session.query(InventoryLocation).filter_by(store_id=store_id, is_active=True)
    default = q.filter_by(is_default=True).first()
    if default:
        return default
    return q.filter_by(fulfills_online_orders=True).order_by(InventoryLocation.id).first()


def ensure_default_location(store_id: int) -> InventoryLocation:
    """Create the store's default warehouse if it has none. Commits."""
    location = get_default_location(store_id)
    if location:
        return location
    location = InventoryLocation(
        store_id=store_id,
        name="Main Warehouse",
        code="MAIN",
        type="warehouse",
        is_active=True,
        is_default=True,
        fulfills_online_orders=True,
    )
    db.session.add(location)
    db.session.commit()
    return location
