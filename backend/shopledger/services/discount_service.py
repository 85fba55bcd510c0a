# Overview: Service-layer operations for discount codes; validation, amount calculation and the usage ledger.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from sqlalchemy import func

from ..extensions import db
from ..models import (
    Discount,
    DiscountProduct,
    DiscountCollection,
    DiscountUsage,
    CollectionProduct,
    Product,
    Collection,
)
from shopledger.time_utils import utcnow, to_utc_naive
from shopledger.validation import ConflictError, NotFoundError, ValidationError
from .audit_service import log_admin_action
from .concurrency import lock_for_update, run_with_retry
"""
Discount Invariants

Status:
- draft and disabled are set by staff and are sticky.
- scheduled / active / expired are derived from the validity window by
  compute_status(). It is the only place that derivation happens; callers
  persist the result lazily when it differs from the stored value.

Usage:
- DiscountUsage rows are the source of truth (append-only).
- Discount.current_usage caches COUNT(usages). It is incremented in the same
  transaction as the usage insert, after re-checking the limit against the
  locked discount row, so current_usage never exceeds usage_limit.
- check_usage_consistency() compares the cache with the ledger.

Money:
- value is basis points for percentage (1000 = 10.00%), minor units for
  fixed_amount. Percentages round half-up to the nearest minor unit.
- A computed discount never exceeds the order amount.
"""


class DiscountError(ConflictError):
    """Raised for discount rule violations."""
    pass


TYPE_PERCENTAGE = "percentage"
TYPE_FIXED_AMOUNT = "fixed_amount"
TYPE_FREE_SHIPPING = "free_shipping"
TYPE_BUY_X_GET_Y = "buy_x_get_y"
DISCOUNT_TYPES = {TYPE_PERCENTAGE, TYPE_FIXED_AMOUNT, TYPE_FREE_SHIPPING, TYPE_BUY_X_GET_Y}

APPLIES_TO = {"all", "products", "collections"}

STATUS_DRAFT = "draft"
STATUS_SCHEDULED = "scheduled"
STATUS_ACTIVE = "active"
STATUS_DISABLED = "disabled"
STATUS_EXPIRED = "expired"
MANUAL_STATUSES = {STATUS_DRAFT, STATUS_DISABLED}
DISCOUNT_STATUSES = {STATUS_DRAFT, STATUS_SCHEDULED, STATUS_ACTIVE, STATUS_DISABLED, STATUS_EXPIRED}


@dataclass
class DiscountValidation:
    valid: bool
    discount: Discount | None = None
    error: str | None = None


@dataclass(frozen=True)
class CartLine:
    """Line input for amount calculation (unit price in minor units)."""
    product_id: int
    price: int
    quantity: int


@dataclass
class DiscountCommand:
    """Create or full update of a discount. Every field is explicit."""
    code: str
    title: str
    type: str
    value: int = 0
    description: str | None = None
    applies_to: str = "all"
    product_ids: list[int] = field(default_factory=list)
    collection_ids: list[int] = field(default_factory=list)
    minimum_amount: int | None = None
    maximum_amount: int | None = None
    usage_limit: int | None = None
    usage_limit_per_customer: int | None = None
    once_per_customer: bool = False
    prerequisite_quantity: int | None = None
    entitled_quantity: int | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    status: str = STATUS_DRAFT
    combines_with_product: bool = False
    combines_with_order: bool = False
    combines_with_shipping: bool = False


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def compute_status(discount: Discount, now: datetime) -> str:
    """
    The single status derivation. Pure.

    draft/disabled are manual and sticky; otherwise scheduled before
    starts_at, expired after ends_at, active in between.
    """
    if discount.status in MANUAL_STATUSES:
        return discount.status
    now = to_utc_naive(now)
    starts_at = to_utc_naive(discount.starts_at)
    ends_at = to_utc_naive(discount.ends_at)
    if starts_at is not None and starts_at > now:
        return STATUS_SCHEDULED
    if ends_at is not None and ends_at < now:
        return STATUS_EXPIRED
    return STATUS_ACTIVE


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounding .5 away from zero (non-negative inputs)."""
    return (numerator * 2 + denominator) // (denominator * 2)


def calculate_discount_amount(
    discount: Discount,
    order_amount: int,
    items: Iterable[CartLine] | None = None,
    shipping_amount: int = 0,
    eligible_product_ids: set[int] | None = None,
) -> int:
    """
    Compute the discount in minor units.

    eligible_product_ids scopes buy_x_get_y; None means every line is eligible.
    Use eligible_product_ids_for() to resolve it from the discount's scope.
    """
    order_amount = max(0, order_amount or 0)

    if discount.type == TYPE_PERCENTAGE:
        amount = round_half_up_div(order_amount * (discount.value or 0), 10000)
        if discount.maximum_amount is not None:
            amount = min(amount, discount.maximum_amount)
    elif discount.type == TYPE_FIXED_AMOUNT:
        amount = discount.value or 0
    elif discount.type == TYPE_FREE_SHIPPING:
        amount = max(0, shipping_amount or 0)
    elif discount.type == TYPE_BUY_X_GET_Y:
        amount = _buy_x_get_y_amount(discount, items or [], eligible_product_ids)
    else:
        amount = 0

    return max(0, min(amount, order_amount))


def _buy_x_get_y_amount(discount: Discount, items: Iterable[CartLine], eligible_product_ids: set[int] | None) -> int:
    prerequisite = discount.prerequisite_quantity or 0
    entitled = discount.entitled_quantity or 0
    if prerequisite <= 0 or entitled <= 0:
        return 0

    unit_prices = []
    for line in items:
        if eligible_product_ids is not None and line.product_id not in eligible_product_ids:
            continue
        unit_prices.extend([line.price] * line.quantity)

    if len(unit_prices) < prerequisite:
        return 0

    free_units = (len(unit_prices) // prerequisite) * entitled
    unit_prices.sort()
    return sum(unit_prices[:free_units])


# =============================================================================
# INTERNAL HELPERS (no commit)
# =============================================================================

def eligible_product_ids_for(discount: Discount) -> set[int] | None:
    """None means the discount applies to every product."""
    if discount.applies_to == "products":
        return {p.product_id for p in discount.products}
    if discount.applies_to == "collections":
        collection_ids = [c.collection_id for c in discount.collections]
        if not collection_ids:
            return set()
        rows = (
            db.session.query(CollectionProduct.product_id)
            .filter(CollectionProduct.collection_id.in_(collection_ids))
            .all()
        )
        return {r[0] for r in rows}
    return None


def _find_by_code(store_id: int, code: str, *, lock: bool = False) -> Discount | None:
    q = db.session.query(Discount).filter_by(store_id=store_id, code=normalize_code(code))
    if lock:
        q = lock_for_update(q)
    return q.first()


def _get_discount(discount_id: int, store_id: int | None = None, *, lock: bool = False) -> Discount:
    q = db.session.query(Discount).filter_by(id=discount_id)
    if lock:
        q = lock_for_update(q)
    discount = q.first()
    if not discount or (store_id is not None and discount.store_id != store_id):
        raise NotFoundError(f"Discount {discount_id} not found")
    return discount


def _refresh_status(discount: Discount, now: datetime) -> str:
    """Persist the derived status when it drifted. Caller commits."""
    status = compute_status(discount, now)
    if status != discount.status:
        discount.status = status
    return status


def _customer_usage_count(discount_id: int, customer_id: int) -> int:
    return (
        db.session.query(func.count(DiscountUsage.id))
        .filter(DiscountUsage.discount_id == discount_id, DiscountUsage.customer_id == customer_id)
        .scalar()
    ) or 0


def _check_rules(
    discount: Discount,
    *,
    customer_id: int | None,
    order_amount: int | None,
    now: datetime,
) -> str | None:
    """Run the ordered eligibility checks. Returns the first failure reason."""
    status = _refresh_status(discount, now)
    if status == STATUS_SCHEDULED:
        return "Discount has not started yet"
    if status == STATUS_EXPIRED:
        return "Discount has expired"
    if status != STATUS_ACTIVE:
        return "Invalid discount code"

    now = to_utc_naive(now)
    if discount.starts_at is not None and to_utc_naive(discount.starts_at) > now:
        return "Discount has not started yet"
    if discount.ends_at is not None and to_utc_naive(discount.ends_at) < now:
        return "Discount has expired"

    if discount.usage_limit is not None and discount.current_usage >= discount.usage_limit:
        return "Discount usage limit reached"

    if customer_id is not None and discount.usage_limit_per_customer is not None:
        if _customer_usage_count(discount.id, customer_id) >= discount.usage_limit_per_customer:
            return "You have already used this discount"

    if customer_id is not None and discount.once_per_customer:
        if _customer_usage_count(discount.id, customer_id) > 0:
            return "This discount can only be used once per customer"

    if order_amount is not None and discount.minimum_amount is not None:
        if order_amount < discount.minimum_amount:
            return f"Minimum order amount of {format_minor(discount.minimum_amount)} required"

    return None


def format_minor(amount: int) -> str:
    return f"{amount // 100}.{amount % 100:02d}"


def _record_usage_inner(
    discount: Discount,
    *,
    order_id: int | None,
    customer_id: int | None,
    amount: int,
    currency: str,
) -> DiscountUsage:
    """Insert the ledger row and bump the cache. discount must be locked."""
    if discount.usage_limit is not None and discount.current_usage >= discount.usage_limit:
        raise DiscountError("Discount usage limit reached")

    usage = DiscountUsage(
        discount_id=discount.id,
        customer_id=customer_id,
        order_id=order_id,
        discount_amount=amount,
        currency=currency,
        created_at=utcnow(),
    )
    db.session.add(usage)
    discount.current_usage = (discount.current_usage or 0) + 1
    db.session.flush()
    return usage


def apply_discount_inner(
    *,
    store_id: int,
    code: str,
    order_id: int | None,
    customer_id: int | None,
    order_amount: int,
    items: Iterable[CartLine] | None = None,
    shipping_amount: int = 0,
    currency: str = "INR",
) -> tuple[Discount, int]:
    """
    Validate, compute and record inside the caller's transaction.

    Raises DiscountError with the user-facing reason when the code is not
    usable. Used by checkout so the usage lands in the order transaction.
    """
    discount = _find_by_code(store_id, code, lock=True)
    if not discount:
        raise DiscountError("Invalid discount code")

    reason = _check_rules(discount, customer_id=customer_id, order_amount=order_amount, now=utcnow())
    if reason:
        raise DiscountError(reason)

    amount = calculate_discount_amount(
        discount,
        order_amount,
        items=items,
        shipping_amount=shipping_amount,
        eligible_product_ids=eligible_product_ids_for(discount),
    )
    if amount <= 0:
        raise DiscountError("This discount is not applicable to your current cart")

    _record_usage_inner(
        discount,
        order_id=order_id,
        customer_id=customer_id,
        amount=amount,
        currency=currency,
    )
    return discount, amount


# =============================================================================
# EVALUATOR
# =============================================================================

def validate_discount(
    store_id: int,
    code: str,
    customer_id: int | None = None,
    order_amount: int | None = None,
) -> DiscountValidation:
    """
    Check whether a code is usable right now. Never raises for rule failures.

    A drifted status (e.g. active -> expired) is persisted as a side effect.
    """
    if not normalize_code(code):
        return DiscountValidation(valid=False, error="Please enter a discount code")

    def _op():
        discount = _find_by_code(store_id, code)
        if not discount:
            return DiscountValidation(valid=False, error="Invalid discount code")
        reason = _check_rules(discount, customer_id=customer_id, order_amount=order_amount, now=utcnow())
        db.session.commit()
        if reason:
            return DiscountValidation(valid=False, discount=discount, error=reason)
        return DiscountValidation(valid=True, discount=discount)

    return run_with_retry(_op)


def record_usage(
    discount_id: int,
    order_id: int | None,
    customer_id: int | None,
    amount: int,
    currency: str = "INR",
) -> DiscountUsage:
    """Append a usage row and increment the counter in one transaction."""
    if amount < 0:
        raise ValidationError("amount must be >= 0")

    def _op():
        discount = _get_discount(discount_id, lock=True)
        usage = _record_usage_inner(
            discount,
            order_id=order_id,
            customer_id=customer_id,
            amount=amount,
            currency=currency,
        )
        db.session.commit()
        return usage

    return run_with_retry(_op)


def apply_discount(
    store_id: int,
    code: str,
    order_id: int | None,
    customer_id: int | None,
    order_amount: int,
    items: Iterable[CartLine] | None = None,
    shipping_amount: int = 0,
    currency: str = "INR",
) -> int:
    """Validate + compute + record atomically. Returns the discount amount."""
    if not normalize_code(code):
        raise ValidationError("Please enter a discount code")

    def _op():
        _, amount = apply_discount_inner(
            store_id=store_id,
            code=code,
            order_id=order_id,
            customer_id=customer_id,
            order_amount=order_amount,
            items=items,
            shipping_amount=shipping_amount,
            currency=currency,
        )
        db.session.commit()
        return amount

    return run_with_retry(_op)


def check_usage_consistency(discount_id: int, store_id: int | None = None) -> dict:
    discount = _get_discount(discount_id, store_id)
    ledger_count = (
        db.session.query(func.count(DiscountUsage.id))
        .filter(DiscountUsage.discount_id == discount.id)
        .scalar()
    ) or 0
    return {
        "discount_id": discount.id,
        "code": discount.code,
        "current_usage": discount.current_usage,
        "ledger_count": ledger_count,
        "consistent": discount.current_usage == ledger_count,
    }


def list_usages(discount_id: int) -> list[DiscountUsage]:
    return (
        db.session.query(DiscountUsage)
        .filter_by(discount_id=discount_id)
        .order_by(DiscountUsage.id)
        .all()
    )


# =============================================================================
# ADMIN OPERATIONS
# =============================================================================

def _validate_command(cmd: DiscountCommand) -> None:
    if not normalize_code(cmd.code):
        raise ValidationError("code is required")
    if not cmd.title or not cmd.title.strip():
        raise ValidationError("title is required")
    if cmd.type not in DISCOUNT_TYPES:
        raise ValidationError(f"type must be one of {sorted(DISCOUNT_TYPES)}")
    if cmd.applies_to not in APPLIES_TO:
        raise ValidationError(f"applies_to must be one of {sorted(APPLIES_TO)}")
    if cmd.status not in MANUAL_STATUSES | {STATUS_ACTIVE}:
        raise ValidationError("status must be draft, active or disabled")
    if cmd.value is None or cmd.value < 0:
        raise ValidationError("value must be >= 0")
    if cmd.type == TYPE_PERCENTAGE and not (0 < cmd.value <= 10000):
        raise ValidationError("percentage value must be between 1 and 10000 basis points")
    if cmd.type == TYPE_FIXED_AMOUNT and cmd.value <= 0:
        raise ValidationError("fixed_amount value must be positive")
    if cmd.type == TYPE_BUY_X_GET_Y:
        if not cmd.prerequisite_quantity or cmd.prerequisite_quantity < 1:
            raise ValidationError("prerequisite_quantity must be >= 1 for buy_x_get_y")
        if not cmd.entitled_quantity or cmd.entitled_quantity < 1:
            raise ValidationError("entitled_quantity must be >= 1 for buy_x_get_y")
    for name in ("minimum_amount", "maximum_amount"):
        value = getattr(cmd, name)
        if value is not None and value < 0:
            raise ValidationError(f"{name} must be >= 0")
    for name in ("usage_limit", "usage_limit_per_customer"):
        value = getattr(cmd, name)
        if value is not None and value < 1:
            raise ValidationError(f"{name} must be >= 1")
    if cmd.starts_at and cmd.ends_at and to_utc_naive(cmd.ends_at) <= to_utc_naive(cmd.starts_at):
        raise ValidationError("ends_at must be after starts_at")
    if cmd.applies_to == "products" and not cmd.product_ids:
        raise ValidationError("product_ids required when applies_to is products")
    if cmd.applies_to == "collections" and not cmd.collection_ids:
        raise ValidationError("collection_ids required when applies_to is collections")


def _check_scope_ids(store_id: int, cmd: DiscountCommand) -> None:
    if cmd.product_ids:
        found = (
            db.session.query(func.count(Product.id))
            .filter(Product.store_id == store_id, Product.id.in_(cmd.product_ids))
            .scalar()
        )
        if found != len(set(cmd.product_ids)):
            raise NotFoundError("One or more products not found")
    if cmd.collection_ids:
        found = (
            db.session.query(func.count(Collection.id))
            .filter(Collection.store_id == store_id, Collection.id.in_(cmd.collection_ids))
            .scalar()
        )
        if found != len(set(cmd.collection_ids)):
            raise NotFoundError("One or more collections not found")


def _apply_command(discount: Discount, cmd: DiscountCommand) -> None:
    discount.code = normalize_code(cmd.code)
    discount.title = cmd.title.strip()
    discount.description = cmd.description
    discount.type = cmd.type
    discount.value = cmd.value
    discount.applies_to = cmd.applies_to
    discount.minimum_amount = cmd.minimum_amount
    discount.maximum_amount = cmd.maximum_amount
    discount.usage_limit = cmd.usage_limit
    discount.usage_limit_per_customer = cmd.usage_limit_per_customer
    discount.once_per_customer = cmd.once_per_customer
    discount.prerequisite_quantity = cmd.prerequisite_quantity
    discount.entitled_quantity = cmd.entitled_quantity
    discount.starts_at = to_utc_naive(cmd.starts_at)
    discount.ends_at = to_utc_naive(cmd.ends_at)
    discount.combines_with_product = cmd.combines_with_product
    discount.combines_with_order = cmd.combines_with_order
    discount.combines_with_shipping = cmd.combines_with_shipping

    product_ids = sorted(set(cmd.product_ids)) if cmd.applies_to == "products" else []
    collection_ids = sorted(set(cmd.collection_ids)) if cmd.applies_to == "collections" else []
    discount.products = [DiscountProduct(product_id=pid) for pid in product_ids]
    discount.collections = [DiscountCollection(collection_id=cid) for cid in collection_ids]

    # Staff choose draft/disabled/active; the window refines "active".
    discount.status = cmd.status
    if cmd.status == STATUS_ACTIVE:
        discount.status = compute_status(discount, utcnow())


def _ensure_code_free(store_id: int, code: str, exclude_id: int | None = None) -> None:
    q = db.session.query(Discount.id).filter_by(store_id=store_id, code=normalize_code(code))
    if exclude_id is not None:
        q = q.filter(Discount.id != exclude_id)
    if q.first():
        raise DiscountError("Discount code already exists")


def create_discount(store_id: int, cmd: DiscountCommand, user_id: int | None = None) -> Discount:
    _validate_command(cmd)

    def _op():
        _ensure_code_free(store_id, cmd.code)
        _check_scope_ids(store_id, cmd)
        discount = Discount(store_id=store_id, current_usage=0)
        _apply_command(discount, cmd)
        db.session.add(discount)
        db.session.flush()
        log_admin_action(
            action="discount.created",
            entity="discount",
            entity_id=discount.id,
            user_id=user_id,
            store_id=store_id,
            metadata={"code": discount.code, "type": discount.type, "value": discount.value},
        )
        db.session.commit()
        return discount

    return run_with_retry(_op)


def update_discount(discount_id: int, store_id: int, cmd: DiscountCommand, user_id: int | None = None) -> Discount:
    _validate_command(cmd)

    def _op():
        discount = _get_discount(discount_id, store_id, lock=True)
        _ensure_code_free(store_id, cmd.code, exclude_id=discount.id)
        if cmd.usage_limit is not None and cmd.usage_limit < discount.current_usage:
            raise DiscountError(
                f"usage_limit cannot be below current usage ({discount.current_usage})"
            )
        _check_scope_ids(store_id, cmd)
        _apply_command(discount, cmd)
        log_admin_action(
            action="discount.updated",
            entity="discount",
            entity_id=discount.id,
            user_id=user_id,
            store_id=store_id,
            metadata={"code": discount.code},
        )
        db.session.commit()
        return discount

    return run_with_retry(_op)


def toggle_discount(discount_id: int, store_id: int, user_id: int | None = None) -> Discount:
    """active (or any window state) -> disabled; disabled/draft -> derived status."""
    def _op():
        discount = _get_discount(discount_id, store_id, lock=True)
        previous = discount.status
        if discount.status in MANUAL_STATUSES:
            discount.status = STATUS_ACTIVE
            discount.status = compute_status(discount, utcnow())
        else:
            discount.status = STATUS_DISABLED
        log_admin_action(
            action="discount.toggled",
            entity="discount",
            entity_id=discount.id,
            user_id=user_id,
            store_id=store_id,
            metadata={"from": previous, "to": discount.status},
        )
        db.session.commit()
        return discount

    return run_with_retry(_op)


def duplicate_discount(discount_id: int, store_id: int, user_id: int | None = None) -> Discount:
    """Draft copy with a fresh code and zero usage."""
    def _op():
        original = _get_discount(discount_id, store_id)
        suffix = format(int(utcnow().timestamp() * 1000), "x").upper()
        copy = Discount(
            store_id=store_id,
            code=f"{original.code}_COPY_{suffix}",
            title=f"{original.title} (Copy)",
            description=original.description,
            type=original.type,
            value=original.value,
            applies_to=original.applies_to,
            minimum_amount=original.minimum_amount,
            maximum_amount=original.maximum_amount,
            usage_limit=original.usage_limit,
            usage_limit_per_customer=original.usage_limit_per_customer,
            current_usage=0,
            once_per_customer=original.once_per_customer,
            prerequisite_quantity=original.prerequisite_quantity,
            entitled_quantity=original.entitled_quantity,
            starts_at=original.starts_at,
            ends_at=original.ends_at,
            status=STATUS_DRAFT,
            combines_with_product=original.combines_with_product,
            combines_with_order=original.combines_with_order,
            combines_with_shipping=original.combines_with_shipping,
        )
        copy.products = [DiscountProduct(product_id=p.product_id) for p in original.products]
        copy.collections = [DiscountCollection(collection_id=c.collection_id) for c in original.collections]
        db.session.add(copy)
        db.session.flush()
        log_admin_action(
            action="discount.duplicated",
            entity="discount",
            entity_id=copy.id,
            user_id=user_id,
            store_id=store_id,
            metadata={"source_id": original.id, "code": copy.code},
        )
        db.session.commit()
        return copy

    return run_with_retry(_op)


def delete_discount(discount_id: int, store_id: int, user_id: int | None = None) -> None:
    """Hard delete, allowed only while the ledger has no usages for the code."""
    def _op():
        discount = _get_discount(discount_id, store_id, lock=True)
        used = db.session.query(DiscountUsage.id).filter_by(discount_id=discount.id).first()
        if used or discount.current_usage > 0:
            raise DiscountError("Discount has been used and cannot be deleted; disable it instead")
        log_admin_action(
            action="discount.deleted",
            entity="discount",
            entity_id=discount.id,
            user_id=user_id,
            store_id=store_id,
            metadata={"code": discount.code},
        )
        db.session.delete(discount)
        db.session.commit()

    run_with_retry(_op)


def list_discounts(store_id: int, status: str | None = None, search: str | None = None) -> list[Discount]:
    """List with statuses recomputed (and persisted when drifted)."""
    if status is not None and status not in DISCOUNT_STATUSES:
        raise ValidationError(f"status must be one of {sorted(DISCOUNT_STATUSES)}")

    def _op():
        q = db.session.query(Discount).filter_by(store_id=store_id)
        if search:
            pattern = f"%{search.strip()}%"
            q = q.filter(Discount.code.ilike(pattern) | Discount.title.ilike(pattern))
        discounts = q.order_by(Discount.created_at.desc(), Discount.id.desc()).all()
        now = utcnow()
        for discount in discounts:
            _refresh_status(discount, now)
        db.session.commit()
        if status is not None:
            discounts = [d for d in discounts if d.status == status]
        return discounts

    return run_with_retry(_op)


def get_discount(discount_id: int, store_id: int | None = None) -> Discount:
    return _get_discount(discount_id, store_id)


def available_discounts(store_id: int, order_amount: int) -> list[dict]:
    """Active, unexhausted discounts whose minimum is met, with the amount each would give."""
    result = []
    for discount in list_discounts(store_id, status=STATUS_ACTIVE):
        if discount.usage_limit is not None and discount.current_usage >= discount.usage_limit:
            continue
        if discount.minimum_amount is not None and order_amount < discount.minimum_amount:
            continue
        if discount.type == TYPE_BUY_X_GET_Y:
            continue
        result.append({
            "id": discount.id,
            "code": discount.code,
            "title": discount.title,
            "type": discount.type,
            "discount_amount": calculate_discount_amount(discount, order_amount),
        })
    return result


def refresh_statuses(store_id: int | None = None) -> int:
    """Persist drifted statuses for every discount. Returns the number changed."""
    def _op():
        q = db.session.query(Discount)
        if store_id is not None:
            q = q.filter_by(store_id=store_id)
        now = utcnow()
        changed = 0
        for discount in q.all():
            before = discount.status
            if _refresh_status(discount, now) != before:
                changed += 1
        db.session.commit()
        return changed

    return run_with_retry(_op)
