# Overview: Append-only order timeline writes and reads.

from __future__ import annotations

from ..extensions import db
from ..models import OrderStatusHistory, User
from shopledger.time_utils import utcnow

STATUS_TYPES = {"order", "payment", "fulfillment", "note"}


def append_entry(
    order_id: int,
    status_type: str,
    from_status: str | None,
    to_status: str,
    *,
    note: str | None = None,
    is_internal: bool = False,
    actor: User | None = None,
) -> OrderStatusHistory:
    """Add one timeline row inside the caller's transaction (flush, no commit)."""
    if status_type not in STATUS_TYPES:
        raise ValueError(f"Unknown timeline status_type: {status_type}")
    entry = OrderStatusHistory(
        order_id=order_id,
        status_type=status_type,
        from_status=from_status,
        to_status=to_status,
        note=note,
        is_internal=is_internal,
        changed_by_user_id=actor.id if actor else None,
        changed_by_email=actor.email if actor else None,
        created_at=utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def list_entries(order_id: int, include_internal: bool = True) -> list[OrderStatusHistory]:
    q = db.session.query(OrderStatusHistory).filter_by(order_id=order_id)
    if not include_internal:
        q = q.filter(OrderStatusHistory.is_internal.is_(False))
    return q.order_by(OrderStatusHistory.created_at, OrderStatusHistory.id).all()
