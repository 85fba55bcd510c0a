# Overview: Append-only audit trail writes and reads.

from __future__ import annotations

from ..extensions import db
from ..models import AuditLog
"""
Audit Invariants

- Append-only: no updates, no deletes.
- Written inside the caller's transaction (flush only, never commit), so a
  failed audit write rolls back the primary mutation too.
"""


def log_admin_action(
    *,
    action: str,
    entity: str,
    entity_id: int | None,
    user_id: int | None,
    store_id: int | None = None,
    metadata: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog:
    entry = AuditLog(
        store_id=store_id,
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        details=metadata or {},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def get_audit_logs(*, entity: str | None = None, entity_id: int | None = None, action: str | None = None) -> list[AuditLog]:
    q = db.session.query(AuditLog)
    if entity:
        q = q.filter(AuditLog.entity == entity)
    if entity_id is not None:
        q = q.filter(AuditLog.entity_id == entity_id)
    if action:
        q = q.filter(AuditLog.action == action)
    return q.order_by(AuditLog.id).all()
