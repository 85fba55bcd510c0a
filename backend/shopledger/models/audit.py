from __future__ import annotations

from ..extensions import db
from shopledger.time_utils import to_utc_z


class AuditLog(db.Model):
    """
    Append-only audit trail for destructive or money-moving admin actions.

    Rows are written inside the same DB transaction as the mutation they
    describe: if the audit insert fails, the mutation rolls back with it.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_entity", "entity", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    action = db.Column(db.String(64), nullable=False, index=True)
    entity = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=True)

    # "metadata" is reserved on declarative models
    details = db.Column("metadata", db.JSON, nullable=True)

    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "user_id": self.user_id,
            "action": self.action,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "metadata": self.details or {},
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": to_utc_z(self.created_at),
        }
