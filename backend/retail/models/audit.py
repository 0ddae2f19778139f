from __future__ import annotations

from ..extensions import db
from retail.time_utils import to_utc_z, utcnow


class AuditLogEntry(db.Model):
    """
    Append-only record of a privileged mutation.

    WHY: operators need to answer "who changed this and when" without business
    logic ever depending on it. Rows are never updated or deleted.
    """
    __tablename__ = "audit_log"
    __table_args__ = (
        db.Index("ix_audit_log_target", "target_type", "target_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    actor = db.Column(db.String(120), nullable=False)
    actor_staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    target_type = db.Column(db.String(32), nullable=False)
    target_id = db.Column(db.String(64), nullable=True)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor": self.actor,
            "actor_staff_id": self.actor_staff_id,
            "action": self.action,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "details": self.details,
            "created_at": to_utc_z(self.created_at),
        }
