from __future__ import annotations

from ..extensions import db
from retail.time_utils import to_utc_z, utcnow


class AppliedChange(db.Model):
    """
    A POS change that took effect, keyed by the terminal's change_id.

    WHY: a terminal resends its whole batch when a response is lost. The row is
    written in the same transaction as the change itself, so a resent change
    returns the stored result instead of being applied twice. Rejected changes
    are not recorded: an operator may retry them once the cause is fixed.
    """
    __tablename__ = "applied_changes"

    id = db.Column(db.Integer, primary_key=True)
    change_id = db.Column(db.String(64), nullable=False, unique=True)
    type = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False)
    data = db.Column(db.JSON, nullable=True)
    device_id = db.Column(db.String(64), nullable=True)
    applied_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "change_id": self.change_id,
            "type": self.type,
            "status": self.status,
            "data": self.data,
            "device_id": self.device_id,
            "applied_at": to_utc_z(self.applied_at),
        }

    def __repr__(self):
        return f"<AppliedChange {self.change_id} {self.type} {self.status}>"
