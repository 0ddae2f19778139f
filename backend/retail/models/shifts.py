from __future__ import annotations

from ..extensions import db
from retail.time_utils import to_utc_z, utcnow


SHIFT_OPEN = "open"
SHIFT_CLOSED = "closed"

MOVEMENT_IN = "in"
MOVEMENT_OUT = "out"


class Shift(db.Model):
    """
    Register shift for one staff member at one branch.

    LIFECYCLE:
    - open: cash movements may be recorded, totals are computed live
    - closed: reconciliation snapshot frozen; nothing recomputes it

    INVARIANT: at most one open shift per staff member (partial unique index
    plus a service-level check for a readable error).

    FROZEN SNAPSHOT (set once at close):
    expected = opening + cash_sales - cash_refunds + cash_in - cash_out
    variance = closing - expected
    """
    __tablename__ = "shifts"
    __table_args__ = (
        db.Index(
            "uq_shifts_one_open_per_staff",
            "staff_id",
            unique=True,
            sqlite_where=db.text("status = 'open'"),
            postgresql_where=db.text("status = 'open'"),
        ),
        db.Index("ix_shifts_branch_opened", "branch_id", "opened_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)

    opened_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    closed_at = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(16), nullable=False, default=SHIFT_OPEN)

    opening_cash_cents = db.Column(db.Integer, nullable=False, default=0)
    closing_cash_cents = db.Column(db.Integer, nullable=True)

    # Reconciliation snapshot (null while open)
    cash_sales_cents = db.Column(db.Integer, nullable=True)
    cash_refunds_cents = db.Column(db.Integer, nullable=True)
    cash_in_cents = db.Column(db.Integer, nullable=True)
    cash_out_cents = db.Column(db.Integer, nullable=True)
    expected_cash_cents = db.Column(db.Integer, nullable=True)
    variance_cents = db.Column(db.Integer, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    staff = db.relationship("Staff", backref=db.backref("shifts", lazy=True))
    branch = db.relationship("Branch", backref=db.backref("shifts", lazy=True))
    movements = db.relationship(
        "CashMovement",
        backref="shift",
        lazy=True,
        order_by="CashMovement.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "staff_id": self.staff_id,
            "staff_name": self.staff.name if self.staff else None,
            "branch_id": self.branch_id,
            "branch_name": self.branch.name if self.branch else None,
            "status": self.status,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at),
            "opening_cash_cents": self.opening_cash_cents,
            "closing_cash_cents": self.closing_cash_cents,
            "cash_sales_cents": self.cash_sales_cents,
            "cash_refunds_cents": self.cash_refunds_cents,
            "cash_in_cents": self.cash_in_cents,
            "cash_out_cents": self.cash_out_cents,
            "expected_cash_cents": self.expected_cash_cents,
            "variance_cents": self.variance_cents,
            "notes": self.notes,
        }


class CashMovement(db.Model):
    """Pay-in / pay-out during a shift. Append-only."""
    __tablename__ = "cash_movements"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_cash_movements_amount_positive"),
        db.CheckConstraint("type IN ('in', 'out')", name="ck_cash_movements_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=False, index=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=False)
    type = db.Column(db.String(8), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shift_id": self.shift_id,
            "staff_id": self.staff_id,
            "type": self.type,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }
