# Overview: Service-layer operations for register shifts; opening, cash movements and close-time reconciliation.

"""
Shift & Cash Reconciliation

WHY: At close, the drawer count is compared against what the drawer should
hold. The comparison is frozen on the shift row so later order edits (a late
POS sync, a return) never rewrite a closed shift's figures.

    expected = opening + cash_sales - cash_refunds + cash_in - cash_out
    variance = closing - expected

cash_sales / cash_refunds come from orders created in [opened_at, closed_at]
at the shift's branch (reporting_service.order_totals_between). cash_in /
cash_out come from the shift's own CashMovement rows.

RULES:
- One open shift per staff member.
- Only the owner or a manager closes a shift.
- Cash movements only on open shifts.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ForbiddenError, NotFoundError, ShiftError, ValidationError
from ..models import Branch, CashMovement, Shift, Staff
from ..models.organization import ROLE_MANAGER
from ..models.shifts import MOVEMENT_IN, MOVEMENT_OUT, SHIFT_CLOSED, SHIFT_OPEN
from ..validation import coerce_cents
from .audit_service import append_audit_entry
from .concurrency import lock_for_update
from .reporting_service import order_totals_between
from retail.time_utils import utcnow

logger = logging.getLogger(__name__)


def get_open_shift(session: Session, staff_id: int) -> Shift | None:
    return session.query(Shift).filter_by(staff_id=staff_id, status=SHIFT_OPEN).first()


def get_shift(session: Session, shift_id: int) -> Shift:
    shift = session.get(Shift, shift_id)
    if shift is None:
        raise NotFoundError("Shift not found", details={"shift_id": shift_id})
    return shift


def _default_branch_id(session: Session, branch_id: int | None) -> int | None:
    if branch_id is not None:
        if session.get(Branch, branch_id) is None:
            raise NotFoundError("Branch not found", details={"branch_id": branch_id})
        return branch_id
    first = session.query(Branch).order_by(Branch.id.asc()).first()
    return first.id if first else None


def open_shift(
    session: Session,
    staff: Staff,
    *,
    opening_cash_cents,
    branch_id: int | None = None,
    now: datetime | None = None,
) -> Shift:
    opening = coerce_cents("opening_cash_cents", opening_cash_cents)
    if get_open_shift(session, staff.id):
        raise ShiftError("Shift already open")

    shift = Shift(
        staff_id=staff.id,
        branch_id=_default_branch_id(session, branch_id),
        opened_at=now or utcnow(),
        opening_cash_cents=opening,
        status=SHIFT_OPEN,
    )
    session.add(shift)
    try:
        session.flush()
    except IntegrityError:
        # Partial unique index caught a concurrent open for the same staff
        session.rollback()
        raise ShiftError("Shift already open")

    append_audit_entry(
        session,
        actor=staff.name,
        actor_staff_id=staff.id,
        action="shift.open",
        target_type="shift",
        target_id=shift.id,
        details={"opening_cash_cents": opening, "branch_id": shift.branch_id},
    )
    session.commit()
    return shift


def add_cash_movement(
    session: Session,
    staff: Staff,
    *,
    movement_type: str,
    amount_cents,
    reason: str | None = None,
) -> CashMovement:
    """Record a pay-in/pay-out against the caller's open shift."""
    if movement_type not in (MOVEMENT_IN, MOVEMENT_OUT):
        raise ValidationError("type must be 'in' or 'out'")
    amount = coerce_cents("amount_cents", amount_cents)
    if amount <= 0:
        raise ValidationError("amount_cents must be greater than zero")

    shift = get_open_shift(session, staff.id)
    if shift is None:
        raise ShiftError("No open shift")

    movement = CashMovement(
        shift_id=shift.id,
        staff_id=staff.id,
        type=movement_type,
        amount_cents=amount,
        reason=(reason or "").strip()[:255] or None,
    )
    session.add(movement)
    session.flush()

    append_audit_entry(
        session,
        actor=staff.name,
        actor_staff_id=staff.id,
        action=f"cash.{movement_type}",
        target_type="shift",
        target_id=shift.id,
        details={"amount_cents": amount, "reason": movement.reason},
    )
    session.commit()
    return movement


def movement_totals(session: Session, shift_id: int) -> dict:
    rows = (
        session.query(CashMovement.type, func.coalesce(func.sum(CashMovement.amount_cents), 0))
        .filter(CashMovement.shift_id == shift_id)
        .group_by(CashMovement.type)
        .all()
    )
    totals = {MOVEMENT_IN: 0, MOVEMENT_OUT: 0}
    for movement_type, total in rows:
        totals[movement_type] = int(total or 0)
    return {"cash_in_cents": totals[MOVEMENT_IN], "cash_out_cents": totals[MOVEMENT_OUT]}


def compute_reconciliation(session: Session, shift: Shift, *, end: datetime) -> dict:
    """Live figures for [opened_at, end]. Pure read; nothing is stored."""
    order_totals = order_totals_between(session, shift.opened_at, end, shift.branch_id)
    movements = movement_totals(session, shift.id)
    expected = (
        shift.opening_cash_cents
        + order_totals["cash_sales_cents"]
        - order_totals["cash_refunds_cents"]
        + movements["cash_in_cents"]
        - movements["cash_out_cents"]
    )
    return {
        "opening_cash_cents": shift.opening_cash_cents,
        **order_totals,
        **movements,
        "expected_cash_cents": expected,
    }


def close_shift(
    session: Session,
    shift_id: int,
    actor: Staff,
    *,
    closing_cash_cents,
    notes: str | None = None,
    now: datetime | None = None,
) -> tuple[Shift, dict]:
    """
    Close and freeze. Returns (shift, totals) where totals also carries the
    mobile/card figures that are reported but not stored.
    """
    closing = coerce_cents("closing_cash_cents", closing_cash_cents)
    shift = lock_for_update(session.query(Shift).filter(Shift.id == shift_id)).first()
    if shift is None:
        raise NotFoundError("Shift not found", details={"shift_id": shift_id})
    if shift.staff_id != actor.id and actor.role != ROLE_MANAGER:
        raise ForbiddenError("Only the shift owner or a manager can close this shift")
    if shift.status != SHIFT_OPEN:
        raise ShiftError("Shift already closed")

    closed_at = now or utcnow()
    totals = compute_reconciliation(session, shift, end=closed_at)

    shift.closed_at = closed_at
    shift.closing_cash_cents = closing
    shift.cash_sales_cents = totals["cash_sales_cents"]
    shift.cash_refunds_cents = totals["cash_refunds_cents"]
    shift.cash_in_cents = totals["cash_in_cents"]
    shift.cash_out_cents = totals["cash_out_cents"]
    shift.expected_cash_cents = totals["expected_cash_cents"]
    shift.variance_cents = closing - totals["expected_cash_cents"]
    shift.status = SHIFT_CLOSED
    if notes:
        shift.notes = notes.strip()
    session.flush()

    totals["closing_cash_cents"] = closing
    totals["variance_cents"] = shift.variance_cents

    append_audit_entry(
        session,
        actor=actor.name,
        actor_staff_id=actor.id,
        action="shift.close",
        target_type="shift",
        target_id=shift.id,
        details={
            "expected_cash_cents": shift.expected_cash_cents,
            "closing_cash_cents": closing,
            "variance_cents": shift.variance_cents,
        },
    )
    session.commit()
    if shift.variance_cents:
        logger.warning("Shift %s closed with variance %d cents", shift.id, shift.variance_cents)
    else:
        logger.info("Shift %s closed balanced", shift.id)
    return shift, totals


def shift_summary(session: Session, shift_id: int, *, now: datetime | None = None) -> dict:
    """Frozen snapshot for closed shifts, live figures for open ones."""
    shift = get_shift(session, shift_id)
    if shift.status == SHIFT_CLOSED:
        totals = {
            "opening_cash_cents": shift.opening_cash_cents,
            "cash_sales_cents": shift.cash_sales_cents,
            "cash_refunds_cents": shift.cash_refunds_cents,
            "cash_in_cents": shift.cash_in_cents,
            "cash_out_cents": shift.cash_out_cents,
            "expected_cash_cents": shift.expected_cash_cents,
            "closing_cash_cents": shift.closing_cash_cents,
            "variance_cents": shift.variance_cents,
        }
    else:
        totals = compute_reconciliation(session, shift, end=now or utcnow())
    return {
        "shift": shift.to_dict(),
        "totals": totals,
        "movements": [m.to_dict() for m in shift.movements],
    }
