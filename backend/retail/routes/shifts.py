# Overview: Flask API routes for register shifts and cash movements.

"""
Shift Routes

SECURITY:
- Any signed-in staff member can open their own shift and record movements
  against it.
- Closing or reading another member's shift requires being its owner or a
  manager.
"""

from flask import Blueprint, g, jsonify, request

from ..decorators import require_staff
from ..errors import ForbiddenError
from ..extensions import db
from ..models.organization import ROLE_MANAGER
from ..services import shift_service


shifts_bp = Blueprint("shifts", __name__, url_prefix="/api/shifts")


@shifts_bp.post("/open")
@require_staff()
def open_shift_route():
    data = request.get_json(silent=True) or {}
    shift = shift_service.open_shift(
        db.session,
        g.staff,
        opening_cash_cents=data.get("opening_cash_cents", 0),
        branch_id=data.get("branch_id"),
    )
    return jsonify({"shift": shift.to_dict()}), 201


@shifts_bp.get("/current")
@require_staff()
def current_shift_route():
    shift = shift_service.get_open_shift(db.session, g.staff.id)
    if shift is None:
        return jsonify({"shift": None})
    return jsonify(shift_service.shift_summary(db.session, shift.id))


@shifts_bp.post("/cash-movements")
@require_staff()
def cash_movement_route():
    data = request.get_json(silent=True) or {}
    movement = shift_service.add_cash_movement(
        db.session,
        g.staff,
        movement_type=data.get("type"),
        amount_cents=data.get("amount_cents"),
        reason=data.get("reason"),
    )
    return jsonify({"movement": movement.to_dict()}), 201


@shifts_bp.post("/<int:shift_id>/close")
@require_staff()
def close_shift_route(shift_id: int):
    data = request.get_json(silent=True) or {}
    shift, totals = shift_service.close_shift(
        db.session,
        shift_id,
        g.staff,
        closing_cash_cents=data.get("closing_cash_cents"),
        notes=data.get("notes"),
    )
    return jsonify({"shift": shift.to_dict(), "totals": totals})


@shifts_bp.get("/<int:shift_id>/summary")
@require_staff()
def shift_summary_route(shift_id: int):
    shift = shift_service.get_shift(db.session, shift_id)
    if shift.staff_id != g.staff.id and g.staff.role != ROLE_MANAGER:
        raise ForbiddenError("Not allowed to view this shift")
    return jsonify(shift_service.shift_summary(db.session, shift_id))
