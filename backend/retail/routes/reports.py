# Overview: Flask API routes for reports; parses input and returns JSON responses.

"""
Report Routes

SECURITY: manager session required, except the single-customer discount
check which cashiers use at the till.
"""

from datetime import date, timedelta

from flask import Blueprint, jsonify, request

from ..decorators import require_staff
from ..errors import ValidationError
from ..extensions import db
from ..models.organization import ROLE_MANAGER
from ..services import audit_service, reporting_service
from ..validation import normalize_phone
from ..time_utils import utcnow


reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


@reports_bp.get("/profit-loss")
@require_staff(ROLE_MANAGER)
def profit_loss_route():
    start, end = reporting_service.parse_range(request.args.get("start"), request.args.get("end"))
    return jsonify(reporting_service.profit_loss(db.session, start=start, end=end))


@reports_bp.get("/weekly-sales")
@require_staff(ROLE_MANAGER)
def weekly_sales_route():
    return jsonify(reporting_service.weekly_sales(db.session))


@reports_bp.get("/customers")
@require_staff(ROLE_MANAGER)
def customers_route():
    return jsonify(reporting_service.customer_discounts(db.session))


@reports_bp.get("/customers/<string:phone>/discount")
@require_staff()
def customer_discount_route(phone: str):
    phone = normalize_phone(phone)
    if not phone:
        raise ValidationError("phone is required")
    return jsonify(reporting_service.customer_discount(db.session, phone))


@reports_bp.get("/daily-cash")
@require_staff(ROLE_MANAGER)
def daily_cash_route():
    raw = request.args.get("date")
    try:
        day = date.fromisoformat(raw) if raw else utcnow().date()
    except ValueError:
        raise ValidationError("date must be YYYY-MM-DD")
    return jsonify(reporting_service.daily_cash(db.session, day, request.args.get("branch_id", type=int)))


@reports_bp.get("/staff-performance")
@require_staff(ROLE_MANAGER)
def staff_performance_route():
    start, end = reporting_service.parse_range(request.args.get("start"), request.args.get("end"))
    end = end or utcnow()
    start = start or end - timedelta(days=30)
    rows = reporting_service.staff_performance(db.session, start, end, request.args.get("branch_id", type=int))
    return jsonify({"staff": rows})


@reports_bp.get("/audit-log")
@require_staff(ROLE_MANAGER)
def audit_log_route():
    entries = audit_service.list_audit_entries(
        db.session,
        action=request.args.get("action"),
        target_type=request.args.get("target_type"),
        limit=request.args.get("limit", default=100, type=int),
    )
    return jsonify({"entries": [e.to_dict() for e in entries]})
