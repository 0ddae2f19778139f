# Overview: Flask API routes for staff sessions, staff management and branches.

"""
Staff Routes

SECURITY:
- Login and first-account bootstrap are unauthenticated. Bootstrap only works
  while no staff exist.
- Staff and branch management require a manager session.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_staff
from ..extensions import db
from ..models.organization import ROLE_CASHIER, ROLE_MANAGER
from ..services import auth_service, branch_service


staff_bp = Blueprint("staff", __name__, url_prefix="/api")


def _rounds() -> int:
    return current_app.config["BCRYPT_ROUNDS"]


@staff_bp.post("/staff/login")
def login_route():
    data = request.get_json(silent=True) or {}
    token, staff = auth_service.login(
        db.session,
        data.get("username") or "",
        data.get("password") or "",
        secret_key=current_app.config["SECRET_KEY"],
        ttl_hours=current_app.config["STAFF_TOKEN_TTL_HOURS"],
    )
    return jsonify({"ok": True, "token": token, "staff": staff.to_dict()})


@staff_bp.post("/staff/bootstrap")
def bootstrap_route():
    data = request.get_json(silent=True) or {}
    staff = auth_service.create_staff(
        db.session,
        name=data.get("name") or "",
        username=data.get("username") or "",
        password=data.get("password") or "",
        rounds=_rounds(),
    )
    branch_service.ensure_default_branch(db.session)
    return jsonify({"staff": staff.to_dict()}), 201


@staff_bp.get("/staff/me")
@require_staff()
def me_route():
    return jsonify({"staff": g.staff.to_dict(), "exp": g.token_payload["exp"]})


@staff_bp.get("/staff")
@require_staff(ROLE_MANAGER)
def list_staff_route():
    return jsonify({"staff": [s.to_dict() for s in auth_service.list_staff(db.session)]})


@staff_bp.post("/staff")
@require_staff(ROLE_MANAGER)
def create_staff_route():
    data = request.get_json(silent=True) or {}
    staff = auth_service.create_staff(
        db.session,
        name=data.get("name") or "",
        username=data.get("username") or "",
        password=data.get("password") or "",
        role=data.get("role") or ROLE_CASHIER,
        actor=g.staff,
        rounds=_rounds(),
    )
    return jsonify({"staff": staff.to_dict()}), 201


@staff_bp.patch("/staff/<int:staff_id>")
@require_staff(ROLE_MANAGER)
def update_staff_route(staff_id: int):
    data = request.get_json(silent=True) or {}
    is_active = data.get("is_active")
    staff = auth_service.update_staff(
        db.session,
        staff_id,
        actor=g.staff,
        role=data.get("role"),
        is_active=bool(is_active) if is_active is not None else None,
    )
    return jsonify({"staff": staff.to_dict()})


@staff_bp.get("/branches")
@require_staff()
def list_branches_route():
    return jsonify({"branches": [b.to_dict() for b in branch_service.list_branches(db.session)]})


@staff_bp.post("/branches")
@require_staff(ROLE_MANAGER)
def create_branch_route():
    data = request.get_json(silent=True) or {}
    branch = branch_service.create_branch(
        db.session, name=data.get("name") or "", address=data.get("address"), actor=g.staff
    )
    return jsonify({"branch": branch.to_dict()}), 201
