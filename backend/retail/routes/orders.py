# Overview: Flask API routes for orders; storefront checkout, customer/courier actions and admin lifecycle.

"""
Order Routes

TRUST BOUNDARIES:
- Storefront checkout and public lookup: no auth. Public views never include
  the tracking token.
- Customer self-cancel: phone number match + time window.
- Courier cancel / location ping: the order's tracking token (a capability,
  independent of staff sessions).
- Admin list / status change: staff session.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_staff
from ..errors import ValidationError
from ..extensions import db
from ..models.organization import ROLE_MANAGER
from ..services import order_service


orders_bp = Blueprint("orders", __name__, url_prefix="/api")


@orders_bp.post("/orders")
def checkout_route():
    data = request.get_json(silent=True) or {}
    order, created = order_service.place_web_order(
        db.session,
        data,
        authorizer=current_app.config.get("PAYMENT_AUTHORIZER"),
    )
    return jsonify({"order": order.to_dict(), "created": created}), 201 if created else 200


@orders_bp.get("/orders/<int:order_id>")
def public_order_route(order_id: int):
    order = order_service.get_order(db.session, order_id)
    return jsonify({"order": order.to_dict()})


@orders_bp.post("/orders/<int:order_id>/cancel")
def self_cancel_route(order_id: int):
    data = request.get_json(silent=True) or {}
    order = order_service.self_cancel(
        db.session,
        order_id,
        phone=data.get("phone"),
        window_minutes=current_app.config["SELF_CANCEL_WINDOW_MINUTES"],
    )
    return jsonify({"order": order.to_dict()})


@orders_bp.post("/orders/<int:order_id>/driver-cancel")
def driver_cancel_route(order_id: int):
    data = request.get_json(silent=True) or {}
    order = order_service.driver_cancel(db.session, order_id, token=data.get("token"))
    return jsonify({"order": order.to_dict()})


@orders_bp.post("/orders/<int:order_id>/location")
def location_route(order_id: int):
    data = request.get_json(silent=True) or {}
    if data.get("lat") is None or data.get("lng") is None:
        raise ValidationError("lat and lng are required")
    order = order_service.update_location(
        db.session,
        order_id,
        token=data.get("token"),
        lat=data.get("lat"),
        lng=data.get("lng"),
        accuracy=data.get("accuracy"),
    )
    return jsonify({"ok": True, "last_location": order.last_location()})


@orders_bp.get("/admin/orders")
@require_staff()
def admin_list_orders_route():
    orders = order_service.list_orders(
        db.session,
        status=request.args.get("status"),
        branch_id=request.args.get("branch_id", type=int),
        limit=request.args.get("limit", default=200, type=int),
    )
    include_token = g.staff.role == ROLE_MANAGER
    return jsonify({
        "orders": [o.to_dict(include_tracking_token=include_token) for o in orders],
        "count": len(orders),
    })


@orders_bp.post("/admin/orders/<int:order_id>/status")
@require_staff()
def admin_set_status_route(order_id: int):
    data = request.get_json(silent=True) or {}
    status = data.get("status")
    if not status:
        raise ValidationError("Missing status")
    order = order_service.get_order(db.session, order_id)
    order = order_service.set_status(
        db.session,
        order,
        str(status),
        actor=g.staff.name,
        actor_staff_id=g.staff.id,
    )
    return jsonify({"order": order.to_dict(include_tracking_token=True)})
