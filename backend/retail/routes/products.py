# backend/retail/routes/products.py
"""
Product Routes

SECURITY:
- Catalog reads are public (storefront).
- Create, edit, restock and import require a manager session.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_staff
from ..errors import NotFoundError
from ..extensions import db
from ..models.organization import ROLE_MANAGER
from ..services import products_service
from ..services.stock_service import low_stock_products

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products_route():
    products = products_service.list_products(db.session, search=request.args.get("q"))
    return jsonify({"items": [p.to_dict() for p in products], "count": len(products)})


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    return jsonify({"product": products_service.get_product(db.session, product_id).to_dict()})


@products_bp.get("/barcode/<string:barcode>")
def barcode_lookup_route(barcode: str):
    product = products_service.find_by_barcode(db.session, barcode)
    if product is None:
        raise NotFoundError("Product not found", details={"barcode": barcode})
    return jsonify({"product": product.to_dict()})


@products_bp.get("/low-stock")
@require_staff()
def low_stock_route():
    threshold = request.args.get("threshold", default=current_app.config["LOW_STOCK_THRESHOLD"], type=float)
    products = low_stock_products(db.session, threshold)
    return jsonify({"items": [p.to_dict() for p in products], "threshold": threshold})


@products_bp.post("")
@require_staff(ROLE_MANAGER)
def create_product_route():
    payload = request.get_json(silent=True) or {}
    product = products_service.create_product(
        db.session, payload, actor=g.staff.name, actor_staff_id=g.staff.id
    )
    return jsonify({"product": product.to_dict()}), 201


@products_bp.patch("/<int:product_id>")
@require_staff(ROLE_MANAGER)
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    product = products_service.update_product(
        db.session, product_id, payload, actor=g.staff.name, actor_staff_id=g.staff.id
    )
    return jsonify({"product": product.to_dict()})


@products_bp.post("/<int:product_id>/restock")
@require_staff(ROLE_MANAGER)
def restock_product_route(product_id: int):
    data = request.get_json(silent=True) or {}
    product = products_service.restock_product(
        db.session, product_id, data.get("amount"), actor=g.staff.name, actor_staff_id=g.staff.id
    )
    return jsonify({"product": product.to_dict()})


@products_bp.post("/import")
@require_staff(ROLE_MANAGER)
def import_products_route():
    data = request.get_json(silent=True) or {}
    summary = products_service.import_products(
        db.session,
        data.get("rows"),
        mode=data.get("mode") or "merge",
        actor=g.staff.name,
        actor_staff_id=g.staff.id,
    )
    return jsonify({"ok": True, "summary": summary})
