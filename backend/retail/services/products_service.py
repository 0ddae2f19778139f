# backend/retail/services/products_service.py
"""
Products Service

Two writers touch products:
- managers (admin API): edits stamp updated_at with server "now"
- POS terminals (sync): edits carry the device's updated_at and are resolved
  last-writer-wins against the stored value

LWW RULE: an incoming updated_at strictly earlier than the stored one is a
stale write and is not applied (reported as skipped). Equal or later applies
and stores the incoming updated_at, so applying t1 and t2 in either order
leaves the t2 payload.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..errors import NotFoundError, ValidationError
from ..models import OrderItem, Product
from ..validation import ModelValidationPolicy, coerce_datetime, coerce_int, coerce_quantity, validate_payload
from .audit_service import append_audit_entry
from .stock_service import adjust_stock
from retail.time_utils import utcnow

PRODUCT_MUTABLE_FIELDS = {"name", "price_cents", "cost_cents", "stock", "barcode"}

CREATE_POLICY = ModelValidationPolicy(
    writable_fields=PRODUCT_MUTABLE_FIELDS,
    required_on_create={"name", "price_cents"},
)
UPDATE_POLICY = ModelValidationPolicy(writable_fields=PRODUCT_MUTABLE_FIELDS)

IMPORT_MODES = ("merge", "replace")


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def get_product(session: Session, product_id: int) -> Product:
    product = session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def list_products(session: Session, *, search: str | None = None) -> list[Product]:
    query = session.query(Product)
    if search:
        like = f"%{search.strip().lower()}%"
        query = query.filter(func.lower(Product.name).like(like) | (Product.barcode == search.strip()))
    return query.order_by(Product.name.asc(), Product.id.asc()).all()


def find_by_barcode(session: Session, barcode: str) -> Product | None:
    return session.query(Product).filter(Product.barcode == barcode.strip()).order_by(Product.id.asc()).first()


def create_product(session: Session, payload: dict, *, actor: str, actor_staff_id: int | None = None) -> Product:
    patch = validate_payload(model=Product, payload=payload, policy=CREATE_POLICY, partial=False)
    patch.setdefault("stock", 0.0)
    patch.setdefault("cost_cents", 0)

    now = utcnow()
    product = Product(created_at=now, updated_at=now, server_updated_at=now)
    apply_product_patch(product, patch)
    session.add(product)
    session.flush()

    append_audit_entry(
        session,
        actor=actor,
        actor_staff_id=actor_staff_id,
        action="product.create",
        target_type="product",
        target_id=product.id,
        details={"name": product.name},
    )
    session.commit()
    return product


def update_product(
    session: Session,
    product_id: int,
    payload: dict,
    *,
    actor: str,
    actor_staff_id: int | None = None,
) -> Product:
    """Manager edit; always wins because it is stamped with server time."""
    patch = validate_payload(model=Product, payload=payload, policy=UPDATE_POLICY, partial=True)
    product = get_product(session, product_id)
    if not patch:
        return product

    now = utcnow()
    apply_product_patch(product, patch)
    product.updated_at = now
    product.server_updated_at = now
    session.flush()

    append_audit_entry(
        session,
        actor=actor,
        actor_staff_id=actor_staff_id,
        action="product.update",
        target_type="product",
        target_id=product.id,
        details={"fields": sorted(patch)},
    )
    session.commit()
    return product


def restock_product(
    session: Session,
    product_id: int,
    amount,
    *,
    actor: str,
    actor_staff_id: int | None = None,
) -> Product:
    qty = coerce_quantity("amount", amount)
    product = adjust_stock(session, product_id, qty)
    append_audit_entry(
        session,
        actor=actor,
        actor_staff_id=actor_staff_id,
        action="product.restock",
        target_type="product",
        target_id=product_id,
        details={"amount": qty},
    )
    session.commit()
    return product


def apply_pos_update(
    session: Session,
    payload: dict,
    *,
    actor: str = "pos",
    now: datetime | None = None,
) -> tuple[Product, bool]:
    """
    Apply a POS product edit under last-writer-wins.

    Returns (product, applied). applied=False means the stored updated_at is
    newer and nothing was written.
    """
    if not isinstance(payload, dict):
        raise ValidationError("product payload must be an object")
    if payload.get("id") is None:
        raise ValidationError("Missing product id")
    product_id = coerce_int("id", payload.get("id"))
    if payload.get("updated_at") in (None, ""):
        raise ValidationError("Missing updated_at")
    incoming_at = coerce_datetime("updated_at", payload.get("updated_at"))

    fields = {k: payload[k] for k in PRODUCT_MUTABLE_FIELDS if k in payload}
    patch = validate_payload(model=Product, payload=fields, policy=UPDATE_POLICY, partial=True)

    product = get_product(session, product_id)
    if incoming_at < product.updated_at:
        return product, False

    now = now or utcnow()
    apply_product_patch(product, patch)
    product.updated_at = incoming_at
    product.server_updated_at = now
    session.flush()

    append_audit_entry(
        session,
        actor=actor,
        action="product.update",
        target_type="product",
        target_id=product.id,
        details={"fields": sorted(patch), "updated_at": payload.get("updated_at")},
    )
    session.commit()
    return product, True


# =============================================================================
# BULK IMPORT
# =============================================================================
# Rows arrive already parsed (spreadsheet parsing happens upstream). Each row:
# {"name", "price_cents", "cost_cents"?, "stock"?, "barcode"?}


def _clean_import_row(row: dict, index: int) -> dict:
    if not isinstance(row, dict):
        raise ValidationError(f"Row {index + 1}: must be an object")
    fields = {k: row.get(k) for k in PRODUCT_MUTABLE_FIELDS if row.get(k) is not None}
    if "name" in fields:
        fields["name"] = str(fields["name"]).strip()
    try:
        return validate_payload(model=Product, payload=fields, policy=UPDATE_POLICY, partial=True)
    except ValidationError as exc:
        raise ValidationError(f"Row {index + 1}: {exc.message}")


def import_products(
    session: Session,
    rows: list[dict],
    *,
    mode: str = "merge",
    actor: str,
    actor_staff_id: int | None = None,
) -> dict:
    """
    merge:   upsert by case-insensitive name; bad rows are reported, good rows kept
    replace: delete the whole catalog and insert the rows, all or nothing
    """
    if mode not in IMPORT_MODES:
        raise ValidationError(f"mode must be one of {', '.join(IMPORT_MODES)}")
    if not isinstance(rows, list):
        raise ValidationError("rows must be a list")

    summary = {"mode": mode, "created": 0, "updated": 0, "replaced": 0, "errors": []}
    now = utcnow()

    if mode == "replace":
        cleaned = []
        for index, row in enumerate(rows):
            patch = _clean_import_row(row, index)
            if not patch.get("name") or patch.get("price_cents") is None:
                raise ValidationError(f"Row {index + 1}: name and price_cents are required")
            cleaned.append(patch)

        # Historical order lines keep their captured name/price
        session.execute(
            update(OrderItem)
            .where(OrderItem.product_id.isnot(None))
            .values(product_id=None)
            .execution_options(synchronize_session=False)
        )
        session.query(Product).delete(synchronize_session=False)
        for patch in cleaned:
            product = Product(created_at=now, updated_at=now, server_updated_at=now, stock=0.0, cost_cents=0)
            apply_product_patch(product, patch)
            session.add(product)
        session.flush()
        session.expire_all()
        summary["replaced"] = len(cleaned)
    else:
        for index, row in enumerate(rows):
            try:
                patch = _clean_import_row(row, index)
            except ValidationError as exc:
                summary["errors"].append({"row": index + 1, "error": exc.message})
                continue
            name = patch.get("name")
            if not name:
                summary["errors"].append({"row": index + 1, "error": "Missing name"})
                continue

            existing = (
                session.query(Product)
                .filter(func.lower(Product.name) == name.lower())
                .order_by(Product.id.asc())
                .first()
            )
            if existing is not None:
                apply_product_patch(existing, patch)
                existing.updated_at = now
                existing.server_updated_at = now
                summary["updated"] += 1
                continue

            if patch.get("price_cents") is None:
                summary["errors"].append({"row": index + 1, "error": "Missing selling price"})
                continue
            product = Product(created_at=now, updated_at=now, server_updated_at=now, stock=0.0, cost_cents=0)
            apply_product_patch(product, patch)
            session.add(product)
            session.flush()
            summary["created"] += 1

    append_audit_entry(
        session,
        actor=actor,
        actor_staff_id=actor_staff_id,
        action=f"product.import.{mode}",
        target_type="product",
        details={k: v for k, v in summary.items() if k != "errors"} | {"errors": len(summary["errors"])},
    )
    session.commit()
    return summary
