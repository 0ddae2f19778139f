# Overview: Service-layer operations for product stock; conditional updates that keep stock non-negative.

"""
Stock Ledger

INVARIANT: Product.stock >= 0 after every committed mutation.

DESIGN:
- Every change is ONE conditional UPDATE evaluated by the store
  (`... SET stock = stock - :qty WHERE id = :id AND stock >= :qty`), never a
  read-check-then-write in Python. A concurrent writer therefore cannot slip
  between the check and the decrement.
- Multi-line decrements are all-or-nothing: quantities are aggregated per
  product, every row is attempted, and any miss raises
  InsufficientStockError so the caller rolls the whole transaction back.
- Nothing here commits. Callers own the transaction boundary.
- Stock mutations stamp updated_at and server_updated_at with server time.
- Stock is kept on a 3-decimal scale (grams for weighed goods). Quantities
  are rounded on the way in, every UPDATE rounds its result, and sufficiency
  checks allow half a unit of the last place so float drift never blocks the
  final 0.1 kg of a product.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Iterable

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..errors import InsufficientStockError, NotFoundError, ValidationError
from ..models import Product
from retail.time_utils import utcnow

STOCK_SCALE = 3
STOCK_TOLERANCE = 0.5 * 10 ** -STOCK_SCALE


def quantize(qty: float) -> float:
    return round(float(qty), STOCK_SCALE)


def _scaled(expr):
    return func.round(expr, STOCK_SCALE)


def aggregate_quantities(lines: Iterable[tuple[int, float]]) -> dict[int, float]:
    """Sum (product_id, qty) pairs so repeated lines are checked as one."""
    totals: dict[int, float] = defaultdict(float)
    for product_id, qty in lines:
        totals[int(product_id)] += float(qty)
    return {pid: quantize(qty) for pid, qty in totals.items()}


def _expire_products(session: Session, product_ids: Iterable[int]) -> None:
    # Bulk UPDATEs bypass the identity map; reload any cached rows
    wanted = set(product_ids)
    for obj in list(session.identity_map.values()):
        if isinstance(obj, Product) and obj.id in wanted:
            session.expire(obj)


def _require_products(session: Session, product_ids: Iterable[int]) -> dict[int, Product]:
    ids = sorted(set(product_ids))
    rows = session.query(Product).filter(Product.id.in_(ids)).all() if ids else []
    found = {p.id: p for p in rows}
    missing = [pid for pid in ids if pid not in found]
    if missing:
        raise NotFoundError(
            f"Invalid product {missing[0]}",
            details={"product_ids": missing},
        )
    return found


def decrement_stock(session: Session, quantities: dict[int, float], *, now: datetime | None = None) -> None:
    """
    Atomically take `quantities` out of stock.

    Raises NotFoundError for unknown products and InsufficientStockError when
    any product lacks stock. On error some rows may already be decremented in
    the open transaction; the caller MUST roll back.
    """
    now = now or utcnow()
    products = _require_products(session, quantities)
    session.flush()

    shortages = []
    # Sorted ids keep lock acquisition order stable across concurrent writers
    for product_id in sorted(quantities):
        qty = quantities[product_id]
        if qty <= 0:
            raise ValidationError(f"Quantity for product {product_id} must be positive")
        result = session.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= qty - STOCK_TOLERANCE)
            .values(stock=_scaled(Product.stock - qty), updated_at=now, server_updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            shortages.append({
                "product_id": product_id,
                "name": products[product_id].name,
                "requested_quantity": qty,
            })

    _expire_products(session, quantities)

    if shortages:
        first = shortages[0]
        raise InsufficientStockError(
            f"Not enough stock for product {first['product_id']}",
            details={"items": shortages},
        )


def restore_stock(session: Session, quantities: dict[int, float], *, now: datetime | None = None) -> None:
    """Put quantities back (cancel / return). Products deleted by a catalog replace are skipped."""
    now = now or utcnow()
    session.flush()
    for product_id in sorted(quantities):
        session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=_scaled(Product.stock + quantize(quantities[product_id])), updated_at=now, server_updated_at=now)
            .execution_options(synchronize_session=False)
        )
    _expire_products(session, quantities)


def adjust_stock(session: Session, product_id: int, amount: float, *, now: datetime | None = None) -> Product:
    """
    Manual correction by a relative amount (may be negative).

    There is no sufficiency check beyond the non-negativity invariant: a
    correction that would take stock below zero is rejected.
    """
    now = now or utcnow()
    product = session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    amount = quantize(amount)
    if amount == 0:
        return product

    session.flush()
    result = session.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock + amount >= -STOCK_TOLERANCE)
        .values(stock=_scaled(Product.stock + amount), updated_at=now, server_updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.expire(product)
    if result.rowcount != 1:
        raise InsufficientStockError(
            f"Adjustment would make stock negative for product {product_id}",
            details={"product_id": product_id, "amount": amount, "stock": float(product.stock)},
        )
    return product


def low_stock_products(session: Session, threshold: float) -> list[Product]:
    return (
        session.query(Product)
        .filter(Product.stock <= threshold)
        .order_by(Product.stock.asc(), Product.id.asc())
        .all()
    )
