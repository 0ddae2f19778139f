# Overview: Service-layer operations for POS sync; applies queued terminal changes and builds the snapshot.

"""
POS Sync: server apply loop

CONTRACT (per request):
1. `since` is parsed up front; a malformed cursor rejects the whole request
   before anything is written.
2. Changes are applied strictly in list order, one transaction each. A later
   change may refer to an order created by an earlier one in the same batch
   (by external_id), so there is no parallelism and no reordering.
3. Each change yields exactly one applied record:
     ok       applied (or an idempotent replay of something already applied)
     skipped  not applied and never will be (stale LWW write, unknown type)
     failed   rejected by a business rule or bad data; the terminal keeps it
              queued for an operator
   A failing change rolls back only its own transaction; siblings are unaffected.
4. The response carries server_time (the next cursor) and a snapshot of every
   product/order written at or after `since`, plus fresh reports.
5. Every change that takes effect is recorded under its change_id in the same
   transaction. A resent change (lost response) returns the stored result and
   is never applied twice. Rejected changes are not recorded, so an operator
   retry applies them for real.
6. Rows a rejected or skipped change would have touched are shipped in the
   snapshot whatever their age and listed in reset_product_ids. The terminal
   drops its optimistic copy of them in favour of the server row.

CURSOR: server_time is taken when the request starts, before any change is
applied, so writes committed while the batch runs are delivered again on the
next sync rather than skipped. Replays are harmless: the terminal merge is
idempotent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import RetailError, ValidationError
from ..models import AppliedChange, Order, Product
from ..validation import OrderDraft, coerce_int, coerce_quantity
from . import order_service, products_service, reporting_service
from .audit_service import append_audit_entry
from .concurrency import run_with_retry
from .stock_service import adjust_stock
from retail.time_utils import parse_iso_datetime, to_utc_z, utcnow

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

CHANGE_ORDER_CREATE = "order:create"
CHANGE_ORDER_STATUS = "order:status"
CHANGE_ORDER_RETURN = "order:return"
CHANGE_PRODUCT_UPDATE = "product:update"
CHANGE_STOCK_ADJUST = "stock:adjust"


@dataclass
class AppliedResult:
    change_id: str | None
    type: str
    status: str
    data: dict | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SyncContext:
    source: str
    device_id: str | None
    now: datetime

    @property
    def actor(self) -> str:
        return f"pos:{self.device_id}" if self.device_id else "pos"


# =============================================================================
# CHANGE HANDLERS
# Each returns (status, data) and commits its own transaction, or raises.
# =============================================================================

def _payload(change: dict) -> dict:
    payload = change.get("payload")
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")
    return payload


def _resolve_target(session: Session, payload: dict, ctx: SyncContext) -> Order:
    order_id = payload.get("id")
    if order_id is not None:
        order_id = coerce_int("id", order_id)
    return order_service.resolve_order(
        session,
        order_id=order_id,
        external_id=payload.get("external_id"),
        source=payload.get("source") or ctx.source,
    )


def _order_create(session: Session, payload: dict, ctx: SyncContext) -> tuple[str, dict]:
    draft = OrderDraft.from_dict(payload, allow_price_override=True)
    order, created = order_service.create_order(
        session,
        draft,
        source=ctx.source,
        actor=draft.staff_name or ctx.actor,
        now=ctx.now,
    )
    return STATUS_OK, {"order_id": order.id, "external_id": order.external_id, "created": created}


def _order_status(session: Session, payload: dict, ctx: SyncContext) -> tuple[str, dict]:
    status = payload.get("status")
    if not status:
        raise ValidationError("Missing status")
    order = _resolve_target(session, payload, ctx)
    order = order_service.set_status(session, order, str(status), actor=ctx.actor, now=ctx.now)
    return STATUS_OK, {"order_id": order.id, "external_id": order.external_id, "status": order.status}


def _order_return(session: Session, payload: dict, ctx: SyncContext) -> tuple[str, dict]:
    order = _resolve_target(session, payload, ctx)
    order = order_service.return_order(session, order, actor=ctx.actor, now=ctx.now)
    return STATUS_OK, {"order_id": order.id, "external_id": order.external_id, "status": order.status}


def _product_update(session: Session, payload: dict, ctx: SyncContext) -> tuple[str, dict]:
    product, applied = products_service.apply_pos_update(session, payload, actor=ctx.actor, now=ctx.now)
    data = {"product_id": product.id, "updated_at": to_utc_z(product.updated_at)}
    if not applied:
        return STATUS_SKIPPED, data
    return STATUS_OK, data


def _stock_adjust(session: Session, payload: dict, ctx: SyncContext) -> tuple[str, dict]:
    if payload.get("id") is None or payload.get("amount") is None:
        raise ValidationError("Missing stock adjustment")
    product_id = coerce_int("id", payload.get("id"))
    amount = coerce_quantity("amount", payload.get("amount"), allow_negative=True, allow_zero=True)
    product = adjust_stock(session, product_id, amount, now=ctx.now)
    append_audit_entry(
        session,
        actor=ctx.actor,
        action="stock.adjust",
        target_type="product",
        target_id=product_id,
        details={"amount": amount, "reason": payload.get("reason")},
    )
    session.commit()
    return STATUS_OK, {"product_id": product.id, "stock": float(product.stock)}


HANDLERS: dict[str, Callable[[Session, dict, SyncContext], tuple[str, dict]]] = {
    CHANGE_ORDER_CREATE: _order_create,
    CHANGE_ORDER_STATUS: _order_status,
    CHANGE_ORDER_RETURN: _order_return,
    CHANGE_PRODUCT_UPDATE: _product_update,
    CHANGE_STOCK_ADJUST: _stock_adjust,
}
CHANGE_TYPES = tuple(HANDLERS)

STALE_UPDATE_MESSAGE = "Stale update: a newer edit is already stored"
UNKNOWN_TYPE_MESSAGE = "Unknown change type"
CHANGE_ID_MAX_LENGTH = 64


# =============================================================================
# APPLIED CHANGE LEDGER
# =============================================================================

def find_applied(session: Session, change_id: str) -> AppliedChange | None:
    return session.query(AppliedChange).filter_by(change_id=change_id).first()


def _replayed(stored: AppliedChange) -> AppliedResult:
    data = dict(stored.data or {})
    data["replayed"] = True
    error = STALE_UPDATE_MESSAGE if stored.status == STATUS_SKIPPED else None
    return AppliedResult(stored.change_id, stored.type, stored.status, data=data, error=error)


def _apply_recorded(session: Session, handler, payload: dict, ctx: SyncContext, change_id: str | None, change_type: str):
    """
    Run one handler with its ledger row. The row is flushed before the handler
    so it lands in the handler's own commit; status and data are filled in
    afterwards.
    """
    record = None
    if change_id:
        record = AppliedChange(
            change_id=change_id,
            type=change_type,
            status=STATUS_OK,
            device_id=ctx.device_id,
            applied_at=ctx.now,
        )
        session.add(record)
        session.flush()

    status, data = handler(session, payload, ctx)

    if record is not None:
        record.status = status
        record.data = data
        # A handler that lost an insert race rolled back; put the row back
        session.add(record)
        session.commit()
    return status, data


# =============================================================================
# APPLY LOOP
# =============================================================================

def _change_id(raw: Any) -> str | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        raise ValidationError("change_id must be a string")
    change_id = str(raw)
    if len(change_id) > CHANGE_ID_MAX_LENGTH:
        raise ValidationError(f"change_id must be at most {CHANGE_ID_MAX_LENGTH} characters")
    return change_id


def apply_change(session: Session, change: Any, ctx: SyncContext) -> AppliedResult:
    if not isinstance(change, dict):
        return AppliedResult(None, "unknown", STATUS_FAILED, error="Change must be an object")

    raw_type = change.get("type")
    change_type = raw_type if isinstance(raw_type, str) and raw_type else "unknown"

    try:
        change_id = _change_id(change.get("change_id"))
    except ValidationError as exc:
        return AppliedResult(None, change_type, STATUS_FAILED, error=exc.message)

    handler = HANDLERS.get(change_type)
    if handler is None:
        return AppliedResult(change_id, change_type, STATUS_SKIPPED, error=UNKNOWN_TYPE_MESSAGE)

    if change_id:
        stored = find_applied(session, change_id)
        if stored is not None:
            logger.info("Sync change %s (%s) already applied; returning stored result", change_id, change_type)
            return _replayed(stored)

    try:
        payload = _payload(change)
        status, data = run_with_retry(
            session, lambda: _apply_recorded(session, handler, payload, ctx, change_id, change_type)
        )
    except IntegrityError:
        session.rollback()
        # Another request recorded the same change_id first
        stored = find_applied(session, change_id) if change_id else None
        if stored is not None:
            return _replayed(stored)
        logger.exception("Sync change %s (%s) hit an integrity error", change_id, change_type)
        return AppliedResult(change_id, change_type, STATUS_FAILED, error="Internal error applying change")
    except RetailError as exc:
        session.rollback()
        logger.info("Sync change %s (%s) failed: %s", change_id, change_type, exc.message)
        return AppliedResult(change_id, change_type, STATUS_FAILED, data=exc.details or None, error=exc.message)
    except Exception:  # noqa: BLE001
        session.rollback()
        logger.exception("Sync change %s (%s) crashed", change_id, change_type)
        return AppliedResult(change_id, change_type, STATUS_FAILED, error="Internal error applying change")

    error = STALE_UPDATE_MESSAGE if status == STATUS_SKIPPED else None
    return AppliedResult(change_id, change_type, status, data=data, error=error)


def apply_changes(session: Session, changes: list, ctx: SyncContext) -> list[AppliedResult]:
    """Apply in list order; one change never aborts its siblings."""
    return [apply_change(session, change, ctx) for change in changes]


# =============================================================================
# REJECTED CHANGES
# =============================================================================

def _as_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def touched_rows(session: Session, change: dict, ctx: SyncContext) -> tuple[set[int], set[int]]:
    """(product ids, order ids) a change would have written, as far as they can be told."""
    payload = change.get("payload")
    if not isinstance(payload, dict):
        return set(), set()

    product_ids: set[int | None] = set()
    order_ids: set[int] = set()
    change_type = change.get("type")

    if change_type == CHANGE_ORDER_CREATE:
        items = payload.get("items")
        if isinstance(items, list):
            product_ids.update(_as_id(item.get("product_id")) for item in items if isinstance(item, dict))
    elif change_type in (CHANGE_PRODUCT_UPDATE, CHANGE_STOCK_ADJUST):
        product_ids.add(_as_id(payload.get("id")))
    elif change_type in (CHANGE_ORDER_STATUS, CHANGE_ORDER_RETURN):
        try:
            order = _resolve_target(session, payload, ctx)
        except RetailError:
            order = None
        if order is not None:
            order_ids.add(order.id)
            product_ids.update(item.product_id for item in order.items)

    product_ids.discard(None)
    return product_ids, order_ids


# =============================================================================
# SNAPSHOT
# =============================================================================

def build_snapshot(
    session: Session,
    since: datetime | None,
    *,
    now: datetime,
    reset_product_ids: set[int] | None = None,
    reset_order_ids: set[int] | None = None,
) -> dict:
    reset_product_ids = reset_product_ids or set()
    reset_order_ids = reset_order_ids or set()

    products = session.query(Product)
    orders = session.query(Order)
    if since is not None:
        product_filter = [Product.updated_at >= since, Product.server_updated_at >= since]
        if reset_product_ids:
            product_filter.append(Product.id.in_(reset_product_ids))
        products = products.filter(or_(*product_filter))

        order_filter = [Order.updated_at >= since]
        if reset_order_ids:
            order_filter.append(Order.id.in_(reset_order_ids))
        orders = orders.filter(or_(*order_filter))

    products = products.order_by(Product.id.asc()).all()
    return {
        "full": since is None,
        "products": [p.to_dict() for p in products],
        "orders": [o.to_dict(include_tracking_token=True) for o in orders.order_by(Order.id.desc()).all()],
        "reset_product_ids": sorted(p.id for p in products if p.id in reset_product_ids),
        "reports": reporting_service.snapshot_reports(session, now=now),
    }


def sync(session: Session, body: Any, *, default_source: str) -> dict:
    """Full request: validate, apply the batch in order, return cursor + results + snapshot."""
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")

    raw_since = body.get("since")
    try:
        since = parse_iso_datetime(raw_since) if raw_since else None
    except (TypeError, ValueError, AttributeError):
        raise ValidationError("since must be an ISO-8601 timestamp or null")

    changes = body.get("changes") or []
    if not isinstance(changes, list):
        raise ValidationError("changes must be a list")

    device_id = body.get("device_id")
    server_time = utcnow()
    ctx = SyncContext(
        source=default_source,
        device_id=str(device_id)[:64] if device_id else None,
        now=server_time,
    )

    applied = apply_changes(session, changes, ctx)

    reset_products: set[int] = set()
    reset_orders: set[int] = set()
    for change, result in zip(changes, applied):
        if result.status == STATUS_OK or not isinstance(change, dict):
            continue
        product_ids, order_ids = touched_rows(session, change, ctx)
        reset_products |= product_ids
        reset_orders |= order_ids

    failed = sum(1 for r in applied if r.status == STATUS_FAILED)
    if changes:
        logger.info(
            "Applied POS batch device=%s changes=%d failed=%d",
            ctx.device_id or "-", len(changes), failed,
        )

    return {
        "ok": True,
        "server_time": to_utc_z(server_time),
        "applied": [r.to_dict() for r in applied],
        "snapshot": build_snapshot(
            session,
            since,
            now=server_time,
            reset_product_ids=reset_products,
            reset_order_ids=reset_orders,
        ),
    }
