# Overview: Service-layer operations for orders; creation, lifecycle transitions and courier tracking.

"""
Order Service

WHY: POS terminals and the storefront both create orders, possibly minutes or
days apart from when the sale happened (offline POS replay). One code path
enforces idempotency, stock and the lifecycle for both.

LIFECYCLE:
    Placed -> Processing -> Dispatched -> Delivered      (forward only, skips allowed)
    Placed | Processing | Dispatched -> Cancelled        (restocks)
    Delivered -> Returned                                (restocks)
Cancelled and Returned are terminal. Repeating the terminal move that produced
the current state is a no-op that returns the order unchanged.

TRANSACTIONS: functions that mutate commit on success. On any raised error the
caller rolls back (routes and the sync apply loop both do).
"""

from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import (
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from ..models import Branch, Order, OrderItem, Product
from ..models.orders import (
    ORDER_FLOW,
    ORDER_STATUSES,
    STATUS_CANCELLED,
    STATUS_DELIVERED,
    STATUS_DISPATCHED,
    STATUS_PLACED,
    STATUS_PROCESSING,
    STATUS_RETURNED,
    TERMINAL_STATUSES,
)
from ..validation import OrderDraft, normalize_phone
from . import payment_service
from .audit_service import append_audit_entry
from .stock_service import aggregate_quantities, decrement_stock, restore_stock
from retail.time_utils import utcnow


CANCELLABLE_STATUSES = (STATUS_PLACED, STATUS_PROCESSING, STATUS_DISPATCHED)
_STATUS_AUDIT_ACTIONS = {STATUS_CANCELLED: "order.cancel", STATUS_RETURNED: "order.return"}


def new_tracking_token() -> str:
    return secrets.token_hex(16)


# =============================================================================
# LOOKUPS
# =============================================================================

def get_order(session: Session, order_id: int) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def find_by_external_id(session: Session, source: str, external_id: str) -> Order | None:
    return session.query(Order).filter_by(source=source, external_id=external_id).first()


def resolve_order(
    session: Session,
    *,
    order_id: int | None = None,
    external_id: str | None = None,
    source: str | None = None,
) -> Order:
    """Resolve by server id, or by (source, external_id) when the id was never learned."""
    if order_id is not None:
        return get_order(session, order_id)
    if external_id and source:
        order = find_by_external_id(session, source, external_id)
        if order is None:
            raise NotFoundError("Order not found", details={"source": source, "external_id": external_id})
        return order
    raise ValidationError("Missing order id or external_id")


def list_orders(
    session: Session,
    *,
    status: str | None = None,
    branch_id: int | None = None,
    limit: int = 200,
) -> list[Order]:
    query = session.query(Order)
    if status:
        query = query.filter(Order.status == status)
    if branch_id:
        query = query.filter(Order.branch_id == branch_id)
    return query.order_by(Order.id.desc()).limit(max(1, min(limit, 1000))).all()


def _resolve_branch(session: Session, branch_id: int | None, branch_name: str | None) -> tuple[int | None, str | None]:
    if branch_id is None:
        first = session.query(Branch).order_by(Branch.id.asc()).first()
        if first is None:
            return None, branch_name
        return first.id, first.name
    branch = session.get(Branch, branch_id)
    if branch is None:
        raise NotFoundError("Branch not found", details={"branch_id": branch_id})
    return branch.id, branch_name or branch.name


# =============================================================================
# CREATION
# =============================================================================

def create_order(
    session: Session,
    draft: OrderDraft,
    *,
    source: str,
    actor: str,
    actor_staff_id: int | None = None,
    now: datetime | None = None,
) -> tuple[Order, bool]:
    """
    Create an order and take its items out of stock in one transaction.

    Returns (order, created). When draft.external_id is set and an order with
    the same (source, external_id) exists, that order is returned with
    created=False and nothing is written (idempotent replay).

    Raises NotFoundError (unknown product) and InsufficientStockError; the
    caller must roll back.
    """
    now = now or utcnow()
    source = draft.source or source

    if draft.external_id:
        existing = find_by_external_id(session, source, draft.external_id)
        if existing is not None:
            return existing, False

    quantities = aggregate_quantities((line.product_id, line.qty) for line in draft.items)
    decrement_stock(session, quantities, now=now)

    products = {
        p.id: p for p in session.query(Product).filter(Product.id.in_(list(quantities))).all()
    }

    branch_id, branch_name = _resolve_branch(session, draft.branch_id, draft.branch_name)

    order = Order(
        source=source,
        external_id=draft.external_id,
        status=STATUS_PLACED,
        delivery=draft.delivery.to_dict(),
        payment=draft.payment.to_dict(),
        customer=draft.customer.to_dict(),
        payment_method=draft.payment.method,
        customer_phone=draft.customer.phone,
        staff_name=draft.staff_name,
        staff_role=draft.staff_role,
        branch_id=branch_id,
        branch_name=branch_name,
        tracking_token=new_tracking_token(),
        created_at=draft.created_at or now,
        updated_at=now,
    )

    computed_total = 0
    for line in draft.items:
        product = products[line.product_id]
        price_at = line.price_at_cents if line.price_at_cents is not None else product.price_cents
        item = OrderItem(
            product_id=line.product_id,
            product_name=product.name,
            qty=line.qty,
            price_at_cents=price_at,
            cost_at_cents=product.cost_cents or 0,
        )
        order.items.append(item)
        computed_total += int(round(line.qty * price_at))

    order.total_cents = draft.total_cents if draft.total_cents is not None else computed_total

    session.add(order)
    try:
        session.flush()
    except IntegrityError:
        # Lost an insert race on (source, external_id); the winner's row is the order
        session.rollback()
        if draft.external_id:
            existing = find_by_external_id(session, source, draft.external_id)
            if existing is not None:
                return existing, False
        raise

    append_audit_entry(
        session,
        actor=actor,
        actor_staff_id=actor_staff_id,
        action="order.create",
        target_type="order",
        target_id=order.id,
        details={"source": source, "external_id": order.external_id, "total_cents": order.total_cents},
    )
    session.commit()
    return order, True


def quote_total(session: Session, draft: OrderDraft) -> int:
    """Total at current catalog prices (storefront checkout)."""
    ids = {line.product_id for line in draft.items}
    prices = dict(session.query(Product.id, Product.price_cents).filter(Product.id.in_(ids)).all())
    missing = sorted(ids - set(prices))
    if missing:
        raise NotFoundError(f"Invalid product {missing[0]}", details={"product_ids": missing})
    return sum(int(round(line.qty * prices[line.product_id])) for line in draft.items)


def place_web_order(
    session: Session,
    payload: dict,
    *,
    authorizer=None,
    now: datetime | None = None,
) -> tuple[Order, bool]:
    """
    Storefront checkout. Prices come from the catalog, card payments must be
    confirmed by the payment oracle, and every line is taken out of stock
    atomically (one conditional UPDATE per product, all or nothing).
    """
    draft = OrderDraft.from_dict(payload, allow_price_override=False)
    draft.source = None
    draft.staff_name = None
    draft.staff_role = None
    total = quote_total(session, draft)
    payment_service.authorize_payment(draft.payment, total, authorizer)
    return create_order(session, draft, source="web", actor="storefront", now=now)


# =============================================================================
# LIFECYCLE
# =============================================================================

def check_transition(current: str, target: str) -> bool:
    """
    Validate a status move. Returns False when it is a no-op (already there),
    True when it should be applied, raises InvalidTransitionError otherwise.
    """
    if target not in ORDER_STATUSES:
        raise ValidationError(
            f"Unknown order status {target!r}",
            details={"allowed": list(ORDER_STATUSES)},
        )
    if current == target:
        return False
    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Order is already {current}")
    if target == STATUS_CANCELLED:
        if current not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(f"Cannot cancel an order that is {current}")
        return True
    if target == STATUS_RETURNED:
        if current != STATUS_DELIVERED:
            raise InvalidTransitionError("Only delivered orders can be returned")
        return True
    if ORDER_FLOW.index(target) <= ORDER_FLOW.index(current):
        raise InvalidTransitionError(f"Cannot move order from {current} to {target}")
    return True


def _restock(session: Session, order: Order, now: datetime) -> None:
    restore_stock(
        session,
        aggregate_quantities(
            (item.product_id, item.qty) for item in order.items if item.product_id is not None
        ),
        now=now,
    )


def set_status(
    session: Session,
    order: Order,
    status: str,
    *,
    actor: str,
    actor_staff_id: int | None = None,
    now: datetime | None = None,
) -> Order:
    """Apply a lifecycle move. Terminal moves restock every line exactly once."""
    now = now or utcnow()
    if not check_transition(order.status, status):
        return order

    previous = order.status
    if status in TERMINAL_STATUSES:
        _restock(session, order, now)

    order.status = status
    order.updated_at = now
    session.flush()

    append_audit_entry(
        session,
        actor=actor,
        actor_staff_id=actor_staff_id,
        action=_STATUS_AUDIT_ACTIONS.get(status, "order.status"),
        target_type="order",
        target_id=order.id,
        details={"from": previous, "to": status},
    )
    session.commit()
    return order


def cancel_order(session: Session, order: Order, *, actor: str, actor_staff_id: int | None = None, now: datetime | None = None) -> Order:
    return set_status(session, order, STATUS_CANCELLED, actor=actor, actor_staff_id=actor_staff_id, now=now)


def return_order(session: Session, order: Order, *, actor: str, actor_staff_id: int | None = None, now: datetime | None = None) -> Order:
    return set_status(session, order, STATUS_RETURNED, actor=actor, actor_staff_id=actor_staff_id, now=now)


# =============================================================================
# CUSTOMER / COURIER (capability-scoped, no staff session)
# =============================================================================

def _token_matches(order: Order, token: str | None) -> bool:
    if not token or not order.tracking_token:
        return False
    return hmac.compare_digest(order.tracking_token.encode(), str(token).encode())


def self_cancel(
    session: Session,
    order_id: int,
    *,
    phone: str | None,
    window_minutes: int,
    now: datetime | None = None,
) -> Order:
    """
    Customer cancellation: phone must match the order and the request must be
    within `window_minutes` of created_at (inclusive).
    """
    now = now or utcnow()
    order = get_order(session, order_id)

    supplied = normalize_phone(phone)
    stored = normalize_phone(order.customer_phone)
    if not supplied or not stored or not hmac.compare_digest(supplied.encode(), stored.encode()):
        raise UnauthorizedError("Phone number does not match this order")
    if order.status == STATUS_CANCELLED:
        return order

    if now - order.created_at > timedelta(minutes=window_minutes):
        raise ValidationError(
            f"Orders can only be cancelled within {window_minutes} minutes of placing them",
            details={"created_at": order.created_at.isoformat()},
        )

    return cancel_order(session, order, actor=f"customer:{stored}", now=now)


def driver_cancel(session: Session, order_id: int, *, token: str | None, now: datetime | None = None) -> Order:
    order = get_order(session, order_id)
    if not _token_matches(order, token):
        raise UnauthorizedError("Invalid tracking token")
    return cancel_order(session, order, actor="driver", now=now)


def update_location(
    session: Session,
    order_id: int,
    *,
    token: str | None,
    lat,
    lng,
    accuracy=None,
    now: datetime | None = None,
) -> Order:
    """Overwrite the last known courier position. No history is kept."""
    now = now or utcnow()
    order = get_order(session, order_id)
    if not _token_matches(order, token):
        raise UnauthorizedError("Invalid tracking token")

    try:
        lat = float(lat)
        lng = float(lng)
        accuracy = float(accuracy) if accuracy is not None else None
    except (TypeError, ValueError):
        raise ValidationError("lat, lng and accuracy must be numbers")
    if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lng <= 180.0):
        raise ValidationError("lat/lng out of range")

    order.last_lat = lat
    order.last_lng = lng
    order.last_accuracy = accuracy
    order.last_location_at = now
    order.updated_at = now
    session.commit()
    return order
