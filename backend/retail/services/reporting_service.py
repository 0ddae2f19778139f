# Overview: Service-layer operations for reporting; aggregates over orders for managers and POS snapshots.

from __future__ import annotations

from datetime import date, datetime, time, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from retail.models import Order, OrderItem
from retail.models.orders import STATUS_CANCELLED, STATUS_RETURNED
from retail.time_utils import parse_iso_datetime, utcnow, to_utc_z
from retail.errors import ValidationError


# (minimum items bought this month, discount percent), highest first
LOYALTY_TIERS = ((100, 15), (50, 10), (20, 5))
WEEKS_IN_REPORT = 8

# Orders that produced no revenue
EXCLUDED_FROM_SALES = (STATUS_CANCELLED, STATUS_RETURNED)


def parse_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    try:
        start_dt = parse_iso_datetime(start) if start else None
        end_dt = parse_iso_datetime(end) if end else None
    except ValueError:
        raise ValidationError("start/end must be ISO-8601 datetimes")
    return start_dt, end_dt


def _items_per_order(session: Session, order_ids: list[int]) -> dict[int, float]:
    if not order_ids:
        return {}
    rows = (
        session.query(OrderItem.order_id, func.coalesce(func.sum(OrderItem.qty), 0))
        .filter(OrderItem.order_id.in_(order_ids))
        .group_by(OrderItem.order_id)
        .all()
    )
    return {order_id: float(qty or 0) for order_id, qty in rows}


# =============================================================================
# CASH TOTALS (shared with shift reconciliation)
# =============================================================================

def order_totals_between(
    session: Session,
    start: datetime,
    end: datetime,
    branch_id: int | None = None,
) -> dict:
    """
    Payment-method totals for orders created in [start, end].

    Cancelled orders count nowhere. Returned orders count as refunds under
    their original payment method instead of as sales.
    """
    query = (
        session.query(
            Order.status,
            Order.payment_method,
            func.count(Order.id),
            func.coalesce(func.sum(Order.total_cents), 0),
        )
        .filter(Order.created_at >= start, Order.created_at <= end)
        .filter(Order.status != STATUS_CANCELLED)
    )
    if branch_id is not None:
        query = query.filter(Order.branch_id == branch_id)

    totals = {
        "cash_sales_cents": 0,
        "mobile_sales_cents": 0,
        "card_sales_cents": 0,
        "cash_refunds_cents": 0,
        "mobile_refunds_cents": 0,
        "total_refunds_cents": 0,
        "order_count": 0,
    }
    for status, method, count, total in query.group_by(Order.status, Order.payment_method).all():
        total = int(total or 0)
        if status == STATUS_RETURNED:
            totals["total_refunds_cents"] += total
            if method in ("cash", "mobile"):
                totals[f"{method}_refunds_cents"] += total
            continue
        totals["order_count"] += int(count)
        if method in ("cash", "mobile", "card"):
            totals[f"{method}_sales_cents"] += total
    return totals


def daily_cash(session: Session, day: date, branch_id: int | None = None) -> dict:
    start = datetime.combine(day, time.min)
    end = datetime.combine(day, time.max)
    totals = order_totals_between(session, start, end, branch_id)
    totals["net_cash_cents"] = totals["cash_sales_cents"] - totals["cash_refunds_cents"]
    totals.update({"date": day.isoformat(), "branch_id": branch_id})
    return totals


# =============================================================================
# PROFIT / LOSS
# =============================================================================

def profit_loss(session: Session, *, start: datetime | None = None, end: datetime | None = None) -> dict:
    """Revenue is the order total; cost uses the cost captured on each line at sale time."""
    query = session.query(Order).filter(Order.status.notin_(EXCLUDED_FROM_SALES))
    if start:
        query = query.filter(Order.created_at >= start)
    if end:
        query = query.filter(Order.created_at <= end)
    orders = query.all()

    total_revenue = 0
    total_cost = 0
    product_sales: dict = {}
    for order in orders:
        total_revenue += order.total_cents
        for item in order.items:
            qty = float(item.qty)
            revenue = int(round(qty * item.price_at_cents))
            cost = int(round(qty * (item.cost_at_cents or 0)))
            total_cost += cost

            key = item.product_id if item.product_id is not None else f"name:{item.product_name}"
            entry = product_sales.setdefault(key, {
                "product_id": item.product_id,
                "name": item.product_name,
                "units_sold": 0.0,
                "revenue_cents": 0,
                "cost_cents": 0,
                "profit_cents": 0,
            })
            entry["units_sold"] += qty
            entry["revenue_cents"] += revenue
            entry["cost_cents"] += cost
            entry["profit_cents"] += revenue - cost

    return {
        "total_revenue_cents": total_revenue,
        "total_cost_cents": total_cost,
        "total_profit_cents": total_revenue - total_cost,
        "order_count": len(orders),
        "product_sales": sorted(product_sales.values(), key=lambda e: e["profit_cents"], reverse=True),
    }


# =============================================================================
# WEEKLY SALES
# =============================================================================

def week_start(dt: datetime) -> datetime:
    """Midnight of the Sunday on or before dt."""
    days_since_sunday = (dt.weekday() + 1) % 7
    return datetime.combine((dt - timedelta(days=days_since_sunday)).date(), time.min)


def weekly_sales(session: Session, *, now: datetime | None = None) -> dict:
    now = now or utcnow()
    current_start = week_start(now)
    first_start = current_start - timedelta(weeks=WEEKS_IN_REPORT - 1)

    orders = (
        session.query(Order.id, Order.created_at, Order.total_cents)
        .filter(Order.created_at >= first_start)
        .filter(Order.status.notin_(EXCLUDED_FROM_SALES))
        .all()
    )
    items = _items_per_order(session, [o.id for o in orders])

    buckets = {}
    for offset in range(WEEKS_IN_REPORT):
        start = current_start - timedelta(weeks=offset)
        buckets[start] = {"week_start": start.date().isoformat(), "items_sold": 0.0, "orders": 0, "revenue_cents": 0}

    for order in orders:
        bucket = buckets.get(week_start(order.created_at))
        if bucket is None:
            # created_at in the future (device clock ahead); counts toward this week
            bucket = buckets[current_start]
        bucket["items_sold"] += items.get(order.id, 0.0)
        bucket["orders"] += 1
        bucket["revenue_cents"] += order.total_cents

    weeks = [buckets[start] for start in sorted(buckets, reverse=True)]
    return {
        "current_week": weeks[0],
        "last_week": weeks[1],
        "weeks": weeks,
    }


# =============================================================================
# CUSTOMER LOYALTY
# =============================================================================

def discount_for_items(items_this_month: float) -> tuple[int, str]:
    for threshold, percent in LOYALTY_TIERS:
        if items_this_month >= threshold:
            return percent, f"{threshold}+ items this month"
    return 0, ""


def _month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1)


def customer_discounts(session: Session, *, now: datetime | None = None, phone: str | None = None) -> dict:
    """Per-customer (by phone) activity and loyalty tier for the current calendar month."""
    now = now or utcnow()
    month_start = _month_start(now)

    query = (
        session.query(Order.id, Order.customer_phone, Order.customer, Order.created_at, Order.total_cents)
        .filter(Order.customer_phone.isnot(None))
        .filter(Order.status.notin_(EXCLUDED_FROM_SALES))
    )
    if phone:
        query = query.filter(Order.customer_phone == phone)
    orders = query.order_by(Order.id.asc()).all()
    items = _items_per_order(session, [o.id for o in orders])

    stats: dict[str, dict] = {}
    for order in orders:
        entry = stats.setdefault(order.customer_phone, {
            "phone": order.customer_phone,
            "name": (order.customer or {}).get("name") or "Unknown",
            "current_month": {"orders": 0, "items_count": 0.0, "total_spent_cents": 0},
            "all_time": {"orders": 0, "items_count": 0.0, "total_spent_cents": 0},
        })
        count = items.get(order.id, 0.0)
        periods = [entry["all_time"]]
        if order.created_at >= month_start:
            periods.append(entry["current_month"])
        for period in periods:
            period["orders"] += 1
            period["items_count"] += count
            period["total_spent_cents"] += order.total_cents

    customers = []
    for entry in stats.values():
        percent, reason = discount_for_items(entry["current_month"]["items_count"])
        entry["discount_percent"] = percent
        entry["discount_reason"] = reason
        customers.append(entry)
    customers.sort(key=lambda c: c["current_month"]["items_count"], reverse=True)
    return {"month_start": to_utc_z(month_start), "customers": customers}


def customer_discount(session: Session, phone: str, *, now: datetime | None = None) -> dict:
    found = customer_discounts(session, now=now, phone=phone)["customers"]
    if found:
        return found[0]
    return {
        "phone": phone,
        "name": None,
        "current_month": {"orders": 0, "items_count": 0.0, "total_spent_cents": 0},
        "all_time": {"orders": 0, "items_count": 0.0, "total_spent_cents": 0},
        "discount_percent": 0,
        "discount_reason": "",
    }


# =============================================================================
# STAFF PERFORMANCE
# =============================================================================

def staff_performance(session: Session, start: datetime, end: datetime, branch_id: int | None = None) -> list[dict]:
    query = (
        session.query(Order)
        .filter(Order.created_at >= start, Order.created_at <= end)
        .filter(Order.status != STATUS_CANCELLED)
    )
    if branch_id is not None:
        query = query.filter(Order.branch_id == branch_id)

    by_staff: dict[str, dict] = {}
    for order in query.all():
        key = order.staff_name or "Unknown"
        entry = by_staff.setdefault(key, {
            "staff_name": key,
            "staff_role": order.staff_role or "unknown",
            "orders": 0,
            "total_sales_cents": 0,
            "cash_sales_cents": 0,
            "mobile_sales_cents": 0,
            "refunds_cents": 0,
        })
        if order.status == STATUS_RETURNED:
            entry["refunds_cents"] += order.total_cents
            continue
        entry["orders"] += 1
        entry["total_sales_cents"] += order.total_cents
        if order.payment_method in ("cash", "mobile"):
            entry[f"{order.payment_method}_sales_cents"] += order.total_cents

    rows = []
    for entry in by_staff.values():
        entry["avg_order_cents"] = entry["total_sales_cents"] // entry["orders"] if entry["orders"] else 0
        rows.append(entry)
    return sorted(rows, key=lambda e: e["total_sales_cents"], reverse=True)


def snapshot_reports(session: Session, *, now: datetime | None = None) -> dict:
    """Aggregates shipped to POS terminals with every sync."""
    now = now or utcnow()
    return {
        "profit_loss": profit_loss(session),
        "weekly_sales": weekly_sales(session, now=now),
        "customer_discounts": customer_discounts(session, now=now),
    }
