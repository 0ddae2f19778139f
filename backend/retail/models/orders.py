from __future__ import annotations

from ..extensions import db
from retail.time_utils import to_utc_z, utcnow


# Order lifecycle
STATUS_PLACED = "Placed"
STATUS_PROCESSING = "Processing"
STATUS_DISPATCHED = "Dispatched"
STATUS_DELIVERED = "Delivered"
STATUS_CANCELLED = "Cancelled"
STATUS_RETURNED = "Returned"

# Happy path, in order; forward moves only
ORDER_FLOW = (STATUS_PLACED, STATUS_PROCESSING, STATUS_DISPATCHED, STATUS_DELIVERED)
TERMINAL_STATUSES = (STATUS_CANCELLED, STATUS_RETURNED)
ORDER_STATUSES = ORDER_FLOW + TERMINAL_STATUSES


class Order(db.Model):
    """
    Customer order, placed at a POS terminal or through the storefront.

    IDEMPOTENCY: (source, external_id) is unique. POS terminals assign
    external_id when the sale happens (possibly offline) and replay it on every
    sync attempt until acknowledged; the constraint guarantees one row.

    PAYLOADS: delivery/payment/customer are validated tagged structures (see
    validation.py) stored as JSON with a schema_version. payment_method and
    customer_phone are copied out for reporting queries.

    LOCATION: last known courier position only (no history). lat/lng/accuracy/at
    are set or cleared together.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("source", "external_id", name="uq_orders_source_external_id"),
        db.CheckConstraint("total_cents >= 0", name="ck_orders_total_non_negative"),
        db.Index("ix_orders_updated_at", "updated_at"),
        db.Index("ix_orders_branch_created", "branch_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    source = db.Column(db.String(32), nullable=True)
    external_id = db.Column(db.String(64), nullable=True)

    total_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=STATUS_PLACED, index=True)

    delivery = db.Column(db.JSON, nullable=True)
    payment = db.Column(db.JSON, nullable=True)
    customer = db.Column(db.JSON, nullable=True)
    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    customer_phone = db.Column(db.String(32), nullable=True, index=True)

    staff_name = db.Column(db.String(120), nullable=True)
    staff_role = db.Column(db.String(32), nullable=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    branch_name = db.Column(db.String(120), nullable=True)

    # Capability for courier location pings and driver cancels
    tracking_token = db.Column(db.String(64), nullable=False)

    last_lat = db.Column(db.Float, nullable=True)
    last_lng = db.Column(db.Float, nullable=True)
    last_accuracy = db.Column(db.Float, nullable=True)
    last_location_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    branch = db.relationship("Branch", backref=db.backref("orders", lazy=True))
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status} total_cents={self.total_cents}>"

    def last_location(self) -> dict | None:
        if self.last_lat is None or self.last_lng is None:
            return None
        return {
            "lat": self.last_lat,
            "lng": self.last_lng,
            "accuracy": self.last_accuracy,
            "at": to_utc_z(self.last_location_at),
        }

    def to_dict(self, *, include_tracking_token: bool = False) -> dict:
        data = {
            "id": self.id,
            "source": self.source,
            "external_id": self.external_id,
            "total_cents": self.total_cents,
            "status": self.status,
            "delivery": self.delivery,
            "payment": self.payment,
            "customer": self.customer,
            "staff_name": self.staff_name,
            "staff_role": self.staff_role,
            "branch_id": self.branch_id,
            "branch_name": self.branch_name,
            "last_location": self.last_location(),
            "items": [item.to_dict() for item in self.items],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_tracking_token:
            data["tracking_token"] = self.tracking_token
        return data


class OrderItem(db.Model):
    """
    Order line. price_at_cents is captured at sale time so later product price
    changes never alter historical orders. Immutable once written.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("qty > 0", name="ck_order_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    # Nulled when a catalog replace removes the product; product_name keeps the line readable
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True)
    product_name = db.Column(db.String(255), nullable=True)
    qty = db.Column(db.Numeric(14, 3, asdecimal=False), nullable=False)
    price_at_cents = db.Column(db.Integer, nullable=False)
    # Cost captured alongside price so profit reports survive later cost edits
    cost_at_cents = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship("Product")

    @property
    def line_total_cents(self) -> int:
        return int(round(float(self.qty) * self.price_at_cents))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.product_name,
            "qty": float(self.qty),
            "price_at_cents": self.price_at_cents,
            "line_total_cents": self.line_total_cents,
        }
