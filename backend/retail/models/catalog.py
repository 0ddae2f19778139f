from __future__ import annotations

from ..extensions import db
from retail.time_utils import to_utc_z, utcnow


class Product(db.Model):
    """
    Product master data.

    STOCK: fractional quantity (weighed goods). `stock >= 0` is enforced by a
    check constraint; every decrement is a single conditional UPDATE so a
    concurrent writer cannot drive it negative.

    CLOCKS:
    - updated_at: logical clock for last-writer-wins. POS edits carry their own
      value (stamped on the device, possibly while offline); server-side edits
      stamp "now".
    - server_updated_at: when the server last wrote the row. Delta snapshots
      use it so a late-arriving offline edit (old updated_at) is still shipped
      to devices whose cursor is already past it.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        db.CheckConstraint("price_cents >= 0", name="ck_products_price_non_negative"),
        db.Index("ix_products_updated_at", "updated_at"),
        db.Index("ix_products_server_updated_at", "server_updated_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    # Authoritative storage in cents (frontend may only format for display)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_cents = db.Column(db.Integer, nullable=False, default=0)

    stock = db.Column(db.Numeric(14, 3, asdecimal=False), nullable=False, default=0)

    # Not unique: imported catalogs routinely share codes across variants
    barcode = db.Column(db.String(64), nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    server_updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "stock": float(self.stock or 0),
            "barcode": self.barcode,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
