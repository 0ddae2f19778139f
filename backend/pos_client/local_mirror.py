# Overview: Terminal's offline copy of products, orders and reports; optimistic updates plus snapshot merge.

"""
Local Mirror

A best-effort cache. POS actions are reflected here immediately (even
offline) so the till stays usable; the server's snapshot is authoritative and
overwrites optimistic state when it arrives. Two offline terminals selling the
same last item will both see the sale succeed locally; the server catches the
oversell when the changes are applied.

MERGE RULES:
- products: last-writer-wins on updated_at; the incoming row is taken unless
  the local row carries a strictly newer clock. A full snapshot also removes
  products the server no longer has.
- orders: matched by external_id first (sales made on this terminal), then by
  server id; unmatched orders are added.
- reports: replaced wholesale.
- rows listed in reset_product_ids are taken regardless of clocks: the
  server rejected a change to them, so the optimistic copy is wrong.
- rows that a still-pending change has written are left alone until that
  change is confirmed; the snapshot predates it.
- a rejected sale that never reached the server is dropped.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.orm import Session

from .storage import LocalStore, MirrorMeta, MirrorOrder, MirrorProduct
from .timestamps import parse_timestamp

logger = logging.getLogger(__name__)

META_CURSOR = "last_sync_at"
META_DEVICE_ID = "device_id"
META_REPORTS = "reports"

STATUS_CANCELLED = "Cancelled"
STATUS_RETURNED = "Returned"
RESTOCKING_STATUSES = (STATUS_CANCELLED, STATUS_RETURNED)

PRODUCT_FIELDS = ("name", "price_cents", "cost_cents", "stock", "barcode")


class LocalMirror:
    def __init__(self, store: LocalStore):
        self.store = store

    # =========================================================================
    # META
    # =========================================================================

    def _get_meta(self, session: Session, key: str, default=None):
        row = session.get(MirrorMeta, key)
        return row.value if row is not None else default

    def _set_meta(self, session: Session, key: str, value) -> None:
        row = session.get(MirrorMeta, key)
        if row is None:
            session.add(MirrorMeta(key=key, value=value))
        else:
            row.value = value

    def cursor(self) -> str | None:
        with self.store.transaction() as s:
            return self._get_meta(s, META_CURSOR)

    def set_cursor(self, server_time: str | None, *, session: Session | None = None) -> None:
        with self.store.scope(session) as s:
            self._set_meta(s, META_CURSOR, server_time)

    def clear_cursor(self) -> None:
        """Next sync asks for everything and replaces the product list."""
        self.set_cursor(None)

    def device_id(self) -> str:
        """Stable per-terminal id, created on first use."""
        with self.store.transaction() as s:
            device_id = self._get_meta(s, META_DEVICE_ID)
            if not device_id:
                device_id = str(uuid.uuid4())
                self._set_meta(s, META_DEVICE_ID, device_id)
            return device_id

    def reports(self) -> dict:
        with self.store.transaction() as s:
            return self._get_meta(s, META_REPORTS) or {}

    # =========================================================================
    # READS
    # =========================================================================

    def products(self) -> list[dict]:
        with self.store.transaction() as s:
            return [p.to_dict() for p in s.query(MirrorProduct).order_by(MirrorProduct.id.asc()).all()]

    def product(self, product_id: int, *, session: Session | None = None) -> dict | None:
        with self.store.scope(session) as s:
            row = s.get(MirrorProduct, product_id)
            return row.to_dict() if row else None

    def find_by_barcode(self, barcode: str) -> dict | None:
        with self.store.transaction() as s:
            row = s.query(MirrorProduct).filter(MirrorProduct.barcode == barcode).first()
            return row.to_dict() if row else None

    def low_stock(self, threshold: float) -> list[dict]:
        with self.store.transaction() as s:
            rows = (
                s.query(MirrorProduct)
                .filter(MirrorProduct.stock <= threshold)
                .order_by(MirrorProduct.stock.asc(), MirrorProduct.id.asc())
                .all()
            )
            return [p.to_dict() for p in rows]

    def orders(self) -> list[dict]:
        with self.store.transaction() as s:
            rows = s.query(MirrorOrder).order_by(MirrorOrder.local_id.desc()).all()
            return [o.to_dict() for o in rows]

    def _find_order(self, session: Session, key: int | str) -> MirrorOrder | None:
        """int -> server id, str -> external id."""
        if isinstance(key, int):
            return session.query(MirrorOrder).filter(MirrorOrder.server_id == key).first()
        return session.query(MirrorOrder).filter(MirrorOrder.external_id == str(key)).first()

    def find_order(self, key: int | str, *, session: Session | None = None) -> dict | None:
        with self.store.scope(session) as s:
            row = self._find_order(s, key)
            return row.to_dict() if row else None

    # =========================================================================
    # OPTIMISTIC UPDATES
    # =========================================================================

    def _bump_stock(self, session: Session, product_id, amount: float) -> None:
        if product_id is None:
            return
        row = session.get(MirrorProduct, int(product_id))
        if row is not None:
            row.stock = float(row.stock or 0) + float(amount)

    def apply_sale(self, order: dict, *, session: Session | None = None) -> dict:
        """Record a till sale locally and take its lines out of local stock."""
        with self.store.scope(session) as s:
            for item in order.get("items") or []:
                self._bump_stock(s, item.get("product_id"), -float(item.get("qty") or 0))
            row = MirrorOrder(
                server_id=order.get("id"),
                external_id=order.get("external_id"),
                source=order.get("source"),
                status=order.get("status") or "Placed",
                data=order,
            )
            s.add(row)
            s.flush()
            return row.to_dict()

    def apply_product_edit(self, product_id: int, fields: dict, updated_at: str, *, session: Session | None = None) -> dict | None:
        with self.store.scope(session) as s:
            row = s.get(MirrorProduct, product_id)
            if row is None:
                return None
            for key in PRODUCT_FIELDS:
                if key in fields:
                    setattr(row, key, fields[key])
            row.updated_at = updated_at
            s.flush()
            return row.to_dict()

    def apply_stock_adjust(self, product_id: int, amount: float, *, session: Session | None = None) -> dict | None:
        with self.store.scope(session) as s:
            self._bump_stock(s, product_id, amount)
            row = s.get(MirrorProduct, product_id)
            return row.to_dict() if row else None

    def apply_status(self, key: int | str, status: str, *, session: Session | None = None) -> dict | None:
        """Set an order's status locally; cancel/return put its lines back into local stock once."""
        with self.store.scope(session) as s:
            row = self._find_order(s, key)
            if row is None:
                return None
            if row.status == status:
                return row.to_dict()
            if status in RESTOCKING_STATUSES and row.status not in RESTOCKING_STATUSES:
                for item in (row.data or {}).get("items") or []:
                    self._bump_stock(s, item.get("product_id"), float(item.get("qty") or 0))
            row.status = status
            s.flush()
            return row.to_dict()

    def apply_return(self, key: int | str, *, session: Session | None = None) -> dict | None:
        return self.apply_status(key, STATUS_RETURNED, session=session)

    # =========================================================================
    # SNAPSHOT MERGE
    # =========================================================================

    def _merge_product(self, session: Session, incoming: dict, *, force: bool = False) -> bool:
        product_id = incoming.get("id")
        if product_id is None:
            return False
        row = session.get(MirrorProduct, int(product_id))
        if row is None:
            row = MirrorProduct(id=int(product_id))
            session.add(row)
        elif not force:
            local_at = parse_timestamp(row.updated_at)
            incoming_at = parse_timestamp(incoming.get("updated_at"))
            if local_at is not None and incoming_at is not None and incoming_at < local_at:
                return False

        row.name = incoming.get("name") or ""
        row.price_cents = int(incoming.get("price_cents") or 0)
        row.cost_cents = int(incoming.get("cost_cents") or 0)
        row.stock = float(incoming.get("stock") or 0)
        row.barcode = incoming.get("barcode")
        row.updated_at = incoming.get("updated_at")
        return True

    def _merge_order(self, session: Session, incoming: dict) -> None:
        row = None
        if incoming.get("external_id"):
            row = session.query(MirrorOrder).filter(MirrorOrder.external_id == incoming["external_id"]).first()
        if row is None and incoming.get("id") is not None:
            row = session.query(MirrorOrder).filter(MirrorOrder.server_id == incoming["id"]).first()
        if row is None:
            row = MirrorOrder()
            session.add(row)

        row.server_id = incoming.get("id")
        row.external_id = incoming.get("external_id")
        row.source = incoming.get("source")
        row.status = incoming.get("status") or "Placed"
        row.data = incoming
        # Keep the unique server_id/external_id lookups consistent within this merge
        session.flush()

    def forget_rejected_sale(self, external_id: str | None, *, session: Session | None = None) -> bool:
        """Drop a local sale the server refused. Orders the server knows are kept."""
        if not external_id:
            return False
        with self.store.scope(session) as s:
            removed = (
                s.query(MirrorOrder)
                .filter(MirrorOrder.external_id == str(external_id), MirrorOrder.server_id.is_(None))
                .delete(synchronize_session=False)
            )
        return bool(removed)

    def merge_snapshot(
        self,
        snapshot: dict,
        *,
        held_products: set[int] | None = None,
        held_orders: set[int | str] | None = None,
        session: Session | None = None,
    ) -> dict:
        """
        Fold a server snapshot into the mirror in one transaction. Returns merge counts.

        held_products / held_orders: rows written by changes the server has not
        seen yet (see ChangeLog.pending_targets); orders are keyed by server id
        or external id.
        """
        counts = {"products": 0, "products_removed": 0, "products_held": 0, "orders": 0}
        if not isinstance(snapshot, dict):
            return counts

        with self.store.scope(session) as s:
            held_products = set(held_products or ())
            held_orders = set(held_orders or ())
            for key in held_orders:
                row = self._find_order(s, key)
                if row is not None:
                    held_products.update(
                        int(item["product_id"]) for item in (row.data or {}).get("items") or []
                        if item.get("product_id") is not None
                    )

            reset = {int(pid) for pid in snapshot.get("reset_product_ids") or []}
            products = snapshot.get("products") or []
            for incoming in products:
                if incoming.get("id") is not None and int(incoming["id"]) in held_products:
                    counts["products_held"] += 1
                    continue
                force = incoming.get("id") is not None and int(incoming["id"]) in reset
                if self._merge_product(s, incoming, force=force):
                    counts["products"] += 1

            if snapshot.get("full"):
                keep = {int(p["id"]) for p in products if p.get("id") is not None}
                stale = s.query(MirrorProduct)
                if keep:
                    stale = stale.filter(MirrorProduct.id.notin_(keep))
                counts["products_removed"] = stale.delete(synchronize_session=False)

            for incoming in snapshot.get("orders") or []:
                if incoming.get("external_id") in held_orders or incoming.get("id") in held_orders:
                    continue
                self._merge_order(s, incoming)
                counts["orders"] += 1

            if snapshot.get("reports") is not None:
                self._set_meta(s, META_REPORTS, snapshot["reports"])

        logger.debug("Merged snapshot %s", counts)
        return counts
