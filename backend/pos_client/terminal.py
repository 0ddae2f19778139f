# Overview: POS actions; each one updates the local mirror and appends to the change log in one transaction.

"""
POS Terminal

WHY one transaction per action: the optimistic mirror update and the queued
change must never disagree after a crash. Either the till shows the sale and
the sale is queued, or neither happened.

Nothing here talks to the network directly except login(). Actions nudge the
background scheduler (when running) so connected terminals sync right away.
"""

from __future__ import annotations

import logging
import uuid

from .change_log import (
    CHANGE_ORDER_CREATE,
    CHANGE_ORDER_RETURN,
    CHANGE_ORDER_STATUS,
    CHANGE_PRODUCT_UPDATE,
    CHANGE_STOCK_ADJUST,
    ChangeLog,
)
from .config import ClientConfig
from .credential_cache import CredentialCache
from .local_mirror import PRODUCT_FIELDS, LocalMirror
from .storage import LocalStore
from .sync_engine import SyncEngine, SyncResult, SyncScheduler
from .timestamps import now_iso
from .transport import SyncTransport, TransientNetworkError

logger = logging.getLogger(__name__)

ORDER_SOURCE = "pos"
ORDER_STATUSES = ("Placed", "Processing", "Dispatched", "Delivered", "Cancelled", "Returned")


class TerminalError(Exception):
    """A POS action was refused locally (unknown product, bad quantity, unknown order)."""


class PosTerminal:
    def __init__(
        self,
        config: ClientConfig,
        store: LocalStore,
        change_log: ChangeLog,
        mirror: LocalMirror,
        credentials: CredentialCache,
        transport: SyncTransport | None,
        engine: SyncEngine | None,
    ):
        self.config = config
        self.store = store
        self.change_log = change_log
        self.mirror = mirror
        self.credentials = credentials
        self.transport = transport
        self.engine = engine
        self.scheduler: SyncScheduler | None = None

    # =========================================================================
    # SYNC
    # =========================================================================

    def start_background_sync(self) -> SyncScheduler:
        if self.engine is None:
            raise TerminalError("No server configured")
        if self.scheduler is None or not self.scheduler.is_alive():
            self.scheduler = SyncScheduler(self.engine, interval=self.config.sync_interval)
            self.scheduler.start()
        return self.scheduler

    def stop_background_sync(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
            self.scheduler = None

    def sync_now(self) -> SyncResult | None:
        if self.engine is None:
            raise TerminalError("No server configured")
        return self.engine.sync_once()

    def resync(self) -> None:
        """Forget the cursor; the next round pulls a full snapshot."""
        self.mirror.clear_cursor()

    def _notify(self) -> None:
        if self.scheduler is not None:
            self.scheduler.trigger()

    def status(self) -> dict:
        return {
            "pending": self.change_log.pending_count(),
            "failed": self.change_log.failed_count(),
            "last_sync_at": self.mirror.cursor(),
            "device_id": self.mirror.device_id(),
            "syncing": bool(self.engine and self.engine.busy),
        }

    # =========================================================================
    # STAFF
    # =========================================================================

    def login(self, username: str, password: str) -> dict | None:
        """
        Online first; falls back to the credential cache only when the server
        cannot be reached. A server that answers "no" is final.
        """
        if self.transport is not None:
            try:
                data = self.transport.login(username, password)
            except TransientNetworkError as exc:
                if exc.status_code is not None:
                    logger.info("Login rejected for %s: %s", username, exc.message)
                    return None
            else:
                staff = data.get("staff") or {}
                self.credentials.remember(username, password, staff)
                return {"staff": staff, "token": data.get("token"), "offline": False}

        staff = self.credentials.verify(username, password)
        if staff is None:
            return None
        return {"staff": staff, "token": None, "offline": True}

    # =========================================================================
    # ACTIONS
    # =========================================================================

    def place_sale(
        self,
        items: list[dict],
        *,
        staff: dict | None = None,
        customer: dict | None = None,
        delivery: dict | None = None,
        payment: dict | None = None,
    ) -> dict:
        """
        items: [{product_id, qty, price_at_cents?}]. Prices default to the
        mirror's current price and are sent along, so the server records what
        the customer was actually charged.
        """
        if not items:
            raise TerminalError("Cart is empty")

        staff = staff or {}
        now = now_iso()
        external_id = str(uuid.uuid4())

        with self.store.transaction() as s:
            lines = []
            for item in items:
                product_id = int(item["product_id"])
                qty = float(item.get("qty") or 0)
                if qty <= 0:
                    raise TerminalError(f"Quantity for product {product_id} must be greater than zero")
                product = self.mirror.product(product_id, session=s)
                if product is None:
                    raise TerminalError(f"Unknown product {product_id}")
                price = item.get("price_at_cents")
                price = product["price_cents"] if price is None else int(price)
                lines.append({
                    "product_id": product_id,
                    "name": product["name"],
                    "qty": qty,
                    "price_at_cents": price,
                })
            total = sum(int(round(line["qty"] * line["price_at_cents"])) for line in lines)

            branch = None
            if self.config.branch_id is not None:
                branch = {"id": self.config.branch_id, "name": self.config.branch_name}

            payload = {
                "external_id": external_id,
                "source": ORDER_SOURCE,
                "items": [
                    {"product_id": line["product_id"], "qty": line["qty"], "price_at_cents": line["price_at_cents"]}
                    for line in lines
                ],
                "customer": customer,
                "delivery": delivery,
                "payment": payment,
                "staff": {"name": staff.get("name"), "role": staff.get("role")},
                "branch": branch,
                "total_cents": total,
                "created_at": now,
            }
            order = {
                "id": None,
                "external_id": external_id,
                "source": ORDER_SOURCE,
                "status": "Placed",
                "total_cents": total,
                "items": lines,
                "customer": customer,
                "delivery": delivery,
                "payment": payment,
                "staff_name": staff.get("name"),
                "staff_role": staff.get("role"),
                "branch_id": branch["id"] if branch else None,
                "branch_name": branch["name"] if branch else None,
                "created_at": now,
                "updated_at": now,
            }
            self.change_log.enqueue(CHANGE_ORDER_CREATE, payload, session=s)
            order = self.mirror.apply_sale(order, session=s)

        self._notify()
        return order

    def edit_product(self, product_id: int, **fields) -> dict:
        patch = {k: v for k, v in fields.items() if k in PRODUCT_FIELDS}
        if not patch:
            raise TerminalError("Nothing to update")
        updated_at = now_iso()

        with self.store.transaction() as s:
            product = self.mirror.apply_product_edit(product_id, patch, updated_at, session=s)
            if product is None:
                raise TerminalError(f"Unknown product {product_id}")
            self.change_log.enqueue(
                CHANGE_PRODUCT_UPDATE,
                {"id": product_id, **patch, "updated_at": updated_at},
                session=s,
            )

        self._notify()
        return product

    def adjust_stock(self, product_id: int, amount: float, *, reason: str | None = None) -> dict:
        """Manual correction: +amount (negative allowed)."""
        amount = float(amount)
        if amount == 0:
            raise TerminalError("Enter a non-zero amount")

        with self.store.transaction() as s:
            product = self.mirror.apply_stock_adjust(product_id, amount, session=s)
            if product is None:
                raise TerminalError(f"Unknown product {product_id}")
            payload = {"id": product_id, "amount": amount}
            if reason:
                payload["reason"] = reason
            self.change_log.enqueue(CHANGE_STOCK_ADJUST, payload, session=s)

        self._notify()
        return product

    @staticmethod
    def _order_ref(order: dict) -> dict:
        """Server id when known, otherwise the idempotency key the sale was queued with."""
        if order.get("id") is not None:
            return {"id": order["id"]}
        return {"external_id": order["external_id"], "source": order.get("source") or ORDER_SOURCE}

    def set_status(self, key: int | str, status: str) -> dict:
        """key: server order id (int) or external_id (str)."""
        if status not in ORDER_STATUSES:
            raise TerminalError(f"Unknown status {status}")

        with self.store.transaction() as s:
            order = self.mirror.find_order(key, session=s)
            if order is None:
                raise TerminalError(f"Unknown order {key}")
            payload = {**self._order_ref(order), "status": status}
            self.change_log.enqueue(CHANGE_ORDER_STATUS, payload, session=s)
            order = self.mirror.apply_status(key, status, session=s)

        self._notify()
        return order

    def return_order(self, key: int | str) -> dict:
        with self.store.transaction() as s:
            order = self.mirror.find_order(key, session=s)
            if order is None:
                raise TerminalError(f"Unknown order {key}")
            self.change_log.enqueue(CHANGE_ORDER_RETURN, self._order_ref(order), session=s)
            order = self.mirror.apply_return(key, session=s)

        self._notify()
        return order

    def close(self) -> None:
        self.stop_background_sync()
        if self.transport is not None:
            self.transport.close()
        self.store.dispose()
