# Overview: Durable, ordered queue of terminal mutations not yet confirmed by the server.

"""
Change Log

DURABILITY: enqueue() commits before it returns. A change leaves the log only
when the server reports it `ok` or `skipped` (dequeue) or an operator
discards it. `failed` changes stay put, out of the send queue, until an
operator retries or discards them; they are never dropped silently and never
retried in a loop.

ORDER: changes are sent in append order (`seq`). retry() keeps the original
position, so a retried sale still precedes status changes queued after it.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable

from sqlalchemy.orm import Session

from .storage import LocalStore, PendingChange, utcnow

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_FAILED = "failed"

CHANGE_ORDER_CREATE = "order:create"
CHANGE_ORDER_STATUS = "order:status"
CHANGE_ORDER_RETURN = "order:return"
CHANGE_PRODUCT_UPDATE = "product:update"
CHANGE_STOCK_ADJUST = "stock:adjust"
CHANGE_TYPES = (
    CHANGE_ORDER_CREATE,
    CHANGE_ORDER_STATUS,
    CHANGE_ORDER_RETURN,
    CHANGE_PRODUCT_UPDATE,
    CHANGE_STOCK_ADJUST,
)


def new_change_id() -> str:
    return str(uuid.uuid4())


class ChangeLog:
    def __init__(self, store: LocalStore):
        self.store = store

    def enqueue(
        self,
        change_type: str,
        payload: dict,
        *,
        change_id: str | None = None,
        session: Session | None = None,
    ) -> dict:
        """Append one change. Durable once this returns (or once the caller's transaction commits)."""
        if change_type not in CHANGE_TYPES:
            raise ValueError(f"Unknown change type: {change_type}")
        if not isinstance(payload, dict):
            raise ValueError("payload must be a dict")

        change = PendingChange(
            change_id=change_id or new_change_id(),
            type=change_type,
            payload=payload,
            status=STATUS_PENDING,
        )
        with self.store.scope(session) as s:
            s.add(change)
            s.flush()
            logger.debug("Queued %s %s", change.type, change.change_id)
            return change.to_wire()

    def pending(self, limit: int | None = None) -> list[dict]:
        """Changes to send, oldest first, in wire format."""
        with self.store.transaction() as s:
            query = (
                s.query(PendingChange)
                .filter(PendingChange.status == STATUS_PENDING)
                .order_by(PendingChange.seq.asc())
            )
            if limit:
                query = query.limit(limit)
            return [c.to_wire() for c in query.all()]

    def dequeue(self, change_ids: Iterable[str]) -> int:
        """Remove confirmed changes. Unknown ids are ignored."""
        ids = [c for c in change_ids if c]
        if not ids:
            return 0
        with self.store.transaction() as s:
            removed = (
                s.query(PendingChange)
                .filter(PendingChange.change_id.in_(ids))
                .delete(synchronize_session=False)
            )
        return removed

    def mark_failed(self, change_id: str, error: str | None) -> bool:
        with self.store.transaction() as s:
            change = s.query(PendingChange).filter_by(change_id=change_id).first()
            if change is None:
                return False
            change.status = STATUS_FAILED
            change.error = error or "Rejected by server"
            change.attempts = (change.attempts or 0) + 1
            change.failed_at = utcnow()
        logger.warning("Change %s rejected: %s", change_id, error)
        return True

    def failed(self) -> list[dict]:
        with self.store.transaction() as s:
            rows = (
                s.query(PendingChange)
                .filter(PendingChange.status == STATUS_FAILED)
                .order_by(PendingChange.seq.asc())
                .all()
            )
            return [c.to_dict() for c in rows]

    def retry(self, change_ids: Iterable[str] | None = None) -> int:
        """Put failed changes back in the send queue (all of them when no ids are given)."""
        with self.store.transaction() as s:
            query = s.query(PendingChange).filter(PendingChange.status == STATUS_FAILED)
            if change_ids is not None:
                query = query.filter(PendingChange.change_id.in_(list(change_ids)))
            rows = query.all()
            for change in rows:
                change.status = STATUS_PENDING
                change.error = None
            return len(rows)

    def discard(self, change_id: str) -> bool:
        """Operator decision to give up on a failed change. Pending changes cannot be discarded."""
        with self.store.transaction() as s:
            removed = (
                s.query(PendingChange)
                .filter(PendingChange.change_id == change_id, PendingChange.status == STATUS_FAILED)
                .delete(synchronize_session=False)
            )
        if removed:
            logger.info("Discarded failed change %s", change_id)
        return bool(removed)

    def pending_targets(self, *, session: Session | None = None) -> tuple[set[int], set[int | str]]:
        """
        (product ids, order keys) that pending changes have already written
        into the mirror. Order keys are server ids (int) or external ids (str).
        """
        product_ids: set[int] = set()
        order_keys: set[int | str] = set()
        with self.store.scope(session) as s:
            rows = s.query(PendingChange).filter(PendingChange.status == STATUS_PENDING).all()
            for change in rows:
                payload = change.payload or {}
                if change.type == CHANGE_ORDER_CREATE:
                    product_ids.update(
                        int(item["product_id"]) for item in payload.get("items") or []
                        if item.get("product_id") is not None
                    )
                    if payload.get("external_id"):
                        order_keys.add(str(payload["external_id"]))
                elif change.type in (CHANGE_PRODUCT_UPDATE, CHANGE_STOCK_ADJUST):
                    if payload.get("id") is not None:
                        product_ids.add(int(payload["id"]))
                elif payload.get("id") is not None:
                    order_keys.add(int(payload["id"]))
                elif payload.get("external_id"):
                    order_keys.add(str(payload["external_id"]))
        return product_ids, order_keys

    def pending_count(self) -> int:
        with self.store.transaction() as s:
            return s.query(PendingChange).filter(PendingChange.status == STATUS_PENDING).count()

    def failed_count(self) -> int:
        with self.store.transaction() as s:
            return s.query(PendingChange).filter(PendingChange.status == STATUS_FAILED).count()
