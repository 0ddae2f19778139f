# Overview: Client half of POS sync; pushes the change log, prunes confirmed changes, merges the snapshot.

"""
Sync Engine (terminal side)

ONE ROUND (sync_once):
1. Skip if another round is already in flight (non-blocking lock).
2. Send every pending change, oldest first, with the last cursor.
3. On a transport error: stop. The change log and mirror are untouched and
   the next tick resends the same batch. The server records every change it
   applies under its change_id and answers a resent one with the stored
   result, so a batch whose response was lost is never applied twice.
4. Otherwise, per applied record:
     ok / skipped  remove from the log
     failed        keep, flagged for an operator
   Changes the server did not report on stay pending.
5. Merge the snapshot and store server_time as the next cursor, in one local
   transaction. The cursor is written first, which takes the store's write
   lock: a sale rung up on the till meanwhile either committed before (and
   its rows are held back from the merge) or waits until the merge is done.
   Local sales the server rejected are dropped from the mirror; the products
   they touched come back in the snapshot as reset rows.

SCHEDULER: a daemon thread runs a round every interval and on trigger()
(e.g. when the network comes back or right after a sale). stop() ends it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from .change_log import CHANGE_ORDER_CREATE, ChangeLog
from .credential_cache import CredentialCache
from .local_mirror import LocalMirror
from .transport import SyncTransport, TransientNetworkError

logger = logging.getLogger(__name__)

PRUNABLE_STATUSES = ("ok", "skipped")
FAILED_STATUS = "failed"


@dataclass
class SyncResult:
    ok: bool
    sent: int = 0
    pruned: int = 0
    failed: list[dict] = field(default_factory=list)
    server_time: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "sent": self.sent,
            "pruned": self.pruned,
            "failed": self.failed,
            "server_time": self.server_time,
            "error": self.error,
        }


class SyncEngine:
    def __init__(
        self,
        change_log: ChangeLog,
        mirror: LocalMirror,
        transport: SyncTransport,
        *,
        credentials: CredentialCache | None = None,
    ):
        self.change_log = change_log
        self.mirror = mirror
        self.transport = transport
        self.credentials = credentials
        self._in_flight = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._in_flight.locked()

    def sync_once(self) -> SyncResult | None:
        """Run one round. Returns None when a round is already running."""
        if not self._in_flight.acquire(blocking=False):
            logger.debug("Sync already in flight; skipping")
            return None
        try:
            return self._run()
        finally:
            self._in_flight.release()

    def _run(self) -> SyncResult:
        changes = self.change_log.pending()
        try:
            response = self.transport.push(
                since=self.mirror.cursor(),
                changes=changes,
                device_id=self.mirror.device_id(),
            )
        except TransientNetworkError as exc:
            logger.info("Sync deferred, %d change(s) still queued: %s", len(changes), exc.message)
            return SyncResult(ok=False, sent=0, error=exc.message)

        sent_ids = {c["change_id"] for c in changes}
        prune = []
        failed = []
        for record in response.get("applied") or []:
            change_id = record.get("change_id")
            if change_id not in sent_ids:
                continue
            status = record.get("status")
            if status in PRUNABLE_STATUSES:
                prune.append(change_id)
            elif status == FAILED_STATUS:
                self.change_log.mark_failed(change_id, record.get("error"))
                failed.append({"change_id": change_id, "type": record.get("type"), "error": record.get("error")})

        pruned = self.change_log.dequeue(prune)
        self._merge(response, changes, failed)

        if self.credentials is not None:
            self._refresh_directory()

        if changes:
            logger.info("Synced %d change(s): %d confirmed, %d failed", len(changes), pruned, len(failed))
        return SyncResult(
            ok=True,
            sent=len(changes),
            pruned=pruned,
            failed=failed,
            server_time=response["server_time"],
        )

    def _merge(self, response: dict, changes: list[dict], failed: list[dict]) -> None:
        rejected = {f["change_id"] for f in failed if f.get("type") == CHANGE_ORDER_CREATE}
        with self.mirror.store.transaction() as s:
            self.mirror.set_cursor(response["server_time"], session=s)
            s.flush()
            held_products, held_orders = self.change_log.pending_targets(session=s)
            self.mirror.merge_snapshot(
                response.get("snapshot") or {},
                held_products=held_products,
                held_orders=held_orders,
                session=s,
            )
            for change in changes:
                if change["change_id"] in rejected:
                    self.mirror.forget_rejected_sale((change.get("payload") or {}).get("external_id"), session=s)

    def _refresh_directory(self) -> None:
        try:
            directory = self.transport.staff_directory()
        except TransientNetworkError as exc:
            logger.info("Staff directory not refreshed: %s", exc.message)
            return
        self.credentials.refresh(directory)


class SyncScheduler(threading.Thread):
    def __init__(self, engine: SyncEngine, *, interval: float = 30.0):
        super().__init__(name="pos-sync", daemon=True)
        self.engine = engine
        self.interval = interval
        self._stop_event = threading.Event()
        self._wake = threading.Event()

    def trigger(self) -> None:
        """Run a round now instead of waiting for the next tick."""
        self._wake.set()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        self._wake.set()
        if self.is_alive():
            self.join(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.engine.sync_once()
            except Exception:  # noqa: BLE001
                # Keep ticking; the change log is intact
                logger.exception("Sync round crashed")
            self._wake.wait(self.interval)
            self._wake.clear()
