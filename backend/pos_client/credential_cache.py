# Overview: Offline staff login for the terminal, backed by cached bcrypt hashes.

"""
Credential Cache

SECURITY:
- Only bcrypt hashes are stored, never plaintext.
- The server copy always wins: refresh() replaces the cache with the staff
  directory, including removals and deactivations.
- remember() caches a fresh hash after a successful online login so the next
  offline login works even before the directory has been pulled.
"""

from __future__ import annotations

import logging

import bcrypt

from .storage import CachedStaff, LocalStore, utcnow

logger = logging.getLogger(__name__)


class CredentialCache:
    def __init__(self, store: LocalStore, *, rounds: int = 12):
        self.store = store
        self.rounds = rounds

    def refresh(self, directory: list[dict]) -> int:
        """Replace the cache with the server's staff directory. Returns the number of entries kept."""
        with self.store.transaction() as s:
            seen = set()
            for entry in directory or []:
                username = (entry.get("username") or "").strip().lower()
                password_hash = entry.get("password_hash")
                if not username or not password_hash:
                    continue
                seen.add(username)
                row = s.get(CachedStaff, username) or CachedStaff(username=username)
                row.staff_id = entry.get("id")
                row.name = entry.get("name") or username
                row.role = entry.get("role") or "cashier"
                row.is_active = bool(entry.get("is_active", True))
                row.password_hash = password_hash
                row.refreshed_at = utcnow()
                s.add(row)

            stale = s.query(CachedStaff)
            if seen:
                stale = stale.filter(CachedStaff.username.notin_(seen))
            removed = stale.delete(synchronize_session=False)

        if removed:
            logger.info("Dropped %d staff no longer in the directory", removed)
        return len(seen)

    def remember(self, username: str, password: str, staff: dict) -> None:
        username = (username or "").strip().lower()
        password_hash = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")
        with self.store.transaction() as s:
            row = s.get(CachedStaff, username) or CachedStaff(username=username)
            row.staff_id = staff.get("id")
            row.name = staff.get("name") or username
            row.role = staff.get("role") or "cashier"
            row.is_active = bool(staff.get("is_active", True))
            row.password_hash = password_hash
            row.refreshed_at = utcnow()
            s.add(row)

    def verify(self, username: str, password: str) -> dict | None:
        """Offline login. Returns the cached staff dict, or None."""
        username = (username or "").strip().lower()
        if not username or not password:
            return None
        with self.store.transaction() as s:
            row = s.get(CachedStaff, username)
            if row is None or not row.is_active:
                return None
            try:
                ok = bcrypt.checkpw(password.encode("utf-8"), row.password_hash.encode("utf-8"))
            except ValueError:
                # Malformed hash
                return None
            return row.to_dict() if ok else None

    def staff(self) -> list[dict]:
        with self.store.transaction() as s:
            return [r.to_dict() for r in s.query(CachedStaff).order_by(CachedStaff.name.asc()).all()]
