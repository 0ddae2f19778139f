# Overview: Service-layer operations for the audit log; append-only writes and operator reads.

from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from ..models import AuditLogEntry
"""
Audit Log Invariants

- Append-only: no updates, no deletes.
- Entries are written inside the same transaction as the mutation they record
  (flush here, the caller commits or rolls back both together).
- Business logic never reads the audit log; only operators do.
"""


def append_audit_entry(
    session: Session,
    *,
    actor: str,
    action: str,
    target_type: str,
    target_id: int | str | None = None,
    actor_staff_id: int | None = None,
    details: dict | None = None,
) -> AuditLogEntry:
    entry = AuditLogEntry(
        actor=actor or "system",
        actor_staff_id=actor_staff_id,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        details=details,
    )
    session.add(entry)
    session.flush()
    return entry


def list_audit_entries(
    session: Session,
    *,
    action: str | None = None,
    target_type: str | None = None,
    since: datetime | None = None,
    limit: int = 100,
) -> list[AuditLogEntry]:
    query = session.query(AuditLogEntry)
    if action:
        query = query.filter(AuditLogEntry.action == action)
    if target_type:
        query = query.filter(AuditLogEntry.target_type == target_type)
    if since:
        query = query.filter(AuditLogEntry.created_at >= since)
    limit = max(1, min(int(limit or 100), 500))
    return query.order_by(AuditLogEntry.id.desc()).limit(limit).all()
