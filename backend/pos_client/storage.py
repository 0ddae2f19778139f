# Overview: Terminal-local SQLite store backing the change log, mirror and credential cache.

"""
Local Store

One SQLite file per terminal. Every public operation of the change log,
mirror and credential cache runs in its own short session and commits before
returning, so a crash right after an action never loses it.

Callers that must apply several writes atomically (a POS action = change
append + optimistic mirror update) open `store.transaction()` and pass the
session down; the helpers then join it instead of committing on their own.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    JSON,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class PendingChange(Base):
    """
    One queued mutation. `seq` preserves append order; the server applies a
    batch strictly in that order.

    status:
      pending  will be sent on the next sync
      failed   rejected by the server; held for an operator (retry/discard)
    """
    __tablename__ = "pending_changes"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    change_id = Column(String(64), nullable=False, unique=True)
    type = Column(String(32), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    failed_at = Column(DateTime, nullable=True)

    def to_wire(self) -> dict:
        return {"change_id": self.change_id, "type": self.type, "payload": self.payload}

    def to_dict(self) -> dict:
        data = self.to_wire()
        data.update({
            "seq": self.seq,
            "status": self.status,
            "error": self.error,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        })
        return data


class MirrorProduct(Base):
    __tablename__ = "mirror_products"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False, default=0)
    cost_cents = Column(Integer, nullable=False, default=0)
    stock = Column(Float, nullable=False, default=0)
    barcode = Column(String(64), nullable=True, index=True)
    # Logical clock, kept as the server's ISO string
    updated_at = Column(String(40), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "stock": self.stock,
            "barcode": self.barcode,
            "updated_at": self.updated_at,
        }


class MirrorOrder(Base):
    """
    Orders as the terminal knows them. A sale made offline has an external_id
    but no server_id until a snapshot carrying it is merged.
    """
    __tablename__ = "mirror_orders"

    local_id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(Integer, nullable=True, unique=True)
    external_id = Column(String(64), nullable=True, unique=True)
    source = Column(String(32), nullable=True)
    status = Column(String(16), nullable=False)
    data = Column(JSON, nullable=False)

    def to_dict(self) -> dict:
        data = dict(self.data or {})
        data["id"] = self.server_id
        data["external_id"] = self.external_id
        data["source"] = self.source
        data["status"] = self.status
        return data


class MirrorMeta(Base):
    """Key/value state: sync cursor, device id, latest reports."""
    __tablename__ = "mirror_meta"

    key = Column(String(64), primary_key=True)
    value = Column(JSON, nullable=True)


class CachedStaff(Base):
    __tablename__ = "cached_staff"

    username = Column(String(64), primary_key=True)
    staff_id = Column(Integer, nullable=True)
    name = Column(String(120), nullable=False)
    role = Column(String(16), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    password_hash = Column(String(255), nullable=False)
    refreshed_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.staff_id,
            "name": self.name,
            "username": self.username,
            "role": self.role,
            "is_active": self.is_active,
        }


class LocalStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            # The scheduler thread and the UI thread share the file
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=FULL")
            cursor.close()

        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Commit on success, roll back on any error."""
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def scope(self, session: Session | None = None) -> Iterator[Session]:
        """Join the caller's transaction when given one, otherwise run a fresh one."""
        if session is not None:
            yield session
            return
        with self.transaction() as own:
            yield own

    def dispose(self) -> None:
        self.engine.dispose()
