from __future__ import annotations

from ..extensions import db
from retail.time_utils import to_utc_z, utcnow


ROLE_MANAGER = "manager"
ROLE_CASHIER = "cashier"
STAFF_ROLES = (ROLE_MANAGER, ROLE_CASHIER)


class Branch(db.Model):
    """Physical location. Orders and shifts without an explicit branch use the first one."""
    __tablename__ = "branches"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    address = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "created_at": to_utc_z(self.created_at),
        }


class Staff(db.Model):
    """
    Staff account (manager or cashier).

    SECURITY:
    - password_hash is bcrypt; never returned by to_dict()
    - to_directory_dict() includes the hash and is only served to POS
      terminals holding the shared POS credential (offline login cache)
    """
    __tablename__ = "staff"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    username = db.Column(db.String(64), nullable=False, unique=True, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(16), nullable=False, default=ROLE_CASHIER)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Staff id={self.id} username={self.username!r} role={self.role}>"

    @property
    def is_manager(self) -> bool:
        return self.role == ROLE_MANAGER

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "username": self.username,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

    def to_directory_dict(self) -> dict:
        data = self.to_dict()
        data["password_hash"] = self.password_hash
        return data
