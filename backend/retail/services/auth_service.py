# Overview: Service-layer operations for staff auth; passwords, signed session tokens and staff management.

"""
Staff Authentication

WHY: Every privileged action must be attributable to a staff member. Uses
bcrypt for password hashing and signed, expiring tokens for sessions.

TOKENS:
- Payload {id, name, username, role, exp}; exp is absolute epoch-millis
- Signed with the app SECRET_KEY (itsdangerous); tampering fails verification
- Expiry is checked on every privileged call (decode_token)
- Tokens are stateless: deactivating a staff member takes effect because
  require_staff re-reads the row on each request

BOOTSTRAP: while no staff exist, the first account can be created without
auth and is always a manager. Login in that state reports "no_staff".

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, default 12)
- Minimum 8 characters, with upper, lower, digit and special character
"""

import re
from datetime import datetime, timedelta

import bcrypt
from itsdangerous import BadSignature, URLSafeSerializer
from sqlalchemy.orm import Session

from ..errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from ..models import Staff
from ..models.organization import ROLE_CASHIER, ROLE_MANAGER, STAFF_ROLES
from .audit_service import append_audit_entry
from retail.time_utils import to_epoch_millis, utcnow

TOKEN_SALT = "staff-session"


class NoStaffConfiguredError(ConflictError):
    """Login attempted before any staff account exists."""

    def __init__(self):
        super().__init__("No staff configured", details={"code": "no_staff"})


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character (!@#$%^&*(),.'":{}|<>)
    """
    if not isinstance(password, str) or len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise ValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise ValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise ValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise ValidationError("Password must contain at least one special character")


def hash_password(password: str, *, rounds: int = 12) -> str:
    """Hash password using bcrypt. Password is validated for strength before hashing."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """Returns True if password matches hash, False otherwise (including malformed hashes)."""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


# =============================================================================
# TOKENS
# =============================================================================

def _serializer(secret_key: str) -> URLSafeSerializer:
    return URLSafeSerializer(secret_key, salt=TOKEN_SALT)


def issue_token(staff: Staff, *, secret_key: str, ttl_hours: int, now: datetime | None = None) -> str:
    now = now or utcnow()
    payload = {
        "id": staff.id,
        "name": staff.name,
        "username": staff.username,
        "role": staff.role,
        "exp": to_epoch_millis(now + timedelta(hours=ttl_hours)),
    }
    return _serializer(secret_key).dumps(payload)


def decode_token(token: str, *, secret_key: str, now: datetime | None = None) -> dict:
    """Verify signature and expiry. Raises UnauthorizedError."""
    if not token:
        raise UnauthorizedError("Authentication required")
    try:
        payload = _serializer(secret_key).loads(token)
    except BadSignature:
        raise UnauthorizedError("Invalid or expired token")
    if not isinstance(payload, dict) or not isinstance(payload.get("exp"), int):
        raise UnauthorizedError("Invalid or expired token")
    if payload["exp"] <= to_epoch_millis(now or utcnow()):
        raise UnauthorizedError("Invalid or expired token")
    return payload


# =============================================================================
# LOGIN / STAFF MANAGEMENT
# =============================================================================

def staff_count(session: Session) -> int:
    return session.query(Staff).count()


def login(
    session: Session,
    username: str,
    password: str,
    *,
    secret_key: str,
    ttl_hours: int,
) -> tuple[str, Staff]:
    if not username or not password:
        raise ValidationError("Missing credentials")
    if staff_count(session) == 0:
        raise NoStaffConfiguredError()

    staff = session.query(Staff).filter_by(username=username.strip().lower()).first()
    if staff is None or not staff.is_active or not verify_password(password, staff.password_hash):
        raise UnauthorizedError("Unauthorized")

    token = issue_token(staff, secret_key=secret_key, ttl_hours=ttl_hours)
    append_audit_entry(
        session,
        actor=staff.name,
        actor_staff_id=staff.id,
        action="staff.login",
        target_type="staff",
        target_id=staff.id,
    )
    session.commit()
    return token, staff


def _validate_staff_fields(name: str, username: str, role: str) -> tuple[str, str, str]:
    name = (name or "").strip()
    username = (username or "").strip().lower()
    if not name or not username:
        raise ValidationError("name and username are required")
    if len(username) > 64 or not re.fullmatch(r"[a-z0-9._-]+", username):
        raise ValidationError("username may only contain letters, digits, '.', '_' and '-'")
    if role not in STAFF_ROLES:
        raise ValidationError(f"role must be one of {', '.join(STAFF_ROLES)}")
    return name, username, role


def create_staff(
    session: Session,
    *,
    name: str,
    username: str,
    password: str,
    role: str = ROLE_CASHIER,
    actor: Staff | None = None,
    rounds: int = 12,
) -> Staff:
    """
    Create a staff account. Without an actor this is the bootstrap path and is
    only allowed while no staff exist; the account is forced to manager.
    """
    if actor is None:
        if staff_count(session) > 0:
            raise ForbiddenError("Staff already configured; sign in as a manager")
        role = ROLE_MANAGER
    elif actor.role != ROLE_MANAGER:
        raise ForbiddenError("Only managers can create staff")

    name, username, role = _validate_staff_fields(name, username, role)
    if session.query(Staff).filter_by(username=username).first():
        raise ConflictError("Username already exists")

    staff = Staff(name=name, username=username, role=role, password_hash=hash_password(password, rounds=rounds))
    session.add(staff)
    session.flush()

    append_audit_entry(
        session,
        actor=actor.name if actor else name,
        actor_staff_id=actor.id if actor else staff.id,
        action="staff.bootstrap" if actor is None else "staff.create",
        target_type="staff",
        target_id=staff.id,
        details={"username": username, "role": role},
    )
    session.commit()
    return staff


def update_staff(
    session: Session,
    staff_id: int,
    *,
    actor: Staff,
    role: str | None = None,
    is_active: bool | None = None,
) -> Staff:
    staff = session.get(Staff, staff_id)
    if staff is None:
        raise NotFoundError("Staff not found", details={"staff_id": staff_id})
    if role is not None and role not in STAFF_ROLES:
        raise ValidationError(f"role must be one of {', '.join(STAFF_ROLES)}")

    demoting_self = staff.id == actor.id and (role == ROLE_CASHIER or is_active is False)
    if demoting_self:
        others = (
            session.query(Staff)
            .filter(Staff.role == ROLE_MANAGER, Staff.is_active.is_(True), Staff.id != staff.id)
            .count()
        )
        if others == 0:
            raise ConflictError("At least one active manager is required")

    changes = {}
    if role is not None and role != staff.role:
        changes["role"] = {"from": staff.role, "to": role}
        staff.role = role
    if is_active is not None and bool(is_active) != staff.is_active:
        changes["is_active"] = {"from": staff.is_active, "to": bool(is_active)}
        staff.is_active = bool(is_active)
    if not changes:
        return staff

    session.flush()
    append_audit_entry(
        session,
        actor=actor.name,
        actor_staff_id=actor.id,
        action="staff.update",
        target_type="staff",
        target_id=staff.id,
        details=changes,
    )
    session.commit()
    return staff


def list_staff(session: Session) -> list[Staff]:
    return session.query(Staff).order_by(Staff.name.asc(), Staff.id.asc()).all()
