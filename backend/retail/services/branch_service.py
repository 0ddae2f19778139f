# Overview: Service-layer operations for branches.

from __future__ import annotations

from sqlalchemy.orm import Session

from ..errors import ConflictError, ValidationError
from ..models import Branch, Staff
from .audit_service import append_audit_entry

DEFAULT_BRANCH_NAME = "Main Branch"


def list_branches(session: Session) -> list[Branch]:
    return session.query(Branch).order_by(Branch.id.asc()).all()


def ensure_default_branch(session: Session) -> Branch:
    """Orders and shifts without a branch fall back to the first one; make sure it exists."""
    branch = session.query(Branch).order_by(Branch.id.asc()).first()
    if branch is None:
        branch = Branch(name=DEFAULT_BRANCH_NAME)
        session.add(branch)
        session.commit()
    return branch


def create_branch(session: Session, *, name: str, address: str | None = None, actor: Staff | None = None) -> Branch:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if len(name) > 120:
        raise ValidationError("name must be at most 120 characters")
    if session.query(Branch).filter(Branch.name == name).first():
        raise ConflictError("Branch already exists")

    branch = Branch(name=name, address=(address or "").strip() or None)
    session.add(branch)
    session.flush()
    append_audit_entry(
        session,
        actor=actor.name if actor else "system",
        actor_staff_id=actor.id if actor else None,
        action="branch.create",
        target_type="branch",
        target_id=branch.id,
        details={"name": name},
    )
    session.commit()
    return branch
