# Overview: Request authentication decorators for API routes.

import hmac
from functools import wraps

from flask import current_app, g, jsonify, request

from .extensions import db
from .errors import UnauthorizedError
from .models import Staff
from .services import auth_service


POS_TOKEN_HEADER = "X-POS-Token"


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip()


def require_staff(*roles: str):
    """
    Require a valid staff session token, optionally restricted to roles.

    Sets:
    - g.staff: the Staff row (re-read every request so deactivation and role
      changes apply immediately)
    - g.token_payload: the verified {id, name, username, role, exp} payload

    SECURITY: Returns 401 for a missing/invalid/expired token or inactive
    account, 403 when the role is not allowed.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            token = _bearer_token()
            if not token:
                return jsonify({"error": "Authentication required"}), 401
            try:
                payload = auth_service.decode_token(token, secret_key=current_app.config["SECRET_KEY"])
            except UnauthorizedError as e:
                return jsonify(e.to_dict()), 401

            staff = db.session.get(Staff, payload.get("id"))
            if staff is None or not staff.is_active:
                return jsonify({"error": "Invalid or expired token"}), 401
            if roles and staff.role not in roles:
                return jsonify({"error": "Forbidden"}), 403

            g.staff = staff
            g.token_payload = payload
            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_pos_token(f):
    """
    Require the shared POS credential (X-POS-Token header).

    An empty POS_SYNC_TOKEN disables POS access entirely rather than
    accepting any value.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("POS_SYNC_TOKEN") or ""
        supplied = request.headers.get(POS_TOKEN_HEADER) or ""
        if not expected or not supplied or not hmac.compare_digest(expected.encode(), supplied.encode()):
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)

    return decorated_function
