# Overview: Flask API routes for POS terminals; sync batches and the offline staff directory.

"""
POS Routes

SECURITY:
- Authenticated with the shared POS credential (X-POS-Token), not a staff
  session. A terminal must be able to sync while no cashier is signed in.
- The staff directory carries bcrypt hashes for offline sign-in and is only
  served to holders of the POS credential.
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_pos_token
from ..extensions import db
from ..services import auth_service, sync_service
from retail.time_utils import to_utc_z, utcnow


sync_bp = Blueprint("sync", __name__, url_prefix="/api/pos")


@sync_bp.post("/sync")
@require_pos_token
def sync_route():
    body = request.get_json(silent=True)
    if body is None:
        body = {}
    result = sync_service.sync(
        db.session,
        body,
        default_source=current_app.config["DEFAULT_ORDER_SOURCE"],
    )
    return jsonify(result)


@sync_bp.get("/staff-directory")
@require_pos_token
def staff_directory_route():
    staff = [s.to_directory_dict() for s in auth_service.list_staff(db.session)]
    return jsonify({"staff": staff, "server_time": to_utc_z(utcnow())})
