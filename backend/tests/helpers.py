"""Builders shared by the sync, lifecycle and client tests."""

import uuid
from datetime import timedelta

from retail.time_utils import to_utc_z, utcnow

POS_TOKEN = "test-pos-token"
PASSWORD = "Password123!"


def get_auth_token(client, username: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a staff member."""
    response = client.post('/api/staff/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def iso_in(**delta) -> str:
    """Server-format timestamp offset from now."""
    return to_utc_z(utcnow() + timedelta(**delta))


def sale_change(items, *, external_id=None, payment_method="cash", phone=None, change_id=None):
    """items: [(product_id, qty)] or [(product_id, qty, price_at_cents)]"""
    lines = []
    for item in items:
        line = {"product_id": item[0], "qty": item[1]}
        if len(item) > 2:
            line["price_at_cents"] = item[2]
        lines.append(line)
    payload = {
        "external_id": external_id or str(uuid.uuid4()),
        "items": lines,
        "payment": {"method": payment_method},
        "staff": {"name": "Casey Cashier", "role": "cashier"},
    }
    if phone:
        payload["customer"] = {"name": "Pat", "phone": phone}
    return {"change_id": change_id or str(uuid.uuid4()), "type": "order:create", "payload": payload}


def change(change_type, payload, change_id=None):
    return {"change_id": change_id or str(uuid.uuid4()), "type": change_type, "payload": payload}


def fetch(session, model, ident):
    """Re-read a row, dropping anything cached before a request wrote it."""
    session.expire_all()
    return session.get(model, ident)
