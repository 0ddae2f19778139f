# backend/retail/config.py
from __future__ import annotations
import os


class Config:
    # Signs staff session tokens; override in every real deployment
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///retail.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Shared credential for POS terminals (distinct from staff sessions)
    POS_SYNC_TOKEN = os.environ.get("POS_SYNC_TOKEN", "")

    # bcrypt cost factor for staff passwords
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))
    STAFF_TOKEN_TTL_HOURS = int(os.environ.get("STAFF_TOKEN_TTL_HOURS", "12"))
    SELF_CANCEL_WINDOW_MINUTES = int(os.environ.get("SELF_CANCEL_WINDOW_MINUTES", "15"))
    DEFAULT_ORDER_SOURCE = os.environ.get("DEFAULT_ORDER_SOURCE", "pos")
    LOW_STOCK_THRESHOLD = float(os.environ.get("LOW_STOCK_THRESHOLD", "5"))

    # Callable(reference: str, amount_cents: int) -> bool | "succeeded"; None rejects card payments
    PAYMENT_AUTHORIZER = None

    # Storefront / admin dashboard origins allowed to call the API
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip() for o in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
        if o.strip()
    )
