# backend/pos_client/config.py
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class ClientConfig:
    # Server root; the sync endpoint lives under /api/pos
    api_base: str = "http://127.0.0.1:5000"
    # Shared terminal credential (X-POS-Token), distinct from staff sessions
    sync_token: str = ""
    db_path: str = "pos_client.sqlite3"
    sync_interval: float = 30.0
    http_timeout: float = 10.0
    branch_id: int | None = None
    branch_name: str | None = None
    bcrypt_rounds: int = 12

    @classmethod
    def from_env(cls) -> "ClientConfig":
        branch_id = os.environ.get("POS_BRANCH_ID")
        return cls(
            api_base=os.environ.get("POS_API_BASE", cls.api_base),
            sync_token=os.environ.get("POS_SYNC_TOKEN", ""),
            db_path=os.environ.get("POS_DB_PATH", cls.db_path),
            sync_interval=float(os.environ.get("POS_SYNC_INTERVAL", "30")),
            http_timeout=float(os.environ.get("POS_HTTP_TIMEOUT", "10")),
            branch_id=int(branch_id) if branch_id else None,
            branch_name=os.environ.get("POS_BRANCH_NAME") or None,
            bcrypt_rounds=int(os.environ.get("POS_BCRYPT_ROUNDS", "12")),
        )
