# backend/pos_client/__init__.py
import httpx

from .change_log import ChangeLog
from .config import ClientConfig
from .credential_cache import CredentialCache
from .local_mirror import LocalMirror
from .storage import LocalStore
from .sync_engine import SyncEngine, SyncResult, SyncScheduler
from .terminal import PosTerminal, TerminalError
from .transport import SyncTransport, TransientNetworkError


def create_client(config: ClientConfig | None = None, *, http_transport: httpx.BaseTransport | None = None) -> PosTerminal:
    """Wire a terminal: local store, change log, mirror, credential cache and (when configured) sync."""
    config = config or ClientConfig.from_env()

    store = LocalStore(config.db_path)
    change_log = ChangeLog(store)
    mirror = LocalMirror(store)
    credentials = CredentialCache(store, rounds=config.bcrypt_rounds)

    transport = None
    engine = None
    if config.api_base:
        transport = SyncTransport(
            config.api_base,
            config.sync_token,
            timeout=config.http_timeout,
            transport=http_transport,
        )
        engine = SyncEngine(change_log, mirror, transport, credentials=credentials)

    return PosTerminal(config, store, change_log, mirror, credentials, transport, engine)


__all__ = [
    "ChangeLog",
    "ClientConfig",
    "CredentialCache",
    "LocalMirror",
    "LocalStore",
    "PosTerminal",
    "SyncEngine",
    "SyncResult",
    "SyncScheduler",
    "SyncTransport",
    "TerminalError",
    "TransientNetworkError",
    "create_client",
]
