from __future__ import annotations

import threading

from telemetry.config import load_settings, telemetry_path
from telemetry.store import TelemetryStore

_STORE: TelemetryStore | None = None
_STORE_LOCK = threading.RLock()


def get_store() -> TelemetryStore | None:
    global _STORE
    settings = load_settings()
    if not settings.enabled:
        return None
    with _STORE_LOCK:
        if _STORE is not None:
            # The path can change across tests (env); reopen on the new one.
            if _STORE.path.resolve() == settings.path.resolve():
                return _STORE
            _STORE.stop(timeout_s=2.0)
            _STORE.conn.close()
            _STORE = None

        _STORE = TelemetryStore.open(settings)
        _STORE.start()
        return _STORE


def reset_store() -> None:
    global _STORE
    with _STORE_LOCK:
        if _STORE is not None:
            _STORE.reset()
            _STORE = None
        else:
            telemetry_path().unlink(missing_ok=True)
