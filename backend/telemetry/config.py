from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_FALSY = {"0", "false", "no", "off"}


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class TelemetrySettings:
    enabled: bool
    path: Path
    # Bounded so a slow disk never grows memory; overflow is dropped.
    max_queued: int = 10_000
    batch_size: int = 250
    flush_interval_s: float = 0.5


def telemetry_path() -> Path:
    data_dir = os.getenv("PACKSTORE_DATA_DIR")
    base = Path(data_dir) if data_dir else _repo_root() / "data"
    return Path(os.getenv("PACKSTORE_TELEMETRY_PATH") or (base / "telemetry" / "query_events.duckdb"))


def telemetry_enabled() -> bool:
    return (os.getenv("PACKSTORE_TELEMETRY") or "1").strip().lower() not in _FALSY


def load_settings() -> TelemetrySettings:
    return TelemetrySettings(
        enabled=telemetry_enabled(),
        path=telemetry_path(),
        max_queued=_int_env("PACKSTORE_TELEMETRY_QUEUE", 10_000),
        batch_size=_int_env("PACKSTORE_TELEMETRY_BATCH", 250),
    )
