"""Runtime settings for apitrack."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class Settings:
    store_backend: str = "inmemory"
    sqlite_path: str = "apitrack.db"
    postgres_dsn: str | None = None
    retention_days: int = 90
    retention_interval_s: float = 3600.0
    retention_worker_enabled: bool = True
    probe_timeout_s: float = 30.0
    probe_max_concurrency: int = 16
    top_n_default: int = 10


def load_settings() -> Settings:
    return Settings(
        store_backend=os.getenv("APITRACK_STORE_BACKEND", "inmemory").lower(),
        sqlite_path=os.getenv("APITRACK_SQLITE_PATH", "apitrack.db"),
        postgres_dsn=os.getenv("APITRACK_POSTGRES_DSN"),
        retention_days=max(1, int(os.getenv("APITRACK_RETENTION_DAYS", "90"))),
        retention_interval_s=max(
            1.0, float(os.getenv("APITRACK_RETENTION_INTERVAL_SECONDS", "3600"))
        ),
        retention_worker_enabled=_env_bool("APITRACK_RETENTION_WORKER_ENABLED", True),
        probe_timeout_s=max(0.1, float(os.getenv("APITRACK_PROBE_TIMEOUT_SECONDS", "30"))),
        probe_max_concurrency=max(1, int(os.getenv("APITRACK_PROBE_MAX_CONCURRENCY", "16"))),
        top_n_default=max(1, int(os.getenv("APITRACK_TOP_N_DEFAULT", "10"))),
    )
