from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from apitrack.api import create_app
from apitrack.settings import Settings, load_settings


def test_postgres_backend_requires_dsn() -> None:
    with pytest.raises(ValueError, match="APITRACK_POSTGRES_DSN"):
        create_app(settings=Settings(store_backend="postgres", retention_worker_enabled=False))


def test_unknown_backend_rejected() -> None:
    with pytest.raises(ValueError, match="unsupported APITRACK_STORE_BACKEND"):
        create_app(settings=Settings(store_backend="mongo", retention_worker_enabled=False))


@pytest.mark.anyio
async def test_sqlite_backend_is_selected_from_settings(tmp_path: Path) -> None:
    db_path = tmp_path / "api.db"
    app = create_app(
        settings=Settings(
            store_backend="sqlite",
            sqlite_path=str(db_path),
            retention_worker_enabled=False,
        )
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/metrics")
    assert response.json()["store_backend"] == "sqlite"
    assert db_path.exists()


def test_load_settings_reads_and_clamps_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APITRACK_STORE_BACKEND", "SQLite")
    monkeypatch.setenv("APITRACK_RETENTION_DAYS", "0")
    monkeypatch.setenv("APITRACK_RETENTION_WORKER_ENABLED", "off")
    monkeypatch.setenv("APITRACK_PROBE_MAX_CONCURRENCY", "4")
    settings = load_settings()
    assert settings.store_backend == "sqlite"
    assert settings.retention_days == 1
    assert settings.retention_worker_enabled is False
    assert settings.probe_max_concurrency == 4
    assert settings.probe_timeout_s == 30.0
    assert settings.top_n_default == 10


def test_load_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("APITRACK_STORE_BACKEND", "APITRACK_RETENTION_DAYS"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.store_backend == "inmemory"
    assert settings.retention_days == 90
