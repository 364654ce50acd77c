from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from apitrack.errors import InputError
from apitrack.models import (
    EndpointDefinition,
    RecordFilters,
    RequestDescription,
    ResponseDescription,
    TelemetryRecord,
    TimeRange,
    Timing,
)
from apitrack.retention import RetentionWorker
from apitrack.service import TelemetryService
from apitrack.store import InMemoryRepository, SQLiteRepository

_NOW = datetime(2026, 9, 1, 0, 0, tzinfo=UTC)


def _record(request_id: str, age: timedelta) -> TelemetryRecord:
    start = _NOW - age
    return TelemetryRecord(
        request_id=request_id,
        endpoint_id="ep_status",
        product_id="p_ops",
        request=RequestDescription(method="GET", url="https://ops.test/status"),
        response=ResponseDescription(status_code=200, status_text="OK"),
        timing=Timing(start_time=start, end_time=start + timedelta(milliseconds=5)),
    )


def _service(repository) -> TelemetryService:
    repository.upsert_endpoint(
        "ep_status",
        EndpointDefinition(
            name="Status",
            product_id="p_ops",
            method="GET",
            base_url="https://ops.test",
            path="/status",
        ),
    )
    return TelemetryService(repository, retention_days=90)


def _ids(repository) -> list[str]:
    window = TimeRange(start=_NOW - timedelta(days=400), end=_NOW)
    return [record.request_id for record in repository.iter_records(window, RecordFilters())]


def test_retention_pass_hard_deletes_expired_records(tmp_path: Path) -> None:
    repository = SQLiteRepository(str(tmp_path / "apitrack.db"))
    service = _service(repository)
    service.record_completed(_record("r_expired", timedelta(days=90, seconds=1)))
    service.record_completed(_record("r_recent", timedelta(days=89, hours=23)))

    assert _ids(repository) == ["r_expired", "r_recent"]

    result = service.purge_expired(now=_NOW)
    assert result.purged_count == 1
    assert result.retention_days == 90
    assert result.cutoff == _NOW - timedelta(days=90)
    assert _ids(repository) == ["r_recent"]

    snapshot = service.metrics.snapshot()
    assert snapshot["retention"]["runs"] == 1
    assert snapshot["retention"]["purged_total"] == 1
    repository.close()


def test_retention_days_must_be_positive() -> None:
    with pytest.raises(InputError):
        TelemetryService(InMemoryRepository(), retention_days=0)


def test_retention_worker_run_once_tracks_last_result() -> None:
    repository = InMemoryRepository()
    service = _service(repository)
    service.record_completed(_record("r_ancient", timedelta(days=3650)))

    worker = RetentionWorker(service, interval_s=60.0, start_worker=False)
    result = worker.run_once()
    assert result.purged_count == 1
    assert worker.last_result == result
    worker.close()


def test_retention_worker_runs_in_background() -> None:
    repository = InMemoryRepository()
    service = _service(repository)
    service.record_completed(_record("r_ancient", timedelta(days=3650)))

    worker = RetentionWorker(service, interval_s=0.05, start_worker=True)
    try:
        deadline = time.monotonic() + 5.0
        while worker.last_result is None and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        worker.close()

    assert worker.last_result is not None
    assert _ids(repository) == []
