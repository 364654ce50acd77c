from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from apitrack.models import (
    EndpointDefinition,
    RecordFilters,
    RequestDescription,
    ResponseDescription,
    TelemetryRecord,
    TimeRange,
    Timing,
)
from apitrack.recorder import MetricsRecorder
from apitrack.store import InMemoryRepository, SQLiteRepository

_START = datetime(2026, 2, 10, 9, 0, tzinfo=UTC)


def _record(index: int, endpoint_id: str) -> TelemetryRecord:
    return TelemetryRecord(
        request_id=f"{endpoint_id}-{index}",
        endpoint_id=endpoint_id,
        product_id="p_load",
        request=RequestDescription(method="GET", url="https://load.test/ping"),
        response=ResponseDescription(
            status_code=500 if index % 5 == 0 else 200, status_text="x"
        ),
        timing=Timing(start_time=_START, end_time=_START + timedelta(milliseconds=index)),
    )


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_concurrent_recordings_lose_no_increments(tmp_path: Path, backend: str) -> None:
    repository = (
        InMemoryRepository()
        if backend == "inmemory"
        else SQLiteRepository(str(tmp_path / "apitrack.db"))
    )
    endpoints = ["ep_a", "ep_b"]
    for endpoint_id in endpoints:
        repository.upsert_endpoint(
            endpoint_id,
            EndpointDefinition(
                name=endpoint_id,
                product_id="p_load",
                method="GET",
                base_url="https://load.test",
                path="/ping",
            ),
        )
    recorder = MetricsRecorder(repository)
    per_endpoint = 200
    records = [_record(i, endpoint_id) for endpoint_id in endpoints for i in range(per_endpoint)]

    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(recorder.record_completed, records))

    for endpoint_id in endpoints:
        endpoint = repository.get_endpoint(endpoint_id)
        assert endpoint is not None
        metrics = endpoint.metrics
        assert metrics.total_requests == per_endpoint
        assert metrics.failed_requests == per_endpoint // 5
        assert metrics.successful_requests == per_endpoint - per_endpoint // 5
        assert metrics.total_response_time == sum(range(per_endpoint))
        # mean of 0..199 is 99.5, rounded half up
        assert metrics.average_response_time == 100

    window = TimeRange(start=_START, end=_START + timedelta(hours=1))
    assert len(list(repository.iter_records(window, RecordFilters()))) == len(records)
    repository.close()


def test_sqlite_instances_sharing_a_file_serialize_counter_updates(tmp_path: Path) -> None:
    db_path = str(tmp_path / "apitrack.db")
    first = SQLiteRepository(db_path)
    second = SQLiteRepository(db_path)
    first.upsert_endpoint(
        "ep_shared",
        EndpointDefinition(
            name="shared",
            product_id="p_load",
            method="GET",
            base_url="https://load.test",
            path="/ping",
        ),
    )
    per_instance = 200

    def record_all(repository: SQLiteRepository, offset: int) -> None:
        recorder = MetricsRecorder(repository)
        for index in range(per_instance):
            recorder.record_completed(_record(offset + index, "ep_shared"))

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(record_all, first, 0), pool.submit(record_all, second, 1000)]
        for future in futures:
            future.result()

    endpoint = first.get_endpoint("ep_shared")
    assert endpoint is not None
    assert endpoint.metrics.total_requests == 2 * per_instance
    window = TimeRange(start=_START, end=_START + timedelta(hours=1))
    stored = list(second.iter_records(window, RecordFilters(endpoint_id="ep_shared")))
    assert len(stored) == 2 * per_instance
    assert endpoint.metrics.total_response_time == sum(
        record.timing.duration for record in stored
    )
    first.close()
    second.close()


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_repeated_request_id_is_counted_and_stored_each_time(
    tmp_path: Path, backend: str
) -> None:
    repository = (
        InMemoryRepository()
        if backend == "inmemory"
        else SQLiteRepository(str(tmp_path / "apitrack.db"))
    )
    repository.upsert_endpoint(
        "ep_a",
        EndpointDefinition(
            name="ep_a",
            product_id="p_load",
            method="GET",
            base_url="https://load.test",
            path="/ping",
        ),
    )
    recorder = MetricsRecorder(repository)
    recorder.record_completed(_record(7, "ep_a"))
    metrics = recorder.record_completed(_record(7, "ep_a"))

    assert metrics.total_requests == 2
    window = TimeRange(start=_START, end=_START + timedelta(hours=1))
    stored = list(repository.iter_records(window, RecordFilters()))
    assert [record.request_id for record in stored] == ["ep_a-7", "ep_a-7"]
    repository.close()
