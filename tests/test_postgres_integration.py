from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from apitrack.models import (
    EndpointDefinition,
    RecordFilters,
    RequestDescription,
    ResponseDescription,
    StatusClass,
    TelemetryRecord,
    TimeRange,
    Timing,
)
from apitrack.recorder import MetricsRecorder, apply_record
from apitrack.store_postgres import PostgresRepository

pytestmark = pytest.mark.skipif(
    not os.getenv("APITRACK_TEST_POSTGRES_DSN"),
    reason="APITRACK_TEST_POSTGRES_DSN is not set",
)


def test_postgres_repository_end_to_end() -> None:
    dsn = os.environ["APITRACK_TEST_POSTGRES_DSN"]
    repository = PostgresRepository(dsn)

    endpoint_id = f"ep_pg_{uuid4().hex[:8]}"
    endpoint = repository.upsert_endpoint(
        endpoint_id,
        EndpointDefinition(
            name="Inventory",
            product_id="p_pg",
            method="GET",
            base_url="https://inventory.test",
            path="/items",
        ),
    )
    assert endpoint.full_url == "https://inventory.test/items"

    now = datetime.now(UTC).replace(microsecond=0)
    for index, (age, status_code) in enumerate(
        [(timedelta(days=120), 200), (timedelta(minutes=5), 200), (timedelta(minutes=1), 503)]
    ):
        start = now - age
        repository.append_record(
            TelemetryRecord(
                request_id=f"{endpoint_id}-{index}",
                endpoint_id=endpoint_id,
                product_id="p_pg",
                request=RequestDescription(method="GET", url=endpoint.full_url),
                response=ResponseDescription(status_code=status_code, status_text="x"),
                timing=Timing(start_time=start, end_time=start + timedelta(milliseconds=250)),
            ),
            apply_record,
        )

    stored = repository.get_endpoint(endpoint_id)
    assert stored is not None
    assert stored.metrics.total_requests == 3
    assert stored.metrics.failed_requests == 1
    assert stored.metrics.average_response_time == 250

    window = TimeRange(start=now - timedelta(days=365), end=now)
    scope = RecordFilters(endpoint_id=endpoint_id)
    assert len(list(repository.iter_records(window, scope))) == 3

    errors, total = repository.list_records(
        window, scope.model_copy(update={"status": StatusClass.ERROR}), 0, 10
    )
    assert total == 1
    assert errors[0].response.status_code == 503

    repository.purge_older_than(now - timedelta(days=90))
    remaining = list(repository.iter_records(window, scope))
    assert [record.request_id for record in remaining] == [
        f"{endpoint_id}-1",
        f"{endpoint_id}-2",
    ]
    repository.close()


def test_postgres_threads_record_without_sharing_a_session() -> None:
    repository = PostgresRepository(os.environ["APITRACK_TEST_POSTGRES_DSN"])
    suffix = uuid4().hex[:8]
    endpoint_ids = [f"ep_pg_a_{suffix}", f"ep_pg_b_{suffix}"]
    for endpoint_id in endpoint_ids:
        repository.upsert_endpoint(
            endpoint_id,
            EndpointDefinition(
                name=endpoint_id,
                product_id="p_pg",
                method="GET",
                base_url="https://inventory.test",
                path="/ping",
            ),
        )

    start = datetime.now(UTC).replace(microsecond=0) - timedelta(minutes=10)
    per_endpoint = 300
    records = [
        TelemetryRecord(
            request_id=f"{endpoint_id}-{index % 250}",
            endpoint_id=endpoint_id,
            product_id="p_pg",
            request=RequestDescription(method="GET", url="https://inventory.test/ping"),
            response=ResponseDescription(status_code=200, status_text="OK"),
            timing=Timing(start_time=start, end_time=start + timedelta(milliseconds=index)),
        )
        for endpoint_id in endpoint_ids
        for index in range(per_endpoint)
    ]
    recorder = MetricsRecorder(repository)
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(recorder.record_completed, records))

    window = TimeRange(start=start - timedelta(minutes=1), end=start + timedelta(minutes=1))
    for endpoint_id in endpoint_ids:
        stored = repository.get_endpoint(endpoint_id)
        assert stored is not None
        assert stored.metrics.total_requests == per_endpoint
        assert stored.metrics.total_response_time == sum(range(per_endpoint))
        # Repeated request ids are kept; iteration spans several fetch batches.
        streamed = list(repository.iter_records(window, RecordFilters(endpoint_id=endpoint_id)))
        assert len(streamed) == per_endpoint

    both = list(repository.iter_records(window, RecordFilters(product_id="p_pg")))
    assert len([record for record in both if record.endpoint_id in endpoint_ids]) == len(records)
    repository.close()
