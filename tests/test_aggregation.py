from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

from apitrack.aggregation import aggregate_buckets, bucket_start, summarize_overview
from apitrack.models import (
    Granularity,
    RequestDescription,
    ResponseDescription,
    TelemetryRecord,
    Timing,
)


def _record(
    request_id: str,
    start: datetime,
    duration: int = 100,
    status_code: int = 200,
    method: str = "GET",
    endpoint_id: str = "ep_a",
    user_id: str | None = None,
    size: int = 0,
) -> TelemetryRecord:
    return TelemetryRecord(
        request_id=request_id,
        endpoint_id=endpoint_id,
        product_id="p_demo",
        request=RequestDescription(method=method, url="https://demo.test/a"),
        response=ResponseDescription(status_code=status_code, status_text="x", size=size),
        timing=Timing(start_time=start, end_time=start + timedelta(milliseconds=duration)),
        user_id=user_id,
    )


def test_bucket_start_aligns_to_calendar_units() -> None:
    moment = datetime(2026, 7, 16, 13, 47, 12, 5000, tzinfo=UTC)  # Thursday
    assert bucket_start(moment, Granularity.HOUR) == datetime(2026, 7, 16, 13, tzinfo=UTC)
    assert bucket_start(moment, Granularity.DAY) == datetime(2026, 7, 16, tzinfo=UTC)
    assert bucket_start(moment, Granularity.WEEK) == datetime(2026, 7, 13, tzinfo=UTC)
    assert bucket_start(moment, Granularity.MONTH) == datetime(2026, 7, 1, tzinfo=UTC)


def test_week_bucket_of_a_sunday_is_the_previous_monday() -> None:
    sunday = datetime(2026, 1, 4, 23, 59, tzinfo=UTC)
    assert bucket_start(sunday, Granularity.WEEK) == datetime(2025, 12, 29, tzinfo=UTC)


def test_bucket_start_converts_other_offsets_to_utc() -> None:
    local = datetime(2026, 3, 1, 1, 30, tzinfo=timezone(timedelta(hours=2)))
    assert bucket_start(local, Granularity.DAY) == datetime(2026, 2, 28, tzinfo=UTC)


def test_aggregate_buckets_groups_and_sorts_ascending() -> None:
    records = [
        _record("r3", datetime(2026, 5, 2, 10, 5, tzinfo=UTC), duration=300, status_code=500),
        _record("r1", datetime(2026, 5, 1, 9, 0, tzinfo=UTC), duration=100, user_id="u1"),
        _record("r2", datetime(2026, 5, 1, 23, 59, tzinfo=UTC), duration=200, user_id="u1"),
    ]
    buckets = aggregate_buckets(records, Granularity.DAY)

    assert [bucket.timestamp for bucket in buckets] == [
        datetime(2026, 5, 1, tzinfo=UTC),
        datetime(2026, 5, 2, tzinfo=UTC),
    ]
    first, second = buckets
    assert first.total_requests == 2
    assert first.successful_requests == 2
    assert first.avg_response_time == 150
    assert first.min_response_time == 100
    assert first.max_response_time == 200
    assert first.distinct_user_count == 1
    assert second.failed_requests == 1
    assert second.success_rate == 0
    assert sum(bucket.total_requests for bucket in buckets) == len(records)


def test_month_buckets_split_on_calendar_boundary() -> None:
    records = [
        _record("r1", datetime(2026, 1, 31, 23, 59, 59, tzinfo=UTC)),
        _record("r2", datetime(2026, 2, 1, 0, 0, tzinfo=UTC)),
    ]
    buckets = aggregate_buckets(records, Granularity.MONTH)
    assert [bucket.timestamp.month for bucket in buckets] == [1, 2]
    assert all(bucket.total_requests == 1 for bucket in buckets)


def test_empty_input_yields_no_buckets_and_full_success_overview() -> None:
    assert aggregate_buckets([], Granularity.HOUR) == []
    overview = summarize_overview([])
    assert overview.total_requests == 0
    assert overview.success_rate == 100
    assert overview.avg_response_time == 0
    assert overview.requests_by_method == []


def test_zero_duration_is_reported_as_minimum() -> None:
    start = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)
    buckets = aggregate_buckets(
        [_record("r1", start, duration=0), _record("r2", start, duration=50)],
        Granularity.HOUR,
    )
    assert buckets[0].min_response_time == 0
    assert buckets[0].max_response_time == 50


def test_summarize_overview_breaks_down_methods_and_statuses() -> None:
    start = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)
    records = [
        _record("r1", start, duration=100, method="POST", size=10),
        _record("r2", start, duration=300, method="GET", status_code=404, size=5),
        _record("r3", start, duration=200, method="GET", size=5),
        _record("r4", start, duration=50, method="DELETE", status_code=0),
    ]
    overview = summarize_overview(records)

    assert overview.total_requests == 4
    assert overview.failed_requests == 2
    assert overview.success_rate == 50
    assert overview.total_bytes_transferred == 20
    assert [item.method for item in overview.requests_by_method] == ["GET", "DELETE", "POST"]
    assert overview.requests_by_method[0].avg_response_time == 250
    assert [item.status_code for item in overview.requests_by_status] == [0, 200, 404]
