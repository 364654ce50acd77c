"""Calendar-aligned time-bucket aggregation over telemetry records.

All bucket boundaries are computed in UTC. Week buckets start on the Monday
of the record's ISO 8601 week.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from apitrack.models import (
    BucketSummary,
    Granularity,
    MethodBreakdown,
    Overview,
    StatusBreakdown,
    TelemetryRecord,
    as_utc,
)
from apitrack.recorder import is_failure, is_success, mean_ms, percent


def bucket_start(timestamp: datetime, granularity: Granularity) -> datetime:
    moment = as_utc(timestamp)
    if granularity is Granularity.HOUR:
        return moment.replace(minute=0, second=0, microsecond=0)
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity is Granularity.DAY:
        return midnight
    if granularity is Granularity.WEEK:
        return midnight - timedelta(days=moment.isoweekday() - 1)
    return midnight.replace(day=1)


@dataclass(slots=True)
class BucketAccumulator:
    total: int = 0
    successful: int = 0
    failed: int = 0
    duration_total: int = 0
    duration_min: int | None = None
    duration_max: int = 0
    bytes_total: int = 0
    users: set[str] = field(default_factory=set)
    endpoints: set[str] = field(default_factory=set)

    def add(self, record: TelemetryRecord) -> None:
        status_code = record.response.status_code
        duration = record.timing.duration
        self.total += 1
        if is_success(status_code):
            self.successful += 1
        elif is_failure(status_code):
            self.failed += 1
        self.duration_total += duration
        if self.duration_min is None or duration < self.duration_min:
            self.duration_min = duration
        self.duration_max = max(self.duration_max, duration)
        self.bytes_total += record.response.size
        if record.user_id:
            self.users.add(record.user_id)
        self.endpoints.add(record.endpoint_id)

    def to_summary(self, timestamp: datetime) -> BucketSummary:
        return BucketSummary(
            timestamp=timestamp,
            total_requests=self.total,
            successful_requests=self.successful,
            failed_requests=self.failed,
            success_rate=percent(self.successful, self.total),
            avg_response_time=mean_ms(self.duration_total, self.total),
            min_response_time=self.duration_min or 0,
            max_response_time=self.duration_max,
            total_bytes_transferred=self.bytes_total,
            distinct_user_count=len(self.users),
            distinct_endpoint_count=len(self.endpoints),
        )


def aggregate_buckets(
    records: Iterable[TelemetryRecord], granularity: Granularity
) -> list[BucketSummary]:
    buckets: dict[datetime, BucketAccumulator] = {}
    for record in records:
        key = bucket_start(record.timing.start_time, granularity)
        accumulator = buckets.get(key)
        if accumulator is None:
            accumulator = buckets[key] = BucketAccumulator()
        accumulator.add(record)
    return [buckets[key].to_summary(key) for key in sorted(buckets)]


def summarize_overview(records: Iterable[TelemetryRecord]) -> Overview:
    totals = BucketAccumulator()
    by_method: dict[str, list[int]] = {}
    by_status: dict[int, int] = {}
    for record in records:
        totals.add(record)
        method_stats = by_method.setdefault(record.request.method.value, [0, 0])
        method_stats[0] += 1
        method_stats[1] += record.timing.duration
        by_status[record.response.status_code] = by_status.get(record.response.status_code, 0) + 1

    methods = sorted(by_method.items(), key=lambda item: (-item[1][0], item[0]))
    return Overview(
        total_requests=totals.total,
        successful_requests=totals.successful,
        failed_requests=totals.failed,
        success_rate=percent(totals.successful, totals.total),
        avg_response_time=mean_ms(totals.duration_total, totals.total),
        min_response_time=totals.duration_min or 0,
        max_response_time=totals.duration_max,
        total_bytes_transferred=totals.bytes_total,
        requests_by_method=[
            MethodBreakdown(method=method, count=count, avg_response_time=mean_ms(total, count))
            for method, (count, total) in methods
        ],
        requests_by_status=[
            StatusBreakdown(status_code=code, count=count)
            for code, count in sorted(by_status.items())
        ],
    )
