"""Latency percentiles, fixed-boundary histograms, and top-N rankings.

Percentiles use the nearest-rank method: for ``n`` sorted values the ``p``-th
percentile is the value at rank ``ceil(p / 100 * n)``. Every reported
percentile is therefore an observed duration, and ``p50 <= p90 <= p95 <= p99
<= max`` holds by construction.
"""

from __future__ import annotations

import math
from bisect import bisect_right
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from fractions import Fraction
from typing import TypeVar

from apitrack.models import (
    DistributionResponse,
    HistogramBin,
    LatencySummary,
    RankBy,
    RankedEntity,
    RankTarget,
    TelemetryRecord,
)
from apitrack.recorder import is_success, mean_ms, percent

HISTOGRAM_BOUNDARIES: tuple[int, ...] = (0, 100, 500, 1000, 2000, 5000, 10000, 30000)
SLOW_THRESHOLD_MS = 1000
VERY_SLOW_THRESHOLD_MS = 5000

_T = TypeVar("_T", int, float)


def percentile_sorted(sorted_values: Sequence[_T], pct: float) -> _T | int:
    if not sorted_values:
        return 0
    bounded = min(100.0, max(0.0, pct))
    index = max(0, math.ceil((bounded / 100.0) * len(sorted_values)) - 1)
    return sorted_values[index]


def histogram_labels() -> list[tuple[str, int, int | None]]:
    bins: list[tuple[str, int, int | None]] = []
    for lower, upper in zip(HISTOGRAM_BOUNDARIES, HISTOGRAM_BOUNDARIES[1:]):
        bins.append((f"{lower}-{upper}", lower, upper))
    overflow = HISTOGRAM_BOUNDARIES[-1]
    bins.append((f"{overflow}+", overflow, None))
    return bins


def histogram_index(duration: int) -> int:
    # Bins are [lower, upper); anything at or past the last boundary overflows.
    index = bisect_right(HISTOGRAM_BOUNDARIES, duration) - 1
    return min(max(0, index), len(HISTOGRAM_BOUNDARIES) - 1)


@dataclass(slots=True)
class LatencyAccumulator:
    durations: list[int] = field(default_factory=list)
    total: int = 0
    slow: int = 0
    very_slow: int = 0
    bins: list[int] = field(default_factory=lambda: [0] * len(HISTOGRAM_BOUNDARIES))

    def add(self, duration: int) -> None:
        self.durations.append(duration)
        self.total += duration
        if duration > SLOW_THRESHOLD_MS:
            self.slow += 1
        if duration > VERY_SLOW_THRESHOLD_MS:
            self.very_slow += 1
        self.bins[histogram_index(duration)] += 1

    def summary(self) -> LatencySummary:
        ordered = sorted(self.durations)
        count = len(ordered)
        return LatencySummary(
            total_requests=count,
            avg_response_time=mean_ms(self.total, count),
            min_response_time=ordered[0] if ordered else 0,
            max_response_time=ordered[-1] if ordered else 0,
            p50=percentile_sorted(ordered, 50.0),
            p90=percentile_sorted(ordered, 90.0),
            p95=percentile_sorted(ordered, 95.0),
            p99=percentile_sorted(ordered, 99.0),
            slow_requests=self.slow,
            very_slow_requests=self.very_slow,
            slow_request_percentage=percent(self.slow, count, empty=0),
            very_slow_request_percentage=percent(self.very_slow, count, empty=0),
        )

    def histogram(self) -> list[HistogramBin]:
        return [
            HistogramBin(label=label, lower=lower, upper=upper, count=self.bins[index])
            for index, (label, lower, upper) in enumerate(histogram_labels())
        ]


def latency_distribution(records: Iterable[TelemetryRecord]) -> DistributionResponse:
    accumulator = LatencyAccumulator()
    for record in records:
        accumulator.add(record.timing.duration)
    return DistributionResponse(metrics=accumulator.summary(), histogram=accumulator.histogram())


@dataclass(slots=True)
class _EntityStats:
    count: int = 0
    total: int = 0
    maximum: int = 0
    successful: int = 0
    slow: int = 0

    def add(self, record: TelemetryRecord) -> None:
        duration = record.timing.duration
        self.count += 1
        self.total += duration
        self.maximum = max(self.maximum, duration)
        if is_success(record.response.status_code):
            self.successful += 1
        if duration > SLOW_THRESHOLD_MS:
            self.slow += 1


def rank_entities(
    records: Iterable[TelemetryRecord],
    target: RankTarget = RankTarget.PRODUCT,
    rank_by: RankBy = RankBy.VOLUME,
    n: int = 10,
) -> list[RankedEntity]:
    stats: dict[str, _EntityStats] = {}
    for record in records:
        entity_id = record.product_id if target is RankTarget.PRODUCT else record.endpoint_id
        entry = stats.get(entity_id)
        if entry is None:
            entry = stats[entity_id] = _EntityStats()
        entry.add(record)

    if rank_by is RankBy.VOLUME:
        ordered = sorted(stats.items(), key=lambda item: (-item[1].count, item[0]))
    else:
        ordered = sorted(
            stats.items(),
            key=lambda item: (-Fraction(item[1].total, item[1].count), item[0]),
        )

    return [
        RankedEntity(
            entity_id=entity_id,
            request_count=entry.count,
            avg_response_time=mean_ms(entry.total, entry.count),
            max_response_time=entry.maximum,
            success_rate=percent(entry.successful, entry.count),
            slow_request_count=entry.slow,
            slow_request_percentage=percent(entry.slow, entry.count, empty=0),
        )
        for entity_id, entry in ordered[: max(0, n)]
    ]
