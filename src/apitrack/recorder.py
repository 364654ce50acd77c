"""Incremental per-endpoint health counters."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable
from datetime import datetime
from fractions import Fraction
from typing import TYPE_CHECKING

from apitrack.models import EndpointMetrics, TelemetryRecord

if TYPE_CHECKING:
    from apitrack.store import TelemetryRepository

LOGGER = logging.getLogger("apitrack.recorder")

MetricsUpdate = Callable[[EndpointMetrics, TelemetryRecord], EndpointMetrics]

_HALF = Fraction(1, 2)


def round_half_up(value: Fraction | int) -> int:
    return math.floor(Fraction(value) + _HALF)


def mean_ms(total: int, count: int) -> int:
    if count <= 0:
        return 0
    return round_half_up(Fraction(total, count))


def percent(part: int, whole: int, empty: int = 100) -> int:
    if whole <= 0:
        return empty
    return round_half_up(Fraction(part * 100, whole))


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def is_failure(status_code: int) -> bool:
    # Status 0 marks a transport failure that never produced a response.
    return status_code == 0 or status_code >= 400


def advance_metrics(
    metrics: EndpointMetrics,
    status_code: int,
    duration: int,
    end_time: datetime,
) -> EndpointMetrics:
    n = metrics.total_requests + 1
    # total_response_time / (n - 1) is the exact previous mean, so
    # (mean * (n - 1) + duration) / n reduces to total / n with no drift.
    total = metrics.total_response_time + duration
    return EndpointMetrics(
        total_requests=n,
        successful_requests=metrics.successful_requests + int(is_success(status_code)),
        failed_requests=metrics.failed_requests + int(is_failure(status_code)),
        average_response_time=mean_ms(total, n),
        total_response_time=total,
        last_request_time=end_time,
    )


def apply_record(metrics: EndpointMetrics, record: TelemetryRecord) -> EndpointMetrics:
    return advance_metrics(
        metrics,
        status_code=record.response.status_code,
        duration=record.timing.duration,
        end_time=record.timing.end_time,
    )


def success_rate(metrics: EndpointMetrics) -> int:
    return percent(metrics.successful_requests, metrics.total_requests)


class MetricsRecorder:
    """Stores a completed record and folds it into its endpoint's counters.

    The repository runs the insert and the counter update in one transaction
    under a per-endpoint lock, so concurrent recordings never lose an increment
    and a failed write leaves neither the record nor the counters behind.
    """

    def __init__(self, repository: TelemetryRepository) -> None:
        self._repository = repository

    def record_completed(self, record: TelemetryRecord) -> EndpointMetrics:
        metrics = self._repository.append_record(record, apply_record)
        LOGGER.debug(
            "metrics_updated %s",
            json.dumps(
                {
                    "endpoint_id": record.endpoint_id,
                    "request_id": record.request_id,
                    "total_requests": metrics.total_requests,
                    "average_response_time": metrics.average_response_time,
                },
                sort_keys=True,
            ),
        )
        return metrics
