"""In-process service metrics for apitrack."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from time import perf_counter

from apitrack.distribution import percentile_sorted


@dataclass(frozen=True, slots=True)
class RequestMetric:
    method: str
    path: str
    status_code: int
    duration_ms: float


def _latency_summary(values: list[float]) -> dict[str, float]:
    return {
        "count": len(values),
        "avg_ms": round(sum(values) / len(values), 2),
        "p95_ms": round(float(percentile_sorted(sorted(values), 95.0)), 2),
        "max_ms": round(max(values), 2),
    }


class ServiceMetrics:
    def __init__(self) -> None:
        self._lock = RLock()
        self._request_count = 0
        self._status_counts: dict[str, int] = defaultdict(int)
        self._route_latencies: dict[str, list[float]] = defaultdict(list)
        self._probe_outcomes: dict[str, int] = defaultdict(int)
        self._probe_latencies: list[float] = []
        self._retention_runs = 0
        self._retention_purged = 0
        self._last_retention_at: datetime | None = None

    def record(self, metric: RequestMetric) -> None:
        key = f"{metric.method} {metric.path}"
        with self._lock:
            self._request_count += 1
            self._status_counts[f"{metric.status_code // 100}xx"] += 1
            self._route_latencies[key].append(metric.duration_ms)

    def record_probe(self, status_code: int, duration_ms: int, transport_failure: bool) -> None:
        if transport_failure:
            outcome = "network_error"
        else:
            outcome = f"{status_code // 100}xx"
        with self._lock:
            self._probe_outcomes[outcome] += 1
            self._probe_latencies.append(float(duration_ms))

    def record_retention(self, purged: int) -> None:
        with self._lock:
            self._retention_runs += 1
            self._retention_purged += purged
            self._last_retention_at = datetime.now(UTC)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "request_count": self._request_count,
                "status_counts": dict(self._status_counts),
                "route_latency_ms": {
                    route: _latency_summary(values)
                    for route, values in self._route_latencies.items()
                    if values
                },
                "probes": {
                    "outcomes": dict(self._probe_outcomes),
                    "latency_ms": (
                        _latency_summary(self._probe_latencies) if self._probe_latencies else None
                    ),
                },
                "retention": {
                    "runs": self._retention_runs,
                    "purged_total": self._retention_purged,
                    "last_run_at": (
                        self._last_retention_at.isoformat() if self._last_retention_at else None
                    ),
                },
            }


def duration_ms(start_time: float) -> float:
    return (perf_counter() - start_time) * 1000.0
