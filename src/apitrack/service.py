"""Core operations exposed to the catalogue and dashboard layers."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta

import anyio.to_thread
import httpx

from apitrack.aggregation import aggregate_buckets, summarize_overview
from apitrack.distribution import latency_distribution, rank_entities
from apitrack.errors import EndpointNotFound, InputError
from apitrack.models import (
    BucketSummary,
    DashboardResponse,
    DistributionResponse,
    Endpoint,
    EndpointDefinition,
    EndpointMetrics,
    Environment,
    Granularity,
    ProbeOverrides,
    RankBy,
    RankedEntity,
    RankTarget,
    RecentError,
    RecordFilters,
    RequestSource,
    RetentionResponse,
    StatusClass,
    TelemetryRecord,
    TimeRange,
    as_utc,
)
from apitrack.observability import ServiceMetrics
from apitrack.probe import ProbeExecutor, ProbeOutcome
from apitrack.recorder import MetricsRecorder
from apitrack.store import TelemetryRepository

LOGGER = logging.getLogger("apitrack.service")

PERIODS: dict[str, timedelta | None] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(days=1),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "all": None,
}
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def resolve_time_range(
    start: datetime | None = None,
    end: datetime | None = None,
    period: str = "24h",
    now: datetime | None = None,
) -> TimeRange:
    upper = as_utc(end) if end is not None else as_utc(now or datetime.now(UTC))
    if start is not None:
        lower = as_utc(start)
    else:
        if period not in PERIODS:
            raise InputError(f"invalid_period:{period}")
        span = PERIODS[period]
        lower = _EPOCH if span is None else upper - span
    if lower > upper:
        raise InputError("invalid_range:start_after_end")
    return TimeRange(start=lower, end=upper)


def _check_filters(filters: RecordFilters) -> None:
    if (
        filters.min_duration is not None
        and filters.max_duration is not None
        and filters.min_duration > filters.max_duration
    ):
        raise InputError("invalid_filter:min_duration_above_max_duration")


class TelemetryService:
    def __init__(
        self,
        repository: TelemetryRepository,
        probe_timeout_s: float = 30.0,
        probe_max_concurrency: int = 16,
        retention_days: int = 90,
        top_n_default: int = 10,
        metrics: ServiceMetrics | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if retention_days < 1:
            raise InputError("retention_days must be at least 1")
        self.repository = repository
        self.metrics = metrics if metrics is not None else ServiceMetrics()
        self.recorder = MetricsRecorder(repository)
        self.retention_days = retention_days
        self.top_n_default = max(1, top_n_default)
        self.executor = ProbeExecutor(
            self.recorder,
            timeout_s=probe_timeout_s,
            max_concurrency=probe_max_concurrency,
            transport=transport,
            metrics=self.metrics,
        )

    async def aclose(self) -> None:
        await self.executor.aclose()

    def register_endpoint(self, endpoint_id: str, definition: EndpointDefinition) -> Endpoint:
        return self.repository.upsert_endpoint(endpoint_id, definition)

    def get_endpoint(self, endpoint_id: str) -> Endpoint:
        endpoint = self.repository.get_endpoint(endpoint_id)
        if endpoint is None:
            raise EndpointNotFound(endpoint_id)
        return endpoint

    async def execute_probe(
        self,
        endpoint_id: str,
        overrides: ProbeOverrides | None = None,
        source: RequestSource = RequestSource.MANUAL,
    ) -> tuple[Endpoint, ProbeOutcome]:
        endpoint = await anyio.to_thread.run_sync(self.get_endpoint, endpoint_id)
        outcome = await self.executor.execute(endpoint, overrides, source=source)
        return endpoint, outcome

    def record_completed(self, record: TelemetryRecord) -> EndpointMetrics:
        return self.recorder.record_completed(record)

    def query_buckets(
        self,
        time_range: TimeRange,
        granularity: Granularity,
        filters: RecordFilters | None = None,
    ) -> list[BucketSummary]:
        scope = filters or RecordFilters()
        _check_filters(scope)
        return aggregate_buckets(self.repository.iter_records(time_range, scope), granularity)

    def query_distribution(
        self, time_range: TimeRange, filters: RecordFilters | None = None
    ) -> DistributionResponse:
        scope = filters or RecordFilters()
        _check_filters(scope)
        return latency_distribution(self.repository.iter_records(time_range, scope))

    def query_top_n(
        self,
        time_range: TimeRange,
        filters: RecordFilters | None = None,
        target: RankTarget = RankTarget.PRODUCT,
        rank_by: RankBy = RankBy.VOLUME,
        n: int | None = None,
    ) -> list[RankedEntity]:
        limit = self.top_n_default if n is None else n
        if limit < 1:
            raise InputError("invalid_top_n:n must be at least 1")
        scope = filters or RecordFilters()
        _check_filters(scope)
        return rank_entities(
            self.repository.iter_records(time_range, scope),
            target=target,
            rank_by=rank_by,
            n=limit,
        )

    def list_records(
        self,
        time_range: TimeRange,
        filters: RecordFilters | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[TelemetryRecord], int]:
        if page < 1 or not 1 <= limit <= 100:
            raise InputError("invalid_pagination")
        scope = filters or RecordFilters()
        _check_filters(scope)
        return self.repository.list_records(time_range, scope, (page - 1) * limit, limit)

    def dashboard(
        self,
        period: str = "24h",
        environment: Environment | None = None,
        now: datetime | None = None,
    ) -> DashboardResponse:
        time_range = resolve_time_range(period=period, now=now)
        scope = RecordFilters(environment=environment)
        errors, _ = self.repository.list_records(
            time_range,
            scope.model_copy(update={"status": StatusClass.ERROR}),
            0,
            10,
        )
        return DashboardResponse(
            period=period,
            environment=environment.value if environment else "all",
            overview=summarize_overview(self.repository.iter_records(time_range, scope)),
            top_products=self.query_top_n(time_range, scope, RankTarget.PRODUCT, RankBy.VOLUME),
            requests_by_hour=self.query_buckets(time_range, Granularity.HOUR, scope),
            recent_errors=[
                RecentError(
                    request_id=record.request_id,
                    endpoint_id=record.endpoint_id,
                    product_id=record.product_id,
                    status_code=record.response.status_code,
                    status_text=record.response.status_text,
                    start_time=record.timing.start_time,
                )
                for record in errors
            ],
        )

    def retention_cutoff(self, now: datetime | None = None) -> datetime:
        return as_utc(now or datetime.now(UTC)) - timedelta(days=self.retention_days)

    def purge_expired(self, now: datetime | None = None) -> RetentionResponse:
        cutoff = self.retention_cutoff(now)
        purged = self.repository.purge_older_than(cutoff)
        self.metrics.record_retention(purged)
        LOGGER.info(
            "retention_pass %s",
            json.dumps(
                {
                    "cutoff": cutoff.isoformat(),
                    "purged_count": purged,
                    "retention_days": self.retention_days,
                },
                sort_keys=True,
            ),
        )
        return RetentionResponse(
            purged_count=purged,
            cutoff=cutoff,
            retention_days=self.retention_days,
        )
