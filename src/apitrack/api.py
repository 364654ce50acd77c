"""HTTP API for apitrack."""

import json
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from enum import StrEnum
from functools import partial
from time import perf_counter
from typing import Annotated, TypeVar

import anyio.to_thread
import httpx
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from apitrack.errors import EndpointNotFound, InputError, StoreError
from apitrack.models import (
    BucketSummary,
    DashboardResponse,
    DistributionResponse,
    EndpointDefinition,
    EndpointView,
    Environment,
    Granularity,
    HttpMethod,
    ProbeOverrides,
    ProbeResponse,
    RankBy,
    RankedEntity,
    RankTarget,
    RecordAccepted,
    RecordFilters,
    RecordListResponse,
    RequestSource,
    RetentionResponse,
    StatusClass,
    TelemetryRecord,
    TimeRange,
)
from apitrack.observability import RequestMetric, ServiceMetrics, duration_ms
from apitrack.recorder import success_rate
from apitrack.retention import RetentionWorker
from apitrack.service import TelemetryService, resolve_time_range
from apitrack.settings import Settings, load_settings
from apitrack.store import InMemoryRepository, SQLiteRepository, TelemetryRepository
from apitrack.store_postgres import PostgresRepository

LOGGER = logging.getLogger("apitrack.api")

_E = TypeVar("_E", bound=StrEnum)


def _create_repository(settings: Settings) -> TelemetryRepository:
    if settings.store_backend == "inmemory":
        return InMemoryRepository()
    if settings.store_backend == "sqlite":
        return SQLiteRepository(settings.sqlite_path)
    if settings.store_backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError(
                "APITRACK_POSTGRES_DSN is required when APITRACK_STORE_BACKEND=postgres"
            )
        return PostgresRepository(settings.postgres_dsn)
    raise ValueError(f"unsupported APITRACK_STORE_BACKEND: {settings.store_backend}")


def _parse_enum(enum_type: type[_E], name: str, raw: str | None) -> _E | None:
    if raw is None or raw == "":
        return None
    try:
        return enum_type(raw)
    except ValueError as exc:
        raise InputError(f"invalid_{name}:{raw}") from exc


def record_scope(
    start: datetime | None = None,
    end: datetime | None = None,
    period: str = "24h",
    product_id: str | None = None,
    endpoint_id: str | None = None,
    environment: str | None = None,
    method: str | None = None,
    status: str | None = None,
    min_duration: Annotated[int | None, Query(ge=0)] = None,
    max_duration: Annotated[int | None, Query(ge=0)] = None,
) -> tuple[TimeRange, RecordFilters]:
    time_range = resolve_time_range(start, end, period)
    filters = RecordFilters(
        product_id=product_id,
        endpoint_id=endpoint_id,
        environment=_parse_enum(Environment, "environment", environment),
        method=_parse_enum(HttpMethod, "method", method.upper() if method else None),
        status=_parse_enum(StatusClass, "status", status),
        min_duration=min_duration,
        max_duration=max_duration,
    )
    return time_range, filters


Scope = Annotated[tuple[TimeRange, RecordFilters], Depends(record_scope)]


def create_app(
    repository: TelemetryRepository | None = None,
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    runtime_settings = settings if settings is not None else load_settings()
    owns_repository = repository is None
    repo = repository if repository is not None else _create_repository(runtime_settings)
    metrics = ServiceMetrics()
    service = TelemetryService(
        repo,
        probe_timeout_s=runtime_settings.probe_timeout_s,
        probe_max_concurrency=runtime_settings.probe_max_concurrency,
        retention_days=runtime_settings.retention_days,
        top_n_default=runtime_settings.top_n_default,
        metrics=metrics,
        transport=transport,
    )
    retention = RetentionWorker(
        service,
        interval_s=runtime_settings.retention_interval_s,
        start_worker=runtime_settings.retention_worker_enabled,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        try:
            yield
        finally:
            retention.close()
            await service.aclose()
            if owns_repository:
                repo.close()

    app = FastAPI(
        title="apitrack API",
        version="0.1.0",
        description="Request execution and telemetry aggregation for API catalogues.",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.retention = retention

    def resolve_route_path(request: Request) -> str:
        route = request.scope.get("route")
        if route is not None and hasattr(route, "path"):
            return str(route.path)
        return request.url.path

    @app.middleware("http")
    async def observe_requests(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        start_perf = perf_counter()
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            status_code = 500
            metrics.record(
                RequestMetric(
                    method=request.method,
                    path=resolve_route_path(request),
                    status_code=status_code,
                    duration_ms=duration_ms(start_perf),
                )
            )
            raise

        metrics.record(
            RequestMetric(
                method=request.method,
                path=resolve_route_path(request),
                status_code=status_code,
                duration_ms=duration_ms(start_perf),
            )
        )
        return response

    @app.exception_handler(EndpointNotFound)
    async def endpoint_not_found(_request: Request, exc: EndpointNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InputError)
    async def invalid_input(_request: Request, exc: InputError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_unavailable(_request: Request, exc: StoreError) -> JSONResponse:
        LOGGER.error("store_error %s", json.dumps({"error": str(exc)}, sort_keys=True))
        return JSONResponse(
            status_code=503,
            content={"detail": "store_unavailable", "retryable": exc.retryable},
        )

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok", "service": "apitrack", "version": "0.1.0"}

    @app.put("/v1/endpoints/{endpoint_id}", response_model=EndpointView)
    async def upsert_endpoint(endpoint_id: str, payload: EndpointDefinition) -> EndpointView:
        endpoint = await anyio.to_thread.run_sync(service.register_endpoint, endpoint_id, payload)
        return EndpointView(endpoint=endpoint, success_rate=success_rate(endpoint.metrics))

    @app.get("/v1/endpoints/{endpoint_id}", response_model=EndpointView)
    async def get_endpoint(endpoint_id: str) -> EndpointView:
        endpoint = await anyio.to_thread.run_sync(service.get_endpoint, endpoint_id)
        return EndpointView(endpoint=endpoint, success_rate=success_rate(endpoint.metrics))

    @app.post("/v1/endpoints/{endpoint_id}/probe", response_model=ProbeResponse)
    async def probe_endpoint(
        endpoint_id: str,
        payload: ProbeOverrides | None = None,
        source: RequestSource = RequestSource.MANUAL,
    ) -> ProbeResponse:
        endpoint, outcome = await service.execute_probe(endpoint_id, payload, source)
        return ProbeResponse(
            record_id=outcome.record.request_id,
            result=outcome.result,
            endpoint_id=endpoint.endpoint_id,
            endpoint_name=endpoint.name,
            metrics=outcome.metrics,
            success_rate=success_rate(outcome.metrics),
        )

    @app.post("/v1/records", response_model=RecordAccepted, status_code=201)
    async def record_completed(payload: TelemetryRecord) -> RecordAccepted:
        updated = await anyio.to_thread.run_sync(service.record_completed, payload)
        return RecordAccepted(request_id=payload.request_id, status="recorded", metrics=updated)

    @app.get("/v1/analytics/buckets", response_model=list[BucketSummary])
    async def buckets(scope: Scope, granularity: str = "hour") -> list[BucketSummary]:
        time_range, filters = scope
        parsed = _parse_enum(Granularity, "granularity", granularity) or Granularity.HOUR
        return await anyio.to_thread.run_sync(
            service.query_buckets, time_range, parsed, filters
        )

    @app.get("/v1/analytics/distribution", response_model=DistributionResponse)
    async def distribution(scope: Scope) -> DistributionResponse:
        time_range, filters = scope
        return await anyio.to_thread.run_sync(service.query_distribution, time_range, filters)

    @app.get("/v1/analytics/top", response_model=list[RankedEntity])
    async def top_n(
        scope: Scope,
        target: str = "product",
        rank_by: str = "volume",
        n: int | None = None,
    ) -> list[RankedEntity]:
        time_range, filters = scope
        query = partial(
            service.query_top_n,
            time_range,
            filters,
            target=_parse_enum(RankTarget, "target", target) or RankTarget.PRODUCT,
            rank_by=_parse_enum(RankBy, "rank_by", rank_by) or RankBy.VOLUME,
            n=n,
        )
        return await anyio.to_thread.run_sync(query)

    @app.get("/v1/requests", response_model=RecordListResponse)
    async def list_requests(scope: Scope, page: int = 1, limit: int = 20) -> RecordListResponse:
        time_range, filters = scope
        records, total = await anyio.to_thread.run_sync(
            partial(service.list_records, time_range, filters, page=page, limit=limit)
        )
        return RecordListResponse(
            items=[
                record.model_dump(mode="json", exclude={"response": {"body"}})
                for record in records
            ],
            page=page,
            limit=limit,
            total=total,
            pages=(total + limit - 1) // limit,
        )

    @app.get("/v1/dashboard", response_model=DashboardResponse)
    async def dashboard(period: str = "24h", environment: str | None = None) -> DashboardResponse:
        scope_environment = _parse_enum(Environment, "environment", environment)
        return await anyio.to_thread.run_sync(service.dashboard, period, scope_environment)

    @app.post("/v1/retention/run", response_model=RetentionResponse)
    async def run_retention() -> RetentionResponse:
        return await anyio.to_thread.run_sync(retention.run_once)

    @app.get("/v1/metrics")
    async def metrics_snapshot() -> dict[str, object]:
        return {
            "service": "apitrack",
            "store_backend": runtime_settings.store_backend,
            "retention_days": runtime_settings.retention_days,
            "generated_at": datetime.now(UTC).isoformat(),
            "snapshot": metrics.snapshot(),
        }

    return app
