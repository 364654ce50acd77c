"""API and domain models for apitrack."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class HttpMethod(StrEnum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"
    OPTIONS = "OPTIONS"
    HEAD = "HEAD"


BODY_METHODS = frozenset({HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH})

_ONE_MS = timedelta(milliseconds=1)


class EndpointStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DEPRECATED = "deprecated"
    BETA = "beta"
    MAINTENANCE = "maintenance"


class Environment(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class RequestSource(StrEnum):
    MANUAL = "manual"
    AUTOMATED = "automated"
    MONITORING = "monitoring"
    LOAD_TEST = "load-test"


class Granularity(StrEnum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class RankTarget(StrEnum):
    PRODUCT = "product"
    ENDPOINT = "endpoint"


class RankBy(StrEnum):
    VOLUME = "volume"
    AVG_LATENCY = "avg_latency"


class StatusClass(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    CLIENT_ERROR = "client-error"
    SERVER_ERROR = "server-error"


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def elapsed_ms(start: datetime, end: datetime) -> int:
    delta = as_utc(end) - as_utc(start)
    # timedelta // timedelta floors, so sub-millisecond remainders are dropped.
    return max(0, delta // _ONE_MS)


class EndpointMetrics(BaseModel):
    total_requests: int = Field(default=0, ge=0)
    successful_requests: int = Field(default=0, ge=0)
    failed_requests: int = Field(default=0, ge=0)
    average_response_time: int = Field(default=0, ge=0)
    total_response_time: int = Field(default=0, ge=0)
    last_request_time: datetime | None = None


class DeclaredHeader(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    value: str
    required: bool = False


class EndpointDefinition(BaseModel):
    """Endpoint metadata as supplied by the catalogue layer."""

    name: str = Field(min_length=1, max_length=100)
    product_id: str = Field(min_length=1, max_length=128)
    method: HttpMethod
    base_url: str = Field(min_length=1)
    path: str = ""
    headers: list[DeclaredHeader] = Field(default_factory=list)
    status: EndpointStatus = EndpointStatus.ACTIVE

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("base_url", "path")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class Endpoint(EndpointDefinition):
    endpoint_id: str = Field(min_length=1, max_length=128)
    full_url: str = ""
    metrics: EndpointMetrics = Field(default_factory=EndpointMetrics)

    @model_validator(mode="after")
    def _materialize_full_url(self) -> Endpoint:
        self.full_url = f"{self.base_url}{self.path}"
        return self

    def declared_headers(self) -> dict[str, str]:
        return {header.name: header.value for header in self.headers}


class ProbeOverrides(BaseModel):
    headers: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    environment: Environment = Environment.DEVELOPMENT
    user_id: str | None = Field(default=None, max_length=128)
    session_id: str | None = Field(default=None, max_length=128)


class RequestDescription(BaseModel):
    method: HttpMethod
    url: str
    base_url: str = ""
    path: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class ResponseDescription(BaseModel):
    status_code: int = Field(ge=0, le=999)
    status_text: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    size: int = Field(default=0, ge=0)


class Timing(BaseModel):
    start_time: datetime
    end_time: datetime
    duration: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _derive_duration(self) -> Timing:
        self.start_time = as_utc(self.start_time)
        self.end_time = as_utc(self.end_time)
        self.duration = elapsed_ms(self.start_time, self.end_time)
        return self


class ErrorInfo(BaseModel):
    occurred: bool = False
    message: str | None = None
    code: str | None = None


class TelemetryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str = Field(min_length=1, max_length=64)
    endpoint_id: str = Field(min_length=1, max_length=128)
    product_id: str = Field(min_length=1, max_length=128)
    request: RequestDescription
    response: ResponseDescription
    timing: Timing
    error: ErrorInfo = Field(default_factory=ErrorInfo)
    environment: Environment = Environment.DEVELOPMENT
    source: RequestSource = RequestSource.MANUAL
    user_id: str | None = None
    session_id: str | None = None
    tags: list[str] = Field(default_factory=list)


class RecordFilters(BaseModel):
    product_id: str | None = None
    endpoint_id: str | None = None
    environment: Environment | None = None
    method: HttpMethod | None = None
    status: StatusClass | None = None
    min_duration: int | None = Field(default=None, ge=0)
    max_duration: int | None = Field(default=None, ge=0)


class TimeRange(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _normalize(self) -> TimeRange:
        self.start = as_utc(self.start)
        self.end = as_utc(self.end)
        return self


class ProbeResult(BaseModel):
    url: str
    method: HttpMethod
    request_headers: dict[str, str]
    request_body: Any = None
    status_code: int
    status_text: str
    headers: dict[str, str]
    body: Any = None
    timing: Timing


class ProbeResponse(BaseModel):
    record_id: str
    result: ProbeResult
    endpoint_id: str
    endpoint_name: str
    metrics: EndpointMetrics
    success_rate: int


class EndpointView(BaseModel):
    endpoint: Endpoint
    success_rate: int


class BucketSummary(BaseModel):
    timestamp: datetime
    total_requests: int
    successful_requests: int
    failed_requests: int
    success_rate: int
    avg_response_time: int
    min_response_time: int
    max_response_time: int
    total_bytes_transferred: int
    distinct_user_count: int
    distinct_endpoint_count: int


class LatencySummary(BaseModel):
    total_requests: int
    avg_response_time: int
    min_response_time: int
    max_response_time: int
    p50: int
    p90: int
    p95: int
    p99: int
    slow_requests: int
    very_slow_requests: int
    slow_request_percentage: int
    very_slow_request_percentage: int


class HistogramBin(BaseModel):
    label: str
    lower: int
    upper: int | None
    count: int


class DistributionResponse(BaseModel):
    metrics: LatencySummary
    histogram: list[HistogramBin]


class RankedEntity(BaseModel):
    entity_id: str
    request_count: int
    avg_response_time: int
    max_response_time: int
    success_rate: int
    slow_request_count: int
    slow_request_percentage: int


class MethodBreakdown(BaseModel):
    method: str
    count: int
    avg_response_time: int


class StatusBreakdown(BaseModel):
    status_code: int
    count: int


class Overview(BaseModel):
    total_requests: int
    successful_requests: int
    failed_requests: int
    success_rate: int
    avg_response_time: int
    min_response_time: int
    max_response_time: int
    total_bytes_transferred: int
    requests_by_method: list[MethodBreakdown]
    requests_by_status: list[StatusBreakdown]


class RecentError(BaseModel):
    request_id: str
    endpoint_id: str
    product_id: str
    status_code: int
    status_text: str
    start_time: datetime


class DashboardResponse(BaseModel):
    period: str
    environment: str
    overview: Overview
    top_products: list[RankedEntity]
    requests_by_hour: list[BucketSummary]
    recent_errors: list[RecentError]


class RecordListResponse(BaseModel):
    items: list[dict[str, Any]]
    page: int
    limit: int
    total: int
    pages: int


class RetentionResponse(BaseModel):
    purged_count: int
    cutoff: datetime
    retention_days: int


class RecordAccepted(BaseModel):
    request_id: str
    status: Literal["recorded"]
    metrics: EndpointMetrics
