"""Probe executor: issues one timed HTTP call against a registered endpoint."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlencode
from uuid import uuid4

import anyio
import anyio.to_thread
import httpx

from apitrack.errors import InputError
from apitrack.models import (
    BODY_METHODS,
    Endpoint,
    EndpointMetrics,
    ErrorInfo,
    HttpMethod,
    ProbeOverrides,
    ProbeResult,
    RequestDescription,
    RequestSource,
    ResponseDescription,
    TelemetryRecord,
    Timing,
)
from apitrack.observability import ServiceMetrics
from apitrack.recorder import MetricsRecorder

LOGGER = logging.getLogger("apitrack.probe")

NETWORK_ERROR_STATUS = 0
NETWORK_ERROR_TEXT = "Network Error"
_DEFAULT_HEADERS = {"Content-Type": "application/json"}


@dataclass(frozen=True, slots=True)
class ProbeOutcome:
    record: TelemetryRecord
    result: ProbeResult
    metrics: EndpointMetrics


def merge_headers(*layers: dict[str, str]) -> dict[str, str]:
    """Merge header layers case-insensitively; later layers win."""

    merged: dict[str, tuple[str, str]] = {}
    for layer in layers:
        for name, value in layer.items():
            merged[name.lower()] = (name, value)
    return {name: value for name, value in merged.values()}


def validate_headers(headers: dict[str, str]) -> None:
    try:
        httpx.Headers(headers)
    except (UnicodeEncodeError, TypeError, ValueError) as exc:
        raise InputError(f"invalid_header:{exc}") from exc


def build_url(full_url: str, query_params: dict[str, str]) -> str:
    if not query_params:
        return full_url
    separator = "&" if "?" in full_url else "?"
    return f"{full_url}{separator}{urlencode(query_params)}"


def validate_endpoint(endpoint: Endpoint) -> None:
    if endpoint.method not in set(HttpMethod):
        raise InputError(f"unsupported_method:{endpoint.method}")
    if not endpoint.full_url:
        raise InputError("missing_url")
    try:
        parsed = httpx.URL(endpoint.full_url)
    except httpx.InvalidURL as exc:
        raise InputError(f"invalid_url:{exc}") from exc
    if parsed.scheme not in {"http", "https"} or not parsed.host:
        raise InputError(f"invalid_url:{endpoint.full_url}")


def _encode_body(body: Any) -> str | bytes:
    if isinstance(body, (str, bytes)):
        return body
    return json.dumps(body)


def _decode_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class ProbeExecutor:
    def __init__(
        self,
        recorder: MetricsRecorder,
        timeout_s: float = 30.0,
        max_concurrency: int = 16,
        transport: httpx.AsyncBaseTransport | None = None,
        metrics: ServiceMetrics | None = None,
    ) -> None:
        self._recorder = recorder
        self._timeout_s = max(0.001, timeout_s)
        self._limiter = anyio.CapacityLimiter(max(1, max_concurrency))
        self._metrics = metrics
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=self._timeout_s,
            limits=httpx.Limits(max_connections=max(1, max_concurrency)),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def execute(
        self,
        endpoint: Endpoint,
        overrides: ProbeOverrides | None = None,
        source: RequestSource = RequestSource.MANUAL,
    ) -> ProbeOutcome:
        validate_endpoint(endpoint)
        options = overrides if overrides is not None else ProbeOverrides()

        url = build_url(endpoint.full_url, options.query_params)
        headers = merge_headers(_DEFAULT_HEADERS, endpoint.declared_headers(), options.headers)
        validate_headers(headers)
        request_body = options.body if endpoint.method in BODY_METHODS else None
        content = _encode_body(request_body) if request_body is not None else None

        error = ErrorInfo()
        async with self._limiter:
            start_time = datetime.now(UTC)
            try:
                with anyio.fail_after(self._timeout_s):
                    response = await self._client.request(
                        endpoint.method.value,
                        url,
                        headers=headers,
                        content=content,
                    )
                end_time = datetime.now(UTC)
                response_view = ResponseDescription(
                    status_code=response.status_code,
                    status_text=response.reason_phrase,
                    headers=dict(response.headers),
                    body=_decode_body(response),
                    size=len(response.content),
                )
            except (httpx.HTTPError, TimeoutError) as exc:
                end_time = datetime.now(UTC)
                message = str(exc) or type(exc).__name__
                error = ErrorInfo(occurred=True, message=message, code=type(exc).__name__)
                response_view = ResponseDescription(
                    status_code=NETWORK_ERROR_STATUS,
                    status_text=NETWORK_ERROR_TEXT,
                    body={"error": message},
                )

        record = TelemetryRecord(
            request_id=uuid4().hex,
            endpoint_id=endpoint.endpoint_id,
            product_id=endpoint.product_id,
            request=RequestDescription(
                method=endpoint.method,
                url=url,
                base_url=endpoint.base_url,
                path=endpoint.path,
                headers=headers,
                query_params=options.query_params,
                body=request_body,
            ),
            response=response_view,
            timing=Timing(start_time=start_time, end_time=end_time),
            error=error,
            environment=options.environment,
            source=source,
            user_id=options.user_id,
            session_id=options.session_id,
        )
        metrics = await anyio.to_thread.run_sync(self._recorder.record_completed, record)

        payload = {
            "endpoint_id": endpoint.endpoint_id,
            "request_id": record.request_id,
            "status_code": record.response.status_code,
            "duration_ms": record.timing.duration,
            "transport_failure": error.occurred,
        }
        if error.occurred:
            LOGGER.warning(
                "probe_transport_failure %s",
                json.dumps({**payload, "error": error.message}, sort_keys=True),
            )
        else:
            LOGGER.info("probe_completed %s", json.dumps(payload, sort_keys=True))
        if self._metrics is not None:
            self._metrics.record_probe(
                status_code=record.response.status_code,
                duration_ms=record.timing.duration,
                transport_failure=error.occurred,
            )

        result = ProbeResult(
            url=url,
            method=endpoint.method,
            request_headers=headers,
            request_body=request_body,
            status_code=record.response.status_code,
            status_text=record.response.status_text,
            headers=record.response.headers,
            body=record.response.body,
            timing=record.timing,
        )
        return ProbeOutcome(record=record, result=result, metrics=metrics)
