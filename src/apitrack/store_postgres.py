"""PostgreSQL repository implementation for apitrack."""

from __future__ import annotations

import json
from collections.abc import Iterator
from datetime import datetime
from typing import Any

from apitrack.errors import EndpointNotFound, StoreError
from apitrack.models import (
    Endpoint,
    EndpointDefinition,
    EndpointMetrics,
    RecordFilters,
    TelemetryRecord,
    TimeRange,
    as_utc,
)
from apitrack.recorder import MetricsUpdate
from apitrack.store import _DEFINITION_FIELDS, build_where


class PostgresRepository:
    """Postgres-backed store.

    Counter updates take a row lock on the endpoint (``SELECT ... FOR UPDATE``)
    inside the same transaction as the record insert, which keeps recordings
    against one endpoint serialized even across several service instances.

    Each operation opens its own connection, so worker threads never share a
    session and only contend on the endpoint row they update.
    """

    def __init__(self, dsn: str, ensure_schema: bool = True) -> None:
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError as exc:
            raise RuntimeError(
                "psycopg is required for Postgres backend. "
                "Install with `pip install psycopg[binary]`."
            ) from exc

        self._psycopg = psycopg
        self._dict_row = dict_row
        self._dsn = dsn
        if ensure_schema:
            self._init_schema()

    def _connect(self) -> Any:
        return self._psycopg.connect(self._dsn, autocommit=True, row_factory=self._dict_row)

    def _init_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS endpoints (
                endpoint_id TEXT PRIMARY KEY,
                product_id TEXT NOT NULL,
                definition_json JSONB NOT NULL,
                total_requests BIGINT NOT NULL DEFAULT 0,
                successful_requests BIGINT NOT NULL DEFAULT 0,
                failed_requests BIGINT NOT NULL DEFAULT 0,
                average_response_time BIGINT NOT NULL DEFAULT 0,
                total_response_time BIGINT NOT NULL DEFAULT 0,
                last_request_time TIMESTAMPTZ
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS telemetry_records (
                record_pk BIGSERIAL PRIMARY KEY,
                request_id TEXT NOT NULL,
                endpoint_id TEXT NOT NULL,
                product_id TEXT NOT NULL,
                method TEXT NOT NULL,
                environment TEXT NOT NULL,
                source TEXT NOT NULL,
                status_code INTEGER NOT NULL,
                duration BIGINT NOT NULL,
                start_time TIMESTAMPTZ NOT NULL,
                end_time TIMESTAMPTZ NOT NULL,
                payload_json JSONB NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_records_request ON telemetry_records (request_id)",
            "CREATE INDEX IF NOT EXISTS idx_records_start ON telemetry_records (start_time)",
            (
                "CREATE INDEX IF NOT EXISTS idx_records_endpoint_start "
                "ON telemetry_records (endpoint_id, start_time)"
            ),
            (
                "CREATE INDEX IF NOT EXISTS idx_records_product_start "
                "ON telemetry_records (product_id, start_time)"
            ),
            (
                "CREATE INDEX IF NOT EXISTS idx_records_status_start "
                "ON telemetry_records (status_code, start_time)"
            ),
            (
                "CREATE INDEX IF NOT EXISTS idx_records_environment_start "
                "ON telemetry_records (environment, start_time)"
            ),
        ]
        try:
            with self._connect() as connection, connection.cursor() as cursor:
                for statement in statements:
                    cursor.execute(statement)
        except self._psycopg.Error as exc:
            raise StoreError(f"schema_init_failed:{exc}") from exc

    @staticmethod
    def _row_to_metrics(row: dict[str, Any]) -> EndpointMetrics:
        last_request_time = row.get("last_request_time")
        return EndpointMetrics(
            total_requests=int(row["total_requests"]),
            successful_requests=int(row["successful_requests"]),
            failed_requests=int(row["failed_requests"]),
            average_response_time=int(row["average_response_time"]),
            total_response_time=int(row["total_response_time"]),
            last_request_time=(
                last_request_time
                if isinstance(last_request_time, datetime) or last_request_time is None
                else datetime.fromisoformat(str(last_request_time))
            ),
        )

    @classmethod
    def _row_to_endpoint(cls, row: dict[str, Any]) -> Endpoint:
        definition = row["definition_json"]
        if isinstance(definition, str):
            definition = json.loads(definition)
        return Endpoint.model_validate(
            {
                **definition,
                "endpoint_id": str(row["endpoint_id"]),
                "metrics": cls._row_to_metrics(row),
            }
        )

    @staticmethod
    def _payload_to_record(payload: Any) -> TelemetryRecord:
        if isinstance(payload, str):
            return TelemetryRecord.model_validate_json(payload)
        return TelemetryRecord.model_validate(payload)

    def upsert_endpoint(self, endpoint_id: str, definition: EndpointDefinition) -> Endpoint:
        try:
            with self._connect() as connection, connection.cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO endpoints (endpoint_id, product_id, definition_json)
                    VALUES (%s, %s, %s::jsonb)
                    ON CONFLICT (endpoint_id) DO UPDATE SET
                        product_id = EXCLUDED.product_id,
                        definition_json = EXCLUDED.definition_json
                    """,
                    (
                        endpoint_id,
                        definition.product_id,
                        definition.model_dump_json(include=_DEFINITION_FIELDS),
                    ),
                )
        except self._psycopg.Error as exc:
            raise StoreError(f"endpoint_write_failed:{exc}") from exc
        endpoint = self.get_endpoint(endpoint_id)
        if endpoint is None:
            raise StoreError(f"endpoint_write_lost:{endpoint_id}")
        return endpoint

    def get_endpoint(self, endpoint_id: str) -> Endpoint | None:
        try:
            with self._connect() as connection, connection.cursor() as cursor:
                cursor.execute("SELECT * FROM endpoints WHERE endpoint_id = %s", (endpoint_id,))
                row = cursor.fetchone()
        except self._psycopg.Error as exc:
            raise StoreError(f"endpoint_read_failed:{exc}") from exc
        return self._row_to_endpoint(row) if row is not None else None

    def append_record(self, record: TelemetryRecord, update: MetricsUpdate) -> EndpointMetrics:
        try:
            with (
                self._connect() as connection,
                connection.transaction(),
                connection.cursor() as cursor,
            ):
                cursor.execute(
                    "SELECT * FROM endpoints WHERE endpoint_id = %s FOR UPDATE",
                    (record.endpoint_id,),
                )
                row = cursor.fetchone()
                if row is None:
                    raise EndpointNotFound(record.endpoint_id)
                metrics = update(self._row_to_metrics(row), record)
                cursor.execute(
                    """
                    INSERT INTO telemetry_records (
                        request_id, endpoint_id, product_id, method, environment, source,
                        status_code, duration, start_time, end_time, payload_json
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
                    """,
                    (
                        record.request_id,
                        record.endpoint_id,
                        record.product_id,
                        record.request.method.value,
                        record.environment.value,
                        record.source.value,
                        record.response.status_code,
                        record.timing.duration,
                        record.timing.start_time,
                        record.timing.end_time,
                        record.model_dump_json(),
                    ),
                )
                cursor.execute(
                    """
                    UPDATE endpoints SET
                        total_requests = %s,
                        successful_requests = %s,
                        failed_requests = %s,
                        average_response_time = %s,
                        total_response_time = %s,
                        last_request_time = %s
                    WHERE endpoint_id = %s
                    """,
                    (
                        metrics.total_requests,
                        metrics.successful_requests,
                        metrics.failed_requests,
                        metrics.average_response_time,
                        metrics.total_response_time,
                        metrics.last_request_time,
                        record.endpoint_id,
                    ),
                )
                return metrics
        except self._psycopg.Error as exc:
            raise StoreError(f"record_write_failed:{exc}") from exc

    def iter_records(
        self, time_range: TimeRange, filters: RecordFilters
    ) -> Iterator[TelemetryRecord]:
        where, params = build_where(time_range, filters, placeholder="%s", as_text=False)
        try:
            # Named cursors are server-side and need an open transaction.
            with (
                self._connect() as connection,
                connection.transaction(),
                connection.cursor(name="apitrack_records") as cursor,
            ):
                cursor.execute(
                    f"SELECT payload_json FROM telemetry_records WHERE {where} "
                    f"ORDER BY start_time, record_pk",
                    params,
                )
                while True:
                    rows = cursor.fetchmany(500)
                    if not rows:
                        break
                    for row in rows:
                        yield self._payload_to_record(row["payload_json"])
        except self._psycopg.Error as exc:
            raise StoreError(f"record_read_failed:{exc}") from exc

    def list_records(
        self, time_range: TimeRange, filters: RecordFilters, offset: int, limit: int
    ) -> tuple[list[TelemetryRecord], int]:
        where, params = build_where(time_range, filters, placeholder="%s", as_text=False)
        try:
            with self._connect() as connection, connection.cursor() as cursor:
                cursor.execute(
                    f"SELECT COUNT(*) AS total FROM telemetry_records WHERE {where}",
                    params,
                )
                total_row = cursor.fetchone()
                cursor.execute(
                    f"SELECT payload_json FROM telemetry_records WHERE {where} "
                    f"ORDER BY start_time DESC, record_pk DESC LIMIT %s OFFSET %s",
                    [*params, limit, offset],
                )
                rows = cursor.fetchall()
        except self._psycopg.Error as exc:
            raise StoreError(f"record_read_failed:{exc}") from exc
        total = int(total_row["total"]) if total_row is not None else 0
        return [self._payload_to_record(row["payload_json"]) for row in rows], total

    def purge_older_than(self, cutoff: datetime) -> int:
        try:
            with self._connect() as connection, connection.cursor() as cursor:
                cursor.execute(
                    "DELETE FROM telemetry_records WHERE start_time < %s",
                    (as_utc(cutoff),),
                )
                rowcount = cursor.rowcount
        except self._psycopg.Error as exc:
            raise StoreError(f"record_purge_failed:{exc}") from exc
        return int(rowcount if rowcount is not None else 0)

    def close(self) -> None:
        return None
