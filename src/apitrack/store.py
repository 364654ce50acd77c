"""Repository implementations for endpoints and telemetry records."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Protocol

from apitrack.errors import EndpointNotFound, StoreError
from apitrack.models import (
    Endpoint,
    EndpointDefinition,
    EndpointMetrics,
    RecordFilters,
    StatusClass,
    TelemetryRecord,
    TimeRange,
    as_utc,
)
from apitrack.recorder import MetricsUpdate, is_failure

_DEFINITION_FIELDS = set(EndpointDefinition.model_fields)


class TelemetryRepository(Protocol):
    def upsert_endpoint(self, endpoint_id: str, definition: EndpointDefinition) -> Endpoint: ...

    def get_endpoint(self, endpoint_id: str) -> Endpoint | None: ...

    def append_record(self, record: TelemetryRecord, update: MetricsUpdate) -> EndpointMetrics: ...

    def iter_records(
        self, time_range: TimeRange, filters: RecordFilters
    ) -> Iterator[TelemetryRecord]: ...

    def list_records(
        self, time_range: TimeRange, filters: RecordFilters, offset: int, limit: int
    ) -> tuple[list[TelemetryRecord], int]: ...

    def purge_older_than(self, cutoff: datetime) -> int: ...

    def close(self) -> None: ...


def timestamp_text(value: datetime) -> str:
    return as_utc(value).isoformat(timespec="microseconds")


def _status_matches(status: StatusClass, code: int) -> bool:
    if status is StatusClass.SUCCESS:
        return 200 <= code < 300
    if status is StatusClass.ERROR:
        return is_failure(code)
    if status is StatusClass.CLIENT_ERROR:
        return 400 <= code < 500
    return code >= 500


def record_matches(record: TelemetryRecord, time_range: TimeRange, filters: RecordFilters) -> bool:
    started = record.timing.start_time
    if started < time_range.start or started > time_range.end:
        return False
    if filters.product_id is not None and record.product_id != filters.product_id:
        return False
    if filters.endpoint_id is not None and record.endpoint_id != filters.endpoint_id:
        return False
    if filters.environment is not None and record.environment is not filters.environment:
        return False
    if filters.method is not None and record.request.method is not filters.method:
        return False
    if filters.status is not None and not _status_matches(
        filters.status, record.response.status_code
    ):
        return False
    duration = record.timing.duration
    if filters.min_duration is not None and duration < filters.min_duration:
        return False
    if filters.max_duration is not None and duration > filters.max_duration:
        return False
    return True


_STATUS_SQL = {
    StatusClass.SUCCESS: "status_code >= 200 AND status_code < 300",
    StatusClass.ERROR: "(status_code = 0 OR status_code >= 400)",
    StatusClass.CLIENT_ERROR: "status_code >= 400 AND status_code < 500",
    StatusClass.SERVER_ERROR: "status_code >= 500",
}


def build_where(
    time_range: TimeRange,
    filters: RecordFilters,
    placeholder: str = "?",
    as_text: bool = True,
) -> tuple[str, list[Any]]:
    def bound(value: datetime) -> Any:
        return timestamp_text(value) if as_text else as_utc(value)

    clauses = [f"start_time >= {placeholder}", f"start_time <= {placeholder}"]
    params: list[Any] = [bound(time_range.start), bound(time_range.end)]
    for column, value in (
        ("product_id", filters.product_id),
        ("endpoint_id", filters.endpoint_id),
        ("environment", filters.environment.value if filters.environment else None),
        ("method", filters.method.value if filters.method else None),
    ):
        if value is not None:
            clauses.append(f"{column} = {placeholder}")
            params.append(value)
    if filters.status is not None:
        clauses.append(_STATUS_SQL[filters.status])
    if filters.min_duration is not None:
        clauses.append(f"duration >= {placeholder}")
        params.append(filters.min_duration)
    if filters.max_duration is not None:
        clauses.append(f"duration <= {placeholder}")
        params.append(filters.max_duration)
    return " AND ".join(clauses), params


class InMemoryRepository:
    def __init__(self) -> None:
        self._lock = RLock()
        self._locks_guard = Lock()
        self._endpoint_locks: dict[str, Lock] = {}
        self._endpoints: dict[str, Endpoint] = {}
        self._records: list[TelemetryRecord] = []

    def _endpoint_lock(self, endpoint_id: str) -> Lock:
        with self._locks_guard:
            lock = self._endpoint_locks.get(endpoint_id)
            if lock is None:
                lock = Lock()
                self._endpoint_locks[endpoint_id] = lock
            return lock

    def upsert_endpoint(self, endpoint_id: str, definition: EndpointDefinition) -> Endpoint:
        with self._endpoint_lock(endpoint_id):
            existing = self._endpoints.get(endpoint_id)
            endpoint = Endpoint.model_validate(
                {
                    **definition.model_dump(include=_DEFINITION_FIELDS),
                    "endpoint_id": endpoint_id,
                    "metrics": existing.metrics if existing else EndpointMetrics(),
                }
            )
            with self._lock:
                self._endpoints[endpoint_id] = endpoint
            return endpoint.model_copy(deep=True)

    def get_endpoint(self, endpoint_id: str) -> Endpoint | None:
        with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            return endpoint.model_copy(deep=True) if endpoint is not None else None

    def append_record(self, record: TelemetryRecord, update: MetricsUpdate) -> EndpointMetrics:
        with self._endpoint_lock(record.endpoint_id):
            endpoint = self._endpoints.get(record.endpoint_id)
            if endpoint is None:
                raise EndpointNotFound(record.endpoint_id)
            metrics = update(endpoint.metrics, record)
            with self._lock:
                self._records.append(record)
                self._endpoints[record.endpoint_id] = endpoint.model_copy(
                    update={"metrics": metrics}
                )
            return metrics.model_copy()

    def iter_records(
        self, time_range: TimeRange, filters: RecordFilters
    ) -> Iterator[TelemetryRecord]:
        with self._lock:
            snapshot = list(self._records)
        for record in snapshot:
            if record_matches(record, time_range, filters):
                yield record

    def list_records(
        self, time_range: TimeRange, filters: RecordFilters, offset: int, limit: int
    ) -> tuple[list[TelemetryRecord], int]:
        matched = sorted(
            self.iter_records(time_range, filters),
            key=lambda record: record.timing.start_time,
            reverse=True,
        )
        return matched[offset : offset + limit], len(matched)

    def purge_older_than(self, cutoff: datetime) -> int:
        boundary = as_utc(cutoff)
        with self._lock:
            kept = [record for record in self._records if record.timing.start_time >= boundary]
            purged = len(self._records) - len(kept)
            self._records = kept
        return purged

    def close(self) -> None:
        return None


class SQLiteRepository:
    def __init__(self, sqlite_path: str) -> None:
        self._lock = RLock()
        db_path = Path(sqlite_path)
        if db_path.parent != Path("."):
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._path = str(db_path)
        # Autocommit mode; writes open their own transaction in _write_transaction.
        self._connection = sqlite3.connect(
            self._path, check_same_thread=False, timeout=30.0, isolation_level=None
        )
        self._connection.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._connection.execute("PRAGMA journal_mode=WAL")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS endpoints (
                    endpoint_id TEXT PRIMARY KEY,
                    product_id TEXT NOT NULL,
                    definition_json TEXT NOT NULL,
                    total_requests INTEGER NOT NULL DEFAULT 0,
                    successful_requests INTEGER NOT NULL DEFAULT 0,
                    failed_requests INTEGER NOT NULL DEFAULT 0,
                    average_response_time INTEGER NOT NULL DEFAULT 0,
                    total_response_time INTEGER NOT NULL DEFAULT 0,
                    last_request_time TEXT
                );

                CREATE TABLE IF NOT EXISTS telemetry_records (
                    record_pk INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT NOT NULL,
                    endpoint_id TEXT NOT NULL,
                    product_id TEXT NOT NULL,
                    method TEXT NOT NULL,
                    environment TEXT NOT NULL,
                    source TEXT NOT NULL,
                    status_code INTEGER NOT NULL,
                    duration INTEGER NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_records_request
                    ON telemetry_records (request_id);

                CREATE INDEX IF NOT EXISTS idx_records_start
                    ON telemetry_records (start_time);

                CREATE INDEX IF NOT EXISTS idx_records_endpoint_start
                    ON telemetry_records (endpoint_id, start_time);

                CREATE INDEX IF NOT EXISTS idx_records_product_start
                    ON telemetry_records (product_id, start_time);

                CREATE INDEX IF NOT EXISTS idx_records_status_start
                    ON telemetry_records (status_code, start_time);

                CREATE INDEX IF NOT EXISTS idx_records_environment_start
                    ON telemetry_records (environment, start_time);
                """
            )

    @contextmanager
    def _write_transaction(self) -> Iterator[None]:
        # IMMEDIATE takes the database write lock up front, which serializes
        # read-modify-write cycles across every connection to the same file.
        with self._lock:
            self._connection.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                self._connection.rollback()
                raise
            self._connection.commit()

    @staticmethod
    def _row_to_metrics(row: sqlite3.Row) -> EndpointMetrics:
        return EndpointMetrics(
            total_requests=int(row["total_requests"]),
            successful_requests=int(row["successful_requests"]),
            failed_requests=int(row["failed_requests"]),
            average_response_time=int(row["average_response_time"]),
            total_response_time=int(row["total_response_time"]),
            last_request_time=(
                datetime.fromisoformat(str(row["last_request_time"]))
                if row["last_request_time"] is not None
                else None
            ),
        )

    @classmethod
    def _row_to_endpoint(cls, row: sqlite3.Row) -> Endpoint:
        definition = json.loads(str(row["definition_json"]))
        return Endpoint.model_validate(
            {
                **definition,
                "endpoint_id": str(row["endpoint_id"]),
                "metrics": cls._row_to_metrics(row),
            }
        )

    def upsert_endpoint(self, endpoint_id: str, definition: EndpointDefinition) -> Endpoint:
        try:
            with self._write_transaction():
                self._connection.execute(
                    """
                    INSERT INTO endpoints (endpoint_id, product_id, definition_json)
                    VALUES (?, ?, ?)
                    ON CONFLICT (endpoint_id) DO UPDATE SET
                        product_id = excluded.product_id,
                        definition_json = excluded.definition_json
                    """,
                    (
                        endpoint_id,
                        definition.product_id,
                        definition.model_dump_json(include=_DEFINITION_FIELDS),
                    ),
                )
        except sqlite3.Error as exc:
            raise StoreError(f"endpoint_write_failed:{exc}") from exc
        endpoint = self.get_endpoint(endpoint_id)
        if endpoint is None:
            raise StoreError(f"endpoint_write_lost:{endpoint_id}")
        return endpoint

    def get_endpoint(self, endpoint_id: str) -> Endpoint | None:
        try:
            with self._lock:
                row = self._connection.execute(
                    "SELECT * FROM endpoints WHERE endpoint_id = ?",
                    (endpoint_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"endpoint_read_failed:{exc}") from exc
        return self._row_to_endpoint(row) if row is not None else None

    def append_record(self, record: TelemetryRecord, update: MetricsUpdate) -> EndpointMetrics:
        try:
            with self._write_transaction():
                row = self._connection.execute(
                    "SELECT * FROM endpoints WHERE endpoint_id = ?",
                    (record.endpoint_id,),
                ).fetchone()
                if row is None:
                    raise EndpointNotFound(record.endpoint_id)
                metrics = update(self._row_to_metrics(row), record)
                self._connection.execute(
                    """
                    INSERT INTO telemetry_records (
                        request_id, endpoint_id, product_id, method, environment, source,
                        status_code, duration, start_time, end_time, payload_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
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
                        timestamp_text(record.timing.start_time),
                        timestamp_text(record.timing.end_time),
                        record.model_dump_json(),
                    ),
                )
                self._connection.execute(
                    """
                    UPDATE endpoints SET
                        total_requests = ?,
                        successful_requests = ?,
                        failed_requests = ?,
                        average_response_time = ?,
                        total_response_time = ?,
                        last_request_time = ?
                    WHERE endpoint_id = ?
                    """,
                    (
                        metrics.total_requests,
                        metrics.successful_requests,
                        metrics.failed_requests,
                        metrics.average_response_time,
                        metrics.total_response_time,
                        (
                            timestamp_text(metrics.last_request_time)
                            if metrics.last_request_time is not None
                            else None
                        ),
                        record.endpoint_id,
                    ),
                )
                return metrics
        except sqlite3.Error as exc:
            raise StoreError(f"record_write_failed:{exc}") from exc

    def _read_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._path, timeout=30.0)
        connection.row_factory = sqlite3.Row
        return connection

    def iter_records(
        self, time_range: TimeRange, filters: RecordFilters
    ) -> Iterator[TelemetryRecord]:
        where, params = build_where(time_range, filters)
        try:
            connection = self._read_connection()
        except sqlite3.Error as exc:
            raise StoreError(f"record_read_failed:{exc}") from exc
        try:
            cursor = connection.execute(
                f"SELECT payload_json FROM telemetry_records WHERE {where} "
                "ORDER BY start_time, record_pk",
                params,
            )
            while True:
                rows = cursor.fetchmany(500)
                if not rows:
                    break
                for row in rows:
                    yield TelemetryRecord.model_validate_json(str(row["payload_json"]))
        except sqlite3.Error as exc:
            raise StoreError(f"record_read_failed:{exc}") from exc
        finally:
            connection.close()

    def list_records(
        self, time_range: TimeRange, filters: RecordFilters, offset: int, limit: int
    ) -> tuple[list[TelemetryRecord], int]:
        where, params = build_where(time_range, filters)
        try:
            with self._lock:
                total = self._connection.execute(
                    f"SELECT COUNT(*) AS total FROM telemetry_records WHERE {where}",
                    params,
                ).fetchone()
                rows = self._connection.execute(
                    f"""
                    SELECT payload_json FROM telemetry_records WHERE {where}
                    ORDER BY start_time DESC, record_pk DESC
                    LIMIT ? OFFSET ?
                    """,
                    [*params, limit, offset],
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"record_read_failed:{exc}") from exc
        records = [TelemetryRecord.model_validate_json(str(row["payload_json"])) for row in rows]
        return records, int(total["total"])

    def purge_older_than(self, cutoff: datetime) -> int:
        try:
            with self._write_transaction():
                cursor = self._connection.execute(
                    "DELETE FROM telemetry_records WHERE start_time < ?",
                    (timestamp_text(cutoff),),
                )
                return int(cursor.rowcount)
        except sqlite3.Error as exc:
            raise StoreError(f"record_purge_failed:{exc}") from exc

    def close(self) -> None:
        self._connection.close()
