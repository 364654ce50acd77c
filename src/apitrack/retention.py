"""Background retention worker that hard-deletes expired telemetry records."""

from __future__ import annotations

import logging
from threading import Event, RLock, Thread

from apitrack.models import RetentionResponse
from apitrack.service import TelemetryService

LOGGER = logging.getLogger("apitrack.retention")


class RetentionWorker:
    """Runs an eviction pass every ``interval_s`` seconds on a daemon thread.

    Passes run concurrently with aggregation queries. A query spanning the
    cutoff may or may not see a record that is exactly at the boundary.
    """

    def __init__(
        self,
        service: TelemetryService,
        interval_s: float = 3600.0,
        start_worker: bool = True,
    ) -> None:
        self._service = service
        self._interval_s = max(0.05, interval_s)
        self._lock = RLock()
        self._stop_event = Event()
        self._last_result: RetentionResponse | None = None
        self._worker: Thread | None = None
        if start_worker:
            self._worker = Thread(target=self._run, name="apitrack-retention", daemon=True)
            self._worker.start()

    @property
    def last_result(self) -> RetentionResponse | None:
        with self._lock:
            return self._last_result

    def run_once(self) -> RetentionResponse:
        result = self._service.purge_expired()
        with self._lock:
            self._last_result = result
        return result

    def run_forever(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                LOGGER.exception("retention_pass_failed")
            self._stop_event.wait(self._interval_s)

    def close(self) -> None:
        self._stop_event.set()
        if self._worker is not None:
            self._worker.join(timeout=1.0)

    def _run(self) -> None:
        self.run_forever()
