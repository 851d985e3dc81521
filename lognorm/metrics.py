"""Thread-safe pipeline counters."""

import threading
import time
from collections import defaultdict


class PipelineMetrics:
    """Collects per-source, per-transform and per-sink counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._lines_read: dict[str, int] = defaultdict(int)
        self._parse_errors: dict[str, int] = defaultdict(int)
        self._records_written: dict[str, int] = defaultdict(int)
        self._write_failures: dict[str, int] = defaultdict(int)
        self._offsets_committed = 0
        self._start_time = time.monotonic()

    def line_read(self, source_id: str) -> None:
        with self._lock:
            self._lines_read[source_id] += 1

    def parse_error(self, transform_id: str) -> None:
        with self._lock:
            self._parse_errors[transform_id] += 1

    def records_written(self, sink_id: str, count: int) -> None:
        with self._lock:
            self._records_written[sink_id] += count

    def write_failure(self, sink_id: str) -> None:
        with self._lock:
            self._write_failures[sink_id] += 1

    def offset_committed(self) -> None:
        with self._lock:
            self._offsets_committed += 1

    def snapshot(self) -> dict:
        """Return a point-in-time copy of all counters."""
        with self._lock:
            return {
                "lines_read": dict(self._lines_read),
                "parse_errors": dict(self._parse_errors),
                "records_written": dict(self._records_written),
                "write_failures": dict(self._write_failures),
                "offsets_committed": self._offsets_committed,
                "uptime_seconds": time.monotonic() - self._start_time,
            }
