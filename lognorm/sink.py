"""Sink writer: batched, durable JSON-lines append with retry and backoff."""

import json
import logging
import os
import queue
import random
import threading
from datetime import datetime, timezone
from typing import Any, Callable

from lognorm.errors import PersistentIOError, TransientIOError
from lognorm.metrics import PipelineMetrics
from lognorm.models import NormalizedRecord, SinkTarget

logger = logging.getLogger(__name__)


def _json_default(value: Any):
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def encode_record(record: NormalizedRecord) -> str:
    """Serialize a record to one compact JSON line (with trailing newline)."""
    return json.dumps(record.to_dict(), default=_json_default, ensure_ascii=False,
                      separators=(",", ":")) + "\n"


class SinkWriter(threading.Thread):
    """Consumes (record, delivery) pairs and appends them to a file.

    Acknowledges line by line after the whole batch is flushed and fsynced.
    A failing destination is retried forever: after ``max_retries`` attempts
    the sink reports itself failed (``on_failure``) and keeps retrying at the
    capped delay, reporting ``on_recovery`` once a write succeeds again.
    Nothing is dropped unless the hard-stop event is set.
    """

    def __init__(
        self,
        target: SinkTarget,
        in_queue: queue.Queue,
        on_ack: Callable[[list], Any],
        stop_event: threading.Event,
        batch_size: int = 100,
        flush_interval: float = 0.5,
        max_retries: int = 5,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 30.0,
        on_failure: Callable[[PersistentIOError], Any] | None = None,
        on_recovery: Callable[[str], Any] | None = None,
        metrics: PipelineMetrics | None = None,
    ):
        super().__init__(daemon=True, name=f"sink-{target.id}")
        self.target = target
        self._queue = in_queue
        self._on_ack = on_ack
        self._stop_event = stop_event
        self._draining = threading.Event()
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._on_failure = on_failure
        self._on_recovery = on_recovery
        self._metrics = metrics
        self._failed = False
        self._written = 0

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def written(self) -> int:
        return self._written

    def request_drain(self):
        """Finish what is queued, then exit."""
        self._draining.set()

    def run(self):
        while not self._stop_event.is_set():
            batch = self._collect()
            if not batch:
                if self._draining.is_set():
                    break
                continue
            if not self._write_with_retry([encode_record(record) for record, _ in batch]):
                break
            self._written += len(batch)
            if self._metrics:
                self._metrics.records_written(self.target.id, len(batch))
            self._on_ack([delivery for _, delivery in batch])
        logger.debug("Sink writer %s exiting (%d records written)", self.target.id, self._written)

    def _collect(self) -> list:
        try:
            first = self._queue.get(timeout=self._flush_interval)
        except queue.Empty:
            return []
        batch = [first]
        while len(batch) < self._batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return batch

    def _append(self, lines: list[str]):
        path = self.target.path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        size = os.path.getsize(path) if os.path.exists(path) else 0
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write("".join(lines))
                f.flush()
                os.fsync(f.fileno())
        except OSError:
            # cut any partial batch so the retry starts on a line boundary
            try:
                os.truncate(path, size)
            except OSError as e:
                logger.warning("Rollback failed sink=%s file=%s reason=%s", self.target.id, path, e)
            raise

    def _write_with_retry(self, lines: list[str]) -> bool:
        """Append ``lines``. Returns False only if a hard stop interrupted the retries."""
        attempt = 0
        while not self._stop_event.is_set():
            try:
                self._append(lines)
            except OSError as exc:
                attempt += 1
                err = TransientIOError(f"sink {self.target.id}: {exc}")
                if self._metrics:
                    self._metrics.write_failure(self.target.id)
                if attempt > self._max_retries and not self._failed:
                    self._failed = True
                    failure = PersistentIOError(self.target.id, str(exc))
                    logger.error("Sink failed sink=%s file=%s reason=%s attempts=%d",
                                 self.target.id, self.target.path, failure.reason, attempt)
                    if self._on_failure:
                        self._on_failure(failure)
                else:
                    logger.warning("Write failed (attempt %d/%d): %s",
                                   attempt, self._max_retries + 1, err)
                self._stop_event.wait(self._backoff_delay(attempt))
                continue

            if self._failed:
                self._failed = False
                logger.info("Sink recovered sink=%s file=%s", self.target.id, self.target.path)
                if self._on_recovery:
                    self._on_recovery(self.target.id)
            return True
        return False

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter, capped at ``retry_max_delay``."""
        base = self._retry_base_delay * (2 ** min(attempt - 1, 32))
        capped = min(base, self._retry_max_delay)
        return capped * random.uniform(0.8, 1.2)
