"""Tests for sink module: JSON-lines encoding, batching and retries."""

import errno
import json
import os
import queue
import threading
import time
from datetime import datetime, timedelta, timezone

from lognorm.metrics import PipelineMetrics
from lognorm.models import NormalizedRecord, RawRecord, SinkTarget
from lognorm.sink import SinkWriter, _json_default, encode_record

INGEST = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _record(n: int, **extra) -> NormalizedRecord:
    raw = RawRecord("g_auth", "/var/log/auth.log", n * 10, f"line {n}", INGEST, next_offset=(n + 1) * 10)
    fields = raw.base_fields()
    fields["timestamp"] = INGEST
    fields.update(extra)
    return NormalizedRecord(raw=raw, fields=fields)


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class _Acks:
    def __init__(self):
        self.items: list = []
        self._lock = threading.Lock()

    def __call__(self, deliveries):
        with self._lock:
            self.items.extend(deliveries)

    def __len__(self):
        with self._lock:
            return len(self.items)


class TestEncoding:
    def test_utc_timestamp_uses_z_suffix(self):
        assert _json_default(datetime(2024, 1, 1, tzinfo=timezone.utc)) == "2024-01-01T00:00:00Z"

    def test_offset_timestamp_converted_to_utc(self):
        ts = datetime(2024, 1, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        assert _json_default(ts) == "2024-01-01T00:00:00Z"

    def test_naive_timestamp_treated_as_utc(self):
        assert _json_default(datetime(2024, 1, 1, 5, 30)) == "2024-01-01T05:30:00Z"

    def test_unknown_type_falls_back_to_str(self):
        assert _json_default(object) == str(object)

    def test_encode_record_is_one_line(self):
        line = encode_record(_record(0, message="multi\nline", user="ünïcode"))
        assert line.endswith("\n")
        assert line.count("\n") == 1
        data = json.loads(line)
        assert data["timestamp"] == "2024-06-01T12:00:00Z"
        assert data["message"] == "multi\nline"
        assert "ünïcode" in line


class TestSinkWriter:
    def _writer(self, tmp_path, path, acks, stop=None, **kwargs):
        q: queue.Queue = queue.Queue()
        target = SinkTarget("sink_auth", ("remap_auth",), str(path))
        options = {"flush_interval": 0.02, "retry_base_delay": 0.01, "retry_max_delay": 0.02}
        options.update(kwargs)
        writer = SinkWriter(target, q, acks, stop or threading.Event(), **options)
        return writer, q

    def test_writes_json_lines_and_acks(self, tmp_path):
        acks = _Acks()
        out = tmp_path / "out" / "auth.log"
        metrics = PipelineMetrics()
        writer, q = self._writer(tmp_path, out, acks, metrics=metrics)
        for n in range(5):
            q.put((_record(n), f"delivery-{n}"))
        writer.start()
        writer.request_drain()
        writer.join(timeout=5)

        lines = out.read_text().splitlines()
        assert [json.loads(line)["raw_text"] for line in lines] == [f"line {n}" for n in range(5)]
        assert acks.items == [f"delivery-{n}" for n in range(5)]
        assert writer.written == 5
        assert metrics.snapshot()["records_written"] == {"sink_auth": 5}

    def test_file_uri_destination(self, tmp_path):
        acks = _Acks()
        out = tmp_path / "uri.log"
        writer, q = self._writer(tmp_path, f"file://{out}", acks)
        q.put((_record(0), "d0"))
        writer.start()
        writer.request_drain()
        writer.join(timeout=5)
        assert out.exists()

    def test_batches_respect_batch_size(self, tmp_path):
        batches = []
        writer, q = self._writer(tmp_path, tmp_path / "b.log", lambda d: batches.append(list(d)), batch_size=2)
        for n in range(5):
            q.put((_record(n), n))
        writer.start()
        writer.request_drain()
        writer.join(timeout=5)
        assert [len(b) for b in batches] == [2, 2, 1]

    def test_appends_to_existing_file(self, tmp_path):
        out = tmp_path / "existing.log"
        out.write_text('{"old":true}\n')
        writer, q = self._writer(tmp_path, out, _Acks())
        q.put((_record(0), "d0"))
        writer.start()
        writer.request_drain()
        writer.join(timeout=5)
        lines = out.read_text().splitlines()
        assert lines[0] == '{"old":true}'
        assert len(lines) == 2

    def test_retries_until_destination_recovers(self, tmp_path):
        blocker = tmp_path / "blocked"
        blocker.write_text("not a directory")
        acks = _Acks()
        failures, recoveries = [], []
        writer, q = self._writer(
            tmp_path, blocker / "auth.log", acks, max_retries=1,
            on_failure=failures.append, on_recovery=recoveries.append,
        )
        q.put((_record(0), "d0"))
        writer.start()

        assert _wait_for(lambda: writer.failed)
        assert failures[0].sink_id == "sink_auth"
        assert len(acks) == 0

        blocker.unlink()
        assert _wait_for(lambda: len(acks) == 1)
        assert recoveries == ["sink_auth"]
        assert not writer.failed
        assert json.loads((blocker / "auth.log").read_text())["raw_text"] == "line 0"

        writer.request_drain()
        writer.join(timeout=5)

    def test_hard_stop_abandons_failing_batch(self, tmp_path):
        blocker = tmp_path / "blocked"
        blocker.write_text("x")
        stop = threading.Event()
        acks = _Acks()
        writer, q = self._writer(tmp_path, blocker / "auth.log", acks, stop=stop, max_retries=0)
        q.put((_record(0), "d0"))
        writer.start()
        assert _wait_for(lambda: writer.failed)
        stop.set()
        writer.join(timeout=5)
        assert not writer.is_alive()
        assert len(acks) == 0

    def test_backoff_is_capped(self, tmp_path):
        writer, _ = self._writer(tmp_path, tmp_path / "x.log", _Acks(),
                                 retry_base_delay=0.5, retry_max_delay=4.0)
        assert 0.4 <= writer._backoff_delay(1) <= 0.6
        assert 3.2 <= writer._backoff_delay(10) <= 4.8
        assert writer._backoff_delay(10_000) <= 4.8

    def test_failed_append_leaves_no_partial_batch(self, tmp_path, monkeypatch):
        out = tmp_path / "auth.log"
        out.write_text('{"old":true}\n')
        real_fsync = os.fsync
        calls = []

        def flaky_fsync(fd):
            calls.append(fd)
            if len(calls) == 1:
                raise OSError(errno.ENOSPC, "No space left on device")
            real_fsync(fd)

        monkeypatch.setattr("lognorm.sink.os.fsync", flaky_fsync)
        acks = _Acks()
        metrics = PipelineMetrics()
        writer, q = self._writer(tmp_path, out, acks, metrics=metrics)
        for n in range(3):
            q.put((_record(n), f"d{n}"))
        writer.start()
        assert _wait_for(lambda: len(acks) == 3)
        writer.request_drain()
        writer.join(timeout=5)

        lines = out.read_text().splitlines()
        assert lines[0] == '{"old":true}'
        assert [json.loads(line)["raw_text"] for line in lines[1:]] == ["line 0", "line 1", "line 2"]
        assert metrics.snapshot()["write_failures"] == {"sink_auth": 1}

    def test_thread_lifecycle_after_exit(self, tmp_path):
        writer, _ = self._writer(tmp_path, tmp_path / "x.log", _Acks())
        assert not isinstance(getattr(writer, "_stop", None), threading.Event)
        writer.start()
        writer.request_drain()
        writer.join(timeout=5)
        writer.join(timeout=1)
        assert not writer.is_alive()
        assert not writer.is_alive()
