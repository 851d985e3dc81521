"""Tests for metrics module: pipeline counters and snapshots."""

import threading

from lognorm.metrics import PipelineMetrics


class TestPipelineMetrics:
    def test_empty_snapshot_shape(self):
        snap = PipelineMetrics().snapshot()
        assert set(snap) == {
            "lines_read", "parse_errors", "records_written",
            "write_failures", "offsets_committed", "uptime_seconds",
        }
        assert snap["lines_read"] == {}
        assert snap["offsets_committed"] == 0
        assert snap["uptime_seconds"] >= 0

    def test_counters_keyed_by_id(self):
        metrics = PipelineMetrics()
        metrics.line_read("g_auth")
        metrics.line_read("g_auth")
        metrics.line_read("g_syslog")
        metrics.parse_error("remap_auth")
        metrics.records_written("sink_auth", 5)
        metrics.records_written("sink_auth", 3)
        metrics.write_failure("sink_auth")
        metrics.offset_committed()

        snap = metrics.snapshot()
        assert snap["lines_read"] == {"g_auth": 2, "g_syslog": 1}
        assert snap["parse_errors"] == {"remap_auth": 1}
        assert snap["records_written"] == {"sink_auth": 8}
        assert snap["write_failures"] == {"sink_auth": 1}
        assert snap["offsets_committed"] == 1

    def test_snapshot_is_a_copy(self):
        metrics = PipelineMetrics()
        metrics.line_read("g_auth")
        snap = metrics.snapshot()
        snap["lines_read"]["g_auth"] = 100
        metrics.line_read("g_auth")
        assert metrics.snapshot()["lines_read"] == {"g_auth": 2}
        assert snap["lines_read"] == {"g_auth": 100}

    def test_concurrent_updates(self):
        metrics = PipelineMetrics()

        def work():
            for _ in range(1000):
                metrics.line_read("g_auth")
                metrics.offset_committed()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snap = metrics.snapshot()
        assert snap["lines_read"] == {"g_auth": 8000}
        assert snap["offsets_committed"] == 8000
