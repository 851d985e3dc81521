"""Tests for normalizer module: merge policy and parse failure handling."""

from datetime import datetime, timezone

import pytest

from lognorm.metrics import PipelineMetrics
from lognorm.models import RawRecord, TransformSpec
from lognorm.normalizer import Normalizer, merge_fields
from lognorm.parsers import ParserRegistry

INGEST = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
AUTH_LINE = "Jan 1 00:00:00 host sshd[123]: Failed password for root from 10.0.0.1 port 22 ssh2"
REMAP_AUTH = TransformSpec(id="remap_auth", inputs=("g_auth",), parser="linux_authorization")


def _raw(text: str, source_id: str = "g_auth", offset: int = 0) -> RawRecord:
    return RawRecord(
        source_id=source_id,
        file_path="/var/log/auth.log",
        offset=offset,
        raw_text=text,
        ingest_time=INGEST,
        next_offset=offset + len(text) + 1,
    )


class TestMergeFields:
    def test_structured_wins(self):
        merged = merge_fields({"a": 1, "b": 2}, {"b": 3, "c": 4})
        assert merged == {"a": 1, "b": 3, "c": 4}

    def test_inputs_untouched(self):
        record = {"a": 1}
        merge_fields(record, {"a": 2})
        assert record == {"a": 1}


class TestNormalizer:
    def test_auth_line_scenario(self):
        record = Normalizer().normalize(_raw(AUTH_LINE), [REMAP_AUTH])
        fields = record.fields
        assert fields["source_id"] == "g_auth"
        assert fields["hostname"] == "host"
        assert fields["appname"] == "sshd"
        assert fields["procid"] == 123
        assert fields["user"] == "root"
        assert fields["source_ip"] == "10.0.0.1"
        assert fields["raw_text"] == AUTH_LINE
        assert record.timestamp.month == 1 and record.timestamp.day == 1
        assert record.parse_error is None

    def test_record_keeps_raw_fields(self):
        raw = _raw(AUTH_LINE, offset=40)
        fields = Normalizer().normalize(raw, [REMAP_AUTH]).fields
        assert fields["file_path"] == "/var/log/auth.log"
        assert fields["offset"] == 40
        assert fields["ingest_time"] == INGEST

    def test_parse_failure_keeps_record(self):
        metrics = PipelineMetrics()
        record = Normalizer(metrics=metrics).normalize(_raw("garbage line"), [REMAP_AUTH])
        assert record.parse_error is not None
        assert "linux_authorization" in record.parse_error
        assert record.fields["parse_error_transform"] == "remap_auth"
        assert record.fields["raw_text"] == "garbage line"
        assert record.timestamp == INGEST
        assert metrics.snapshot()["parse_errors"] == {"remap_auth": 1}

    def test_deeply_nested_json_keeps_record(self):
        remap_app = TransformSpec(id="remap_app", inputs=("g_app",), parser="json")
        hostile = "[" * 200000
        record = Normalizer().normalize(_raw(hostile, source_id="g_app"), [remap_app])
        assert record.parse_error.startswith("json:")
        assert record.fields["parse_error_transform"] == "remap_app"
        assert record.fields["raw_text"] == hostile

    def test_empty_chain_uses_ingest_time(self):
        record = Normalizer().normalize(_raw("anything at all"))
        assert record.timestamp == INGEST
        assert set(record.fields) == {"source_id", "file_path", "offset", "raw_text", "ingest_time", "timestamp"}

    def test_parser_output_overwrites_raw_fields(self):
        spec = TransformSpec(id="as_json", inputs=("g_auth",), parser="json")
        record = Normalizer().normalize(_raw('{"offset": "from-payload", "level": "warn"}'), [spec])
        assert record.fields["offset"] == "from-payload"
        assert record.fields["level"] == "warn"

    def test_chain_merges_in_order(self):
        first = TransformSpec(id="first", inputs=("g_auth",), parser="json")
        second = TransformSpec(id="second", inputs=("first",), parser="json")
        record = Normalizer().normalize(_raw('{"k": 1}'), [first, second])
        assert record.fields["k"] == 1
        assert record.parse_error is None

    def test_chain_stops_at_first_failure(self):
        first = TransformSpec(id="first", inputs=("g_auth",), parser="linux_authorization")
        second = TransformSpec(id="second", inputs=("first",), parser="syslog")
        record = Normalizer().normalize(_raw("garbage"), [first, second])
        assert record.fields["parse_error_transform"] == "first"

    def test_fields_are_read_only(self):
        record = Normalizer().normalize(_raw(AUTH_LINE), [REMAP_AUTH])
        with pytest.raises(TypeError):
            record.fields["user"] = "mallory"

    def test_normalize_source_uses_binding(self):
        registry = ParserRegistry()
        registry.bind("g_auth", "linux_authorization")
        normalizer = Normalizer(registry)
        assert normalizer.normalize_source(_raw(AUTH_LINE)).fields["user"] == "root"
        assert normalizer.normalize_source(_raw("bad")).parse_error is not None

    def test_normalize_source_unbound_passes_through(self):
        record = Normalizer().normalize_source(_raw("plain text", source_id="g_other"))
        assert record.parse_error is None
        assert record.fields["raw_text"] == "plain text"
        assert record.timestamp == INGEST
