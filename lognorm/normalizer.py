"""Normalizer: turns a RawRecord into a NormalizedRecord.

Merge policy: fields produced by a parser overwrite same-named fields already
on the record (raw fields or fields from an earlier transform in the chain).
A failed parse never drops the record: it is forwarded with ``parse_error``
set and ``raw_text`` untouched. A record without a parsed ``timestamp`` gets
its ``ingest_time``.
"""

import logging
from typing import Any, Iterable, Mapping

from lognorm.errors import ParseError
from lognorm.metrics import PipelineMetrics
from lognorm.models import NormalizedRecord, RawRecord, TransformSpec
from lognorm.parsers import ParserRegistry

logger = logging.getLogger(__name__)


def merge_fields(record: Mapping[str, Any], structured: Mapping[str, Any]) -> dict[str, Any]:
    """Union of two mappings; ``structured`` wins on key collision."""
    merged = dict(record)
    merged.update(structured)
    return merged


class Normalizer:
    def __init__(self, registry: ParserRegistry | None = None, metrics: PipelineMetrics | None = None):
        self._registry = registry or ParserRegistry()
        self._metrics = metrics

    def normalize(self, raw: RawRecord, chain: Iterable[TransformSpec] = ()) -> NormalizedRecord:
        fields = raw.base_fields()
        for transform in chain:
            try:
                structured = self._registry.parse_with(
                    transform.parser, raw.raw_text, transform.hint, source_id=raw.source_id,
                )
            except ParseError as e:
                logger.warning(
                    "Parse failed source=%s file=%s offset=%d transform=%s reason=%s",
                    raw.source_id, raw.file_path, raw.offset, transform.id, e.reason,
                )
                if self._metrics:
                    self._metrics.parse_error(transform.id)
                fields["parse_error"] = e.reason
                fields["parse_error_transform"] = transform.id
                break
            fields = merge_fields(fields, structured)

        if fields.get("timestamp") is None:
            fields["timestamp"] = raw.ingest_time
        return NormalizedRecord(raw=raw, fields=fields)

    def normalize_source(self, raw: RawRecord) -> NormalizedRecord:
        """Normalize with the parser bound to the record's source id in the registry."""
        fields = raw.base_fields()
        if self._registry.is_bound(raw.source_id):
            try:
                fields = merge_fields(fields, self._registry.parse(raw.source_id, raw.raw_text))
            except ParseError as e:
                logger.warning(
                    "Parse failed source=%s file=%s offset=%d reason=%s",
                    raw.source_id, raw.file_path, raw.offset, e.reason,
                )
                if self._metrics:
                    self._metrics.parse_error(raw.source_id)
                fields["parse_error"] = e.reason
        if fields.get("timestamp") is None:
            fields["timestamp"] = raw.ingest_time
        return NormalizedRecord(raw=raw, fields=fields)
