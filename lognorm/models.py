"""Pipeline data model: topology nodes and the records flowing between stages."""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

DEFAULT_EXCLUDES = ("*.gz",)


@dataclass(frozen=True)
class SourceSpec:
    id: str
    include_patterns: tuple[str, ...]
    kind: str = "file"
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDES
    read_from: str | None = None   # "end", "beginning", or None for the global default


@dataclass(frozen=True)
class TransformSpec:
    id: str
    inputs: tuple[str, ...]
    parser: str
    hint: str | None = None        # format hint, e.g. "combined"


@dataclass(frozen=True)
class SinkTarget:
    id: str
    inputs: tuple[str, ...]
    destination_uri: str
    encoding: str = "json"

    @property
    def path(self) -> str:
        if self.destination_uri.startswith("file://"):
            return self.destination_uri[len("file://"):]
        return self.destination_uri


@dataclass(frozen=True)
class RawRecord:
    source_id: str
    file_path: str
    offset: int            # byte position where the line starts
    raw_text: str
    ingest_time: datetime
    next_offset: int = 0   # byte position just past the line terminator
    inode: int = 0
    epoch: int = 0

    def base_fields(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "file_path": self.file_path,
            "offset": self.offset,
            "raw_text": self.raw_text,
            "ingest_time": self.ingest_time,
        }


@dataclass(frozen=True)
class NormalizedRecord:
    raw: RawRecord
    fields: Mapping[str, Any]

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @property
    def timestamp(self) -> datetime:
        return self.fields["timestamp"]

    @property
    def parse_error(self) -> str | None:
        return self.fields.get("parse_error")

    def to_dict(self) -> dict[str, Any]:
        return dict(self.fields)


@dataclass(frozen=True)
class Offset:
    source_id: str
    file_path: str
    byte_position: int
    inode: int = 0
    epoch: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_id, self.file_path)


@dataclass(frozen=True)
class Route:
    """A transform chain leaving a source and the sinks it feeds."""
    chain: tuple[TransformSpec, ...]
    sink_ids: tuple[str, ...] = field(default_factory=tuple)
