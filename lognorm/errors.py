"""Error taxonomy for the normalization pipeline."""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(PipelineError):
    """Invalid topology or settings. Fatal at load time."""


class ParseError(PipelineError):
    """A parser could not extract fields from a line.

    Recoverable: the record is forwarded with a ``parse_error`` marker.
    """

    def __init__(self, source_id: str, raw_text: str, reason: str):
        super().__init__(f"{source_id}: {reason}")
        self.source_id = source_id
        self.raw_text = raw_text
        self.reason = reason


class TransientIOError(PipelineError):
    """A sink write failed but may succeed on retry."""


class PersistentIOError(PipelineError):
    """A sink exhausted its retry budget. The sink's branch is degraded."""

    def __init__(self, sink_id: str, reason: str):
        super().__init__(f"sink {sink_id}: {reason}")
        self.sink_id = sink_id
        self.reason = reason


class FileRotationAnomaly(PipelineError):
    """A watched file was truncated or replaced under the tailer."""

    def __init__(self, source_id: str, file_path: str, reason: str):
        super().__init__(f"{source_id} {file_path}: {reason}")
        self.source_id = source_id
        self.file_path = file_path
        self.reason = reason
