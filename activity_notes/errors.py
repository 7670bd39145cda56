"""Error taxonomy for the activity notes pipeline."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from activity_notes.models import AnalysisResult


class ErrorKind(str, Enum):
    """Kinds of failure a cycle can end in."""

    CONFIG_CORRUPT = "config_corrupt"
    TIMEOUT = "timeout"
    PROTOCOL_MISMATCH = "protocol_mismatch"
    ADAPTER_FAILURE = "adapter_failure"
    CONNECT_PARTIAL = "connect_partial"
    CONNECT_FULL = "connect_full"
    NOT_CONNECTED = "not_connected"
    INVALID_INPUT = "invalid_input"
    UPSTREAM_FAILURE = "upstream_failure"
    WRITE_ERROR = "write_error"
    UNEXPECTED = "unexpected"


# One-line summaries shown to the user; raw messages go to the diagnostic log.
SUMMARIES: dict[ErrorKind, str] = {
    ErrorKind.CONFIG_CORRUPT: "Stored watermark is unreadable; using a safe default.",
    ErrorKind.TIMEOUT: "A pipeline step timed out; will retry next cycle.",
    ErrorKind.PROTOCOL_MISMATCH: "Activity source returned an unexpected response.",
    ErrorKind.ADAPTER_FAILURE: "Activity source reported an error.",
    ErrorKind.CONNECT_PARTIAL: "Only some tool sessions could be connected.",
    ErrorKind.CONNECT_FULL: "No tool session could be connected.",
    ErrorKind.NOT_CONNECTED: "Tool sessions are not connected.",
    ErrorKind.INVALID_INPUT: "Analysis was requested without any activities.",
    ErrorKind.UPSTREAM_FAILURE: "The analysis stream failed before completing.",
    ErrorKind.WRITE_ERROR: "Could not write the daily note.",
    ErrorKind.UNEXPECTED: "Cycle failed with an unexpected error.",
}


def summarize(kind: ErrorKind) -> str:
    """Human-readable one-liner for a failure kind."""
    return SUMMARIES.get(kind, SUMMARIES[ErrorKind.UNEXPECTED])


class PipelineError(Exception):
    """Base class for pipeline failures."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    @property
    def summary(self) -> str:
        return summarize(self.kind)


class ConfigCorruptError(PipelineError):
    """Persisted watermark could not be read or parsed."""

    kind = ErrorKind.CONFIG_CORRUPT


class WatermarkWriteError(PipelineError):
    """Watermark could not be persisted."""

    kind = ErrorKind.WRITE_ERROR


class ConnectError(PipelineError):
    """One or more tool sessions failed to connect."""

    def __init__(self, failed: list[str], partial: bool, message: str = ""):
        self.failed = failed
        self.partial = partial
        super().__init__(message or f"Failed to connect: {', '.join(failed)}")

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return ErrorKind.CONNECT_PARTIAL if self.partial else ErrorKind.CONNECT_FULL


class NotConnectedError(PipelineError):
    """Toolsets were requested before a successful connect."""

    kind = ErrorKind.NOT_CONNECTED


class InvalidInputError(PipelineError):
    """Analysis input was rejected before any I/O."""

    kind = ErrorKind.INVALID_INPUT


class UpstreamFailure(PipelineError):
    """The analysis stream failed; carries what was collected so far."""

    kind = ErrorKind.UPSTREAM_FAILURE

    def __init__(self, message: str, partial: AnalysisResult):
        self.partial = partial
        super().__init__(message)


class AnalysisTimeoutError(PipelineError):
    """The analysis did not finish within its timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, partial: AnalysisResult):
        self.partial = partial
        super().__init__(message)


class WriteError(PipelineError):
    """The daily note could not be created or appended."""

    kind = ErrorKind.WRITE_ERROR
