"""Data models for the activity notes pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from activity_notes.errors import ErrorKind


class Watermark(BaseModel):
    """Cursor marking the last successfully processed point in time."""

    last_checked_at: datetime
    updated_at: datetime | None = None
    cycles_completed: int = 0
    last_note_path: str | None = None
    last_activity_ids: list[str] = Field(default_factory=list)


# ============================================================================
# Polling
# ============================================================================


class PollOutcome(BaseModel):
    """Successful poll of the activity source."""

    has_new: bool
    activity_ids: list[str] = Field(default_factory=list)
    count: int = 0


class PollFailure(BaseModel):
    """Failed poll of the activity source."""

    error_kind: ErrorKind
    message: str


PollResult = PollOutcome | PollFailure


# ============================================================================
# Analysis stream
# ============================================================================


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolInvocation:
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    tool_name: str
    payload: Any = None


@dataclass(frozen=True)
class StreamError:
    kind: str
    message: str


@dataclass(frozen=True)
class StreamEnd:
    pass


StreamEvent = TextDelta | ToolInvocation | ToolResult | StreamError | StreamEnd


class ChartRef(BaseModel):
    """Reference to a rendered chart."""

    model_config = ConfigDict(frozen=True)

    title: str
    url: str
    kind: str


class AnalysisResult(BaseModel):
    """Terminal artifact of one analysis."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    activity_ids: tuple[str, ...] = ()
    insights_text: str = ""
    metrics_table: str = ""
    charts: tuple[ChartRef, ...] = ()
    partial: bool = False

    @property
    def is_empty(self) -> bool:
        """True when nothing worth writing was collected."""
        return not self.insights_text.strip() and not self.charts


# ============================================================================
# Scheduler
# ============================================================================


class CycleState(str, Enum):
    """States of the pipeline state machine."""

    IDLE = "idle"
    POLLING = "polling"
    ANALYZING = "analyzing"
    WRITING = "writing"
    FAILED = "failed"


class CycleStatus(str, Enum):
    """How a cycle ended."""

    NO_NEW = "no_new"
    WRITTEN = "written"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class CycleOutcome(BaseModel):
    """Record of a single cycle."""

    trigger: str
    status: CycleStatus
    started_at: datetime
    finished_at: datetime | None = None
    error_kind: ErrorKind | None = None
    summary: str = ""
    activity_ids: list[str] = Field(default_factory=list)
    note_path: str | None = None
    partial: bool = False
    watermark_advanced: bool = False

    @property
    def duration_seconds(self) -> float:
        """Calculate cycle duration in seconds."""
        if self.finished_at is None:
            return 0
        return (self.finished_at - self.started_at).total_seconds()


class SchedulerSnapshot(BaseModel):
    """Point-in-time view of the scheduler for status reporting."""

    state: CycleState
    running: bool
    cycle_in_flight: bool
    watermark: Watermark | None = None
    watermark_error: str | None = None
    last_outcome: CycleOutcome | None = None
    next_run_at: datetime | None = None
