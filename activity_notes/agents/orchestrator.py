"""Analysis orchestration.

Drives one streaming, tool-augmented analysis and reduces its event stream
into an AnalysisResult:

- TextDelta payloads are concatenated into the insights text
- ToolResults from the chart namespace become ChartRefs, in arrival order
- the first markdown table in the final text becomes the metrics table
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from activity_notes.agents.analysis_session import AnalysisSession
from activity_notes.agents.tool_sessions import TOOL_NAME_SEPARATOR, ToolsetHandle, namespace_of
from activity_notes.errors import AnalysisTimeoutError, InvalidInputError, UpstreamFailure
from activity_notes.models import (
    AnalysisResult,
    ChartRef,
    StreamEnd,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolInvocation,
    ToolResult,
)

logger = structlog.get_logger()

DEFAULT_CHART_KIND = "chart"
SEPARATOR_CHARS = set("|-: \t")


# ============================================================================
# Metrics table extraction
# ============================================================================


def _is_table_row(line: str) -> bool:
    return line.lstrip().startswith("|")


def _is_separator_row(line: str) -> bool:
    stripped = line.strip()
    return (
        stripped.startswith("|")
        and "-" in stripped
        and set(stripped) <= SEPARATOR_CHARS
    )


def find_metrics_table(text: str) -> tuple[int, int] | None:
    """Locate the first markdown table as a ``(start, end)`` line range."""
    lines = text.splitlines()
    for start in range(len(lines) - 1):
        if not _is_table_row(lines[start]) or not _is_separator_row(lines[start + 1]):
            continue
        end = start + 2
        while end < len(lines) and _is_table_row(lines[end]):
            end += 1
        return start, end
    return None


def extract_metrics_table(text: str) -> str:
    """Return the first markdown table in ``text`` verbatim, or ``""``."""
    span = find_metrics_table(text)
    if span is None:
        return ""
    start, end = span
    return "\n".join(text.splitlines()[start:end])


# ============================================================================
# Chart payloads
# ============================================================================


@dataclass(frozen=True)
class ChartPayload:
    url: str
    kind: str | None = None


@dataclass(frozen=True)
class UnrecognizedPayload:
    raw: Any
    reason: str


def parse_chart_payload(payload: Any) -> ChartPayload | UnrecognizedPayload:
    """Classify a chart tool payload.

    Accepts a mapping with a string ``url`` (optionally ``kind``), or a JSON
    string encoding one. Everything else is unrecognized.
    """
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError:
            return UnrecognizedPayload(payload, "string payload is not JSON")

    if not isinstance(payload, dict):
        return UnrecognizedPayload(payload, f"expected an object, got {type(payload).__name__}")

    url = payload.get("url")
    if not isinstance(url, str) or not url:
        return UnrecognizedPayload(payload, "missing string field 'url'")

    kind = payload.get("kind")
    return ChartPayload(url=url, kind=kind if isinstance(kind, str) and kind else None)


def default_kind(tool_name: str) -> str:
    _, sep, action = tool_name.partition(TOOL_NAME_SEPARATOR)
    return action if sep and action else DEFAULT_CHART_KIND


# ============================================================================
# Stream reduction
# ============================================================================


@dataclass
class StreamReducer:
    """Fold an ordered StreamEvent sequence into an AnalysisResult."""

    chart_namespace: str = "charts"
    text_parts: list[str] = field(default_factory=list)
    charts: list[ChartRef] = field(default_factory=list)
    tool_calls: int = 0
    skipped_payloads: int = 0
    ended: bool = False
    error: StreamError | None = None

    @property
    def saw_text(self) -> bool:
        return bool(self.text_parts)

    def feed(self, event: StreamEvent) -> bool:
        """Consume one event; returns True once the stream is terminated."""
        if self.ended or self.error is not None:
            raise RuntimeError("Stream already terminated")

        if isinstance(event, TextDelta):
            self.text_parts.append(event.text)
        elif isinstance(event, ToolInvocation):
            self.tool_calls += 1
            logger.debug("Tool invoked", tool=event.tool_name)
        elif isinstance(event, ToolResult):
            self._on_tool_result(event)
        elif isinstance(event, StreamError):
            self.error = event
            return True
        elif isinstance(event, StreamEnd):
            self.ended = True
            return True
        else:
            logger.warning("Ignoring unknown stream event", event_type=type(event).__name__)
        return False

    def _on_tool_result(self, event: ToolResult) -> None:
        if namespace_of(event.tool_name) != self.chart_namespace:
            return

        parsed = parse_chart_payload(event.payload)
        if isinstance(parsed, UnrecognizedPayload):
            self.skipped_payloads += 1
            logger.warning(
                "Skipping unrecognized chart payload",
                tool=event.tool_name,
                reason=parsed.reason,
            )
            return

        self.charts.append(
            ChartRef(
                title=event.tool_name,
                url=parsed.url,
                kind=parsed.kind or default_kind(event.tool_name),
            )
        )

    def result(
        self,
        activity_ids: Sequence[str],
        timestamp: datetime,
        partial: bool = False,
    ) -> AnalysisResult:
        text = "".join(self.text_parts)
        return AnalysisResult(
            timestamp=timestamp,
            activity_ids=tuple(activity_ids),
            insights_text=text,
            metrics_table=extract_metrics_table(text),
            charts=tuple(self.charts),
            partial=partial,
        )


# ============================================================================
# Orchestrator
# ============================================================================


class AnalysisOrchestrator:
    """Run an analysis session and reduce its stream."""

    def __init__(
        self,
        session: AnalysisSession,
        chart_namespace: str = "charts",
        clock: Callable[[], datetime] | None = None,
    ):
        self.session = session
        self.chart_namespace = chart_namespace
        self.clock = clock or (lambda: datetime.now(UTC))

    async def analyze(
        self,
        activity_ids: Sequence[str],
        toolsets: ToolsetHandle,
        timeout_seconds: float,
    ) -> AnalysisResult:
        """Analyze the given activities.

        Raises:
            InvalidInputError: activity_ids is empty.
            UpstreamFailure: the stream reported an error or closed early.
            AnalysisTimeoutError: the stream did not finish in time.
        """
        ids = list(activity_ids)
        if not ids:
            raise InvalidInputError("No activity ids to analyze")

        reducer = StreamReducer(chart_namespace=self.chart_namespace)
        log = logger.bind(activities=len(ids))
        log.info("Analysis started")

        try:
            async with asyncio.timeout(timeout_seconds):
                async with aclosing(self.session.stream(ids, toolsets)) as events:
                    async for event in events:
                        if reducer.feed(event):
                            break
        except TimeoutError:
            log.error("Analysis timed out", timeout_seconds=timeout_seconds)
            raise AnalysisTimeoutError(
                f"Analysis did not finish within {timeout_seconds}s",
                partial=reducer.result(ids, self.clock(), partial=True),
            )

        if reducer.error is not None:
            log.error(
                "Analysis stream failed",
                kind=reducer.error.kind,
                error=reducer.error.message,
            )
            raise UpstreamFailure(
                f"{reducer.error.kind}: {reducer.error.message}",
                partial=reducer.result(ids, self.clock(), partial=True),
            )

        if not reducer.ended:
            log.error("Analysis stream closed without an end marker")
            raise UpstreamFailure(
                "Stream closed without an end marker",
                partial=reducer.result(ids, self.clock(), partial=True),
            )

        if not reducer.saw_text:
            log.warning("Analysis produced no text", tool_calls=reducer.tool_calls)

        result = reducer.result(ids, self.clock())
        log.info(
            "Analysis completed",
            chars=len(result.insights_text),
            charts=len(result.charts),
            has_metrics=bool(result.metrics_table),
            skipped_payloads=reducer.skipped_payloads,
        )
        return result
