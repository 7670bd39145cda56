"""Tool sessions and streaming analysis of activities."""

from activity_notes.agents.analysis_session import AnalysisSession, OpenAIAnalysisSession
from activity_notes.agents.orchestrator import (
    AnalysisOrchestrator,
    ChartPayload,
    StreamReducer,
    UnrecognizedPayload,
    extract_metrics_table,
    parse_chart_payload,
)
from activity_notes.agents.tool_sessions import (
    ToolCallError,
    ToolDescriptor,
    ToolSession,
    ToolSessionManager,
    ToolsetHandle,
)

__all__ = [
    # Analysis
    "AnalysisOrchestrator",
    "AnalysisSession",
    "ChartPayload",
    "OpenAIAnalysisSession",
    "StreamReducer",
    "UnrecognizedPayload",
    "extract_metrics_table",
    "parse_chart_payload",
    # Tool sessions
    "ToolCallError",
    "ToolDescriptor",
    "ToolSession",
    "ToolSessionManager",
    "ToolsetHandle",
]
