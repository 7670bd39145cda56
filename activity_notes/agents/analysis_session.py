"""Streaming, tool-augmented analysis session backed by OpenAI.

The session turns one analysis request into an ordered stream of events:
text deltas as the model writes, a ToolInvocation/ToolResult pair for every
tool the model calls, and finally StreamEnd (or StreamError).
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog
from mcp.shared.exceptions import McpError
from openai import APIError, AsyncOpenAI

from activity_notes.agents.tool_sessions import TOOL_NAME_SEPARATOR, ToolCallError, ToolsetHandle
from activity_notes.models import (
    StreamEnd,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolInvocation,
    ToolResult,
)

logger = structlog.get_logger()

# OpenAI function names may not contain ":".
FUNCTION_NAME_SEPARATOR = "__"

DEFAULT_SYSTEM_PROMPT = (
    "You are an endurance coach reviewing newly recorded training activities. "
    "Use the activity tools to inspect each activity and the chart tools to "
    "visualise what matters. Reply in markdown and include one markdown table "
    "of key metrics."
)


class AnalysisSession(Protocol):
    """Anything that can stream the analysis of a set of activities."""

    def stream(
        self,
        activity_ids: Sequence[str],
        toolsets: ToolsetHandle,
    ) -> AsyncIterator[StreamEvent]: ...


def to_function_name(tool_name: str) -> str:
    return tool_name.replace(TOOL_NAME_SEPARATOR, FUNCTION_NAME_SEPARATOR, 1)


def build_function_specs(toolsets: ToolsetHandle) -> tuple[list[dict[str, Any]], dict[str, str]]:
    """Describe the toolset as OpenAI function tools.

    Returns the specs and a map from function name back to tool name.
    """
    specs = []
    names = {}
    for tool_name, tool in toolsets.items():
        function_name = to_function_name(tool_name)
        names[function_name] = tool_name
        specs.append(
            {
                "type": "function",
                "function": {
                    "name": function_name,
                    "description": tool.description,
                    "parameters": tool.input_schema or {"type": "object", "properties": {}},
                },
            }
        )
    return specs, names


@dataclass
class _PendingCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class _Turn:
    text: list[str] = field(default_factory=list)
    calls: dict[int, _PendingCall] = field(default_factory=dict)


class OpenAIAnalysisSession:
    """Multi-turn chat completion loop that executes tool calls."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        max_tool_rounds: int = 8,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        client: AsyncOpenAI | None = None,
    ):
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.max_tool_rounds = max_tool_rounds
        self.system_prompt = system_prompt

    def _initial_messages(self, activity_ids: Sequence[str]) -> list[dict[str, Any]]:
        listing = ", ".join(activity_ids)
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": f"Analyze these new activities: {listing}"},
        ]

    async def stream(
        self,
        activity_ids: Sequence[str],
        toolsets: ToolsetHandle,
    ) -> AsyncIterator[StreamEvent]:
        messages = self._initial_messages(activity_ids)
        specs, names = build_function_specs(toolsets)

        for round_number in range(self.max_tool_rounds + 1):
            turn = _Turn()
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    tools=specs or None,
                    stream=True,
                )
                async for chunk in response:
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta
                    if delta.content:
                        turn.text.append(delta.content)
                        yield TextDelta(delta.content)
                    for call_delta in delta.tool_calls or []:
                        pending = turn.calls.setdefault(call_delta.index, _PendingCall())
                        if call_delta.id:
                            pending.id = call_delta.id
                        if call_delta.function is not None:
                            pending.name += call_delta.function.name or ""
                            pending.arguments += call_delta.function.arguments or ""
            except APIError as e:
                logger.error("Analysis stream failed", error=str(e), round=round_number)
                yield StreamError(kind="api_error", message=str(e))
                return

            if not turn.calls:
                yield StreamEnd()
                return

            calls = [turn.calls[index] for index in sorted(turn.calls)]
            messages.append(
                {
                    "role": "assistant",
                    "content": "".join(turn.text) or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.arguments},
                        }
                        for call in calls
                    ],
                }
            )

            for call in calls:
                tool_name = names.get(call.name, call.name)
                args = _parse_arguments(call.arguments)
                yield ToolInvocation(tool_name=tool_name, args=args)

                payload = await self._call_tool(toolsets, tool_name, args)
                yield ToolResult(tool_name=tool_name, payload=payload)

                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(payload, default=str),
                    }
                )

        yield StreamError(
            kind="tool_rounds_exceeded",
            message=f"Model kept calling tools after {self.max_tool_rounds} rounds",
        )

    async def _call_tool(self, toolsets: ToolsetHandle, tool_name: str, args: dict[str, Any]) -> Any:
        try:
            return await toolsets.call(tool_name, args)
        except (ToolCallError, McpError) as e:
            logger.warning("Tool call failed", tool=tool_name, error=str(e))
            return {"error": str(e)}
        except Exception as e:
            # Dead sessions and broken transports; the model sees the error
            # and the text collected so far is kept.
            logger.exception("Tool call raised", tool=tool_name)
            return {"error": f"{type(e).__name__}: {e}"}


def _parse_arguments(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool arguments are not valid JSON", arguments=raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}
