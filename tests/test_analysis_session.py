"""Tests for the OpenAI-backed analysis session."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import APIError

from activity_notes.agents.analysis_session import (
    OpenAIAnalysisSession,
    build_function_specs,
    to_function_name,
)
from activity_notes.agents.tool_sessions import ToolCallError, ToolDescriptor, ToolsetHandle
from activity_notes.errors import NotConnectedError
from activity_notes.models import StreamEnd, StreamError, TextDelta, ToolInvocation, ToolResult


def text_chunk(content: str):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=None))])


def call_chunk(index: int, call_id=None, name=None, arguments=None):
    call = SimpleNamespace(
        index=index,
        id=call_id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None, tool_calls=[call]))])


async def chunk_stream(chunks):
    for chunk in chunks:
        yield chunk


def make_client(*rounds):
    """Client whose completions.create streams one chunk list per call."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=[chunk_stream(chunks) for chunks in rounds])
    return client


def make_toolsets(handler=None) -> ToolsetHandle:
    async def call(args):
        if handler is not None:
            return handler(args)
        return {"title": "Pace", "url": "http://x/1.png"}

    return ToolsetHandle(
        {
            "chart-generation": {
                "charts:line": ToolDescriptor(
                    name="charts:line",
                    description="Render a line chart",
                    input_schema={"type": "object", "properties": {"data": {"type": "array"}}},
                    call=call,
                )
            }
        }
    )


async def collect(session, toolsets, ids=("100",)):
    return [event async for event in session.stream(list(ids), toolsets)]


class TestFunctionSpecs:
    """Tests for exposing tools as OpenAI functions."""

    def test_function_name(self) -> None:
        assert to_function_name("charts:line") == "charts__line"

    def test_build_specs(self) -> None:
        specs, names = build_function_specs(make_toolsets())

        assert names == {"charts__line": "charts:line"}
        assert specs[0]["function"]["name"] == "charts__line"
        assert specs[0]["function"]["description"] == "Render a line chart"
        assert specs[0]["function"]["parameters"]["type"] == "object"


class TestOpenAIAnalysisSession:
    """Tests for OpenAIAnalysisSession.stream."""

    @pytest.mark.asyncio
    async def test_text_only_stream(self) -> None:
        client = make_client([text_chunk("Great "), text_chunk("pace today.")])
        session = OpenAIAnalysisSession(client=client)

        events = await collect(session, make_toolsets(), ids=("100", "101"))

        assert events == [TextDelta("Great "), TextDelta("pace today."), StreamEnd()]
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert "100, 101" in kwargs["messages"][-1]["content"]

    @pytest.mark.asyncio
    async def test_tool_round(self) -> None:
        client = make_client(
            [
                text_chunk("Let me chart it. "),
                call_chunk(0, call_id="call_1", name="charts__line", arguments='{"data"'),
                call_chunk(0, arguments=": [1, 2]}"),
            ],
            [text_chunk("Done.")],
        )
        session = OpenAIAnalysisSession(client=client)

        events = await collect(session, make_toolsets())

        assert events == [
            TextDelta("Let me chart it. "),
            ToolInvocation(tool_name="charts:line", args={"data": [1, 2]}),
            ToolResult(tool_name="charts:line", payload={"title": "Pace", "url": "http://x/1.png"}),
            TextDelta("Done."),
            StreamEnd(),
        ]
        second_messages = client.chat.completions.create.call_args_list[1].kwargs["messages"]
        assert second_messages[-2]["tool_calls"][0]["function"]["name"] == "charts__line"
        assert second_messages[-1]["role"] == "tool"
        assert second_messages[-1]["tool_call_id"] == "call_1"

    @pytest.mark.asyncio
    async def test_tool_error_is_returned_to_model(self) -> None:
        def failing(args):
            raise ToolCallError("renderer crashed")

        client = make_client(
            [call_chunk(0, call_id="call_1", name="charts__line", arguments="{}")],
            [text_chunk("No chart, sorry.")],
        )
        session = OpenAIAnalysisSession(client=client)

        events = await collect(session, make_toolsets(failing))

        assert ToolResult(tool_name="charts:line", payload={"error": "renderer crashed"}) in events
        assert events[-1] == StreamEnd()

    @pytest.mark.asyncio
    async def test_api_error_becomes_stream_error(self) -> None:
        client = MagicMock()
        client.chat.completions.create = AsyncMock(
            side_effect=APIError("boom", httpx.Request("POST", "https://api.openai.com"), body=None)
        )
        session = OpenAIAnalysisSession(client=client)

        events = await collect(session, make_toolsets())

        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        assert events[0].kind == "api_error"

    @pytest.mark.asyncio
    async def test_tool_rounds_exceeded(self) -> None:
        rounds = [[call_chunk(0, call_id=f"call_{i}", name="charts__line", arguments="{}")] for i in range(2)]
        session = OpenAIAnalysisSession(client=make_client(*rounds), max_tool_rounds=1)

        events = await collect(session, make_toolsets())

        assert isinstance(events[-1], StreamError)
        assert events[-1].kind == "tool_rounds_exceeded"
        assert sum(isinstance(e, ToolInvocation) for e in events) == 2

    @pytest.mark.asyncio
    async def test_invalid_arguments_become_empty(self) -> None:
        client = make_client(
            [call_chunk(0, call_id="call_1", name="charts__line", arguments="{not json")],
            [],
        )
        session = OpenAIAnalysisSession(client=client)

        events = await collect(session, make_toolsets())

        assert events[0] == ToolInvocation(tool_name="charts:line", args={})
        assert events[-1] == StreamEnd()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [NotConnectedError("Tool sessions are not connected"), OSError("broken pipe")],
    )
    async def test_dead_session_does_not_escape_stream(self, error) -> None:
        def failing(args):
            raise error

        client = make_client(
            [
                text_chunk("Great pace today."),
                call_chunk(0, call_id="call_1", name="charts__line", arguments="{}"),
            ],
            [text_chunk(" Chart unavailable.")],
        )
        session = OpenAIAnalysisSession(client=client)

        events = await collect(session, make_toolsets(failing))

        assert events[0] == TextDelta("Great pace today.")
        results = [e for e in events if isinstance(e, ToolResult)]
        assert results[0].payload["error"].startswith(type(error).__name__)
        assert events[-1] == StreamEnd()
