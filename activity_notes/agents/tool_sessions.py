"""MCP tool session management.

Two independent MCP servers provide tools to the analysis: one serving
activity data and one rendering charts. Each server runs in a session owned
by a dedicated task, so the stdio transport is entered and exited from the
same task.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Iterator, Mapping
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any

import structlog
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import CallToolResult, TextContent

from activity_notes.config import ToolServerConfig
from activity_notes.errors import ConnectError, NotConnectedError

logger = structlog.get_logger()

TOOL_NAME_SEPARATOR = ":"


def qualify(namespace: str, action: str) -> str:
    """Build a namespaced tool name."""
    return f"{namespace}{TOOL_NAME_SEPARATOR}{action}"


def namespace_of(tool_name: str) -> str:
    """Return the namespace prefix of a namespaced tool name."""
    namespace, sep, _ = tool_name.partition(TOOL_NAME_SEPARATOR)
    return namespace if sep else ""


class ToolCallError(Exception):
    """A tool reported an error instead of a result."""


@dataclass(frozen=True)
class ToolDescriptor:
    """A callable tool exposed by a session."""

    name: str
    description: str
    input_schema: dict[str, Any]
    call: Callable[[dict[str, Any]], Awaitable[Any]] = field(repr=False, compare=False)


class ToolsetHandle(Mapping[str, ToolDescriptor]):
    """Unified view of the tools of every connected session."""

    def __init__(self, toolsets: dict[str, dict[str, ToolDescriptor]]):
        self.toolsets = toolsets
        self._tools: dict[str, ToolDescriptor] = {}
        for tools in toolsets.values():
            self._tools.update(tools)

    def __getitem__(self, name: str) -> ToolDescriptor:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    async def call(self, name: str, args: dict[str, Any]) -> Any:
        """Invoke a tool by its namespaced name."""
        if name not in self._tools:
            raise ToolCallError(f"Unknown tool: {name}")
        return await self._tools[name].call(args)


def payload_from_result(result: CallToolResult) -> Any:
    """Reduce an MCP tool result to a plain payload."""
    if result.isError:
        message = " ".join(
            block.text for block in result.content if isinstance(block, TextContent)
        )
        raise ToolCallError(message or "Tool call failed")

    if result.structuredContent is not None:
        return result.structuredContent

    texts = [block.text for block in result.content if isinstance(block, TextContent)]
    if len(texts) != 1:
        return texts

    try:
        return json.loads(texts[0])
    except json.JSONDecodeError:
        return texts[0]


class ToolSession:
    """A single MCP server session running over stdio."""

    def __init__(self, config: ToolServerConfig):
        self.config = config
        self.name = config.name
        self.namespace = config.namespace
        self._session: ClientSession | None = None
        self._tools: dict[str, ToolDescriptor] = {}
        self._task: asyncio.Task[None] | None = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()

    @property
    def connected(self) -> bool:
        return (
            self._session is not None
            and self._task is not None
            and not self._task.done()
        )

    @property
    def tools(self) -> dict[str, ToolDescriptor]:
        return dict(self._tools)

    async def connect(self, timeout_seconds: float) -> None:
        """Start the server and wait until its tools are listed."""
        if self.connected:
            return

        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"mcp-session-{self.name}")
        ready = asyncio.create_task(self._ready.wait())

        try:
            async with asyncio.timeout(timeout_seconds):
                await asyncio.wait({self._task, ready}, return_when=asyncio.FIRST_COMPLETED)
        except TimeoutError:
            await self._abort()
            raise TimeoutError(f"Session {self.name} did not connect within {timeout_seconds}s")
        except asyncio.CancelledError:
            await self._abort()
            raise
        finally:
            ready.cancel()

        if self._task.done():
            # The session task only finishes early when startup failed.
            exc = self._task.exception()
            self._task = None
            raise exc or RuntimeError(f"Session {self.name} exited during startup")

        logger.info("Tool session connected", session=self.name, tools=len(self._tools))

    async def _run(self) -> None:
        params = StdioServerParameters(
            command=self.config.command,
            args=self.config.args,
            env=self.config.env,
        )
        async with AsyncExitStack() as stack:
            read, write = await stack.enter_async_context(stdio_client(params))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
            listed = await session.list_tools()

            self._session = session
            self._tools = {
                qualify(self.namespace, tool.name): ToolDescriptor(
                    name=qualify(self.namespace, tool.name),
                    description=tool.description or "",
                    input_schema=dict(tool.inputSchema or {}),
                    call=self._caller(tool.name),
                )
                for tool in listed.tools
            }
            self._ready.set()

            try:
                await self._closing.wait()
            finally:
                self._session = None
                self._tools = {}

    def _caller(self, action: str) -> Callable[[dict[str, Any]], Awaitable[Any]]:
        async def call(args: dict[str, Any]) -> Any:
            if self._session is None:
                raise NotConnectedError(f"Session {self.name} is not connected")
            result = await self._session.call_tool(action, args)
            return payload_from_result(result)

        return call

    async def _abort(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._session = None
        self._tools = {}

    async def disconnect(self) -> None:
        """Close the session; safe to call repeatedly."""
        task, self._task = self._task, None
        if task is None:
            return

        self._closing.set()
        try:
            await asyncio.wait_for(task, timeout=10)
        except TimeoutError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        finally:
            self._session = None
            self._tools = {}

        logger.info("Tool session disconnected", session=self.name)


class ToolSessionManager:
    """Own the lifecycle of every tool session."""

    def __init__(self, sessions: list[Any], connect_timeout_seconds: float = 30.0):
        self.sessions = {session.name: session for session in sessions}
        self.connect_timeout_seconds = connect_timeout_seconds
        self._connected = False

    @classmethod
    def from_config(
        cls,
        servers: dict[str, ToolServerConfig],
        connect_timeout_seconds: float = 30.0,
    ) -> "ToolSessionManager":
        return cls(
            [ToolSession(config) for config in servers.values()],
            connect_timeout_seconds=connect_timeout_seconds,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected and all(self.health().values())

    async def connect(self) -> None:
        """Connect every session concurrently.

        Returns only once every attempt has resolved. Raises ConnectError when
        any session failed; sessions that did connect stay up until
        disconnect().
        """
        names = list(self.sessions)
        results = await asyncio.gather(
            *(self.sessions[name].connect(self.connect_timeout_seconds) for name in names),
            return_exceptions=True,
        )

        failed = []
        for name, result in zip(names, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error("Tool session failed to connect", session=name, error=str(result))
                failed.append(name)

        if failed:
            self._connected = False
            raise ConnectError(failed=failed, partial=len(failed) < len(names))

        self._connected = True

    def get_toolsets(self) -> ToolsetHandle:
        """Return the combined toolset of all sessions."""
        if not self.is_connected:
            raise NotConnectedError("Tool sessions are not connected")
        return ToolsetHandle({name: session.tools for name, session in self.sessions.items()})

    def health(self) -> dict[str, bool]:
        """Report whether each session is alive."""
        return {name: session.connected for name, session in self.sessions.items()}

    async def disconnect(self) -> None:
        """Close every session, logging rather than raising close failures."""
        self._connected = False
        for name, session in self.sessions.items():
            try:
                await session.disconnect()
            except Exception as e:
                logger.warning("Tool session close failed", session=name, error=str(e))
