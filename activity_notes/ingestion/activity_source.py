"""Activity source adapters.

An activity source answers one question: which activities appeared between
``since`` and ``now``? The answer is a JSON document:

    {"has_new": true, "activity_ids": ["123", "124"], "count": 2}

or, on failure, ``{"error": "..."}`` together with a failed status.
"""

from __future__ import annotations

import asyncio
import json
import shlex
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class ActivityQuery:
    """Request sent to an activity source."""

    since: datetime
    now: datetime
    limit: int

    def to_json(self) -> str:
        return json.dumps(
            {
                "since": self.since.isoformat(),
                "now": self.now.isoformat(),
                "limit": self.limit,
            }
        )


@dataclass(frozen=True)
class AdapterResponse:
    """Raw response of an activity source."""

    ok: bool
    body: str
    stderr: str = ""


class ActivitySource(Protocol):
    """Anything that can answer an ActivityQuery."""

    async def fetch(self, query: ActivityQuery) -> AdapterResponse: ...


class CommandActivitySource:
    """Run an external command that implements the adapter contract.

    The query is passed both as ``--since/--now/--limit`` arguments and as a
    JSON document on stdin. Exit status 0 means success.
    """

    def __init__(self, command: str | list[str]):
        if isinstance(command, str):
            command = shlex.split(command)
        if not command:
            raise ValueError("Adapter command is empty")
        self.command = list(command)

    async def fetch(self, query: ActivityQuery) -> AdapterResponse:
        argv = [
            *self.command,
            "--since",
            query.since.isoformat(),
            "--now",
            query.now.isoformat(),
            "--limit",
            str(query.limit),
        ]
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await process.communicate(query.to_json().encode("utf-8"))
        except asyncio.CancelledError:
            # Timeout or stop(): the adapter must not outlive the cycle.
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        logger.debug(
            "Activity adapter finished",
            command=self.command[0],
            returncode=process.returncode,
        )

        return AdapterResponse(
            ok=process.returncode == 0,
            body=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
