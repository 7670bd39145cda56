"""Tests for the poller and the command activity source."""

import asyncio
import json
import sys
from datetime import UTC, datetime

import pytest

from activity_notes.errors import ErrorKind
from activity_notes.ingestion.activity_source import (
    ActivityQuery,
    AdapterResponse,
    CommandActivitySource,
)
from activity_notes.ingestion.poller import Poller
from activity_notes.models import PollFailure, PollOutcome

SINCE = datetime(2024, 1, 1, tzinfo=UTC)
NOW = datetime(2024, 1, 1, 6, 0, tzinfo=UTC)


class FakeSource:
    """Activity source returning a canned response."""

    def __init__(self, response: AdapterResponse | None = None, delay: float = 0, error=None):
        self.response = response
        self.delay = delay
        self.error = error
        self.queries: list[ActivityQuery] = []

    async def fetch(self, query: ActivityQuery) -> AdapterResponse:
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


def ok(body) -> AdapterResponse:
    return AdapterResponse(ok=True, body=body if isinstance(body, str) else json.dumps(body))


class TestPoller:
    """Tests for Poller.poll."""

    @pytest.mark.asyncio
    async def test_new_activities(self) -> None:
        source = FakeSource(ok({"has_new": True, "activity_ids": ["100", "101"], "count": 2}))

        result = await Poller(source, limit=5).poll(SINCE, timeout_seconds=1, now=NOW)

        assert result == PollOutcome(has_new=True, activity_ids=["100", "101"], count=2)
        assert source.queries == [ActivityQuery(since=SINCE, now=NOW, limit=5)]

    @pytest.mark.asyncio
    async def test_no_new_activities(self) -> None:
        source = FakeSource(ok({"has_new": False, "activity_ids": [], "count": 0}))

        result = await Poller(source).poll(SINCE, timeout_seconds=1, now=NOW)

        assert isinstance(result, PollOutcome)
        assert result.has_new is False
        assert len(source.queries) == 1

    @pytest.mark.asyncio
    async def test_duplicate_ids_passed_through(self) -> None:
        source = FakeSource(ok({"has_new": True, "activity_ids": ["7", "7"], "count": 2}))

        result = await Poller(source).poll(SINCE, timeout_seconds=1, now=NOW)

        assert result.activity_ids == ["7", "7"]

    @pytest.mark.asyncio
    async def test_count_mismatch_is_not_fatal(self) -> None:
        source = FakeSource(ok({"has_new": True, "activity_ids": ["1"], "count": 3}))

        result = await Poller(source).poll(SINCE, timeout_seconds=1, now=NOW)

        assert isinstance(result, PollOutcome)
        assert result.count == 3

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        source = FakeSource(ok({"has_new": False, "activity_ids": [], "count": 0}), delay=1)

        result = await Poller(source).poll(SINCE, timeout_seconds=0.05, now=NOW)

        assert isinstance(result, PollFailure)
        assert result.error_kind == ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            "",
            "not json",
            "[]",
            '{"has_new": "yes", "activity_ids": [], "count": 0}',
            '{"has_new": true, "activity_ids": [100], "count": 1}',
            '{"has_new": true, "activity_ids": "100", "count": 1}',
            '{"has_new": true, "count": 1}',
            '{"has_new": true, "activity_ids": [], "count": 0}',
            '{"error": 42}',
        ],
    )
    async def test_protocol_mismatch(self, body) -> None:
        result = await Poller(FakeSource(ok(body))).poll(SINCE, timeout_seconds=1, now=NOW)

        assert isinstance(result, PollFailure)
        assert result.error_kind == ErrorKind.PROTOCOL_MISMATCH

    @pytest.mark.asyncio
    async def test_error_payload(self) -> None:
        source = FakeSource(AdapterResponse(ok=False, body='{"error": "rate limited"}'))

        result = await Poller(source).poll(SINCE, timeout_seconds=1, now=NOW)

        assert result == PollFailure(error_kind=ErrorKind.ADAPTER_FAILURE, message="rate limited")

    @pytest.mark.asyncio
    async def test_failed_status_without_error_payload(self) -> None:
        source = FakeSource(AdapterResponse(ok=False, body="Traceback ...", stderr="boom"))

        result = await Poller(source).poll(SINCE, timeout_seconds=1, now=NOW)

        assert result.error_kind == ErrorKind.PROTOCOL_MISMATCH

    @pytest.mark.asyncio
    async def test_spawn_failure(self) -> None:
        source = FakeSource(error=FileNotFoundError("no such adapter"))

        result = await Poller(source).poll(SINCE, timeout_seconds=1, now=NOW)

        assert result.error_kind == ErrorKind.ADAPTER_FAILURE

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self) -> None:
        source = FakeSource(ok("{}"), delay=10)
        task = asyncio.create_task(Poller(source).poll(SINCE, timeout_seconds=30, now=NOW))
        await asyncio.sleep(0.01)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


ADAPTER_SCRIPT = """
import json, sys
request = json.load(sys.stdin)
args = sys.argv[1:]
print(json.dumps({
    "has_new": True,
    "activity_ids": [request["since"], args[args.index("--limit") + 1]],
    "count": 2,
}))
"""

FAILING_SCRIPT = """
import json, sys
print(json.dumps({"error": "token expired"}))
sys.exit(3)
"""


class TestCommandActivitySource:
    """Tests for the subprocess adapter."""

    def test_empty_command_rejected(self) -> None:
        with pytest.raises(ValueError):
            CommandActivitySource("")

    def test_command_string_is_split(self) -> None:
        source = CommandActivitySource("garmin-activities --json")
        assert source.command == ["garmin-activities", "--json"]

    @pytest.mark.asyncio
    async def test_success_contract(self) -> None:
        source = CommandActivitySource([sys.executable, "-c", ADAPTER_SCRIPT])

        result = await Poller(source, limit=7).poll(SINCE, timeout_seconds=30, now=NOW)

        assert result == PollOutcome(
            has_new=True,
            activity_ids=[SINCE.isoformat(), "7"],
            count=2,
        )

    @pytest.mark.asyncio
    async def test_failure_contract(self) -> None:
        source = CommandActivitySource([sys.executable, "-c", FAILING_SCRIPT])

        result = await Poller(source).poll(SINCE, timeout_seconds=30, now=NOW)

        assert result == PollFailure(error_kind=ErrorKind.ADAPTER_FAILURE, message="token expired")

    @pytest.mark.asyncio
    async def test_slow_adapter_times_out(self) -> None:
        source = CommandActivitySource([sys.executable, "-c", "import time; time.sleep(30)"])

        result = await Poller(source).poll(SINCE, timeout_seconds=0.5, now=NOW)

        assert result.error_kind == ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_missing_executable(self) -> None:
        source = CommandActivitySource(["/nonexistent/adapter-binary"])

        result = await Poller(source).poll(SINCE, timeout_seconds=5, now=NOW)

        assert result.error_kind == ErrorKind.ADAPTER_FAILURE
