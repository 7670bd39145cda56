"""Poll the activity source for activities newer than the watermark."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime

import structlog
from pydantic import BaseModel, ConfigDict, StrictBool, StrictInt, StrictStr, ValidationError

from activity_notes.errors import ErrorKind
from activity_notes.ingestion.activity_source import ActivityQuery, ActivitySource
from activity_notes.models import PollFailure, PollOutcome, PollResult

logger = structlog.get_logger()


class _SuccessPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    has_new: StrictBool
    activity_ids: list[StrictStr]
    count: StrictInt


class _ErrorPayload(BaseModel):
    error: StrictStr


class Poller:
    """Turn raw activity source responses into typed poll results."""

    def __init__(self, source: ActivitySource, limit: int = 20):
        self.source = source
        self.limit = limit

    async def poll(
        self,
        since: datetime,
        timeout_seconds: float,
        now: datetime | None = None,
    ) -> PollResult:
        """Ask the source for activities in ``[since, now)``.

        The source is invoked exactly once. Timeouts, adapter errors and
        malformed responses come back as PollFailure; cancellation propagates.
        """
        query = ActivityQuery(since=since, now=now or datetime.now(UTC), limit=self.limit)

        try:
            async with asyncio.timeout(timeout_seconds):
                response = await self.source.fetch(query)
        except TimeoutError:
            logger.warning("Activity source timed out", timeout_seconds=timeout_seconds)
            return PollFailure(
                error_kind=ErrorKind.TIMEOUT,
                message=f"Activity source did not answer within {timeout_seconds}s",
            )
        except OSError as e:
            logger.error("Activity source could not be invoked", error=str(e))
            return PollFailure(error_kind=ErrorKind.ADAPTER_FAILURE, message=str(e))

        if not response.ok:
            return self._parse_failure(response.body, response.stderr)
        return self._parse_success(response.body)

    def _parse_success(self, body: str) -> PollResult:
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            return self._mismatch(f"Response is not JSON: {e}", body)

        if isinstance(data, dict) and "error" in data and "has_new" not in data:
            try:
                error = _ErrorPayload.model_validate(data)
            except ValidationError:
                return self._mismatch("Malformed error payload", body)
            return PollFailure(error_kind=ErrorKind.ADAPTER_FAILURE, message=error.error)

        try:
            payload = _SuccessPayload.model_validate(data)
        except ValidationError as e:
            return self._mismatch(f"Unexpected response shape: {e.error_count()} errors", body)

        if not payload.has_new:
            return PollOutcome(has_new=False, activity_ids=[], count=0)

        if not payload.activity_ids:
            return self._mismatch("has_new is true but activity_ids is empty", body)

        if payload.count != len(payload.activity_ids):
            logger.warning(
                "Activity count disagrees with id list",
                count=payload.count,
                ids=len(payload.activity_ids),
            )

        logger.info("Poll found new activities", count=len(payload.activity_ids))
        return PollOutcome(
            has_new=True,
            activity_ids=payload.activity_ids,
            count=payload.count,
        )

    def _parse_failure(self, body: str, stderr: str) -> PollResult:
        try:
            error = _ErrorPayload.model_validate_json(body)
        except ValidationError:
            detail = stderr.strip() or body.strip()
            return self._mismatch(f"Adapter failed without an error payload: {detail[:200]}", body)

        logger.warning("Activity source reported an error", error=error.error)
        return PollFailure(error_kind=ErrorKind.ADAPTER_FAILURE, message=error.error)

    @staticmethod
    def _mismatch(message: str, body: str) -> PollFailure:
        logger.error("Activity source protocol mismatch", reason=message, body=body[:500])
        return PollFailure(error_kind=ErrorKind.PROTOCOL_MISMATCH, message=message)
