"""Strava activity source.

Implements the activity source contract in-process against the Strava API,
so no external adapter command is needed for Strava users.
"""

from __future__ import annotations

import json
import os
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from activity_notes.ingestion.activity_source import ActivityQuery, AdapterResponse

logger = structlog.get_logger()

STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"
STRAVA_API_BASE = "https://www.strava.com/api/v3"

# Strava caps page size at 200
MAX_PAGE_SIZE = 200

# Refresh slightly early so a token never expires mid-listing.
EXPIRY_MARGIN_SECONDS = 60


class StravaTokens(BaseModel):
    """OAuth token pair as returned by the token endpoint."""

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: int = 0


class StravaAuth:
    """Keeps a Strava access token valid using the refresh grant."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.tokens = StravaTokens()
        self._transport = transport

    def set_tokens(self, access_token: str, refresh_token: str, expires_at: int) -> None:
        """Load tokens from stored credentials; empty strings mean unset."""
        self.tokens = StravaTokens(
            access_token=access_token or None,
            refresh_token=refresh_token or None,
            expires_at=expires_at,
        )

    @property
    def access_token(self) -> str | None:
        return self.tokens.access_token

    @property
    def is_token_expired(self) -> bool:
        return time.time() + EXPIRY_MARGIN_SECONDS >= self.tokens.expires_at

    async def refresh_access_token(self) -> StravaTokens:
        if not self.tokens.refresh_token:
            raise ValueError("Strava refresh token is not configured")

        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(
                STRAVA_TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": self.tokens.refresh_token,
                },
            )
            response.raise_for_status()

        self.tokens = StravaTokens.model_validate(response.json())
        logger.info("Refreshed Strava token", expires_at=self.tokens.expires_at)
        return self.tokens

    async def get_valid_token(self) -> str:
        """Current access token, refreshed first when missing or expiring."""
        if self.tokens.access_token is None and self.tokens.refresh_token is None:
            raise ValueError("No Strava credentials configured")

        if self.tokens.access_token is None or self.is_token_expired:
            await self.refresh_access_token()

        if self.tokens.access_token is None:
            raise ValueError("Strava token endpoint returned no access token")
        return self.tokens.access_token


class ReportedActivities:
    """Activity ids already handed to the pipeline.

    Each id maps to the end of the query window that reported it. The
    watermark only reaches that point once the reporting cycle succeeded, so
    an id is settled when a later query starts at or after it. Unsettled ids
    are reported again.
    """

    _schema = TypeAdapter(dict[str, datetime])

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> dict[str, datetime] | None:
        """Recorded ids, or None when nothing was ever recorded."""
        if not self.path.exists():
            return None
        try:
            return self._schema.validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.warning("Reported activity ledger unreadable; starting over", error=str(e))
            return {}

    def save(self, reported: dict[str, datetime]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        tmp_path.write_bytes(self._schema.dump_json(reported))
        os.replace(tmp_path, self.path)


class StravaActivitySource:
    """Activity source backed by the Strava athlete activities endpoint.

    Strava filters on activity start time, but activities are uploaded after
    they finish. With a ledger configured, each query therefore reaches back
    ``lookback`` before ``since`` and drops ids that earlier cycles settled.
    """

    def __init__(
        self,
        auth: StravaAuth,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float = 30.0,
        ledger: ReportedActivities | None = None,
        lookback: timedelta = timedelta(hours=24),
    ):
        self.auth = auth
        self._transport = transport
        self.timeout_seconds = timeout_seconds
        self.ledger = ledger
        self.lookback = lookback

    async def _list_activities(self, after: datetime, before: datetime, limit: int) -> list[dict[str, Any]]:
        token = await self.auth.get_valid_token()
        per_page = min(limit, MAX_PAGE_SIZE)
        window = {"after": int(after.timestamp()), "before": int(before.timestamp())}
        found: list[dict[str, Any]] = []

        async with httpx.AsyncClient(
            base_url=STRAVA_API_BASE,
            headers={"Authorization": f"Bearer {token}"},
            timeout=self.timeout_seconds,
            transport=self._transport,
        ) as client:
            page = 1
            while len(found) < limit:
                response = await client.get(
                    "/athlete/activities",
                    params={**window, "page": page, "per_page": per_page},
                )
                response.raise_for_status()
                batch = response.json()
                found.extend(batch)
                logger.debug("Strava activities page", page=page, count=len(batch))

                if len(batch) < per_page:
                    break
                page += 1

        return found[:limit]

    async def fetch(self, query: ActivityQuery) -> AdapterResponse:
        reported = self.ledger.load() if self.ledger is not None else None
        settled = set()
        after = query.since
        if reported is not None:
            settled = {
                activity_id for activity_id, window_end in reported.items() if window_end <= query.since
            }
            after = query.since - self.lookback

        try:
            activities = await self._list_activities(after, query.now, query.limit + len(settled))
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Strava activity listing failed", error=str(e))
            return AdapterResponse(ok=False, body=json.dumps({"error": str(e)}))

        # Strava lists newest first; analysis reads better oldest first.
        activities.sort(key=lambda activity: activity.get("start_date", ""))
        activity_ids = [
            str(activity["id"])
            for activity in activities
            if "id" in activity and str(activity["id"]) not in settled
        ][: query.limit]

        if self.ledger is not None:
            self._record(reported or {}, activity_ids, query)

        return AdapterResponse(
            ok=True,
            body=json.dumps(
                {
                    "has_new": bool(activity_ids),
                    "activity_ids": activity_ids,
                    "count": len(activity_ids),
                }
            ),
        )

    def _record(self, reported: dict[str, datetime], activity_ids: list[str], query: ActivityQuery) -> None:
        horizon = query.since - self.lookback
        # Anything reported before the horizon started before it and can no longer be listed.
        kept = {activity_id: window_end for activity_id, window_end in reported.items() if window_end >= horizon}
        kept.update((activity_id, query.now) for activity_id in activity_ids)
        try:
            self.ledger.save(kept)
        except OSError as e:
            # A stale ledger only means settled activities may be reported again.
            logger.warning("Could not save reported activity ledger", error=str(e))
