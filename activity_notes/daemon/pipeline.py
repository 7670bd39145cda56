"""Build the pipeline from settings and run it as a daemon."""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime, timedelta
from pathlib import Path

import structlog

from activity_notes.agents.analysis_session import OpenAIAnalysisSession
from activity_notes.agents.orchestrator import AnalysisOrchestrator
from activity_notes.agents.tool_sessions import ToolSessionManager
from activity_notes.config import (
    ACTIVITY_DATA_SESSION,
    CHART_GENERATION_SESSION,
    Settings,
    get_tool_servers,
    load_pipeline_config,
    resolve_note_path,
)
from activity_notes.daemon.scheduler import PipelineScheduler
from activity_notes.ingestion.activity_source import ActivitySource, CommandActivitySource
from activity_notes.ingestion.poller import Poller
from activity_notes.ingestion.strava_source import ReportedActivities, StravaActivitySource, StravaAuth
from activity_notes.outputs.document_store import FileSystemDocumentStore
from activity_notes.outputs.note_writer import NoteWriter
from activity_notes.watermark import WatermarkStore

logger = structlog.get_logger()

REQUIRED_SESSIONS = (ACTIVITY_DATA_SESSION, CHART_GENERATION_SESSION)


def build_activity_source(settings: Settings) -> ActivitySource:
    """Create the configured activity source."""
    if settings.activity_source == "strava":
        auth = StravaAuth(
            client_id=settings.strava_client_id,
            client_secret=settings.strava_client_secret,
        )
        auth.set_tokens(
            access_token=settings.strava_access_token,
            refresh_token=settings.strava_refresh_token,
            expires_at=settings.strava_token_expires_at,
        )
        return StravaActivitySource(
            auth,
            ledger=ReportedActivities(settings.strava_ledger_path),
            lookback=timedelta(hours=settings.strava_lookback_hours),
        )

    if settings.activity_source == "command":
        if not settings.adapter_command:
            raise ValueError("ADAPTER_COMMAND must be set when ACTIVITY_SOURCE=command")
        return CommandActivitySource(settings.adapter_command)

    raise ValueError(f"Unknown activity source: {settings.activity_source!r}")


def build_tool_manager(settings: Settings, config_path: Path | None) -> ToolSessionManager:
    """Create the tool session manager from the pipeline YAML file."""
    servers = get_tool_servers(load_pipeline_config(config_path))
    missing = [name for name in REQUIRED_SESSIONS if name not in servers]
    if missing:
        raise ValueError(f"Missing tool server configuration: {', '.join(missing)}")

    return ToolSessionManager.from_config(
        {name: servers[name] for name in REQUIRED_SESSIONS},
        connect_timeout_seconds=settings.connect_timeout_seconds,
    )


def build_scheduler(settings: Settings, config_path: Path | None = None) -> PipelineScheduler:
    """Wire every pipeline component together."""

    def note_path_for(cycle_start: datetime) -> str:
        # Daily notes follow the user's local calendar day.
        return resolve_note_path(settings.note_path_template, cycle_start.astimezone().date())

    session = OpenAIAnalysisSession(
        api_key=settings.openai_api_key or None,
        model=settings.analysis_model,
        max_tool_rounds=settings.max_tool_rounds,
    )

    return PipelineScheduler(
        watermark_store=WatermarkStore(settings.watermark_path),
        poller=Poller(build_activity_source(settings), limit=settings.adapter_limit),
        tool_manager=build_tool_manager(settings, config_path),
        orchestrator=AnalysisOrchestrator(session, chart_namespace=settings.chart_namespace),
        note_writer=NoteWriter(FileSystemDocumentStore(settings.vault_dir)),
        note_path_for=note_path_for,
        interval_minutes=settings.poll_interval_minutes,
        adapter_timeout_seconds=settings.adapter_timeout_seconds,
        analysis_timeout_seconds=settings.analysis_timeout_seconds,
        write_timeout_seconds=settings.write_timeout_seconds,
        accept_partial_results=settings.accept_partial_results,
    )


async def run_daemon(scheduler: PipelineScheduler) -> None:
    """Run the scheduler until SIGTERM/SIGINT; SIGUSR1 triggers a cycle."""
    loop = asyncio.get_running_loop()

    def on_trigger() -> None:
        if not scheduler.trigger("signal"):
            logger.info("Manual trigger ignored; a cycle is already running")

    loop.add_signal_handler(signal.SIGTERM, scheduler.request_stop)
    loop.add_signal_handler(signal.SIGINT, scheduler.request_stop)
    loop.add_signal_handler(signal.SIGUSR1, on_trigger)
    try:
        await scheduler.run_forever()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGUSR1):
            loop.remove_signal_handler(sig)
