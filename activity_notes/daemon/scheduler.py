"""Pipeline scheduler.

Runs poll → analyze → write cycles on a fixed interval. At most one cycle is
in flight at any time; a timer tick or manual trigger that arrives while a
cycle runs is dropped. The watermark only advances once a cycle has finished
its work, and never past the time the cycle started.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from activity_notes.agents.orchestrator import AnalysisOrchestrator
from activity_notes.agents.tool_sessions import ToolsetHandle
from activity_notes.errors import (
    ConfigCorruptError,
    ConnectError,
    ErrorKind,
    PipelineError,
    UpstreamFailure,
    summarize,
)
from activity_notes.ingestion.poller import Poller
from activity_notes.models import (
    AnalysisResult,
    CycleOutcome,
    CycleState,
    CycleStatus,
    PollFailure,
    SchedulerSnapshot,
    Watermark,
)
from activity_notes.outputs.note_writer import NoteWriter
from activity_notes.watermark import WatermarkStore

logger = structlog.get_logger()

JOB_ID = "pipeline_cycle"


def utcnow() -> datetime:
    return datetime.now(UTC)


class PipelineScheduler:
    """Owns the watermark and drives pipeline cycles."""

    def __init__(
        self,
        *,
        watermark_store: WatermarkStore,
        poller: Poller,
        tool_manager: Any,
        orchestrator: AnalysisOrchestrator,
        note_writer: NoteWriter,
        note_path_for: Callable[[datetime], str],
        interval_minutes: int = 30,
        adapter_timeout_seconds: float = 60.0,
        analysis_timeout_seconds: float = 300.0,
        write_timeout_seconds: float = 30.0,
        accept_partial_results: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")

        self.watermark_store = watermark_store
        self.poller = poller
        self.tool_manager = tool_manager
        self.orchestrator = orchestrator
        self.note_writer = note_writer
        self.note_path_for = note_path_for
        self.interval = timedelta(minutes=interval_minutes)
        self.adapter_timeout_seconds = adapter_timeout_seconds
        self.analysis_timeout_seconds = analysis_timeout_seconds
        self.write_timeout_seconds = write_timeout_seconds
        self.accept_partial_results = accept_partial_results
        self.clock = clock

        self.scheduler: AsyncIOScheduler | None = None
        self.state = CycleState.IDLE
        self.last_outcome: CycleOutcome | None = None
        self._current: asyncio.Task[CycleOutcome] | None = None
        self._stopping = False
        self._stop_requested = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.scheduler is not None

    @property
    def cycle_in_flight(self) -> bool:
        return self._current is not None and not self._current.done()

    async def start(self) -> None:
        """Run one cycle now and schedule the rest on the interval."""
        if self.running:
            return
        if self._stopping:
            raise RuntimeError("Scheduler has been stopped")

        self.scheduler = AsyncIOScheduler(timezone=UTC)
        self.scheduler.add_job(
            self._on_tick,
            trigger=IntervalTrigger(seconds=self.interval.total_seconds(), timezone=UTC),
            id=JOB_ID,
            name="Poll, analyze and write",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Starting pipeline scheduler", interval_minutes=self.interval.total_seconds() / 60)
        self.scheduler.start()
        self._launch("startup")

    async def stop(self) -> None:
        """Stop scheduling, cancel the in-flight cycle and release sessions.

        No pipeline side effect happens after this returns.
        """
        self._stopping = True
        self._stop_requested.set()

        if self.scheduler is not None:
            logger.info("Stopping pipeline scheduler")
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        task = self._current
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        await self.tool_manager.disconnect()

    def request_stop(self) -> None:
        """Ask run_forever() to stop; safe to call from a signal handler."""
        self._stop_requested.set()

    async def run_forever(self) -> None:
        """Run the scheduler until request_stop() is called or cancelled."""
        await self.start()
        try:
            await self._stop_requested.wait()
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def _on_tick(self) -> None:
        self._launch("timer")

    def trigger(self, trigger: str = "manual") -> bool:
        """Start a cycle without waiting for it; False if one is running."""
        return self._launch(trigger) is not None

    async def run_cycle(self, trigger: str = "manual") -> CycleOutcome:
        """Run one cycle now and wait for its outcome.

        Goes through the same guard as the timer: if a cycle is already in
        flight, nothing runs and a SKIPPED outcome is returned.
        """
        task = self._launch(trigger)
        if task is None:
            now = self.clock()
            return CycleOutcome(
                trigger=trigger,
                status=CycleStatus.SKIPPED,
                started_at=now,
                finished_at=now,
                summary="A cycle is already running." if not self._stopping else "Scheduler is stopped.",
            )
        return await asyncio.shield(task)

    def _launch(self, trigger: str) -> asyncio.Task[CycleOutcome] | None:
        if self._stopping:
            logger.info("Scheduler stopped; ignoring trigger", trigger=trigger)
            return None
        if self.cycle_in_flight:
            logger.warning("Cycle already in flight; dropping trigger", trigger=trigger)
            return None

        self._current = asyncio.create_task(self._run_cycle(trigger), name=f"cycle-{trigger}")
        return self._current

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _run_cycle(self, trigger: str) -> CycleOutcome:
        started_at = self.clock()
        log = logger.bind(trigger=trigger, cycle_start=started_at.isoformat())
        log.info("Cycle started")

        try:
            outcome = await self._execute(trigger, started_at, log)
        except asyncio.CancelledError:
            log.warning("Cycle cancelled", state=self.state.value)
            self.state = CycleState.IDLE
            self.last_outcome = CycleOutcome(
                trigger=trigger,
                status=CycleStatus.CANCELLED,
                started_at=started_at,
                finished_at=self.clock(),
                summary="Cycle was cancelled.",
            )
            raise
        except PipelineError as e:
            outcome = self._failed(trigger, started_at, e.kind, str(e), log)
        except TimeoutError as e:
            outcome = self._failed(trigger, started_at, ErrorKind.TIMEOUT, str(e) or "timed out", log)
        except Exception as e:
            log.exception("Unexpected cycle failure")
            outcome = self._failed(trigger, started_at, ErrorKind.UNEXPECTED, repr(e), log)

        self.state = CycleState.IDLE
        self.last_outcome = outcome
        log.info(
            "Cycle finished",
            status=outcome.status.value,
            duration_seconds=round(outcome.duration_seconds, 3),
        )
        return outcome

    async def _execute(self, trigger: str, started_at: datetime, log: Any) -> CycleOutcome:
        self.state = CycleState.POLLING
        current, since = self._load_since(started_at, log)

        poll = await self.poller.poll(since, self.adapter_timeout_seconds, now=started_at)
        if isinstance(poll, PollFailure):
            return self._failed(trigger, started_at, poll.error_kind, poll.message, log)

        if not poll.has_new:
            self._advance(current, started_at, activity_ids=[], note_path=None)
            log.info("No new activities", since=since.isoformat())
            return CycleOutcome(
                trigger=trigger,
                status=CycleStatus.NO_NEW,
                started_at=started_at,
                finished_at=self.clock(),
                summary="No new activities.",
                watermark_advanced=True,
            )

        self.state = CycleState.ANALYZING
        toolsets = await self._acquire_toolsets(log)
        result = await self._analyze(poll.activity_ids, toolsets, log)

        self.state = CycleState.WRITING
        note_path = self.note_path_for(started_at)
        async with asyncio.timeout(self.write_timeout_seconds):
            await self.note_writer.write(result, note_path)

        self._advance(current, started_at, activity_ids=list(result.activity_ids), note_path=note_path)
        return CycleOutcome(
            trigger=trigger,
            status=CycleStatus.WRITTEN,
            started_at=started_at,
            finished_at=self.clock(),
            summary=f"Analyzed {len(poll.activity_ids)} activities into {note_path}.",
            activity_ids=poll.activity_ids,
            note_path=note_path,
            partial=result.partial,
            watermark_advanced=True,
        )

    def _load_since(self, started_at: datetime, log: Any) -> tuple[Watermark | None, datetime]:
        fallback = started_at - self.interval
        try:
            current = self.watermark_store.get()
        except ConfigCorruptError as e:
            log.warning(summarize(ErrorKind.CONFIG_CORRUPT), since=fallback.isoformat())
            log.error("Watermark unreadable", kind=ErrorKind.CONFIG_CORRUPT.value, error=str(e))
            return None, fallback

        if current is None:
            log.info("No watermark yet; starting one interval back", since=fallback.isoformat())
            return None, fallback

        since = current.last_checked_at
        if since > started_at:
            log.warning("Watermark is ahead of the clock", watermark=since.isoformat())
            since = started_at
        return current, since

    async def _acquire_toolsets(self, log: Any) -> ToolsetHandle:
        if not self.tool_manager.is_connected:
            health = self.tool_manager.health()
            if any(health.values()):
                log.warning("Tool sessions unhealthy; reconnecting", health=health)
            await self.tool_manager.disconnect()
            try:
                await self.tool_manager.connect()
            except ConnectError:
                # Retried on the next cycle rather than in a tight loop.
                await self.tool_manager.disconnect()
                raise
        return self.tool_manager.get_toolsets()

    async def _analyze(self, activity_ids: list[str], toolsets: ToolsetHandle, log: Any) -> AnalysisResult:
        try:
            return await self.orchestrator.analyze(
                activity_ids,
                toolsets,
                self.analysis_timeout_seconds,
            )
        except UpstreamFailure as e:
            if not self.accept_partial_results or e.partial.is_empty:
                raise
            log.warning(
                "Writing partial analysis",
                error=str(e),
                charts=len(e.partial.charts),
            )
            return e.partial

    def _advance(
        self,
        current: Watermark | None,
        started_at: datetime,
        activity_ids: list[str],
        note_path: str | None,
    ) -> None:
        last_checked_at = started_at
        if current is not None and current.last_checked_at > started_at:
            last_checked_at = current.last_checked_at

        self.watermark_store.set(
            Watermark(
                last_checked_at=last_checked_at,
                updated_at=self.clock(),
                cycles_completed=(current.cycles_completed if current else 0) + 1,
                last_note_path=note_path or (current.last_note_path if current else None),
                last_activity_ids=activity_ids or (current.last_activity_ids if current else []),
            )
        )

    def _failed(
        self,
        trigger: str,
        started_at: datetime,
        kind: ErrorKind,
        message: str,
        log: Any,
    ) -> CycleOutcome:
        self.state = CycleState.FAILED
        summary = summarize(kind)
        log.warning(summary, kind=kind.value)
        log.error("Cycle diagnostic", kind=kind.value, error=message)
        return CycleOutcome(
            trigger=trigger,
            status=CycleStatus.FAILED,
            started_at=started_at,
            finished_at=self.clock(),
            error_kind=kind,
            summary=summary,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def snapshot(self) -> SchedulerSnapshot:
        """Current state, watermark and last outcome."""
        watermark = None
        watermark_error = None
        try:
            watermark = self.watermark_store.get()
        except ConfigCorruptError as e:
            watermark_error = str(e)

        next_run_at = None
        if self.scheduler is not None:
            job = self.scheduler.get_job(JOB_ID)
            next_run_at = job.next_run_time if job else None

        return SchedulerSnapshot(
            state=self.state,
            running=self.running,
            cycle_in_flight=self.cycle_in_flight,
            watermark=watermark,
            watermark_error=watermark_error,
            last_outcome=self.last_outcome,
            next_run_at=next_run_at,
        )
