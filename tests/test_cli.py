"""Tests for CLI commands."""

import json
import signal
import subprocess
import sys
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from activity_notes.cli import main
from activity_notes.errors import ErrorKind
from activity_notes.models import CycleOutcome, CycleStatus, Watermark
from activity_notes.watermark import WatermarkStore

STARTED = datetime(2024, 1, 1, 6, 0, tzinfo=UTC)


class TestCLI:
    """Tests for CLI commands."""

    @pytest.fixture
    def runner(self):
        return CliRunner()

    @pytest.fixture(autouse=True)
    def isolated(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
        monkeypatch.setenv("ADAPTER_COMMAND", "garmin-activities --json")
        with patch("activity_notes.log.configure_logging"), patch(
            "activity_notes.cli._get_pid_file", return_value=tmp_path / "daemon.pid"
        ):
            yield tmp_path

    def test_version_json(self, runner):
        result = runner.invoke(main, ["version", "--format", "json"])

        assert result.exit_code == 0
        info = json.loads(result.output)
        assert set(info) == {"version", "python", "platform", "architecture"}

    def test_status_without_watermark(self, runner):
        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Daemon not running" in result.output
        assert "No cycle has completed yet" in result.output

    def test_status_with_watermark(self, runner, isolated):
        WatermarkStore(isolated / "data" / "watermark.json").set(
            Watermark(
                last_checked_at=STARTED,
                cycles_completed=4,
                last_note_path="Daily/2024-01-01.md",
                last_activity_ids=["100"],
            )
        )

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "2024-01-01T06:00:00+00:00" in result.output
        assert "Daily/2024-01-01.md" in result.output

    def test_status_with_corrupt_watermark(self, runner, isolated):
        (isolated / "data").mkdir()
        (isolated / "data" / "watermark.json").write_text("{broken")

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Watermark unreadable" in result.output

    def test_trigger_runs_one_cycle(self, runner):
        scheduler = MagicMock()
        scheduler.run_cycle = AsyncMock(
            return_value=CycleOutcome(
                trigger="manual",
                status=CycleStatus.WRITTEN,
                started_at=STARTED,
                finished_at=STARTED,
                summary="Analyzed 1 activities into Daily/2024-01-01.md.",
                activity_ids=["100"],
                note_path="Daily/2024-01-01.md",
            )
        )
        scheduler.stop = AsyncMock()

        with patch("activity_notes.daemon.pipeline.build_scheduler", return_value=scheduler):
            result = runner.invoke(main, ["trigger"])

        assert result.exit_code == 0
        assert "[WRITTEN]" in result.output
        assert "Daily/2024-01-01.md" in result.output
        scheduler.run_cycle.assert_awaited_once_with("manual")
        scheduler.stop.assert_awaited_once()

    def test_trigger_failure_exit_code(self, runner):
        scheduler = MagicMock()
        scheduler.run_cycle = AsyncMock(
            return_value=CycleOutcome(
                trigger="manual",
                status=CycleStatus.FAILED,
                started_at=STARTED,
                finished_at=STARTED,
                error_kind=ErrorKind.TIMEOUT,
                summary="A pipeline step timed out; will retry next cycle.",
            )
        )
        scheduler.stop = AsyncMock()

        with patch("activity_notes.daemon.pipeline.build_scheduler", return_value=scheduler):
            result = runner.invoke(main, ["trigger"])

        assert result.exit_code == 1
        assert "[FAILED]" in result.output

    def test_trigger_build_error(self, runner):
        with patch(
            "activity_notes.daemon.pipeline.build_scheduler",
            side_effect=ValueError("Missing tool server configuration: chart-generation"),
        ):
            result = runner.invoke(main, ["trigger"])

        assert result.exit_code == 1
        assert "Cannot run cycle" in result.output

    def test_trigger_signals_running_daemon(self, runner, isolated):
        (isolated / "daemon.pid").write_text("4242")

        with patch("activity_notes.cli.os.kill") as mock_kill:
            result = runner.invoke(main, ["trigger"])

        assert result.exit_code == 0
        assert "Cycle requested from daemon (PID: 4242)" in result.output
        assert mock_kill.call_count == 2

    def test_daemon_status_not_running(self, runner):
        result = runner.invoke(main, ["daemon", "status"])

        assert result.exit_code == 0
        assert "Daemon not running" in result.output

    def test_daemon_status_stale_pid(self, runner, isolated):
        pid_file = isolated / "daemon.pid"
        pid_file.write_text("4242")

        with patch("activity_notes.cli.os.kill", side_effect=ProcessLookupError):
            result = runner.invoke(main, ["daemon", "status"])

        assert "Daemon not running" in result.output
        assert not pid_file.exists()

    def test_daemon_stop_without_pid(self, runner):
        result = runner.invoke(main, ["daemon", "stop"])

        assert result.exit_code == 0
        assert "No daemon running" in result.output

    def test_daemon_stop_sends_sigterm(self, runner, isolated):
        (isolated / "daemon.pid").write_text("4242")

        with patch("activity_notes.cli.os.kill") as mock_kill:
            result = runner.invoke(main, ["daemon", "stop"])

        assert result.exit_code == 0
        assert "Stop requested (PID: 4242)" in result.output
        mock_kill.assert_called_with(4242, signal.SIGTERM)

    def test_background_child_detaches_instead_of_closing_streams(self, runner, isolated):
        def run(coro):
            coro.close()

        with patch("activity_notes.daemon.pipeline.build_scheduler", return_value=MagicMock()), patch(
            "activity_notes.cli.os.fork", return_value=0
        ), patch("activity_notes.cli._detach_from_terminal") as mock_detach, patch(
            "activity_notes.cli.asyncio.run", side_effect=run
        ) as mock_run:
            result = runner.invoke(main, ["daemon", "start", "--background"])

        assert result.exit_code == 0
        mock_detach.assert_called_once()
        assert mock_detach.call_args.args[0].name == "daemon.log"
        mock_run.assert_called_once()


DETACH_SCRIPT = """
import sys
from pathlib import Path

import structlog

from activity_notes.cli import _detach_from_terminal
from activity_notes.log import configure_logging

configure_logging()
_detach_from_terminal(Path(sys.argv[1]))
structlog.get_logger().info("Starting pipeline scheduler")
print("stdout still open")
"""


def test_detached_daemon_keeps_logging(tmp_path):
    log_file = tmp_path / "logs" / "daemon.log"

    completed = subprocess.run(
        [sys.executable, "-c", DETACH_SCRIPT, str(log_file)],
        capture_output=True,
        timeout=60,
    )

    assert completed.returncode == 0, completed.stderr
    content = log_file.read_text(encoding="utf-8")
    assert "Starting pipeline scheduler" in content
    assert "stdout still open" in content
