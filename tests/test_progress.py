"""Tests for download progress reporting and the status table."""

from __future__ import annotations

import io
import logging

import pytest
from rich.console import Console

from pocketlm.progress import DownloadProgressReporter, status_table
from pocketlm.state import DownloadPhase, DownloadStatus, InitStatus, LifecycleState


def _console() -> tuple[Console, io.StringIO]:
    buf = io.StringIO()
    return Console(file=buf, force_terminal=False, width=120), buf


def _downloading(progress: float) -> LifecycleState:
    return LifecycleState(download=DownloadStatus(DownloadPhase.IN_PROGRESS, progress))


class TestDownloadProgressReporter:
    def test_logs_every_ten_percent_off_tty(self, caplog: pytest.LogCaptureFixture) -> None:
        console, _ = _console()
        reporter = DownloadProgressReporter(console)
        reporter._is_tty = False

        with caplog.at_level(logging.INFO, logger="pocketlm.progress"):
            reporter.start("tiny-model.gguf")
            for step in range(1, 41):
                reporter.callback(_downloading(step / 40))

        lines = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Downloaded")]
        assert lines[0] == "Downloaded 10%"
        assert lines[-1] == "Downloaded 100%"
        assert len(lines) == 10

    def test_finish_reports_completion(self) -> None:
        console, buf = _console()
        reporter = DownloadProgressReporter(console)
        done = LifecycleState(
            model_path="/data/llm/tiny.gguf",
            download=DownloadStatus(DownloadPhase.COMPLETE, 1.0),
        )

        reporter.finish(done)

        assert "Downloaded" in buf.getvalue()
        assert "/data/llm/tiny.gguf" in buf.getvalue()

    def test_finish_reports_error(self) -> None:
        console, buf = _console()
        failed = LifecycleState(
            download=DownloadStatus(DownloadPhase.FAILED, 0.5), last_error="Empty response body."
        )

        DownloadProgressReporter(console).finish(failed)

        assert "Empty response body." in buf.getvalue()

    def test_quiet_prints_nothing(self) -> None:
        console, buf = _console()
        reporter = DownloadProgressReporter(console, quiet=True)
        reporter.start("x")
        reporter.callback(_downloading(0.5))
        reporter.finish(LifecycleState(last_error="boom"))
        assert buf.getvalue() == ""


class TestStatusTable:
    def test_rows(self) -> None:
        console, buf = _console()
        state = LifecycleState(
            model_path="/m.gguf", init_status=InitStatus.READY, last_error="stale"
        )

        console.print(status_table(state, model_exists=True))

        out = buf.getvalue()
        assert "/m.gguf" in out
        assert "READY" in out
        assert "stale" in out
