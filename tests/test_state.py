"""Tests for lifecycle snapshots and the state store."""

from __future__ import annotations

import logging
from dataclasses import replace

import pytest

from pocketlm.state import (
    Activity,
    DownloadPhase,
    DownloadStatus,
    GenerationStatus,
    InitStatus,
    LifecycleState,
    StateStore,
)


class TestDownloadStatus:
    """Progress bounds."""

    def test_defaults_idle(self) -> None:
        status = DownloadStatus()
        assert status.phase is DownloadPhase.IDLE
        assert status.progress == 0.0

    @pytest.mark.parametrize("progress", [-0.1, 1.01])
    def test_rejects_out_of_range(self, progress: float) -> None:
        with pytest.raises(ValueError, match="progress"):
            DownloadStatus(DownloadPhase.IN_PROGRESS, progress)


class TestLifecycleState:
    """Derived activity flags."""

    def test_initial_state_not_busy(self) -> None:
        state = LifecycleState()
        assert state.active_activity is None
        assert not state.is_busy
        assert not state.is_ready

    def test_each_activity_detected(self) -> None:
        base = LifecycleState()
        downloading = replace(base, download=DownloadStatus(DownloadPhase.IN_PROGRESS, 0.3))
        initializing = replace(base, init_status=InitStatus.IN_PROGRESS)
        generating = replace(base, generation_status=GenerationStatus.IN_PROGRESS)
        assert downloading.active_activity is Activity.DOWNLOAD
        assert initializing.active_activity is Activity.INITIALIZE
        assert generating.active_activity is Activity.GENERATE
        assert downloading.is_downloading and generating.is_generating

    def test_cancelled_is_not_busy(self) -> None:
        state = LifecycleState(generation_status=GenerationStatus.CANCELLED)
        assert not state.is_busy


class TestStateStore:
    """Publication and check-and-set semantics."""

    def test_update_publishes_in_order(self) -> None:
        store = StateStore()
        seen: list[str | None] = []
        store.subscribe(lambda s: seen.append(s.last_error))
        store.update(last_error="a")
        store.update(last_error="b")
        assert seen == ["a", "b"]
        assert store.state.last_error == "b"

    def test_unsubscribe(self) -> None:
        store = StateStore()
        seen: list[LifecycleState] = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        store.update(last_error="x")
        assert seen == []

    def test_transition_none_publishes_nothing(self) -> None:
        store = StateStore()
        seen: list[LifecycleState] = []
        store.subscribe(seen.append)
        before = store.state
        assert store.transition(lambda s: None) is None
        assert store.state is before
        assert seen == []

    def test_try_begin_starts_when_idle(self) -> None:
        store = StateStore()
        blocker = store.try_begin(Activity.INITIALIZE, init_status=InitStatus.IN_PROGRESS)
        assert blocker is None
        assert store.state.init_status is InitStatus.IN_PROGRESS

    def test_try_begin_reports_blocker_without_change(self) -> None:
        store = StateStore(LifecycleState(generation_status=GenerationStatus.IN_PROGRESS))
        before = store.state
        blocker = store.try_begin(
            Activity.DOWNLOAD, download=DownloadStatus(DownloadPhase.IN_PROGRESS, 0.0)
        )
        assert blocker is Activity.GENERATE
        assert store.state is before

    def test_failing_subscriber_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        store = StateStore()
        seen: list[LifecycleState] = []

        def broken(_: LifecycleState) -> None:
            raise RuntimeError("ui gone")

        store.subscribe(broken)
        store.subscribe(seen.append)
        with caplog.at_level(logging.ERROR, logger="pocketlm.state"):
            store.update(last_error="x")
        assert len(seen) == 1
        assert "subscriber" in caplog.text
