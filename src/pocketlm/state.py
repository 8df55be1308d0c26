"""Observable lifecycle state for the model download/initialize/generate cycle.

``LifecycleState`` is an immutable snapshot. ``StateStore`` is the single
synchronization point: every mutation builds a new snapshot under one lock
and publishes it to subscribers in mutation order, so readers on any thread
only ever see whole snapshots.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

logger = logging.getLogger(__name__)


class Activity(enum.Enum):
    """Mutually-exclusive background activities."""

    DOWNLOAD = "download"
    INITIALIZE = "initialize"
    GENERATE = "generate"


class DownloadPhase(enum.Enum):
    IDLE = "IDLE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class InitStatus(enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    READY = "READY"
    FAILED = "FAILED"


class GenerationStatus(enum.Enum):
    IDLE = "IDLE"
    IN_PROGRESS = "IN_PROGRESS"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True, slots=True)
class DownloadStatus:
    """Download phase plus fractional progress in [0.0, 1.0]."""

    phase: DownloadPhase = DownloadPhase.IDLE
    progress: float = 0.0

    def __post_init__(self) -> None:
        if not (0.0 <= self.progress <= 1.0):
            raise ValueError(f"progress must be in [0.0, 1.0], got {self.progress}")


@dataclass(frozen=True, slots=True)
class LifecycleState:
    """Immutable snapshot of everything the UI may observe.

    Attributes:
        model_path: Artifact currently associated with the session (may not exist yet).
        download: Download phase and progress.
        init_status: Engine initialization status.
        generation_status: Streaming generation status.
        last_error: Human-readable message of the most recent failure or cancellation.
        partial_response: Text accumulated by the in-flight generation.
        needs_initialization: Set once a download completes; cleared when
            initialization starts.
    """

    model_path: str = ""
    download: DownloadStatus = DownloadStatus()
    init_status: InitStatus = InitStatus.NOT_STARTED
    generation_status: GenerationStatus = GenerationStatus.IDLE
    last_error: str | None = None
    partial_response: str | None = None
    needs_initialization: bool = False

    @property
    def active_activity(self) -> Activity | None:
        """The background activity currently running, if any."""
        if self.download.phase is DownloadPhase.IN_PROGRESS:
            return Activity.DOWNLOAD
        if self.init_status is InitStatus.IN_PROGRESS:
            return Activity.INITIALIZE
        if self.generation_status is GenerationStatus.IN_PROGRESS:
            return Activity.GENERATE
        return None

    @property
    def is_busy(self) -> bool:
        return self.active_activity is not None

    @property
    def is_ready(self) -> bool:
        return self.init_status is InitStatus.READY

    @property
    def is_downloading(self) -> bool:
        return self.download.phase is DownloadPhase.IN_PROGRESS

    @property
    def is_generating(self) -> bool:
        return self.generation_status is GenerationStatus.IN_PROGRESS


Subscriber = Callable[[LifecycleState], None]


class StateStore:
    """Thread-safe holder of the current ``LifecycleState``.

    Args:
        initial: Starting snapshot. Defaults to an empty state.
    """

    def __init__(self, initial: LifecycleState | None = None) -> None:
        self._lock = threading.RLock()
        self._state = initial if initial is not None else LifecycleState()
        self._subscribers: list[Subscriber] = []

    @property
    def state(self) -> LifecycleState:
        """Return the latest published snapshot."""
        return self._state

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for every published snapshot.

        Returns:
            A function that removes the subscription.
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def update(self, **changes: Any) -> LifecycleState:
        """Replace the given fields and publish the resulting snapshot."""
        with self._lock:
            return self._publish(replace(self._state, **changes))

    def transition(
        self, fn: Callable[[LifecycleState], LifecycleState | None]
    ) -> LifecycleState | None:
        """Atomically derive a new snapshot from the current one.

        ``fn`` returns the next snapshot, or None to leave state untouched.
        Nothing is published when it returns None.
        """
        with self._lock:
            new_state = fn(self._state)
            if new_state is None:
                return None
            return self._publish(new_state)

    def try_begin(self, activity: Activity, **changes: Any) -> Activity | None:
        """Check-and-set launch of a background activity.

        Applies ``changes`` only if no activity is running.

        Returns:
            None if the activity was started, otherwise the activity that
            blocked it (``activity`` itself for a single-flight collision).
        """
        with self._lock:
            current = self._state.active_activity
            if current is not None:
                logger.debug("Refusing to start %s: %s in progress", activity.value, current.value)
                return current
            self._publish(replace(self._state, **changes))
            return None

    def _publish(self, new_state: LifecycleState) -> LifecycleState:
        """Swap in ``new_state`` and notify subscribers. Caller holds the lock."""
        self._state = new_state
        for callback in list(self._subscribers):
            try:
                callback(new_state)
            except Exception:
                logger.exception("State subscriber %r failed", callback)
        return new_state
