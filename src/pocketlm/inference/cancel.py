"""User-initiated cancellation of the in-flight generation."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from pocketlm.errors import CANCELLED_MESSAGE
from pocketlm.state import GenerationStatus, LifecycleState, StateStore

if TYPE_CHECKING:
    from pocketlm.inference.orchestrator import InferenceOrchestrator
    from pocketlm.models.session import ModelSessionManager

logger = logging.getLogger(__name__)


class CancellationController:
    """Stops the running generation by resetting the engine session.

    Cancellation is cooperative: the native call is never killed. The engine
    is told to drop its session and the orchestrator discards any chunk that
    arrives afterwards.

    Args:
        orchestrator: Source of the in-flight generation.
        sessions: Owner of the engine handle.
        store: Shared lifecycle state.
    """

    def __init__(
        self,
        orchestrator: InferenceOrchestrator,
        sessions: ModelSessionManager,
        store: StateStore,
    ) -> None:
        self._orchestrator = orchestrator
        self._sessions = sessions
        self._store = store

    def cancel(self) -> bool:
        """Cancel the running generation. Idempotent; no-op when idle.

        Returns:
            True if a generation was cancelled by this call.
        """
        generation = self._orchestrator.active
        if generation is None:
            logger.debug("cancel: no generation in progress")
            return False

        def mark(state: LifecycleState) -> LifecycleState | None:
            if state.generation_status is not GenerationStatus.IN_PROGRESS:
                return None
            if not generation.settle(state, cancelled=True):
                return None
            return replace(
                state,
                generation_status=GenerationStatus.CANCELLED,
                last_error=CANCELLED_MESSAGE,
            )

        if self._store.transition(mark) is None:
            logger.debug("cancel: generation already finished")
            return False

        try:
            self._sessions.reset_session(generation.vision_enabled)
        except Exception:
            logger.warning("Session reset during cancellation failed", exc_info=True)

        self._store.transition(
            lambda s: replace(s, generation_status=GenerationStatus.IDLE)
            if s.generation_status is GenerationStatus.CANCELLED
            else None
        )
        # Wake the consumer; it sees the cancelled flag before the item.
        generation.post(None)
        logger.info("Generation stopped by user")
        return True
