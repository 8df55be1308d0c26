"""Single-flight streaming generation against the live engine.

The engine produces chunks on a worker thread through a ``(text, is_final)``
callback. Each generation owns a queue that carries those chunks, in order,
onto the event loop, where they are appended to
``LifecycleState.partial_response`` and forwarded to the caller. A
generation reaches exactly one terminal state (completed, failed or
cancelled), and whichever path claims it first under the store lock wins.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from pocketlm.config import InferenceConfig
from pocketlm.errors import (
    CANCELLED_MESSAGE,
    INFERENCE_FAILED_MESSAGE,
    NOT_READY_MESSAGE,
    BusyError,
    CancelledByUserError,
    InferenceError,
    ModelNotReadyError,
    PocketLMError,
)
from pocketlm.inference.prompts import ChatTurn, build_text_prompt
from pocketlm.state import Activity, GenerationStatus, LifecycleState, StateStore

if TYPE_CHECKING:
    from pocketlm.core.protocols import EngineHandle, ImageInput, PartialCallback
    from pocketlm.models.session import ModelSessionManager

logger = logging.getLogger(__name__)

CompletionHandler = Callable[[str], None]

# Queue sentinel: engine returned, or a cancelled consumer must wake up.
_END = object()


class GenerationOutcome(enum.Enum):
    """How a ``generate`` call ended."""

    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


@dataclass(frozen=True, slots=True)
class GenerationResult:
    """Outcome of one ``generate`` call.

    Args:
        text: Text accumulated from the engine (empty when rejected or failed).
        outcome: Terminal outcome.
        error: The error kind for every outcome other than COMPLETED.
    """

    text: str
    outcome: GenerationOutcome
    error: PocketLMError | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is GenerationOutcome.COMPLETED


class ActiveGeneration:
    """Bookkeeping for one in-flight generation.

    ``deliver`` is the callback handed to the engine and runs on the engine
    thread; everything else runs on the event loop or the cancelling thread.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, vision_enabled: bool) -> None:
        self.loop = loop
        self.vision_enabled = vision_enabled
        self.queue: asyncio.Queue[object] = asyncio.Queue()
        self.cancel_event = threading.Event()
        self.cancelled = False
        self.text = ""
        self.last_error: str | None = None
        self._settled = False
        self._final_seen = False
        self._lock = threading.Lock()

    @property
    def settled(self) -> bool:
        return self._settled

    def settle(self, state: LifecycleState, cancelled: bool = False) -> bool:
        """Claim the terminal transition. Returns True exactly once.

        Called inside a store transition, so the captured text matches the
        snapshot the terminal state is derived from.
        """
        with self._lock:
            if self._settled:
                return False
            self._settled = True
        self.cancelled = cancelled
        self.text = state.partial_response or ""
        self.last_error = state.last_error
        if cancelled:
            self.cancel_event.set()
        return True

    def deliver(self, text: str, is_final: bool) -> None:
        """Engine callback. Drops chunks after cancellation or a final chunk."""
        if self.cancel_event.is_set():
            return
        with self._lock:
            if self._final_seen:
                return
            if is_final:
                self._final_seen = True
        self.post((text, is_final))

    def post(self, item: object) -> None:
        """Thread-safe enqueue onto the consumer's loop."""
        try:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, item)
        except RuntimeError:
            logger.debug("Event loop closed; dropping %r", item)


class InferenceOrchestrator:
    """Drives one streaming generation at a time.

    Args:
        sessions: Owner of the engine handle; borrowed per call.
        store: Shared lifecycle state.
        config: Prompt assembly settings.
    """

    def __init__(
        self,
        sessions: ModelSessionManager,
        store: StateStore,
        config: InferenceConfig | None = None,
    ) -> None:
        self._sessions = sessions
        self._store = store
        self._config = config if config is not None else InferenceConfig()
        self._active: ActiveGeneration | None = None
        self._workers: set[asyncio.Task[None]] = set()

    @property
    def active(self) -> ActiveGeneration | None:
        """The generation currently in flight, if any."""
        return self._active

    async def generate(
        self,
        prompt: str,
        images: Sequence[ImageInput] = (),
        *,
        history: Sequence[ChatTurn] = (),
        on_partial: PartialCallback | None = None,
        on_complete: CompletionHandler | None = None,
    ) -> GenerationResult:
        """Run one generation to its terminal state.

        Text mode (no images) prepends the recent ``history`` to the prompt;
        image mode sends the prompt as-is with the session in vision mode.

        ``on_partial`` receives every accepted chunk in engine order.
        ``on_complete`` is invoked exactly once on completion or cancellation
        with the accumulated text, falling back to ``last_error`` when empty;
        it is never invoked on failure or rejection.

        Returns:
            GenerationResult describing how the call ended.
        """
        handle = self._sessions.handle
        if handle is None:
            self._store.update(last_error=NOT_READY_MESSAGE)
            logger.error("generate: no engine handle")
            return GenerationResult("", GenerationOutcome.REJECTED, ModelNotReadyError())

        blocker = self._store.try_begin(
            Activity.GENERATE,
            generation_status=GenerationStatus.IN_PROGRESS,
            partial_response=None,
            last_error=None,
        )
        if blocker is not None:
            logger.warning("generate rejected: %s in progress", blocker.value)
            return GenerationResult("", GenerationOutcome.REJECTED, BusyError(blocker))

        generation = ActiveGeneration(asyncio.get_running_loop(), vision_enabled=bool(images))
        self._active = generation
        if images:
            full_prompt = prompt
        else:
            full_prompt = build_text_prompt(prompt, history, self._config.history_limit)
        logger.debug("Starting generation (vision=%s)", generation.vision_enabled)

        try:
            worker = asyncio.create_task(
                asyncio.to_thread(self._run, handle, full_prompt, list(images), generation)
            )
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)
            return await self._consume(generation, on_partial, on_complete)
        finally:
            if self._active is generation:
                self._active = None
            generation.cancel_event.set()
            # Consumer torn down before a terminal state was claimed.
            self._store.transition(
                lambda s: replace(s, generation_status=GenerationStatus.IDLE)
                if generation.settle(s)
                else None
            )

    def _run(
        self,
        handle: EngineHandle,
        prompt: str,
        images: list[ImageInput],
        generation: ActiveGeneration,
    ) -> None:
        """Worker-thread body: reset the session, then stream from the engine."""
        try:
            self._sessions.reset_session(generation.vision_enabled)
            self._sessions.engine.run_inference(
                handle, prompt, images, generation.deliver, generation.cancel_event
            )
        except Exception as exc:
            if generation.cancel_event.is_set():
                logger.debug("Engine raised after cancellation: %s", exc)
            generation.post(exc)
        else:
            generation.post(_END)

    async def _consume(
        self,
        generation: ActiveGeneration,
        on_partial: PartialCallback | None,
        on_complete: CompletionHandler | None,
    ) -> GenerationResult:
        while True:
            item = await generation.queue.get()
            if generation.cancelled:
                return self._finish_cancelled(generation, on_complete)
            if isinstance(item, BaseException):
                return self._finish_failed(generation, item, on_complete)

            # An engine returning without a final chunk ends the stream.
            text, is_final = ("", True) if item is _END else item  # type: ignore[misc]

            if text and not self._append(generation, text):
                return self._finish_cancelled(generation, on_complete)
            if on_partial is not None:
                on_partial(text, is_final)
            if is_final:
                return self._finish_completed(generation, on_complete)

    def _append(self, generation: ActiveGeneration, text: str) -> bool:
        """Append a chunk unless the generation was cancelled meanwhile."""

        def apply(state: LifecycleState) -> LifecycleState | None:
            if generation.settled:
                return None
            return replace(state, partial_response=(state.partial_response or "") + text)

        return self._store.transition(apply) is not None

    def _finish_completed(
        self, generation: ActiveGeneration, on_complete: CompletionHandler | None
    ) -> GenerationResult:
        claimed = self._store.transition(
            lambda s: replace(s, generation_status=GenerationStatus.IDLE)
            if generation.settle(s)
            else None
        )
        if claimed is None:
            return self._finish_cancelled(generation, on_complete)

        logger.debug("Generation completed (%d chars)", len(generation.text))
        if on_complete is not None:
            on_complete(
                generation.text
                or generation.last_error
                or self._config.empty_response_message
            )
            self._clear_partial()
        return GenerationResult(generation.text, GenerationOutcome.COMPLETED)

    def _finish_cancelled(
        self, generation: ActiveGeneration, on_complete: CompletionHandler | None
    ) -> GenerationResult:
        if on_complete is not None:
            on_complete(generation.text or generation.last_error or CANCELLED_MESSAGE)
            self._clear_partial()
        return GenerationResult(
            generation.text, GenerationOutcome.CANCELLED, CancelledByUserError()
        )

    def _finish_failed(
        self,
        generation: ActiveGeneration,
        exc: BaseException,
        on_complete: CompletionHandler | None,
    ) -> GenerationResult:
        message = str(exc) or INFERENCE_FAILED_MESSAGE
        claimed = self._store.transition(
            lambda s: replace(
                s,
                generation_status=GenerationStatus.IDLE,
                last_error=message,
                partial_response=None,
            )
            if generation.settle(s)
            else None
        )
        if claimed is None:
            return self._finish_cancelled(generation, on_complete)
        logger.error("Inference error: %s", message)
        return GenerationResult("", GenerationOutcome.FAILED, InferenceError(message))

    def _clear_partial(self) -> None:
        """Drop the consumed transcript unless a new generation already began."""
        self._store.transition(
            lambda s: replace(s, partial_response=None) if not s.is_generating else None
        )
