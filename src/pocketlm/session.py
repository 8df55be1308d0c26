"""Chat session facade consumed by UI layers.

:class:`ChatSession` wires the downloader, session manager, orchestrator and
cancellation controller around one :class:`~pocketlm.state.StateStore`, and
turns expected failures into boolean / :class:`GenerationResult` returns so a
UI never has to handle exceptions for them. Details of every failure are in
``state.last_error``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Self

from pocketlm.credentials import SettingsTokenStore
from pocketlm.errors import BusyError, PocketLMError
from pocketlm.inference.cancel import CancellationController
from pocketlm.inference.orchestrator import (
    CompletionHandler,
    GenerationResult,
    InferenceOrchestrator,
)
from pocketlm.models.download import ModelDownloader
from pocketlm.models.session import ModelSessionManager
from pocketlm.state import (
    DownloadStatus,
    InitStatus,
    LifecycleState,
    StateStore,
    Subscriber,
)

if TYPE_CHECKING:
    import httpx

    from pocketlm.config import PocketLMConfig
    from pocketlm.core.protocols import (
        CredentialSource,
        Engine,
        EngineHandle,
        ImageInput,
        PartialCallback,
    )
    from pocketlm.inference.prompts import ChatTurn

logger = logging.getLogger(__name__)


def discover_model_path(config: PocketLMConfig) -> str:
    """Pick the artifact to associate with a new session.

    The downloaded location wins when present, then an existing
    ``model.fallback_path``; otherwise the download destination is returned
    even though nothing is there yet.
    """
    destination = config.model_destination
    if destination.is_file():
        return str(destination)
    fallback = config.model.fallback_path
    if fallback and Path(fallback).expanduser().is_file():
        return str(Path(fallback).expanduser())
    return str(destination)


class ChatSession:
    """Lifecycle and inference entry points for one chat session.

    Args:
        config: Resolved configuration.
        engine: Inference engine capability.
        credentials: Token source; defaults to the configured settings file.
        client: Async HTTP client for downloads (tests inject mocks here).
        owns_engine: Close the engine (if it has ``close()``) on ``aclose``.
    """

    def __init__(
        self,
        config: PocketLMConfig,
        engine: Engine,
        credentials: CredentialSource | None = None,
        client: httpx.AsyncClient | None = None,
        owns_engine: bool = False,
    ) -> None:
        self._config = config
        self._engine = engine
        self._owns_engine = owns_engine
        self._credentials = credentials or SettingsTokenStore(
            Path(config.credentials.settings_file).expanduser(),
            config.credentials.token_key,
        )
        self._store = StateStore(LifecycleState(model_path=discover_model_path(config)))
        self._sessions = ModelSessionManager(engine, self._store, config.model.min_free_memory_gb)
        self._downloader = ModelDownloader(self._store, client, config.download.chunk_size)
        self._orchestrator = InferenceOrchestrator(self._sessions, self._store, config.inference)
        self._canceller = CancellationController(self._orchestrator, self._sessions, self._store)

    @classmethod
    def from_config(cls, config: PocketLMConfig) -> ChatSession:
        """Build a session with the engine backend named in the config."""
        from pocketlm.engine import create_engine

        return cls(config, create_engine(config.engine), owns_engine=True)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def config(self) -> PocketLMConfig:
        return self._config

    @property
    def state(self) -> LifecycleState:
        return self._store.state

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Observe every state snapshot; returns an unsubscribe function."""
        return self._store.subscribe(callback)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def resolve_token(self, token: str | None = None) -> str:
        """Explicit token, else the saved one, else the configured fallback."""
        if token:
            return token.strip()
        return self._credentials.read_token() or self._config.download.token

    def save_token(self, token: str) -> None:
        self._credentials.write_token(token)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Initialize the discovered artifact when it is already on disk."""
        path = self.state.model_path
        if not self._config.model.auto_initialize or not path or not Path(path).is_file():
            return False
        return await self.initialize(path)

    async def download(
        self,
        url: str | None = None,
        file_name: str | None = None,
        token: str | None = None,
    ) -> bool:
        """Download the model artifact into the data directory.

        Initialization is not started; ``state.needs_initialization`` is set
        on success and the caller triggers :meth:`initialize_model`.
        """
        destination = self._config.model_dir / (file_name or self._config.model.file_name)
        try:
            await self._downloader.download(
                url or self._config.model.url, destination, self.resolve_token(token)
            )
        except BusyError as exc:
            logger.warning("download: %s", exc)
            return False
        except PocketLMError:
            return False
        return True

    async def initialize(self, path: str | None = None) -> bool:
        """Load the engine from ``path`` (defaults to the current model path)."""
        target = path or self.state.model_path
        try:
            handle = await self._sessions.initialize(target, self._config.model.vision_enabled)
        except BusyError as exc:
            logger.warning("initialize: %s", exc)
            return False
        except PocketLMError:
            return False
        return handle is not None

    async def initialize_model(self) -> bool:
        """Initialize a freshly downloaded artifact; no-op unless one is pending."""
        if not self.state.needs_initialization:
            return False
        logger.debug("Attempting to initialize model.")
        return await self.initialize(self.state.model_path)

    async def delete_model(self) -> bool:
        """Dispose the engine and delete the artifact from disk.

        The busy check and the handle hand-off happen under the store lock,
        so a generation starting meanwhile finds no handle and is rejected.
        """
        model_path = self.state.model_path
        path = Path(model_path) if model_path else None
        if path is None or not path.exists():
            return False

        detached: list[EngineHandle | None] = []

        def claim(state: LifecycleState) -> LifecycleState | None:
            if state.is_busy:
                return None
            detached.append(self._sessions.detach())
            return replace(state, init_status=InitStatus.NOT_STARTED)

        if self._store.transition(claim) is None:
            logger.warning("delete_model: %s in progress", self.state.active_activity)
            return False

        try:
            await asyncio.to_thread(self._sessions.dispose_handle, detached[0])
        except Exception as exc:
            self._store.update(last_error=f"Error deleting model: {exc}")
            logger.error("Error deleting model: %s", exc)
            return False
        try:
            await asyncio.to_thread(path.unlink)
        except OSError as exc:
            self._store.update(last_error="Failed to delete model file")
            logger.error("Failed to delete %s: %s", path, exc)
            return False

        self._store.update(
            model_path="",
            download=DownloadStatus(),
            init_status=InitStatus.NOT_STARTED,
            needs_initialization=False,
        )
        logger.info("Deleted model %s", path)
        return True

    async def aclose(self) -> None:
        """Stop any generation and release the engine."""
        self.cancel()
        await asyncio.to_thread(self._sessions.dispose)
        close = getattr(self._engine, "close", None)
        if self._owns_engine and callable(close):
            close()

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    async def generate(
        self,
        prompt: str,
        images: Sequence[ImageInput] = (),
        *,
        history: Sequence[ChatTurn] = (),
        on_partial: PartialCallback | None = None,
        on_complete: CompletionHandler | None = None,
    ) -> GenerationResult:
        """Stream a response; see :meth:`InferenceOrchestrator.generate`."""
        return await self._orchestrator.generate(
            prompt,
            images,
            history=history,
            on_partial=on_partial,
            on_complete=on_complete,
        )

    async def describe_image(
        self,
        image: ImageInput,
        *,
        on_partial: PartialCallback | None = None,
        on_complete: CompletionHandler | None = None,
    ) -> GenerationResult:
        """Describe an image with the configured image prompt."""
        return await self.generate(
            self._config.inference.image_prompt,
            [image],
            on_partial=on_partial,
            on_complete=on_complete,
        )

    def cancel(self) -> bool:
        """Stop the running generation; no-op when idle."""
        return self._canceller.cancel()

    def clear_state(self) -> None:
        """Forget the last response and error."""
        self._store.update(partial_response=None, last_error=None)

    def clear_response(self) -> None:
        """Forget the last response but keep ``last_error`` for display."""
        self._store.update(partial_response=None)
