"""Engine lifecycle management.

The :class:`ModelSessionManager` is the sole owner of the live engine handle.
Other components borrow it through :attr:`ModelSessionManager.handle` for the
duration of one call and never keep it.
"""

from __future__ import annotations

import asyncio
import gc
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import psutil

from pocketlm.errors import INIT_FAILED_MESSAGE, BusyError, InitializationError
from pocketlm.state import Activity, InitStatus, StateStore

if TYPE_CHECKING:
    from pocketlm.core.protocols import Engine, EngineHandle

logger = logging.getLogger(__name__)


class ModelSessionManager:
    """Owns the lifecycle of the single engine instance.

    Args:
        engine: Engine capability used to create and drive handles.
        store: Shared lifecycle state.
        min_free_memory_gb: Log a warning before loading when less memory
            than this (or than the artifact size) is available.
    """

    def __init__(
        self,
        engine: Engine,
        store: StateStore,
        min_free_memory_gb: float = 4.0,
    ) -> None:
        self._engine = engine
        self._store = store
        self._min_free_memory_gb = min_free_memory_gb
        self._handle: EngineHandle | None = None

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def handle(self) -> EngineHandle | None:
        """Borrow the live handle, or None when no engine is loaded."""
        return self._handle

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(self, path: str, vision_enabled: bool = True) -> EngineHandle | None:
        """Create the engine from the artifact at ``path``.

        Single-flight: returns None immediately, without touching state, if an
        initialization is already running. Any previously held handle is
        disposed before the new one is created.

        Args:
            path: Artifact location.
            vision_enabled: Whether the session accepts images.

        Returns:
            The new handle, or None for a single-flight no-op.

        Raises:
            BusyError: A download or generation is running.
            InitializationError: The engine failed to load (recorded in last_error).
        """
        blocker = self._store.try_begin(
            Activity.INITIALIZE,
            init_status=InitStatus.IN_PROGRESS,
            model_path=path,
            needs_initialization=False,
            last_error=None,
        )
        if blocker is Activity.INITIALIZE:
            logger.debug("Initialization already in progress; ignoring request")
            return None
        if blocker is not None:
            raise BusyError(blocker)

        logger.info("Initializing engine from %s (vision=%s)", path, vision_enabled)
        try:
            await asyncio.to_thread(self._release_handle)
            self._check_memory(path)
            handle = await asyncio.to_thread(self._engine.initialize, path, vision_enabled)
        except Exception as exc:
            message = str(exc) or INIT_FAILED_MESSAGE
            self._store.update(init_status=InitStatus.FAILED, last_error=message)
            logger.error("Model initialization failed: %s", message)
            raise InitializationError(message) from exc
        except BaseException:
            self._store.update(init_status=InitStatus.FAILED, last_error=INIT_FAILED_MESSAGE)
            raise

        self._handle = handle
        self._store.update(init_status=InitStatus.READY, last_error=None)
        logger.info("Model initialized successfully")
        return handle

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def reset_session(self, vision_enabled: bool) -> None:
        """Recreate the engine's conversational state, keeping the handle.

        Safe while a generation is in flight; this is how generation is
        interrupted. No-op without a handle.
        """
        handle = self._handle
        if handle is None:
            return
        self._engine.reset_session(handle, vision_enabled)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        """Release the live handle. Idempotent."""
        self._release_handle()
        if self._store.state.init_status is InitStatus.READY:
            self._store.update(init_status=InitStatus.NOT_STARTED)

    def detach(self) -> EngineHandle | None:
        """Take the live handle out of circulation without disposing it.

        Later borrowers see no handle. The caller must pass the result to
        :meth:`dispose_handle`.
        """
        handle, self._handle = self._handle, None
        return handle

    def dispose_handle(self, handle: EngineHandle | None) -> None:
        """Free a handle previously returned by :meth:`detach`."""
        if handle is None:
            return
        logger.debug("Disposing engine handle %r", handle)
        self._engine.dispose(handle)
        gc.collect()

    def _release_handle(self) -> None:
        self.dispose_handle(self.detach())

    def _check_memory(self, path: str) -> None:
        """Warn when the artifact is unlikely to fit in available memory."""
        try:
            artifact_gb = Path(path).stat().st_size / (1024**3)
        except OSError:
            artifact_gb = 0.0
        available_gb = psutil.virtual_memory().available / (1024**3)
        required_gb = max(self._min_free_memory_gb, artifact_gb)
        if available_gb < required_gb:
            logger.warning(
                "Low memory before model load: %.1fGB available, %.1fGB recommended. "
                "Initialization may be slow or fail.",
                available_gb,
                required_gb,
            )
