"""Interface contracts for the capabilities PocketLM consumes.

The inference engine and the credential source are external collaborators;
any object satisfying these protocols can be plugged in.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, TypeAlias, runtime_checkable

if TYPE_CHECKING:
    import threading

EngineHandle: TypeAlias = Any
"""Opaque reference to an initialized engine instance."""

ImageInput: TypeAlias = bytes | Path
"""Encoded image bytes (PNG/JPEG) or a path to an image file."""

PartialCallback: TypeAlias = Callable[[str, bool], None]
"""Receives ``(text, is_final)`` for every chunk the engine produces."""


@runtime_checkable
class Engine(Protocol):
    """Native inference engine.

    Every method may block; callers confine them to worker threads.
    ``reset_session`` must be safe to call while ``run_inference`` is running
    on another thread.
    """

    def initialize(self, path: str, vision_enabled: bool) -> EngineHandle: ...

    def reset_session(self, handle: EngineHandle, vision_enabled: bool) -> None: ...

    def run_inference(
        self,
        handle: EngineHandle,
        prompt: str,
        images: Sequence[ImageInput],
        on_partial: PartialCallback,
        cancel_event: threading.Event | None = None,
    ) -> None: ...

    def dispose(self, handle: EngineHandle) -> None: ...


@runtime_checkable
class CredentialSource(Protocol):
    """Persistent key-value storage for the download bearer token."""

    def read_token(self) -> str: ...

    def write_token(self, token: str) -> None: ...
