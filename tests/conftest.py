"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

import pytest

from pocketlm.config import (
    CredentialsConfig,
    GeneralConfig,
    ModelConfig,
    PocketLMConfig,
)
from pocketlm.models.session import ModelSessionManager
from pocketlm.state import StateStore


class FakeEngine:
    """Scriptable in-process engine.

    ``run_inference`` emits ``chunks`` in order, marking the last one final
    when ``send_final`` is set. With ``gate_after`` set, it emits that many
    chunks and then blocks on ``gate`` before emitting the rest.
    """

    def __init__(self, chunks: Sequence[str] = ("Hello", " world")) -> None:
        self.chunks = list(chunks)
        self.send_final = True
        self.gate = threading.Event()
        self.gate_after: int | None = None
        self.init_gate: threading.Event | None = None
        self.dispose_gate: threading.Event | None = None
        self.init_error: Exception | None = None
        self.inference_error: Exception | None = None
        self.initialized: list[tuple[str, bool]] = []
        self.resets: list[bool] = []
        self.disposed: list[str] = []
        self.prompts: list[str] = []
        self.images: list[list[object]] = []
        self.closed = False

    def initialize(self, path: str, vision_enabled: bool) -> str:
        if self.init_gate is not None:
            self.init_gate.wait(5)
        if self.init_error is not None:
            raise self.init_error
        self.initialized.append((path, vision_enabled))
        return f"handle-{len(self.initialized)}"

    def reset_session(self, handle: str, vision_enabled: bool) -> None:
        self.resets.append(vision_enabled)

    def run_inference(
        self,
        handle: str,
        prompt: str,
        images: Sequence[object],
        on_partial: Callable[[str, bool], None],
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.prompts.append(prompt)
        self.images.append(list(images))
        if self.inference_error is not None:
            raise self.inference_error
        for i, chunk in enumerate(self.chunks):
            if i == self.gate_after:
                self.gate.wait(5)
            is_last = i == len(self.chunks) - 1
            on_partial(chunk, is_last and self.send_final)

    def dispose(self, handle: str) -> None:
        if self.dispose_gate is not None:
            self.dispose_gate.wait(5)
        self.disposed.append(handle)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def config(tmp_path: Path) -> PocketLMConfig:
    """Config rooted in a temporary data directory."""
    return PocketLMConfig(
        general=GeneralConfig(data_dir=str(tmp_path / "data")),
        model=ModelConfig(
            url="https://models.example/tiny-model.gguf",
            file_name="tiny-model.gguf",
            min_free_memory_gb=0.0,
        ),
        credentials=CredentialsConfig(settings_file=str(tmp_path / "settings.json")),
    )


@pytest.fixture
def model_file(config: PocketLMConfig) -> Path:
    """A downloaded artifact at the configured destination."""
    path = config.model_destination
    path.parent.mkdir(parents=True)
    path.write_bytes(b"GGUF" + b"\x00" * 60)
    return path


@pytest.fixture
def store() -> StateStore:
    return StateStore()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def sessions(engine: FakeEngine, store: StateStore) -> ModelSessionManager:
    return ModelSessionManager(engine, store, min_free_memory_gb=0.0)


@pytest.fixture
async def ready_sessions(sessions: ModelSessionManager) -> ModelSessionManager:
    """Session manager holding a live handle."""
    await sessions.initialize("/models/tiny-model.gguf")
    return sessions


@pytest.fixture
def wait_until() -> Callable[[Callable[[], bool]], Awaitable[None]]:
    """Poll a predicate on the event loop until it holds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.005)

    return _wait
