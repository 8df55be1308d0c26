"""Engine backend selection.

``engine.backend`` is either ``"ollama"`` (bundled) or a ``"module:factory"``
path to a callable that accepts the :class:`~pocketlm.config.EngineConfig`
and returns an object satisfying the :class:`~pocketlm.core.protocols.Engine`
protocol.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING

from pocketlm.core.protocols import Engine

if TYPE_CHECKING:
    from pocketlm.config import EngineConfig

__all__ = ["create_engine"]


def create_engine(config: EngineConfig) -> Engine:
    """Instantiate the configured engine backend.

    Raises:
        ValueError: Unknown backend name.
        TypeError: A custom factory returned something that is not an Engine.
    """
    backend = config.backend
    if backend == "ollama":
        from pocketlm.engine.ollama import OllamaEngine

        return OllamaEngine(
            host=config.host,
            timeout=float(config.timeout_seconds),
            model_tag=config.model_tag,
        )

    if ":" in backend:
        module_name, _, attr = backend.partition(":")
        factory = getattr(importlib.import_module(module_name), attr)
        engine = factory(config)
        if not isinstance(engine, Engine):
            raise TypeError(f"Engine factory {backend!r} returned {type(engine).__name__}")
        return engine

    raise ValueError(f"Unknown engine backend {backend!r}")
