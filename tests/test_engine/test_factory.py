"""Tests for engine backend selection."""

from __future__ import annotations

import sys
import types

import pytest

from pocketlm.config import EngineConfig
from pocketlm.engine import create_engine
from pocketlm.engine.ollama import OllamaEngine


class TestCreateEngine:
    def test_ollama_backend(self) -> None:
        engine = create_engine(EngineConfig(host="http://gpu-box:11434/"))
        assert isinstance(engine, OllamaEngine)
        engine.close()

    def test_custom_factory(self, monkeypatch: pytest.MonkeyPatch, engine) -> None:
        module = types.ModuleType("custom_engines")
        module.build = lambda config: engine  # type: ignore[attr-defined]
        monkeypatch.setitem(sys.modules, "custom_engines", module)

        assert create_engine(EngineConfig(backend="custom_engines:build")) is engine

    def test_custom_factory_must_return_engine(self, monkeypatch: pytest.MonkeyPatch) -> None:
        module = types.ModuleType("custom_engines")
        module.build = lambda config: object()  # type: ignore[attr-defined]
        monkeypatch.setitem(sys.modules, "custom_engines", module)

        with pytest.raises(TypeError):
            create_engine(EngineConfig(backend="custom_engines:build"))

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError, match="Unknown engine backend"):
            create_engine(EngineConfig(backend="llamafile"))
