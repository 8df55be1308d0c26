"""Layered TOML configuration with typed dataclass mapping.

Priority stack (highest wins):
    1. Hardcoded defaults (PocketLMConfig())
    2. config/default.toml (bundled)
    3. ~/.config/pocketlm/config.toml (user config)
    4. CLI overrides (dot-notation)
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Typed config tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GeneralConfig:
    """Top-level general settings."""

    log_level: str = "info"
    data_dir: str = "~/.local/share/pocketlm"


@dataclass(frozen=True, slots=True)
class ModelConfig:
    """Model artifact location and loading behaviour."""

    url: str = (
        "https://huggingface.co/google/gemma-3-4b-it-qat-q4_0-gguf"
        "/resolve/main/gemma-3-4b-it-q4_0.gguf"
    )
    file_name: str = "gemma-3-4b-it-q4_0.gguf"
    fallback_path: str = ""
    vision_enabled: bool = True
    auto_initialize: bool = True
    min_free_memory_gb: float = 4.0


@dataclass(frozen=True, slots=True)
class DownloadConfig:
    """Artifact transfer settings."""

    chunk_size: int = 4096
    token: str = ""


@dataclass(frozen=True, slots=True)
class InferenceConfig:
    """Prompt assembly and response fallbacks."""

    history_limit: int = 6
    image_prompt: str = "Describe the circled region in the image."
    empty_response_message: str = "Sorry, I couldn't generate a response."


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Inference engine backend selection."""

    backend: str = "ollama"
    host: str = "http://localhost:11434"
    timeout_seconds: int = 300
    model_tag: str = ""


@dataclass(frozen=True, slots=True)
class CredentialsConfig:
    """Where the bearer token is persisted."""

    settings_file: str = "~/.config/pocketlm/settings.json"
    token_key: str = "huggingface_token"


@dataclass(frozen=True, slots=True)
class PocketLMConfig:
    """Root configuration node."""

    general: GeneralConfig = field(default_factory=GeneralConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)

    @property
    def model_dir(self) -> Path:
        """Directory downloaded artifacts are stored in."""
        return Path(self.general.data_dir).expanduser() / "llm"

    @property
    def model_destination(self) -> Path:
        """Default on-disk location of the configured artifact."""
        return self.model_dir / self.model.file_name


# Source checkout: <root>/config/default.toml. Installed wheels do not ship
# it; the dataclass defaults above carry the same values.
_BUNDLED_DEFAULTS = Path(__file__).resolve().parents[2] / "config" / "default.toml"

_BOOLEAN_WORDS = {"true": True, "false": False}

# ---------------------------------------------------------------------------
# Config loading helpers
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; tables merge key by key."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = _deep_merge(current, value)
        merged[key] = value
    return merged


def _coerce_value(raw: str) -> bool | int | float | str:
    """Interpret a ``--set`` value as a boolean, integer or float, else text.

    ``"false"`` disables ``model.vision_enabled``, ``"8192"`` is a chunk size,
    ``"0.5"`` a memory threshold, and a URL stays a string.
    """
    word = raw.lower()
    if word in _BOOLEAN_WORDS:
        return _BOOLEAN_WORDS[word]
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


def _apply_dot_override(raw: dict[str, Any], dot_key: str, str_value: str) -> None:
    """Set ``section.key`` in the raw tree, e.g. ``download.chunk_size=8192``."""
    *sections, leaf = dot_key.split(".")
    target = raw
    for section in sections:
        target = target.setdefault(section, {})
    target[leaf] = _coerce_value(str_value)


def _read_toml(path: Path) -> dict[str, Any]:
    """Parse a TOML layer; a missing file contributes nothing."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        return {}


def _build_config(raw: dict[str, Any]) -> PocketLMConfig:
    """Map a merged raw dict to the typed PocketLMConfig tree."""
    return PocketLMConfig(
        general=GeneralConfig(**raw.get("general", {})),
        model=ModelConfig(**raw.get("model", {})),
        download=DownloadConfig(**raw.get("download", {})),
        inference=InferenceConfig(**raw.get("inference", {})),
        engine=EngineConfig(**raw.get("engine", {})),
        credentials=CredentialsConfig(**raw.get("credentials", {})),
    )


def load_config(
    user_config_path: Path | None = None,
    cli_overrides: dict[str, str] | None = None,
) -> PocketLMConfig:
    """Load configuration with 4-layer priority stack.

    Args:
        user_config_path: Path to user config TOML. Defaults to
            ~/.config/pocketlm/config.toml.
        cli_overrides: Dot-notation key→value pairs from CLI flags.

    Returns:
        Fully resolved, typed PocketLMConfig.
    """
    # Layer 1: hardcoded defaults (implicit via dataclass defaults)
    # Layer 2: bundled default.toml
    raw = _read_toml(_BUNDLED_DEFAULTS)

    # Layer 3: user config
    if user_config_path is None:
        user_config_path = Path.home() / ".config" / "pocketlm" / "config.toml"
    raw = _deep_merge(raw, _read_toml(user_config_path))

    # Layer 4: CLI overrides
    if cli_overrides:
        for dot_key, str_value in cli_overrides.items():
            _apply_dot_override(raw, dot_key, str_value)

    return _build_config(raw)
