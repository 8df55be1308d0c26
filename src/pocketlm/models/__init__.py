"""Model artifact transfer and engine session lifecycle."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pocketlm.models.download import ModelDownloader
    from pocketlm.models.session import ModelSessionManager

__all__ = ["ModelDownloader", "ModelSessionManager"]


def __getattr__(name: str) -> type:
    """Lazy-load model management classes on first access."""
    if name == "ModelDownloader":
        from pocketlm.models.download import ModelDownloader

        return ModelDownloader
    if name == "ModelSessionManager":
        from pocketlm.models.session import ModelSessionManager

        return ModelSessionManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
