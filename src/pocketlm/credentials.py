"""Bearer-token persistence in a small JSON settings file."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class SettingsTokenStore:
    """Key-value settings file holding the download bearer token.

    Satisfies the :class:`~pocketlm.core.protocols.CredentialSource` protocol.
    Other keys in the file are preserved on write.

    Args:
        settings_file: JSON file to read and write.
        key: Key under which the token is stored.
    """

    def __init__(self, settings_file: Path, key: str = "huggingface_token") -> None:
        self._settings_file = settings_file
        self._key = key

    def _load(self) -> dict[str, Any]:
        if not self._settings_file.is_file():
            return {}
        try:
            with open(self._settings_file, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Unreadable settings file %s: %s", self._settings_file, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def read_token(self) -> str:
        """Return the stored token, or an empty string when none is saved."""
        value = self._load().get(self._key, "")
        return value.strip() if isinstance(value, str) else ""

    def write_token(self, token: str) -> None:
        """Atomically store ``token`` (whitespace-trimmed)."""
        self._settings_file.parent.mkdir(parents=True, exist_ok=True)
        data = self._load()
        data[self._key] = token.strip()

        tmp_path = self._settings_file.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self._settings_file)
