"""Tests for bearer-token persistence."""

from __future__ import annotations

import json
from pathlib import Path

from pocketlm.core.protocols import CredentialSource
from pocketlm.credentials import SettingsTokenStore


class TestSettingsTokenStore:
    """Read/write of the token in the settings file."""

    def test_satisfies_protocol(self, tmp_path: Path) -> None:
        assert isinstance(SettingsTokenStore(tmp_path / "s.json"), CredentialSource)

    def test_missing_file_reads_empty(self, tmp_path: Path) -> None:
        assert SettingsTokenStore(tmp_path / "s.json").read_token() == ""

    def test_write_then_read_trims(self, tmp_path: Path) -> None:
        store = SettingsTokenStore(tmp_path / "nested" / "s.json")
        store.write_token("  hf_abc123 \n")
        assert store.read_token() == "hf_abc123"

    def test_preserves_other_keys(self, tmp_path: Path) -> None:
        path = tmp_path / "s.json"
        path.write_text(json.dumps({"theme": "dark"}))
        SettingsTokenStore(path, key="hf").write_token("t0k")
        assert json.loads(path.read_text()) == {"theme": "dark", "hf": "t0k"}
        assert not path.with_suffix(".tmp").exists()

    def test_corrupt_file_reads_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "s.json"
        path.write_text("{not json")
        assert SettingsTokenStore(path).read_token() == ""
