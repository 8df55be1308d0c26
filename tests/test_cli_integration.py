"""CLI integration tests using Click's CliRunner."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from click.testing import CliRunner

from pocketlm.cli import main


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def base_args(tmp_path: Path) -> list[str]:
    """Global options isolating the CLI from the real home directory."""
    user_config = tmp_path / "config.toml"
    user_config.write_text("")
    return [
        "--config", str(user_config),
        "--set", "general.data_dir", str(tmp_path / "data"),
        "--set", "model.file_name", "tiny-model.gguf",
        "--set", "model.url", "https://models.example/tiny-model.gguf",
        "--set", "model.min_free_memory_gb", "0",
        "--set", "credentials.settings_file", str(tmp_path / "settings.json"),
    ]  # fmt: skip


@pytest.fixture
def artifact(tmp_path: Path) -> Path:
    path = tmp_path / "data" / "llm" / "tiny-model.gguf"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"GGUF" * 8)
    return path


@pytest.fixture
def patched_engine(engine) -> Iterator[object]:
    with patch("pocketlm.engine.create_engine", return_value=engine):
        yield engine


class TestMainGroup:
    """Top-level CLI group."""

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "pocketlm" in result.output.lower()

    def test_help(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("token", "download", "status", "ask", "chat", "delete", "config"):
            assert command in result.output


class TestTokenCommand:
    def test_save_and_show_masked(self, runner: CliRunner, base_args: list[str]) -> None:
        saved = runner.invoke(main, [*base_args, "token", "hf_secret123"])
        assert saved.exit_code == 0
        assert "Token saved successfully!" in saved.output

        shown = runner.invoke(main, [*base_args, "token"])
        assert shown.exit_code == 0
        assert "t123" in shown.output
        assert "hf_secret" not in shown.output

    def test_blank_token_rejected(self, runner: CliRunner, base_args: list[str]) -> None:
        result = runner.invoke(main, [*base_args, "token", "   "])
        assert result.exit_code != 0


class TestConfigCommand:
    def test_prints_resolved_config(self, runner: CliRunner, base_args: list[str]) -> None:
        result = runner.invoke(main, [*base_args, "config"])
        assert result.exit_code == 0
        assert "history_limit" in result.output
        assert "tiny-model.gguf" in result.output


class TestStatusCommand:
    def test_missing_model(
        self, runner: CliRunner, base_args: list[str], patched_engine: object
    ) -> None:
        result = runner.invoke(main, [*base_args, "status"])
        assert result.exit_code == 0
        assert "Model Status" in result.output
        assert "No" in result.output


class TestDownloadCommand:
    def test_download_and_initialize(
        self,
        runner: CliRunner,
        base_args: list[str],
        patched_engine,
        tmp_path: Path,
    ) -> None:
        real_client = httpx.AsyncClient
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"GGUF" * 64))

        with patch(
            "pocketlm.models.download.httpx.AsyncClient",
            side_effect=lambda **kwargs: real_client(transport=transport),
        ):
            result = runner.invoke(main, [*base_args, "download"])

        assert result.exit_code == 0, result.output
        assert (tmp_path / "data" / "llm" / "tiny-model.gguf").stat().st_size == 256
        assert len(patched_engine.initialized) == 1
        assert "ready" in result.output

    def test_unauthorized(
        self, runner: CliRunner, base_args: list[str], patched_engine, tmp_path: Path
    ) -> None:
        real_client = httpx.AsyncClient
        transport = httpx.MockTransport(lambda request: httpx.Response(401))

        with patch(
            "pocketlm.models.download.httpx.AsyncClient",
            side_effect=lambda **kwargs: real_client(transport=transport),
        ):
            result = runner.invoke(main, [*base_args, "download", "--no-init"])

        assert result.exit_code == 1
        assert "401 Unauthorized" in result.output
        assert patched_engine.initialized == []


class TestAskCommand:
    def test_streams_answer(
        self, runner: CliRunner, base_args: list[str], patched_engine, artifact: Path
    ) -> None:
        result = runner.invoke(main, [*base_args, "ask", "Hi there"])
        assert result.exit_code == 0, result.output
        assert "Hello world" in result.output
        assert patched_engine.prompts == ["Hi there"]

    def test_without_model(
        self, runner: CliRunner, base_args: list[str], patched_engine
    ) -> None:
        result = runner.invoke(main, [*base_args, "ask", "Hi"])
        assert result.exit_code == 1
        assert "pocketlm download" in result.output

    def test_with_image(
        self,
        runner: CliRunner,
        base_args: list[str],
        patched_engine,
        artifact: Path,
        tmp_path: Path,
    ) -> None:
        image = tmp_path / "photo.png"
        image.write_bytes(b"\x89PNG")

        result = runner.invoke(main, [*base_args, "ask", "What is it?", "--image", str(image)])

        assert result.exit_code == 0, result.output
        assert patched_engine.images == [[image]]


class TestChatCommand:
    def test_conversation_keeps_history(
        self, runner: CliRunner, base_args: list[str], patched_engine, artifact: Path
    ) -> None:
        result = runner.invoke(main, [*base_args, "chat"], input="first\nsecond\n/quit\n")

        assert result.exit_code == 0, result.output
        assert result.output.count("Hello world") == 2
        assert patched_engine.prompts[0] == "first"
        assert "User: first" in patched_engine.prompts[1]
        assert "Assistant: Hello world" in patched_engine.prompts[1]


class TestDeleteCommand:
    def test_deletes_artifact(
        self, runner: CliRunner, base_args: list[str], patched_engine, artifact: Path
    ) -> None:
        result = runner.invoke(main, [*base_args, "delete", "--yes"])
        assert result.exit_code == 0, result.output
        assert not artifact.exists()

    def test_nothing_to_delete(
        self, runner: CliRunner, base_args: list[str], patched_engine
    ) -> None:
        result = runner.invoke(main, [*base_args, "delete", "--yes"])
        assert result.exit_code == 1
