"""Click-based CLI for PocketLM."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console

from pocketlm import __version__
from pocketlm.config import PocketLMConfig, load_config

if TYPE_CHECKING:
    from pocketlm.session import ChatSession

logger = logging.getLogger("pocketlm")

_NOT_DOWNLOADED = "Model not found. Run 'pocketlm download' first."


def _mask(token: str) -> str:
    """Show only the last four characters of a secret."""
    if not token:
        return "(not set)"
    return "*" * max(len(token) - 4, 4) + token[-4:]


@contextlib.contextmanager
def _interrupt_cancels(cancel: Callable[[], object]) -> Iterator[None]:
    """Route Ctrl-C to ``cancel`` while the block runs."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel)
    except (NotImplementedError, RuntimeError):
        # Windows event loops have no signal handler support.
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


@click.group()
@click.version_option(version=__version__, prog_name="pocketlm")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to user config TOML file.",
)
@click.option("--set", "set_kv", nargs=2, multiple=True, help="Override config KEY VALUE.")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Verbose output.")
@click.option("-q", "--quiet", is_flag=True, default=False, help="Suppress all output.")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Path | None,
    set_kv: tuple[tuple[str, str], ...],
    verbose: bool,
    quiet: bool,
) -> None:
    """PocketLM -- chat with a locally hosted multimodal model."""
    ctx.ensure_object(dict)
    cfg = load_config(user_config_path=config_path, cli_overrides=dict(set_kv) or None)
    ctx.obj = {
        "config": cfg,
        "verbose": verbose,
        "quiet": quiet,
    }

    # Configure logging
    level = logging.DEBUG if verbose else logging.WARNING
    if quiet:
        level = logging.CRITICAL
    logging.basicConfig(level=level, format="%(name)s: %(message)s", stream=sys.stderr)


@main.command()
@click.argument("value", required=False)
@click.pass_context
def token(ctx: click.Context, value: str | None) -> None:
    """Save the download access token, or show the saved one."""
    from pocketlm.credentials import SettingsTokenStore

    config: PocketLMConfig = ctx.obj["config"]
    store = SettingsTokenStore(
        Path(config.credentials.settings_file).expanduser(), config.credentials.token_key
    )
    if value is None:
        click.echo(f"Token: {_mask(store.read_token())}")
        return
    if not value.strip():
        raise click.BadParameter("Token must not be blank", param_hint="VALUE")
    store.write_token(value)
    click.echo("Token saved successfully!")


@main.command()
@click.option("--url", default=None, help="Artifact URL (defaults to model.url).")
@click.option("--file-name", default=None, help="Local file name (defaults to model.file_name).")
@click.option("--init/--no-init", default=True, help="Initialize the model after download.")
@click.pass_context
def download(
    ctx: click.Context,
    url: str | None,
    file_name: str | None,
    init: bool,
) -> None:
    """Download the model artifact."""
    from pocketlm.progress import DownloadProgressReporter
    from pocketlm.session import ChatSession

    obj = ctx.obj
    config: PocketLMConfig = obj["config"]
    console = Console(stderr=True, quiet=obj["quiet"])
    reporter = DownloadProgressReporter(console, quiet=obj["quiet"])

    async def run() -> bool:
        async with ChatSession.from_config(config) as session:
            unsubscribe = session.subscribe(reporter.callback)
            reporter.start(file_name or config.model.file_name)
            try:
                ok = await session.download(url=url, file_name=file_name)
            finally:
                unsubscribe()
                reporter.finish(session.state)
            if not ok or not init:
                return ok
            console.print("Initializing model...")
            if not await session.initialize_model():
                console.print(f"[red]{session.state.last_error}[/red]")
                return False
            console.print("[green]Model is downloaded and ready.[/green]")
            return True

    if not asyncio.run(run()):
        ctx.exit(1)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show where the model lives and whether it is present."""
    from pocketlm.progress import status_table
    from pocketlm.session import ChatSession

    obj = ctx.obj
    config: PocketLMConfig = obj["config"]
    console = Console(quiet=obj["quiet"])

    async def run() -> None:
        async with ChatSession.from_config(config) as session:
            state = session.state
            exists = bool(state.model_path) and Path(state.model_path).is_file()
            console.print(status_table(state, exists))

    asyncio.run(run())


@main.command()
@click.argument("prompt")
@click.option(
    "--image",
    "image_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Attach an image.",
)
@click.pass_context
def ask(ctx: click.Context, prompt: str, image_path: Path | None) -> None:
    """Ask a single question and stream the answer."""
    from pocketlm.session import ChatSession

    obj = ctx.obj
    config: PocketLMConfig = obj["config"]
    err = Console(stderr=True, quiet=obj["quiet"])

    async def run() -> bool:
        async with ChatSession.from_config(config) as session:
            if not await session.start():
                err.print(f"[red]{session.state.last_error or _NOT_DOWNLOADED}[/red]")
                return False
            images = [image_path] if image_path is not None else []
            with _interrupt_cancels(session.cancel):
                result = await session.generate(
                    prompt, images, on_partial=lambda text, _: click.echo(text, nl=False)
                )
            click.echo()
            if not result.ok:
                err.print(f"[red]{session.state.last_error}[/red]")
            return result.ok

    if not asyncio.run(run()):
        ctx.exit(1)


@main.command()
@click.pass_context
def chat(ctx: click.Context) -> None:
    """Interactive chat. Ctrl-C stops a response; /quit exits."""
    from pocketlm.session import ChatSession

    obj = ctx.obj
    config: PocketLMConfig = obj["config"]
    console = Console()

    async def run() -> bool:
        async with ChatSession.from_config(config) as session:
            if not await session.start():
                console.print(f"[red]{session.state.last_error or _NOT_DOWNLOADED}[/red]")
                return False
            console.print(
                "Hello! How can I help? Commands: /image PATH [PROMPT], /clear, /quit",
                markup=False,
            )
            await _chat_loop(console, session)
            return True

    try:
        ok = asyncio.run(run())
    except KeyboardInterrupt:
        logger.debug("Chat interrupted")
        ok = True
    if not ok:
        ctx.exit(1)


async def _chat_loop(console: Console, session: ChatSession) -> None:
    """Read-generate loop keeping a transcript for context."""
    from pocketlm.inference.orchestrator import GenerationOutcome
    from pocketlm.inference.prompts import ChatTurn

    history: list[ChatTurn] = []

    while True:
        try:
            line = await asyncio.to_thread(console.input, "[bold cyan]You:[/bold cyan] ")
        except EOFError:
            return
        text = line.strip()
        if not text:
            continue
        if text in ("/quit", "/exit"):
            return
        if text == "/clear":
            history.clear()
            session.clear_state()
            console.print("[dim]History cleared.[/dim]")
            continue

        images: list[Path] = []
        if text.startswith("/image "):
            path_str, _, text = text.removeprefix("/image ").partition(" ")
            image = Path(path_str).expanduser()
            if not image.is_file():
                console.print(f"[red]No such image: {image}[/red]")
                continue
            images.append(image)
            text = text.strip() or session.config.inference.image_prompt

        replies: list[str] = []
        console.print("[bold magenta]Assistant:[/bold magenta] ", end="")
        with _interrupt_cancels(session.cancel):
            result = await session.generate(
                text,
                images,
                history=history,
                on_partial=lambda chunk, _: console.print(
                    chunk, end="", markup=False, highlight=False
                ),
                on_complete=replies.append,
            )
        console.print()

        if result.outcome is GenerationOutcome.CANCELLED:
            console.print(f"[yellow]{session.state.last_error}[/yellow]")
        elif not result.ok:
            console.print(f"[red]{session.state.last_error}[/red]")
        if replies:
            history.append(ChatTurn("user", text))
            history.append(ChatTurn("assistant", replies[0]))
        session.clear_state()


@main.command()
@click.confirmation_option(prompt="Delete the downloaded model?")
@click.pass_context
def delete(ctx: click.Context) -> None:
    """Delete the downloaded model file."""
    from pocketlm.session import ChatSession

    config: PocketLMConfig = ctx.obj["config"]

    async def run() -> tuple[bool, str | None]:
        async with ChatSession.from_config(config) as session:
            path = session.state.model_path
            ok = await session.delete_model()
            return ok, session.state.last_error if not ok else path

    ok, detail = asyncio.run(run())
    if ok:
        click.echo(f"Deleted {detail}")
    else:
        click.echo(detail or _NOT_DOWNLOADED, err=True)
        ctx.exit(1)


@main.command(name="config")
@click.pass_context
def config_cmd(ctx: click.Context) -> None:
    """View the resolved PocketLM configuration."""
    import dataclasses
    import json as json_mod

    from rich.syntax import Syntax

    obj = ctx.obj
    config: PocketLMConfig = obj["config"]
    console = Console(quiet=obj["quiet"])

    config_dict = dataclasses.asdict(config)
    config_dict["download"]["token"] = _mask(config.download.token)

    json_str = json_mod.dumps(config_dict, indent=2)
    syntax = Syntax(json_str, "json", theme="monokai")
    console.print(syntax)
