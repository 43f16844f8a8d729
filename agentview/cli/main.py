"""
CLI entry point for agentview — screen captures and follow-up chat with a vision model.
"""

import asyncio
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

try:
    from importlib.metadata import version as pkg_version

    _version = pkg_version("agentview")
except Exception:
    _version = "0.1.0"

from agentview.core.config import ConfigManager
from agentview.core.session import AgentViewService
from agentview.core.thread_registry import ThreadRegistry
from agentview.core.transport import Transport
from agentview.errors import AgentViewError, SettingsError
from agentview.models.settings import AppSettings, load_settings

console = Console()
console_err = Console(stderr=True)

logger = logging.getLogger(__name__)


def _make_transport() -> Transport:
    return Transport()


def _settings(ctx: click.Context) -> AppSettings:
    return ctx.obj["settings"]


def _config_manager(settings: AppSettings) -> ConfigManager:
    return ConfigManager(base_dir=settings.config_dir)


def _service(settings: AppSettings, registry: ThreadRegistry) -> AgentViewService:
    config_mgr = _config_manager(settings)
    return AgentViewService(
        registry,
        api_key_provider=config_mgr.load_api_key,
        settings=settings,
        transport_factory=_make_transport,
    )


def _load_registry(settings: AppSettings) -> ThreadRegistry:
    registry = ThreadRegistry(settings.threads_path)
    registry.load()
    return registry


def _fail(message: str) -> None:
    console_err.print(f"[red]Error:[/red] {escape(message)}")
    sys.exit(1)


def _format_relative_time(dt: datetime) -> str:
    """Format a timestamp as a relative time string."""
    diff = (datetime.now(UTC) - dt).total_seconds()
    minutes = int(diff // 60)
    hours = int(diff // 3600)
    days = int(diff // 86400)

    if minutes < 1:
        return "now"
    if minutes < 60:
        return f"{minutes}m"
    if hours < 24:
        return f"{hours}h"
    if days < 7:
        return f"{days}d"
    return dt.strftime("%b %d")


# =============================================================================
# Root CLI Group
# =============================================================================


@click.group(invoke_without_command=True)
@click.version_option(version=_version, prog_name="agentview")
@click.option("--debug", is_flag=True, hidden=True, help="Enable debug logging")
@click.option(
    "--settings",
    "settings_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Settings file (default: ~/.agentview/settings.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool, settings_path: Path | None):
    """
    AgentView — ask a vision model about a screen capture.

    \b
        agentview ask shot.png -c "what is this error?"
        agentview chat "and how do I fix it?"
        agentview threads list
        agentview key set
    """
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug

    if debug:
        logging.basicConfig(level=logging.DEBUG, format="[%(levelname)s] %(name)s: %(message)s")
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    try:
        ctx.obj["settings"] = load_settings(settings_path)
    except SettingsError as e:
        _fail(str(e))

    if ctx.invoked_subcommand is None:
        console.print(
            Panel(
                "[bold]Welcome to AgentView[/bold]\n\n"
                "Send a screenshot with [cyan]agentview ask IMAGE[/cyan], then keep\n"
                "talking about it with [cyan]agentview chat MESSAGE[/cyan].\n\n"
                "Run [cyan]agentview key set[/cyan] first to store your API key.",
                border_style="blue",
            )
        )


# =============================================================================
# Conversation Commands
# =============================================================================


async def _run_send(
    settings: AppSettings,
    thread: str | None,
    image_png: bytes | None,
    text: str,
) -> None:
    async with ThreadRegistry(settings.threads_path) as registry:
        conversation_id = None
        if thread:
            conversation_id = registry.resolve(thread)
            if conversation_id is None:
                raise AgentViewError(f"Thread not found: {thread}")

        result = await _service(settings, registry).send(
            conversation_id,
            image_png,
            text,
            on_delta=lambda delta: click.echo(delta, nl=False),
            on_debug=lambda line: logger.debug("%s", line),
        )

        click.echo()
        if result is None:
            console_err.print("[yellow]Nothing to send.[/yellow]")
            return
        console_err.print(f"[grey62]Thread {result.conversation_id}[/grey62]")


@cli.command()
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--context", "-c", "user_context", default="", help="What you want to know about the capture")
@click.option("--thread", "-t", default=None, help="Attach the capture to an existing thread")
@click.option("--no-stream", is_flag=True, help="Wait for the whole answer; nothing is saved")
@click.pass_context
def ask(ctx: click.Context, image: Path, user_context: str, thread: str | None, no_stream: bool):
    """
    Ask about a PNG screen capture.

    The answer streams to the terminal and is saved as a new thread (or
    appended to --thread).

    \b
    Examples:
        agentview ask shot.png
        agentview ask shot.png -c "why does this test fail?"
        agentview ask shot.png --thread 3f2a
    """
    settings = _settings(ctx)
    image_png = image.read_bytes()

    try:
        if no_stream:
            registry = ThreadRegistry(settings.threads_path)
            text = asyncio.run(_service(settings, registry).describe(image_png, user_context))
            click.echo(text)
        else:
            asyncio.run(_run_send(settings, thread, image_png, user_context))
    except AgentViewError as e:
        _fail(str(e))


@cli.command()
@click.argument("message", nargs=-1, required=True)
@click.option("--thread", "-t", default=None, help="Thread to continue (default: most recent)")
@click.pass_context
def chat(ctx: click.Context, message: tuple[str, ...], thread: str | None):
    """
    Send a follow-up message.

    The model keeps context through the thread's saved response id. A
    capture sent by an earlier command is not attached again, so if that id
    is missing, ask about the capture again with --thread.

    \b
    Examples:
        agentview chat "what about the second column?"
        agentview chat --thread 3f2a "summarize that"
    """
    settings = _settings(ctx)

    if thread is None:
        entries = _load_registry(settings).list()
        if not entries:
            _fail("No threads yet. Start one with 'agentview ask IMAGE'.")
        thread = entries[0].id

    try:
        asyncio.run(_run_send(settings, thread, None, " ".join(message)))
    except AgentViewError as e:
        _fail(str(e))


@cli.command()
@click.argument("audio_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def transcribe(ctx: click.Context, audio_file: Path):
    """Transcribe a recorded voice note (m4a)."""
    settings = _settings(ctx)
    registry = ThreadRegistry(settings.threads_path)

    try:
        text = asyncio.run(_service(settings, registry).transcribe_audio(audio_file.read_bytes()))
    except AgentViewError as e:
        _fail(str(e))
    click.echo(text)


# =============================================================================
# Thread Commands
# =============================================================================


@cli.group("threads")
def threads_group():
    """List, show and delete saved threads."""
    pass


@threads_group.command("list")
@click.option("--query", "-q", default=None, help="Only threads whose title contains this text")
@click.pass_context
def threads_list(ctx: click.Context, query: str | None):
    """List saved threads, most recent first."""
    registry = _load_registry(_settings(ctx))
    entries = registry.search(query) if query else registry.list()

    if not entries:
        console.print("[grey62]No threads found.[/grey62]")
        return

    table = Table(title="Threads")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Updated", style="grey62", justify="right")

    for entry in entries:
        table.add_row(entry.id[:8], entry.title, _format_relative_time(entry.updated_at))

    console.print(table)


@threads_group.command("show")
@click.argument("thread_id")
@click.option(
    "--format",
    "-f",
    "fmt",
    type=click.Choice(["markdown", "json"]),
    default="markdown",
    help="Output format",
)
@click.pass_context
def threads_show(ctx: click.Context, thread_id: str, fmt: str):
    """Print a thread transcript."""
    registry = _load_registry(_settings(ctx))
    resolved = registry.resolve(thread_id)
    if resolved is None:
        _fail(f"Thread not found: {thread_id}")
    click.echo(registry.export(resolved, fmt))


@threads_group.command("rm")
@click.argument("thread_id")
@click.pass_context
def threads_rm(ctx: click.Context, thread_id: str):
    """Delete one thread."""
    registry = _load_registry(_settings(ctx))
    resolved = registry.resolve(thread_id)
    if resolved is None:
        console.print(f"[yellow]Thread not found:[/yellow] {thread_id}")
        return
    registry.remove(resolved)
    registry.flush()
    console.print(f"[green]✓[/green] Deleted thread {resolved[:8]}")


@threads_group.command("clear")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def threads_clear(ctx: click.Context, yes: bool):
    """Delete every saved thread."""
    registry = _load_registry(_settings(ctx))
    if not len(registry):
        console.print("[grey62]No threads to delete.[/grey62]")
        return
    if not yes and not click.confirm(f"Delete {len(registry)} thread(s)?"):
        return
    removed = registry.clear_history()
    registry.flush()
    console.print(f"[green]✓[/green] Deleted {removed} thread(s)")


# =============================================================================
# API Key Commands
# =============================================================================


@cli.group("key")
def key_group():
    """Manage the provider API key."""
    pass


@key_group.command("set")
@click.argument("value", required=False)
@click.pass_context
def key_set(ctx: click.Context, value: str | None):
    """
    Store the API key.

    Prompts for the key when VALUE is omitted (recommended, keeps it out of
    shell history).
    """
    if value is None:
        value = click.prompt("OpenAI API key", hide_input=True)

    try:
        _config_manager(_settings(ctx)).save_api_key(value)
    except AgentViewError as e:
        _fail(str(e))
    console.print("[green]✓[/green] Saved API key")


@key_group.command("test")
@click.pass_context
def key_test(ctx: click.Context):
    """Check the stored API key against the provider."""
    settings = _settings(ctx)
    registry = ThreadRegistry(settings.threads_path)

    try:
        asyncio.run(_service(settings, registry).validate_credentials())
    except AgentViewError as e:
        _fail(str(e))
    console.print("[green]✓[/green] API key is valid")


@key_group.command("status")
@click.pass_context
def key_status(ctx: click.Context):
    """Show where the API key comes from."""
    _config_manager(_settings(ctx)).show_status()


@key_group.command("remove")
@click.pass_context
def key_remove(ctx: click.Context):
    """Delete the stored API key."""
    try:
        removed = _config_manager(_settings(ctx)).delete_api_key()
    except AgentViewError as e:
        _fail(str(e))
    if removed:
        console.print("[green]✓[/green] Removed API key")
    else:
        console.print("[grey62]No stored API key.[/grey62]")


if __name__ == "__main__":
    cli()
