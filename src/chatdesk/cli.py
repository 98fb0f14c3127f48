"""chatdesk command line: chat with a provider and inspect local history."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from chatdesk import __version__
from chatdesk.config import ChatConfig, ConfigError, load_config
from chatdesk.core.controller import ChatController
from chatdesk.core.orchestrator import StreamState
from chatdesk.types import Notification, NotificationType, Provider

console = Console()

_PROVIDERS = click.Choice([p.value for p in Provider], case_sensitive=False)


def build_controller(config: ChatConfig, config_path: str | None) -> ChatController:
    return ChatController.from_config(config, config_path=config_path)


class StreamingDisplay:
    """Prints stream notifications for one assistant message as they arrive."""

    def __init__(self, con: Console):
        self.con = con
        self._streaming = False
        self.reported_error = False

    def handle(self, note: Notification):
        if note.type is NotificationType.STREAM_TOKEN:
            self._streaming = True
            self.con.print(note.data.get("content", ""), end="", markup=False, highlight=False)

        elif note.type is NotificationType.STREAM_COMPLETE:
            self._flush()
            d = note.data
            self.con.print(
                f"[dim]{d.get('input_tokens', 0)} in / {d.get('token_count', 0)} out"
                f" tokens, ${d.get('cost', 0.0):.4f}[/dim]"
            )

        elif note.type is NotificationType.STREAM_ERROR:
            self._flush()
            self.reported_error = True
            self.con.print(f"[red]Error: {escape(note.data.get('error', ''))}[/red]")

        elif note.type is NotificationType.STREAM_ABORTED:
            self._flush()
            self.con.print("[yellow]Stopped[/yellow]")

    def _flush(self):
        if self._streaming:
            self.con.print()
            self._streaming = False


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to chatdesk.yaml (auto-detected from CWD or ~/.config/chatdesk/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="chatdesk")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """chatdesk - chat with Claude, OpenAI or a local Ollama server."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        raise click.ClickException(str(e)) from e
    ctx.obj = {"config": config, "config_path": config_path}


def _run(ctx: click.Context, fn):
    """Run ``fn(controller)`` on a fresh event loop and shut down afterwards."""
    controller = build_controller(ctx.obj["config"], ctx.obj["config_path"])

    async def _main():
        try:
            return await fn(controller)
        finally:
            await controller.shutdown()

    return asyncio.run(_main())


@main.command()
@click.argument("prompt")
@click.option("--provider", "-p", type=_PROVIDERS, default=None, help="Provider to use")
@click.option("--model", "-m", default=None, help="Model id")
@click.option("--conversation", "conversation_id", default=None,
              help="Continue an existing conversation")
@click.pass_context
def chat(ctx: click.Context, prompt: str, provider: str | None, model: str | None,
         conversation_id: str | None):
    """Send PROMPT and stream the reply."""
    display = StreamingDisplay(console)

    async def _chat(controller: ChatController) -> StreamState:
        for topic in (NotificationType.STREAM_TOKEN, NotificationType.STREAM_COMPLETE,
                      NotificationType.STREAM_ERROR, NotificationType.STREAM_ABORTED):
            controller.bus.subscribe(topic, display.handle)
        if conversation_id is None:
            conv = controller.create_conversation(prompt[:50])
        else:
            conv = controller.get_conversation(conversation_id)
        console.print(f"[dim]Conversation: {conv.id}[/dim]", highlight=False)

        result = await controller.send_message(conv.id, prompt, provider=provider, model=model)
        msg = result.assistant_message
        if result.state is StreamState.FAILED and msg is not None and msg.error:
            # A provider that is not configured fails before any stream event
            if not display.reported_error:
                console.print(f"[red]Error: {escape(msg.error)}[/red]")
        return result.state

    try:
        state = _run(ctx, _chat)
    except KeyError as e:
        raise click.ClickException(str(e.args[0])) from e
    if state is not StreamState.COMPLETED:
        ctx.exit(1)


@main.command()
@click.argument("provider", type=_PROVIDERS)
@click.pass_context
def models(ctx: click.Context, provider: str):
    """List models offered by PROVIDER."""
    infos = _run(ctx, lambda c: c.list_models(provider))
    if not infos:
        console.print(f"[yellow]{provider} is not configured[/yellow]")
        return
    table = Table(title=f"{provider} models")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Max tokens", justify="right")
    for info in infos:
        table.add_row(info.id, info.name, str(info.max_tokens))
    console.print(table)


@main.command("test")
@click.argument("provider", type=_PROVIDERS)
@click.pass_context
def check(ctx: click.Context, provider: str):
    """Check that PROVIDER is reachable with the configured credentials."""
    ok = _run(ctx, lambda c: c.test_connection(provider))
    if ok:
        console.print(f"[green]OK[/green] {provider}")
    else:
        console.print(f"[red]FAIL[/red] {provider}")
        ctx.exit(1)


@main.command()
@click.pass_context
def stats(ctx: click.Context):
    """Show usage statistics."""

    async def _stats(controller: ChatController):
        return controller.usage_stats()

    s = _run(ctx, _stats)
    table = Table(title="Usage", show_header=False)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Conversations", str(s.total_conversations))
    table.add_row("Messages", str(s.total_messages))
    table.add_row("Tokens", str(s.total_tokens))
    table.add_row("Cost", f"${s.total_cost:.4f}")
    table.add_row("Messages this month", str(s.messages_this_month))
    table.add_row("Cost this month", f"${s.cost_this_month:.4f}")
    table.add_row("Avg tokens/message", f"{s.average_tokens_per_message:.1f}")
    table.add_row("Most used model", s.most_used_model or "-")
    table.add_row("Most used provider", s.most_used_provider or "-")
    console.print(table)


@main.command()
@click.option("--search", "-s", "query", default=None, help="Filter by title")
@click.option("--limit", "-n", default=20, show_default=True, help="Maximum rows")
@click.pass_context
def conversations(ctx: click.Context, query: str | None, limit: int):
    """List conversations, most recent first."""

    async def _list(controller: ChatController):
        if query:
            return controller.search_conversations(query, limit)
        return controller.list_conversations(limit)

    convs = _run(ctx, _list)
    if not convs:
        console.print("[dim]No conversations[/dim]")
        return
    table = Table()
    table.add_column("ID", no_wrap=True)
    table.add_column("Title")
    table.add_column("Updated")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for conv in convs:
        table.add_row(
            conv.id,
            conv.title,
            datetime.fromtimestamp(conv.updated_at).strftime("%Y-%m-%d %H:%M"),
            str(conv.total_tokens),
            f"${conv.estimated_cost:.4f}",
        )
    console.print(table)


@main.command()
@click.argument("conversation_id")
@click.pass_context
def export(ctx: click.Context, conversation_id: str):
    """Print a conversation and its messages as JSON."""

    async def _export(controller: ChatController):
        return controller.export_conversation(conversation_id)

    try:
        data = _run(ctx, _export)
    except KeyError as e:
        raise click.ClickException(str(e.args[0])) from e
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
