import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from chatdesk.config import settings

console = Console()
cli_app = typer.Typer(name="chatdesk", help="ChatDesk conversation engine CLI")


def _run_async(coro):
    """Run async code from sync CLI context."""
    return asyncio.run(coro)


@asynccontextmanager
async def _session_store():
    """A loaded SessionStore over the configured database; flushes on exit."""
    from chatdesk.core.database import init_db, make_engine, make_session_factory
    from chatdesk.main import build_backend, build_session_store

    Path(settings.chatdesk_data_dir).mkdir(parents=True, exist_ok=True)
    engine = make_engine()
    await init_db(engine)
    backend = build_backend()
    store = build_session_store(backend, make_session_factory(engine))
    await store.load_from_disk()
    try:
        yield store
    finally:
        await store.stop_all()
        await store.bridge.flush_all(store.conversations)
        await backend.close()
        await engine.dispose()


@cli_app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8787, "--port"),
):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("chatdesk.main:app", host=host, port=port, log_level=settings.chatdesk_log_level.lower())


@cli_app.command("list")
def list_conversations(
    starred: bool = typer.Option(False, "--starred", help="Only starred conversations"),
):
    """List stored conversations."""
    from chatdesk.services.tokens import conversation_cost

    async def _list():
        async with _session_store() as store:
            return store.conversations

    conversations = _run_async(_list())
    if starred:
        conversations = [c for c in conversations if c.starred]

    if not conversations:
        console.print("[dim]No conversations found.[/dim]")
        return

    table = Table(title="Conversations")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Messages", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Starred", style="yellow")
    table.add_column("Updated")

    for conv in conversations:
        table.add_row(
            conv.id,
            conv.title,
            str(len(conv.messages)),
            f"${conversation_cost(conv.messages):.4f}",
            "*" if conv.starred else "",
            conv.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@cli_app.command("show")
def show_conversation(
    conversation_id: str = typer.Argument(help="Conversation ID"),
):
    """Print a conversation."""
    from chatdesk.schemas.content import extract_text

    async def _show():
        async with _session_store() as store:
            return store.get(conversation_id)

    conv = _run_async(_show())
    if conv is None:
        console.print(f"[yellow]No conversation found with id '{conversation_id}'.[/yellow]")
        raise typer.Exit(code=1)

    console.print(f"\n[bold]{conv.title}[/bold]  [dim]{conv.id}[/dim]\n")
    for msg in conv.messages:
        if msg.role == "user":
            console.print("[bold cyan]You[/bold cyan]")
        else:
            console.print(f"[bold green]Assistant[/bold green] [dim]{msg.model or ''} {msg.status}[/dim]")
        if msg.reasoning:
            console.print(f"[dim]{msg.reasoning}[/dim]")
        console.print(extract_text(msg.content), markup=False)
        for attachment in msg.attachments or []:
            console.print(f"  [dim]attachment: {attachment.name} ({attachment.mime_type})[/dim]")
        if msg.tokens is not None:
            console.print(f"  [dim]{msg.tokens} tokens, ${msg.cost or 0:.6f}[/dim]")
        console.print()


@cli_app.command("export")
def export_conversation(
    conversation_id: str = typer.Argument(help="Conversation ID"),
    format: str = typer.Option("markdown", "--format", help="json, markdown or txt"),
):
    """Export a conversation to the export directory."""
    from chatdesk.core.exceptions import ChatDeskError

    async def _export():
        async with _session_store() as store:
            return await store.export_conversation(conversation_id, format)

    try:
        path = _run_async(_export())
    except ChatDeskError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=1)

    if path is None:
        console.print("[red]Export failed; see the log for details.[/red]")
        raise typer.Exit(code=1)
    console.print(f"[bold green]Exported to[/bold green] {path}")


@cli_app.command("ask")
def ask(
    text: str = typer.Argument(help="Message to send"),
    model: str = typer.Option(None, "--model", help="Model ID (defaults to CHATDESK_DEFAULT_MODEL)"),
    conversation_id: str = typer.Option(None, "--conversation", help="Continue an existing conversation"),
    reasoning: bool = typer.Option(False, "--reasoning", help="Request reasoning output"),
):
    """Send a message and stream the reply to the console."""
    from chatdesk.services.inference.base import ContentDelta, ReasoningDelta, StreamCompleted

    model = model or settings.chatdesk_default_model
    if not model:
        console.print("[red]No model given. Pass --model or set CHATDESK_DEFAULT_MODEL.[/red]")
        raise typer.Exit(code=1)

    def _print_event(cid, event):
        if isinstance(event, ContentDelta):
            console.print(event.text, end="", markup=False, highlight=False)
        elif isinstance(event, ReasoningDelta):
            console.print(event.text, end="", style="dim", markup=False, highlight=False)
        elif isinstance(event, StreamCompleted):
            console.print()

    async def _ask():
        async with _session_store() as store:
            await store.catalog.refresh()
            cid = conversation_id
            if cid is None:
                cid = store.create_conversation(text[:50]).id
            elif store.get(cid) is None:
                return cid, None, f"No conversation found with id '{cid}'."
            store.subscribe(_print_event)
            await store.send(cid, text, model, reasoning)
            return cid, store.get(cid), store.error

    cid, conv, error = _run_async(_ask())
    if error:
        console.print(f"[red]{error}[/red]")
        raise typer.Exit(code=1)

    last = conv.messages[-1] if conv and conv.messages else None
    if last is not None and last.role == "assistant" and last.tokens is not None:
        console.print(f"[dim]{last.tokens} tokens, ${last.cost or 0:.6f}, conversation {cid}[/dim]")


def main():
    cli_app()


if __name__ == "__main__":
    main()
