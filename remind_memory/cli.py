"""CLI for the memory store.

Usage:
    remind --user u1 add "User likes coffee"
    remind --user u1 search "coffee preference"
    remind --user u1 remember "User no longer drinks coffee"
    remind --user u1 history <id>
    remind --user u1 forget <id> [<id> ...]
    remind errors --limit 5
"""

from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from remind_memory import __version__
from remind_memory.config import Settings
from remind_memory.errors import ConfigError, RemindError, clear_error_log, get_recent_errors, log_error
from remind_memory.service import MemoryService
from remind_memory.utils import get_logger

console = Console()


def _run(ctx: click.Context, make_coro):
    """Build the service, run one coroutine against it, map errors to exit 1."""
    settings: Settings = ctx.obj["settings"]
    try:
        service = MemoryService.from_settings(settings)
        return asyncio.run(make_coro(service))
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        if exc.detail:
            console.print(f"[dim]{exc.detail}[/dim]")
        raise SystemExit(1)
    except RemindError as exc:
        log_error(exc, component="cli", log_dir=settings.error_log_dir)
        console.print(
            "[red]Something went wrong.[/red] "
            f"[dim]Details in {settings.error_log_dir / 'errors.log'}[/dim]"
        )
        raise SystemExit(1)


def _similarity_table(title: str, rows: list[dict]) -> Table:
    table = Table(title=title, border_style="cyan")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Fact")
    table.add_column("Score", justify="right")
    table.add_column("Created")
    for r in rows:
        score = f"{r['similarity']:.3f}"
        if r.get("match") == "keyword":
            score = "[green]keyword[/green]"
        table.add_row(r["id"], r["fact"], score, r["created_at"][:16].replace("T", " "))
    return table


@click.group()
@click.version_option(version=__version__, prog_name="remind")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.yaml (default ~/.config/remind/config.yaml).")
@click.option("--user", "-u", "user_id", default="local", show_default=True,
              help="User whose memories to operate on.")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, user_id: str) -> None:
    """Long-term memory for a conversational assistant."""
    settings = Settings(config_path)
    get_logger("remind", settings.log_level)
    ctx.obj = {"settings": settings, "user_id": user_id}


@cli.command()
@click.argument("query")
@click.option("--limit", "-n", default=10, show_default=True, help="Maximum results.")
@click.pass_context
def search(ctx: click.Context, query: str, limit: int) -> None:
    """Semantic search over active memories."""
    user_id = ctx.obj["user_id"]
    rows = _run(ctx, lambda svc: svc.search(user_id, query, limit))
    if not rows:
        console.print("[dim]No memories found.[/dim]")
        return
    console.print(_similarity_table(f"Memories for {user_id}", rows))


@cli.command()
@click.argument("query")
@click.option("--limit", "-n", default=10, show_default=True, help="Maximum results.")
@click.pass_context
def recall(ctx: click.Context, query: str, limit: int) -> None:
    """Keyword matches first, then semantic matches."""
    user_id = ctx.obj["user_id"]
    rows = _run(ctx, lambda svc: svc.recall(user_id, query, limit))
    if not rows:
        console.print("[dim]No memories found.[/dim]")
        return
    console.print(_similarity_table(f"Recall for {user_id}", rows))


@cli.command()
@click.argument("content")
@click.option("--category", "-c", type=click.Choice(["fact", "episode", "semantic"]),
              default="fact", show_default=True)
@click.pass_context
def add(ctx: click.Context, content: str, category: str) -> None:
    """Store a new memory as-is."""
    result = _run(ctx, lambda svc: svc.add(ctx.obj["user_id"], content, category))
    if result["success"]:
        console.print(f"[green]Stored memory[/green] {result['id']}")
    else:
        console.print(f"[red]Not stored:[/red] {result['error']}")
        raise SystemExit(1)


@cli.command()
@click.argument("memory_id")
@click.argument("content")
@click.option("--edge", "edge_type", type=click.Choice(["replace", "extend"]),
              default="replace", show_default=True)
@click.option("--category", "-c", type=click.Choice(["fact", "episode", "semantic"]),
              default="fact", show_default=True)
@click.pass_context
def update(ctx: click.Context, memory_id: str, content: str, edge_type: str, category: str) -> None:
    """Supersede MEMORY_ID with CONTENT."""
    result = _run(
        ctx, lambda svc: svc.update(ctx.obj["user_id"], memory_id, content, edge_type, category)
    )
    if result["success"]:
        console.print(f"[green]{memory_id} superseded by[/green] {result['id']}")
    else:
        console.print(f"[red]Update failed:[/red] {result['error']}")
        raise SystemExit(1)


@cli.command()
@click.argument("ids", nargs=-1, required=True)
@click.pass_context
def forget(ctx: click.Context, ids: tuple[str, ...]) -> None:
    """Retire memories. Deleted memories stay in the audit trail."""
    result = _run(ctx, lambda svc: svc.delete(ctx.obj["user_id"], list(ids)))
    if result["deleted_ids"]:
        for mid in result["deleted_ids"]:
            console.print(f"[green]Deleted[/green] {mid}")
    else:
        console.print("[yellow]Nothing deleted.[/yellow]")


@cli.command("list")
@click.option("--limit", "-n", default=20, show_default=True)
@click.option("--all", "include_deleted", is_flag=True, default=False,
              help="Include deleted memories.")
@click.pass_context
def list_cmd(ctx: click.Context, limit: int, include_deleted: bool) -> None:
    """List the most recent memories."""
    user_id = ctx.obj["user_id"]
    records = _run(ctx, lambda svc: svc.store.list(user_id, limit, include_deleted=include_deleted))
    if not records:
        console.print("[dim]No memories stored yet.[/dim]")
        return

    table = Table(title=f"Memories for {user_id}", border_style="cyan")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Category", style="cyan")
    table.add_column("Fact")
    table.add_column("Status", justify="center")
    table.add_column("Created")
    for r in records:
        table.add_row(
            r.id,
            r.category.value,
            r.fact,
            "[green]active[/green]" if r.active else "[red]deleted[/red]",
            r.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@cli.command()
@click.argument("memory_id")
@click.pass_context
def history(ctx: click.Context, memory_id: str) -> None:
    """Show MEMORY_ID and every version it superseded."""
    chain = _run(ctx, lambda svc: svc.history(ctx.obj["user_id"], memory_id))
    if not chain:
        console.print(f"[red]Memory '{memory_id}' not found.[/red]")
        raise SystemExit(1)
    for i, r in enumerate(chain):
        status = "[red]deleted[/red]" if r["deleted"] else "[green]active[/green]"
        edge = f" ({r['edge_type']} of parent)" if r["edge_type"] else ""
        console.print(f"{'  ' * i}{r['id']} {status}{edge}\n{'  ' * i}  {r['fact']}")


def _print_run(result: dict) -> None:
    style = "green" if result["success"] else "yellow"
    console.print(
        Panel(
            f"{result['summary']}\n[dim]outcome: {result['outcome']} | "
            f"steps: {len(result['steps'])} | tokens: {result['tokens']}[/dim]",
            title="Consolidation",
            border_style=style,
        )
    )


@cli.command()
@click.argument("content")
@click.pass_context
def remember(ctx: click.Context, content: str) -> None:
    """Consolidate CONTENT into memory (add, supersede or retract)."""
    _print_run(_run(ctx, lambda svc: svc.remember(ctx.obj["user_id"], content)))


@cli.command()
@click.argument("transcript", type=click.File("r"))
@click.pass_context
def ingest(ctx: click.Context, transcript) -> None:
    """Extract facts from a conversation TRANSCRIPT file and remember them."""
    text = transcript.read()
    result = _run(ctx, lambda svc: svc.ingest_conversation(ctx.obj["user_id"], text))
    if not result["facts"]:
        console.print("[dim]Nothing worth remembering.[/dim]")
        return
    for fact, run in zip(result["facts"], result["runs"]):
        console.print(f"[bold]{fact}[/bold]")
        _print_run(run)


_SEVERITY_STYLES = {
    "critical": "[red bold]CRIT[/red bold]",
    "error": "[red]ERR[/red]",
    "warning": "[yellow]WARN[/yellow]",
    "info": "[blue]INFO[/blue]",
    "debug": "[dim]DBG[/dim]",
}


@cli.command()
@click.option("--limit", "-n", default=20, show_default=True, help="Number of recent errors to show.")
@click.option("--clear", is_flag=True, help="Clear the error log.")
@click.pass_context
def errors(ctx: click.Context, limit: int, clear: bool) -> None:
    """View recent errors from the store, ranker and agent."""
    log_dir = ctx.obj["settings"].error_log_dir
    if clear:
        clear_error_log(log_dir=log_dir)
        console.print("[green]Error log cleared.[/green]")
        return

    recent = get_recent_errors(limit, log_dir=log_dir)
    if not recent:
        console.print("[dim]No errors recorded.[/dim]")
        return

    table = Table(title=f"Recent Errors (last {len(recent)})", border_style="cyan")
    table.add_column("Time", style="dim", max_width=19)
    table.add_column("Component", style="bold")
    table.add_column("Severity")
    table.add_column("Message", max_width=60)
    for err in recent:
        sev = err.get("severity", "error")
        table.add_row(
            err.get("timestamp", "?")[:19],
            err.get("component", "?"),
            _SEVERITY_STYLES.get(sev, sev),
            err.get("message", "")[:60],
        )
    console.print(table)
    console.print(f"\n[dim]Full log: {log_dir / 'errors.log'}[/dim]")


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Start the MCP server."""
    from remind_memory.server import main as server_main

    console.print("[bold]Starting remind-memory MCP server...[/bold]")
    try:
        server_main(ctx.obj["settings"])
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
