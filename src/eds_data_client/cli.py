import asyncio
import typer
import logging
import sys
from typing import Optional
from uuid import UUID
if sys.platform == "win32":
    # asyncpg needs the selector loop on Windows
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from rich.table import Table

from eds_data_client import create_data_client
from eds_data_client.exceptions import DataClientError
from eds_data_client.logging import configure as configure_logging
from eds_data_client.utils.cli_utils import get_rich_console, human_bytes, nodes_table
from eds_data_client.vault import TokenVault


app = typer.Typer(help="CLI for eds-data-client management.")
logger = logging.getLogger(__name__)
console = get_rich_console()


@app.callback()
def main(log_level: Optional[str] = typer.Option(None, "--log-level", help="Overrides LOG_LEVEL.")):
    configure_logging(log_level)


def _run(coro_fn):
    """Runs `coro_fn(client)` with a fresh client and always closes it."""
    async def _wrapper():
        client = create_data_client()
        try:
            return await coro_fn(client)
        finally:
            await client.aclose()
    return asyncio.run(_wrapper())


@app.command()
def init():
    """Creates the database tables."""
    console.rule("[bold cyan]Service Initialization[/bold cyan]")

    async def _create_tables(client):
        await client.create_tables()

    with console.status("Creating database tables...", spinner="dots"):
        try:
            _run(_create_tables)
        except DataClientError as e:
            console.print(f"[bold red]✖[/bold red] Database initialization FAILED: {e}")
            raise typer.Exit(code=1)
    console.print("[bold green]✔[/bold green] Database tables created successfully.")


@app.command()
def check():
    """Checks the database connection and the token vault key."""
    console.rule("[bold cyan]Connection Check[/bold cyan]")

    async def _check(client):
        return await client.check_connections()

    statuses = _run(_check)
    failed = False
    for name, label in (("postgres", "Database"), ("vault", "Token vault")):
        state = statuses.get(name, "unknown error")
        if state == "ok":
            console.print(f"[bold green]✔[/bold green] {label}: OK")
        else:
            failed = True
            console.print(f"[bold red]✖[/bold red] {label}: FAILED ({state})")
    if failed:
        raise typer.Exit(code=1)


@app.command()
def nodes():
    """Lists storage nodes with their byte counters."""
    async def _list(client):
        return await client.list_nodes()

    items = _run(_list)
    if not items:
        console.print("No storage nodes linked yet.")
        return
    console.print(nodes_table(items))


@app.command()
def stats():
    """Totals over all active nodes."""
    async def _stats(client):
        return await client.stats()

    s = _run(_stats)
    console.print(f"Active nodes: {s.node_count}")
    console.print(f"Total:     {human_bytes(s.total_space)} ({s.total_space} bytes)")
    console.print(f"Used:      {human_bytes(s.used_space)} ({s.used_space} bytes)")
    console.print(f"Reserved:  {human_bytes(s.reserved_space)} ({s.reserved_space} bytes)")
    console.print(f"Available: {human_bytes(s.available_space)} ({s.available_space} bytes)")


@app.command()
def sync(node_id: Optional[UUID] = typer.Option(None, "--node-id", help="Only this node.")):
    """Re-reads quota from the backend and overwrites total/used."""
    async def _sync(client):
        ids = [node_id] if node_id else [n.id for n in await client.list_nodes() if n.is_active]
        failures = 0
        for nid in ids:
            try:
                node = await client.sync_node(nid)
                console.print(
                    f"[bold green]✔[/bold green] {node.email}: "
                    f"{human_bytes(node.used_space)} used of {human_bytes(node.total_space)}"
                )
            except DataClientError as e:
                failures += 1
                console.print(f"[bold red]✖[/bold red] Node {nid}: {e}")
        return failures

    if _run(_sync):
        raise typer.Exit(code=1)


@app.command()
def sweep():
    """Releases reservations whose expiry has passed."""
    async def _sweep(client):
        return await client.sweeper.run_once()

    count = _run(_sweep)
    console.print(f"Expired reservations released: {count}")


@app.command()
def activity(
    page: int = typer.Option(1, min=1),
    limit: int = typer.Option(20, min=1, max=500),
    clear: bool = typer.Option(False, "--clear", help="Delete every entry instead of listing."),
):
    """Shows the activity log, newest first."""
    if clear:
        async def _clear(client):
            return await client.clear_activity()

        console.print(f"Deleted {_run(_clear)} activity entries.")
        return

    async def _list(client):
        return await client.list_activity(page, limit)

    result = _run(_list)
    table = Table(title=f"Activity (page {result.pagination.page}/{max(result.pagination.total_pages, 1)})")
    table.add_column("When", style="dim")
    table.add_column("Action")
    table.add_column("Target")
    table.add_column("Details")
    for entry in result.activities:
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.action,
            f"{entry.target_type} {entry.target_id or ''}".strip(),
            ", ".join(f"{k}={v}" for k, v in entry.metadata.items()),
        )
    console.print(table)


@app.command()
def keygen():
    """Prints a fresh key for VAULT__ENCRYPTION_KEY."""
    typer.echo(TokenVault.generate_key())


if __name__ == "__main__":
    app()
