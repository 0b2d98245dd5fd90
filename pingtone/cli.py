"""
PingTone CLI
Commands: sync, status, history, serve
"""

import asyncio
import logging
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pingtone.config import settings

app = typer.Typer(
    name="pingtone",
    help="PingTone: Cisco UCM configuration sync",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {"syncing": "yellow", "completed": "green", "failed": "red"}


def _bootstrap():
    """Configure logging and initialize the DB before any command that needs it."""
    logging.basicConfig(level=settings.log_level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    from pingtone.database.database import init_db
    init_db()


def _target_type(node: bool):
    from pingtone.services.sync_target import SyncTargetType
    return SyncTargetType.NODE if node else SyncTargetType.CLUSTER


# ── sync ──────────────────────────────────────────────────────────────────────

def _print_run(service, run) -> None:
    table = Table(title=f"Sync of {run.target.label}", box=box.ROUNDED)
    table.add_column("Phase", style="dim")
    table.add_column("Entity type", style="cyan")
    table.add_column("Records", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Error")

    for phase, batch_id in (("infra", run.infra_batch_id), ("services", run.services_batch_id)):
        if not batch_id:
            continue
        for result in service.coordinator.results(batch_id):
            table.add_row(
                phase,
                result.entity_type,
                str(result.records_written),
                str(result.attempts),
                str(len(result.item_errors)) if result.item_errors else "",
                f"[red]{result.error}[/]" if result.error else "",
            )

    if table.row_count:
        console.print(table)

    history = service.get_sync_record(run.history_id)
    style = STATUS_STYLES.get(history.status, "white") if history else "white"
    console.print(Panel(
        f"Phase    : [cyan]{run.phase.value}[/]\n"
        f"Status   : [{style}]{history.status if history else 'unknown'}[/]\n"
        f"Duration : [cyan]{history.formatted_duration if history else '-'}[/]\n"
        f"Warnings : [yellow]{len(run.warnings)}[/]"
        + (f"\nError    : [red]{run.error}[/]" if run.error else ""),
        title=f"History #{run.history_id}",
        border_style=style,
    ))


async def _run_sync(target_id: Optional[int], node: bool) -> int:
    from pingtone.database.database import SessionLocal
    from pingtone.services.sync_service import get_sync_service

    service = get_sync_service()
    db = SessionLocal()
    try:
        if target_id is None:
            result = await service.sync_all(db)
            runs = result["started"]
            for cluster_id in result["busy"]:
                console.print(f"[yellow]Cluster {cluster_id} is already syncing, skipped[/]")
            for cluster_id, error in result["failed"].items():
                console.print(f"[red]Cluster {cluster_id} could not start:[/] {error}")
        else:
            runs = [await service.start_sync(db, _target_type(node), target_id)]
    finally:
        db.close()

    if not runs:
        console.print("[dim]Nothing to sync.[/]")

    failed = 0
    for run in runs:
        with console.status(f"Syncing {run.target.label}..."):
            await service.wait_for_run(run)
        _print_run(service, run)
        failed += run.error is not None
    return failed


@app.command()
def sync(
    target_id: Optional[int] = typer.Argument(None, help="Cluster ID (node ID with --node); omit to sync every cluster"),
    node: bool = typer.Option(False, "--node", help="Sync a single node instead of a cluster"),
):
    """Run a two-phase sync and wait for it to finish."""
    _bootstrap()
    from pingtone.services.sync_service import SyncInProgressError, SyncTargetError, SyncTargetNotFoundError

    if node and target_id is None:
        console.print("[red]Error:[/] --node needs a node ID")
        raise typer.Exit(1)

    try:
        failed = asyncio.run(_run_sync(target_id, node))
    except SyncTargetNotFoundError as e:
        console.print(f"[red]Not found:[/] {e}")
        raise typer.Exit(1)
    except SyncInProgressError as e:
        console.print(f"[yellow]Busy:[/] {e}")
        raise typer.Exit(2)
    except SyncTargetError as e:
        console.print(f"[red]Cannot sync:[/] {e}")
        raise typer.Exit(1)

    if failed:
        raise typer.Exit(1)


# ── status ────────────────────────────────────────────────────────────────────

@app.command()
def status(
    target_id: int = typer.Argument(..., help="Cluster ID (node ID with --node)"),
    node: bool = typer.Option(False, "--node", help="Show a node instead of a cluster"),
):
    """Show the latest sync of a cluster or node."""
    _bootstrap()
    from pingtone.services.sync_service import get_sync_service

    info = get_sync_service().get_status(_target_type(node), target_id)
    last = info["last_history"]
    if not last:
        console.print(f"[dim]{info['target_type'].capitalize()} {target_id} has never been synced.[/]")
        return

    style = STATUS_STYLES.get(last["status"], "white")
    warnings = "\n".join(f"  • {w}" for w in last["warnings"])
    console.print(Panel(
        f"Outcome  : [{style}]{info['outcome']}[/]\n"
        f"Started  : [cyan]{last['sync_start_time']}[/]\n"
        f"Ended    : [cyan]{last['sync_end_time'] or '-'}[/]\n"
        f"Duration : [cyan]{last['formatted_duration'] or '-'}[/]"
        + (f"\nError    : [red]{last['error']}[/]" if last["error"] else "")
        + (f"\nWarnings :\n[yellow]{warnings}[/]" if warnings else ""),
        title=f"{info['target_type'].capitalize()} {target_id}",
        border_style=style,
    ))


# ── history ───────────────────────────────────────────────────────────────────

@app.command()
def history(limit: int = typer.Option(20, "--limit", "-n")):
    """List recent sync attempts."""
    _bootstrap()
    from pingtone.services.sync_service import get_sync_service

    entries = get_sync_service().get_sync_history(limit=limit)
    if not entries:
        console.print("[dim]No syncs recorded yet.[/]")
        return

    table = Table(title="Sync history", box=box.ROUNDED)
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Target")
    table.add_column("Started", no_wrap=True)
    table.add_column("Duration", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Error")

    for entry in entries:
        style = STATUS_STYLES.get(entry.status, "white")
        table.add_row(
            str(entry.id),
            f"{entry.syncable_type} {entry.syncable_id}",
            entry.sync_start_time.strftime("%Y-%m-%d %H:%M"),
            entry.formatted_duration or "-",
            f"[{style}]{entry.outcome.value}[/]",
            entry.error or "",
        )

    console.print(table)


# ── serve ─────────────────────────────────────────────────────────────────────

@app.command()
def serve(
    host: str = typer.Option(settings.app_host, "--host"),
    port: int = typer.Option(settings.app_port, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Start the PingTone API server."""
    import uvicorn
    console.print(f"[green]Starting PingTone API server[/] → http://{host}:{port}")
    uvicorn.run("pingtone.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
