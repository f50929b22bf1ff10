# Copyright (c) Syntropy Systems
"""settle backups and restore commands."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from settle import __version__
from settle.backup import BackupManager
from settle.config import get_backups_dir, get_db_path, get_logs_dir, require_settle_dir
from settle.errors import EXIT_FATAL, EXIT_USAGE
from settle.ledger import StateLedger
from settle.log import configure_logging

console = Console()


def backups(
    unit: Optional[str] = typer.Option(
        None,
        "--unit", "-u",
        help="Only show backups taken for this unit",
    ),
    run: Optional[str] = typer.Option(
        None,
        "--run", "-r",
        help="Only show backups taken during this run",
    ),
) -> None:
    """List snapshots taken before mutations. Backups are never pruned by settle."""
    try:
        settle_dir = require_settle_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_USAGE) from e

    with StateLedger(get_db_path(settle_dir), __version__) as ledger:
        records = ledger.backups(unit_id=unit, run_id=run)

    if not records:
        console.print("[dim]No backups found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Unit")
    table.add_column("Path")
    table.add_column("Copy")
    table.add_column("Taken")

    for record in records:
        copy = record.backup_path if record.existed else "[dim](did not exist)[/dim]"
        table.add_row(str(record.id), record.unit_id, record.original_path, copy or "-", record.created_at)

    console.print(table)


def restore(
    backup_id: int = typer.Argument(
        ...,
        help="Backup ID to restore (see settle backups)",
    ),
    yes: bool = typer.Option(
        False,
        "--yes", "-y",
        help="Restore without asking",
    ),
) -> None:
    """Put a snapshot back in place.

    The current content is snapshotted first, so a restore can be undone.
    Restoring does not update the ledger's unit state: the next apply will
    see the restored content as a local modification and ask before
    replacing it.
    """
    try:
        settle_dir = require_settle_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_USAGE) from e

    _ = configure_logging(get_logs_dir(settle_dir))

    with StateLedger(get_db_path(settle_dir), __version__) as ledger:
        record = ledger.backup(backup_id)
        if record is None:
            console.print(f"[red]Error:[/red] Backup {backup_id} not found")
            raise typer.Exit(EXIT_USAGE)

        target = record.original_path
        if not yes and not Confirm.ask(f"Restore {target} from backup {backup_id}?", console=console, default=False):
            console.print("[dim]Nothing restored[/dim]")
            return

        manager = BackupManager(get_backups_dir(settle_dir), ledger)
        try:
            summary = manager.restore(record)
        except (OSError, ValueError) as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(EXIT_FATAL) from e

    console.print(f"[green]Restored:[/green] {summary}")
