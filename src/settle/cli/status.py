# Copyright (c) Syntropy Systems
"""settle status command."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.table import Table

from settle import __version__
from settle.config import get_db_path, require_settle_dir
from settle.errors import EXIT_USAGE, remediation_for
from settle.ledger import StateLedger

if TYPE_CHECKING:
    from settle.models.db import OutcomeRecord

console = Console()


def format_time_ago(timestamp: Optional[str]) -> str:
    """Format a timestamp as time ago."""
    if not timestamp:
        return "-"

    try:
        ts = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return "-"

    total_seconds = int((datetime.now(timezone.utc) - ts).total_seconds())
    if total_seconds < 60:
        return "just now"
    if total_seconds < 3600:
        return f"{total_seconds // 60}m ago"
    if total_seconds < 86400:
        return f"{total_seconds // 3600}h ago"
    return f"{total_seconds // 86400}d ago"


def status(
    unit_id: Optional[str] = typer.Argument(
        None,
        help="Unit ID to show history for",
    ),
    problems: bool = typer.Option(
        False,
        "--problems", "-p",
        help="Only show units whose last outcome needs attention",
    ),
) -> None:
    """
    Show what the ledger knows about this host.

    Without arguments, shows the latest apply outcome of every unit.
    """
    try:
        settle_dir = require_settle_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_USAGE) from e

    with StateLedger(get_db_path(settle_dir), __version__) as ledger:
        last_version = ledger.last_run_version()
        if unit_id is not None:
            history = ledger.prior_outcomes(unit_id)
            _show_unit(unit_id, history)
            return
        states = ledger.unit_states()

    console.print(f"[dim]settle {__version__}; last completed apply: {last_version or 'never'}[/dim]")

    if problems:
        states = [s for s in states if s.error_kind is not None or s.action == "fatal"]

    if not states:
        console.print("[dim]No units recorded[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Unit")
    table.add_column("Decision")
    table.add_column("Result")
    table.add_column("Reason", style="dim")
    table.add_column("Updated")

    for state in states:
        if state.error_kind:
            result = f"[yellow]{state.error_kind}[/yellow]"
        elif state.applied:
            result = "[green]applied[/green]"
        else:
            result = state.action
        table.add_row(
            state.unit_id,
            state.decision,
            result,
            state.reason or "-",
            format_time_ago(state.updated_at),
        )

    console.print(table)


def _show_unit(unit_id: str, history: list[OutcomeRecord]) -> None:
    if not history:
        console.print(f"[red]Error:[/red] No apply outcomes recorded for {unit_id}")
        raise typer.Exit(EXIT_USAGE)

    latest = history[0]
    console.print(f"[bold]{unit_id}[/bold]")
    console.print(f"  [dim]observed:[/dim] {latest.observed}")
    console.print(f"  [dim]policy:[/dim] {latest.policy_fingerprint or '-'}")
    if latest.written_digest:
        console.print(f"  [dim]written:[/dim] sha256:{latest.written_digest[:16]}")
    if latest.error_kind:
        console.print(f"  [yellow]{latest.error_kind}[/yellow]: {latest.error_message or latest.reason}")
        console.print(f"  [dim]{remediation_for(latest.error_kind)}[/dim]")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Run", style="dim")
    table.add_column("Decision")
    table.add_column("Action")
    table.add_column("Applied")
    table.add_column("Reason", style="dim")
    table.add_column("When")
    for outcome in history:
        table.add_row(
            outcome.run_id,
            outcome.decision,
            outcome.action,
            "yes" if outcome.applied else "no",
            outcome.reason or "-",
            format_time_ago(outcome.timestamp),
        )
    console.print(table)
