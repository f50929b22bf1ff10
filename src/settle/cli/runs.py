# Copyright (c) Syntropy Systems
"""settle runs and show commands."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from settle.config import get_db_path, require_settle_dir
from settle.db import get_connection, get_run, get_run_outcomes, get_runs
from settle.errors import EXIT_USAGE, remediation_for
from settle.models.run import BaselineReport

console = Console()

STATUS_STYLES = {
    "running": "blue",
    "done": "green",
    "interrupted": "yellow",
    "aborted": "red",
}


def format_duration(started_at: Optional[str], finished_at: Optional[str]) -> str:
    """Format the time between two ledger timestamps."""
    if not started_at or not finished_at:
        return "-"
    try:
        start = datetime.fromisoformat(started_at.replace("Z", "+00:00"))
        end = datetime.fromisoformat(finished_at.replace("Z", "+00:00"))
    except ValueError:
        return "-"

    total = int((end - start).total_seconds())
    if total < 60:
        return f"{total}s"
    if total < 3600:
        m, s = divmod(total, 60)
        return f"{m}m {s}s"
    h, rem = divmod(total, 3600)
    m, _ = divmod(rem, 60)
    return f"{h}h {m}m"


def runs(
    mode: Optional[str] = typer.Option(
        None,
        "--mode", "-m",
        help="Filter by mode (simulate, apply)",
    ),
    last: int = typer.Option(
        20,
        "--last", "-n",
        help="Number of runs to show",
    ),
) -> None:
    """List past runs, newest first."""
    try:
        settle_dir = require_settle_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_USAGE) from e

    conn = get_connection(get_db_path(settle_dir))
    try:
        run_list = get_runs(conn, mode=mode, limit=last)
    finally:
        conn.close()

    if not run_list:
        console.print("[dim]No runs found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Policy")
    table.add_column("Mode")
    table.add_column("Status")
    table.add_column("Version")
    table.add_column("Duration")

    for run in run_list:
        style = STATUS_STYLES.get(run.status, "white")
        table.add_row(
            run.id,
            run.policy_name or "-",
            run.mode,
            f"[{style}]{run.status}[/{style}]",
            run.tool_version,
            format_duration(run.started_at, run.finished_at),
        )

    console.print(table)


def show(
    run_id: str = typer.Argument(
        ...,
        help="Run ID (or unique prefix) to show details for",
    ),
) -> None:
    """Show a run's outcomes and baseline report."""
    try:
        settle_dir = require_settle_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_USAGE) from e

    conn = get_connection(get_db_path(settle_dir))
    try:
        run = get_run(conn, run_id)

        # Try partial match if exact not found
        if run is None:
            matches = [r for r in get_runs(conn, limit=1000) if r.id.startswith(run_id)]
            if len(matches) == 1:
                run = matches[0]
            elif len(matches) > 1:
                console.print(f"[yellow]Ambiguous ID '{run_id}', matches:[/yellow]")
                for r in matches[:5]:
                    console.print(f"  {r.id} ({r.policy_name})")
                raise typer.Exit(EXIT_USAGE)

        if run is None:
            console.print(f"[red]Error:[/red] Run {run_id} not found")
            raise typer.Exit(EXIT_USAGE)

        outcomes = get_run_outcomes(conn, run.id)
    finally:
        conn.close()

    style = STATUS_STYLES.get(run.status, "white")
    console.print(f"[bold]Run {run.id}[/bold]")
    console.print(f"  [dim]policy:[/dim] {run.policy_name or '-'}")
    console.print(f"  [dim]mode:[/dim] {run.mode} ({run.interactivity})")
    console.print(f"  [dim]status:[/dim] [{style}]{run.status}[/{style}]")
    console.print(f"  [dim]version:[/dim] {run.tool_version}")
    console.print(f"  [dim]host:[/dim] {run.hostname or '-'}")
    console.print(f"  [dim]started:[/dim] {run.started_at or '-'}")
    console.print(f"  [dim]duration:[/dim] {format_duration(run.started_at, run.finished_at)}")

    if outcomes:
        console.print()
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Unit")
        table.add_column("Decision")
        table.add_column("Action")
        table.add_column("Applied")
        table.add_column("Reason")
        for outcome in outcomes:
            reason = outcome.reason
            if outcome.error_kind:
                reason = f"[yellow]{outcome.error_kind}[/yellow] {outcome.error_message or reason}"
            table.add_row(
                str(outcome.id),
                outcome.unit_id,
                outcome.decision,
                outcome.action,
                "yes" if outcome.applied else "no",
                reason or "-",
            )
        console.print(table)

        kinds = sorted({o.error_kind for o in outcomes if o.error_kind})
        for kind in kinds:
            console.print(f"  [dim]{kind}: {remediation_for(kind)}[/dim]")

    if run.baseline is not None:
        report = BaselineReport(run_id=run.id, before=run.baseline, after=run.final)
        console.print()
        for metric, before, after, delta in report.rows():
            delta_str = "" if delta is None else f" ({delta:+d})"
            console.print(f"  [dim]{metric}:[/dim] {before if before is not None else '-'} -> {after if after is not None else '-'}{delta_str}")
