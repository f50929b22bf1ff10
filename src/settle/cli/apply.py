# Copyright (c) Syntropy Systems
"""settle apply command."""
from __future__ import annotations

import os
import sys

import typer
from rich.console import Console
from rich.table import Table

from settle import __version__
from settle.backup import BackupManager
from settle.baseline import get_package_selections
from settle.config import get_backups_dir, get_db_path, get_logs_dir, load_config, require_settle_dir
from settle.errors import EXIT_FATAL, EXIT_USAGE, PolicyError, SettleError, remediation_for
from settle.gate import InteractiveGate, NonInteractiveGate
from settle.ledger import StateLedger
from settle.loader import load_policy
from settle.log import configure_logging
from settle.models.db import Outcome
from settle.sequencer import RunResult, RunSequencer, RunState
from settle.units import Interactivity, Mode, RunFlags

console = Console()

ACTION_STYLES = {
    "skip": ("[dim]-[/dim]", "dim"),
    "apply": ("[green]✓[/green]", "green"),
    "fatal": ("[red]✗[/red]", "red"),
}


def _print_outcome(outcome: Outcome) -> None:
    symbol, style = ACTION_STYLES.get(outcome.action, ("?", "white"))
    if outcome.error_kind:
        symbol = "[yellow]⚠[/yellow]" if outcome.action != "fatal" else symbol
        style = "yellow" if outcome.action != "fatal" else style

    label = outcome.action
    if outcome.mode == "simulate" and outcome.action == "apply":
        label = "would apply"
    elif outcome.applied:
        label = "applied"
    console.print(f"  {symbol} {outcome.unit_id} [{style}]{label}[/{style}] [dim]{outcome.reason}[/dim]")


def _version_note(previous: str | None) -> str:
    if previous is None:
        return "first run on this host"
    if previous == __version__:
        return f"same version ({__version__})"
    return f"upgrade from {previous} to {__version__}: all units re-evaluated"


def _render_summary(result: RunResult) -> None:
    console.print()
    counts: dict[str, int] = {}
    for outcome in result.outcomes:
        key = "applied" if outcome.applied else outcome.action
        if outcome.mode == "simulate" and outcome.action == "apply":
            key = "would apply"
        counts[key] = counts.get(key, 0) + 1
    summary = ", ".join(f"{n} {k}" for k, n in sorted(counts.items())) or "nothing evaluated"
    console.print(f"[bold]Run {result.run_id}[/bold]: {result.status.value} ({summary})")

    if result.problems:
        console.print()
        table = Table(show_header=True, header_style="bold", title="Needs attention")
        table.add_column("Unit")
        table.add_column("Kind")
        table.add_column("Detail")
        table.add_column("Remediation", style="dim")
        for outcome in result.problems:
            detail = outcome.error_message or outcome.reason
            table.add_row(outcome.unit_id, outcome.error_kind or outcome.action, detail, remediation_for(outcome.error_kind))
        console.print(table)

    if result.report is not None:
        console.print()
        table = Table(show_header=True, header_style="bold", title="Baseline")
        table.add_column("Metric")
        table.add_column("Before", justify="right")
        table.add_column("After", justify="right")
        table.add_column("Delta", justify="right")
        for metric, before, after, delta in result.report.rows():
            table.add_row(
                metric,
                "-" if before is None else str(before),
                "-" if after is None else str(after),
                "-" if delta is None else f"{delta:+d}",
            )
        console.print(table)

    if result.status is RunState.INTERRUPTED:
        console.print("[yellow]Interrupted.[/yellow] Re-run to continue; completed units will be skipped.")
    elif result.status is RunState.ABORTED:
        console.print("[red]Aborted:[/red] a precondition failed, nothing was changed.")


def apply(
    policy: str = typer.Argument(
        ...,
        help="Built-in catalog name (hardening, headless) or path to a policy YAML file",
    ),
    simulate: bool = typer.Option(
        False,
        "--simulate",
        help="Decide every unit without changing anything",
    ),
    non_interactive: bool = typer.Option(
        False,
        "--non-interactive", "-y",
        help="Never prompt; use each unit's documented default",
    ),
    skip_long_ops: bool = typer.Option(
        False,
        "--skip-long-ops",
        help="Skip long-running operations (e.g. integrity database build)",
    ),
    remove_entirely: bool = typer.Option(
        False,
        "--remove-entirely",
        help="Allow destructive units (package purges) to be applied by default",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Show debug logging on the console",
    ),
) -> None:
    """Converge this host to a policy.

    Each unit is probed, decided, confirmed if needed, backed up, applied,
    verified and recorded. Re-running is always safe.
    """
    try:
        settle_dir = require_settle_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_USAGE) from e

    config = load_config(settle_dir)
    logs_dir = get_logs_dir(settle_dir)
    log_path = configure_logging(logs_dir, verbose=verbose)

    try:
        policy_set = load_policy(policy, config, logs_dir)
    except PolicyError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_USAGE) from e

    interactive = not non_interactive and sys.stdin.isatty()
    if not non_interactive and not interactive:
        console.print("[dim]No terminal on stdin; running non-interactively[/dim]")

    flags = RunFlags(
        mode=Mode.SIMULATE if simulate else Mode.APPLY,
        interactivity=Interactivity.INTERACTIVE if interactive else Interactivity.NON_INTERACTIVE,
        skip_long_ops=skip_long_ops,
        destructive_mode_enabled=remove_entirely,
    )

    if not simulate and hasattr(os, "geteuid") and os.geteuid() != 0:
        console.print("[yellow]⚠ Not running as root; most changes will fail[/yellow]")

    gate = InteractiveGate(console) if interactive else NonInteractiveGate()
    header = "[bold]Simulating[/bold]" if simulate else "[bold]Applying[/bold]"
    console.print(f"{header} {policy_set.name}: {len(policy_set.units)} units")

    try:
        with StateLedger(get_db_path(settle_dir), __version__) as ledger:
            console.print(f"[dim]{_version_note(ledger.last_run_version())}[/dim]")
            sequencer = RunSequencer(
                policy_set.units,
                ledger,
                BackupManager(get_backups_dir(settle_dir), ledger),
                gate,
                flags,
                config=config,
                policy_name=policy_set.name,
                selections_fn=get_package_selections,
                on_outcome=_print_outcome,
            )
            result = sequencer.run()
    except PolicyError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_USAGE) from e
    except SettleError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_FATAL) from e

    _render_summary(result)
    console.print(f"[dim]Log: {log_path}[/dim]")

    if result.exit_code != 0:
        raise typer.Exit(result.exit_code)
