# Copyright (c) Syntropy Systems
"""settle doctor command."""

import os
import sqlite3
from typing import cast

from rich.console import Console

from settle import __version__
from settle.baseline import get_free_disk_mb
from settle.commands import command_available
from settle.config import find_settle_dir, get_backups_dir, get_db_path, load_config
from settle.db import get_connection, get_meta, get_unit_states

console = Console()

HOST_COMMANDS = ("dpkg-query", "apt-get", "apt-mark", "systemctl", "mount", "sshd")


def doctor() -> None:
    """Check settle setup and the host tools it relies on.

    Verifies:
    - settle directory exists
    - ledger is healthy (WAL mode)
    - host commands are on PATH
    - running as root
    - enough free disk
    """
    issues: list[str] = []
    warnings: list[str] = []

    settle_dir = find_settle_dir()
    if settle_dir is None:
        console.print("[red]✗[/red] No .settle directory found")
        console.print("  Run [bold]settle init[/bold] to initialize")
        return

    console.print(f"[green]✓[/green] settle directory: {settle_dir}")

    # Check ledger
    db_path = get_db_path(settle_dir)
    if not db_path.exists():
        console.print(f"[red]✗[/red] Ledger not found: {db_path}")
        issues.append("Ledger missing")
    else:
        conn = None
        try:
            conn = get_connection(db_path)

            result = cast(
                "sqlite3.Row | None",
                conn.execute("PRAGMA journal_mode").fetchone(),
            )
            if result is not None and cast("str", result[0]).lower() == "wal":
                console.print("[green]✓[/green] Ledger: WAL mode enabled")
            else:
                journal_mode = cast("str", result[0]) if result is not None else "unknown"
                console.print(f"[yellow]⚠[/yellow] Ledger: journal_mode is {journal_mode}, expected WAL")
                warnings.append("Not using WAL mode")

            integrity = conn.execute("PRAGMA quick_check").fetchone()
            if integrity is not None and cast("str", integrity[0]) != "ok":
                console.print(f"[red]✗[/red] Ledger integrity: {integrity[0]}")
                issues.append("Ledger integrity check failed")

            states = get_unit_states(conn)
            last_version = get_meta(conn, "tool_version")
            console.print(
                f"[green]✓[/green] Ledger: {len(states)} units recorded, "
                f"last completed apply by {last_version or 'none yet'} (this is {__version__})"
            )
        except sqlite3.Error as e:
            console.print(f"[red]✗[/red] Ledger error: {e}")
            issues.append(f"Ledger error: {e}")
        finally:
            if conn is not None:
                conn.close()

    backups_dir = get_backups_dir(settle_dir)
    if backups_dir.is_dir():
        count = sum(1 for _ in backups_dir.iterdir())
        console.print(f"[green]✓[/green] Backups directory: {count} runs with snapshots")
    else:
        console.print("[yellow]⚠[/yellow] Backups directory not found")
        warnings.append("Backups directory missing")

    # Host commands
    for name in HOST_COMMANDS:
        if command_available(name):
            console.print(f"[green]✓[/green] {name}")
        else:
            console.print(f"[yellow]⚠[/yellow] {name} not found; units using it will be skipped as unknown")
            warnings.append(f"{name} missing")

    # Privileges
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        console.print("[yellow]⚠[/yellow] Not root; apply needs sudo")
        warnings.append("Not running as root")
    else:
        console.print("[green]✓[/green] Running as root")

    # Disk
    config = load_config(settle_dir)
    free_mb = get_free_disk_mb("/")
    if free_mb is None:
        console.print("[yellow]⚠[/yellow] Could not measure free disk")
        warnings.append("Free disk unknown")
    elif free_mb < config.min_free_mb:
        console.print(f"[red]✗[/red] Free disk {free_mb}MiB < {config.min_free_mb}MiB required")
        issues.append("Insufficient disk space")
    else:
        console.print(f"[green]✓[/green] Free disk: {free_mb}MiB")

    # Summary
    console.print()
    if issues:
        console.print(f"[red]Found {len(issues)} issue(s)[/red]")
        for issue in issues:
            console.print(f"  - {issue}")
    elif warnings:
        console.print(f"[yellow]Found {len(warnings)} warning(s)[/yellow]")
        for warning in warnings:
            console.print(f"  - {warning}")
    else:
        console.print("[green]All checks passed[/green]")
