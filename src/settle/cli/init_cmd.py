# Copyright (c) Syntropy Systems
"""settle init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from settle.config import SettleConfig
from settle.db import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a settle state directory.

    Creates a .settle directory with configuration, ledger, backups and logs.
    """
    target = path.resolve()
    settle_dir = target / ".settle"

    if settle_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {settle_dir}")
        return

    # Create directory structure
    settle_dir.mkdir(parents=True)
    backups_dir = settle_dir / "backups"
    backups_dir.mkdir(mode=0o700)
    logs_dir = settle_dir / "logs"
    logs_dir.mkdir()

    # Create default config
    defaults = SettleConfig()
    config = {
        "min_free_mb": defaults.min_free_mb,
        "poll_interval": defaults.poll_interval,
        "mutator_retries": defaults.mutator_retries,
        "retry_delay": defaults.retry_delay,
        "command_timeout": defaults.command_timeout,
        "kill_grace_period": defaults.kill_grace_period,
        "user": defaults.user,
    }

    config_path = settle_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(config, f, default_flow_style=False)

    # Initialize ledger
    db_path = settle_dir / "ledger.db"
    init_db(db_path)

    console.print(f"[green]Initialized settle:[/green] {settle_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]ledger:[/dim] {db_path}")
    console.print(f"  [dim]backups:[/dim] {backups_dir}")
    console.print(f"  [dim]logs:[/dim] {logs_dir}")
