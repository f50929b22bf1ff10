# Copyright (c) Syntropy Systems
"""Main CLI entry point for settle."""

import typer

from settle.cli.apply import apply
from settle.cli.backups import backups, restore
from settle.cli.doctor import doctor
from settle.cli.init_cmd import init
from settle.cli.runs import runs, show
from settle.cli.status import status

app = typer.Typer(
    name="settle",
    help=(
        "Idempotent host convergence. Probe, decide, back up, apply, "
        "record. Re-run safely."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(apply)
_ = app.command()(status)
_ = app.command()(runs)
_ = app.command()(show)
_ = app.command()(backups)
_ = app.command()(restore)
_ = app.command()(doctor)


if __name__ == "__main__":
    app()
