# Copyright (c) Syntropy Systems
"""Run log setup: a timestamped file log plus warnings on the console."""
from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(logs_dir: Path, *, verbose: bool = False) -> Path:
    """Attach the run log handlers to the ``settle`` logger.

    Every decision and host command is written to
    ``logs/settle-YYYYmmdd-HHMMSS.log``; warnings (DEBUG with ``verbose``)
    also reach stderr through rich. Returns the log file path.
    """
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / f"settle-{time.strftime('%Y%m%d-%H%M%S')}.log"

    root = logging.getLogger("settle")
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        show_time=False,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(console_handler)

    root.propagate = False
    return log_path
