# Copyright (c) Syntropy Systems
"""Host command execution with consistent logging."""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600.0


@dataclass(frozen=True)
class CommandResult:
    """Captured result of a finished command."""

    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def format_argv(argv: Sequence[str]) -> str:
    """Render argv as a shell-quoted string for logs."""
    return " ".join(shlex.quote(a) for a in argv)


def command_available(name: str) -> bool:
    """Return True when an executable is on PATH."""
    return shutil.which(name) is not None


def run_command(
    argv: Sequence[str],
    *,
    timeout: float = DEFAULT_TIMEOUT,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
) -> CommandResult | None:
    """Run a command and capture its output.

    Returns None when the executable is missing or cannot be started, so
    callers can tell "could not ask" apart from "asked and got an answer".
    A non-zero exit status is returned, not raised.
    """
    argv_list = list(argv)
    cmd_path = shutil.which(argv_list[0])
    if cmd_path is None:
        logger.debug("Command not found: %s", argv_list[0])
        return None

    logger.debug("CMD %s", format_argv(argv_list))
    try:
        proc = subprocess.run(  # noqa: S603
            [cmd_path, *argv_list[1:]],
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=dict(os.environ, **(env or {})),
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Command %s could not complete: %s", format_argv(argv_list), exc)
        return None

    if proc.stderr:
        logger.debug("STDERR %s", proc.stderr.strip())

    return CommandResult(
        argv=argv_list,
        returncode=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
    )
