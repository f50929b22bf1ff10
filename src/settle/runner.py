# Copyright (c) Syntropy Systems
"""Background execution of long-running mutator commands."""
from __future__ import annotations

import contextlib
import ctypes
import os
import signal
import subprocess
import sys
import time
from typing import IO, TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from pathlib import Path


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so the child dies when settle dies.

    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        return


def _ignore_interrupts() -> None:
    # The operator's Ctrl-C is for settle, which lets the operation finish.
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    setup_pdeathsig()


class BackgroundRunner:
    """Runs one long operation detached from the terminal.

    Features:
    - Own process group (start_new_session=True)
    - Immune to the terminal's SIGINT; settle decides when to stop
    - stdout/stderr captured to a log file
    - Graceful then forceful termination on request
    """

    argv: list[str]
    log_path: Path
    env: dict[str, str]
    _process: subprocess.Popen[bytes] | None
    _exit_code: int | None
    _log_file: IO[str] | None

    def __init__(
        self,
        argv: list[str],
        log_path: Path,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize a runner.

        Args:
            argv: Command as list of argv tokens (no shell)
            log_path: File receiving the command's combined output
            env: Additional environment variables

        """
        self.argv = argv
        self.log_path = log_path
        self.env = os.environ.copy()
        if env:
            self.env.update(env)

        self._process = None
        self._exit_code = None
        self._log_file = None

    def start(self) -> None:
        """Start the command in the background."""
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._log_file = self.log_path.open("a")

        self._process = subprocess.Popen(  # noqa: S603
            self.argv,
            stdout=self._log_file,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            env=self.env,
            start_new_session=True,
            preexec_fn=_ignore_interrupts if sys.platform == "linux" else None,  # noqa: PLW1509
        )

    def poll(self) -> int | None:
        """Return the exit code if finished, None while still running."""
        if self._process is None:
            return self._exit_code

        code = self._process.poll()
        if code is not None:
            self._exit_code = code
            self._cleanup()
        return code

    def wait_with_progress(
        self,
        interval: float,
        on_tick: Callable[[float], None] | None = None,
    ) -> int:
        """Block until the command finishes, calling ``on_tick`` every interval.

        ``on_tick`` receives the elapsed seconds. It is purely for operator
        feedback and never decides anything.
        """
        started = time.monotonic()
        while True:
            code = self.poll()
            if code is not None:
                return code
            if on_tick is not None:
                on_tick(time.monotonic() - started)
            time.sleep(interval)

    def kill(self, grace_period: float = 10.0) -> int:
        """Terminate the process group: SIGTERM, then SIGKILL after grace_period."""
        if self._process is None:
            return self._exit_code or 0

        if self._process.poll() is not None:
            exit_code = self._process.returncode or 0
            self._exit_code = exit_code
            self._cleanup()
            return exit_code

        try:
            pgid = os.getpgid(self._process.pid)
        except (OSError, ProcessLookupError):
            self._cleanup()
            return self._exit_code or -signal.SIGKILL

        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGTERM)

        deadline = time.time() + grace_period
        while time.time() < deadline:
            if self._process.poll() is not None:
                exit_code = self._process.returncode or 0
                self._exit_code = exit_code
                self._cleanup()
                return exit_code
            time.sleep(0.1)

        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)

        with contextlib.suppress(subprocess.TimeoutExpired):
            _ = self._process.wait(timeout=5.0)

        exit_code = self._process.returncode or -signal.SIGKILL
        self._exit_code = exit_code
        self._cleanup()
        return exit_code

    def _cleanup(self) -> None:
        if self._log_file:
            with contextlib.suppress(Exception):
                self._log_file.close()
            self._log_file = None

    @property
    def pid(self) -> int | None:
        if self._process is None:
            return None
        return self._process.pid
