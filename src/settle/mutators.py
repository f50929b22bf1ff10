# Copyright (c) Syntropy Systems
"""State transitions for Debian-family hosts.

Each mutator re-checks the host before acting so that applying a unit
that is already converged is a successful no-op. Mutators never prompt
and never take backups; the sequencer does both before calling them.
"""
from __future__ import annotations

import logging
import os
import pwd
import shutil
import stat
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console

from settle.commands import DEFAULT_TIMEOUT, CommandResult, format_argv, run_command
from settle.probes import PackageSetProbe, ServiceProbe, UserProbe
from settle.runner import BackgroundRunner
from settle.state import Absent, Present, Unknown, digest_bytes
from settle.units import MutationResult

if TYPE_CHECKING:
    from settle.units import Unit

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
APT_LOCK_MARKERS = ("Could not get lock", "Unable to acquire the dpkg frontend lock")


def _result(success: bool, detail: str, *, recoverable: bool = False) -> MutationResult:  # noqa: FBT001
    return MutationResult(success=success, detail=detail, recoverable=recoverable)


def _failed(action: str, result: CommandResult | None) -> MutationResult:
    if result is None:
        return _result(False, f"{action}: command unavailable")
    stderr = result.stderr.strip().splitlines()
    tail = stderr[-1] if stderr else f"exit {result.returncode}"
    recoverable = any(marker in result.stderr for marker in APT_LOCK_MARKERS)
    return _result(False, f"{action} failed: {tail}", recoverable=recoverable)


@dataclass(frozen=True)
class PackageMutator:
    """Install or purge a package set.

    ``protect`` packages are marked manually installed before any purge so
    that neither the purge nor a later autoremove can take them.
    """

    packages: tuple[str, ...]
    remove: bool = False
    protect: tuple[str, ...] = field(default_factory=tuple)
    autoremove: bool = False
    timeout: float = DEFAULT_TIMEOUT

    def apply(self, unit: Unit) -> MutationResult:
        observed = PackageSetProbe(self.packages).evaluate(unit)
        if isinstance(observed, Unknown):
            return _result(False, f"cannot read package state: {observed.reason}")
        installed = set(observed.value.split(",")) if isinstance(observed, Present) and observed.value else set()

        if self.remove:
            return self._purge(sorted(installed - set(self.protect)))
        return self._install([p for p in self.packages if p not in installed])

    def _install(self, missing: list[str]) -> MutationResult:
        if not missing:
            return _result(True, "all packages already installed")
        result = run_command(["apt-get", "install", "-y", *missing], env=APT_ENV, timeout=self.timeout)
        if result is None or not result.ok:
            return _failed("apt-get install", result)
        return _result(True, f"installed {len(missing)}: {', '.join(missing)}")

    def _purge(self, targets: list[str]) -> MutationResult:
        for name in self.protect:
            # Unknown packages make apt-mark fail; protection is best effort
            _ = run_command(["apt-mark", "manual", name], timeout=self.timeout)

        if not targets:
            return _result(True, "nothing to remove")
        result = run_command(["apt-get", "purge", "-y", *targets], env=APT_ENV, timeout=self.timeout)
        if result is None or not result.ok:
            return _failed("apt-get purge", result)

        if self.autoremove:
            cleanup = run_command(["apt-get", "autoremove", "--purge", "-y"], env=APT_ENV, timeout=self.timeout)
            if cleanup is None or not cleanup.ok:
                logger.warning("autoremove after purge failed: %s", cleanup.stderr if cleanup else "unavailable")
        return _result(True, f"purged {len(targets)}: {', '.join(targets)}")


@dataclass(frozen=True)
class ServiceMutator:
    """Enable or disable (and start or stop) a systemd unit."""

    service: str
    enable: bool = True
    timeout: float = DEFAULT_TIMEOUT

    def apply(self, unit: Unit) -> MutationResult:
        current = ServiceProbe(self.service).evaluate(unit)
        state = current.value if isinstance(current, Present) else None

        if self.enable:
            if state == "enabled":
                return _result(True, f"{self.service} already enabled")
            result = run_command(["systemctl", "enable", "--now", self.service], timeout=self.timeout)
            if result is None or not result.ok:
                return _failed(f"enable {self.service}", result)
            return _result(True, f"enabled {self.service}")

        if state in ("disabled", "masked", "not-found"):
            return _result(True, f"{self.service} already {state}")
        result = run_command(["systemctl", "disable", "--now", self.service], timeout=self.timeout)
        if result is None or not result.ok:
            return _failed(f"disable {self.service}", result)
        return _result(True, f"disabled {self.service}")


@dataclass(frozen=True)
class BootTargetMutator:
    """Switch the default systemd boot target."""

    target: str
    timeout: float = DEFAULT_TIMEOUT

    def apply(self, unit: Unit) -> MutationResult:
        result = run_command(["systemctl", "set-default", self.target], timeout=self.timeout)
        if result is None or not result.ok:
            return _failed(f"set-default {self.target}", result)
        return _result(True, f"default target is {self.target}")


def write_atomic(path: Path, data: bytes, mode: int) -> None:
    """Write ``data`` to ``path`` via a fsynced temporary file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            _ = f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


@dataclass(frozen=True)
class FileMutator:
    """Write the unit's policy content to a file.

    ``validate`` is run after writing (e.g. ``sshd -t``); if it fails the
    previous content is put back. ``reload`` runs after a successful write,
    and again when the content is already in place.
    """

    path: str
    mode: int = 0o644
    validate: tuple[str, ...] = field(default_factory=tuple)
    reload: tuple[str, ...] = field(default_factory=tuple)
    timeout: float = DEFAULT_TIMEOUT

    def apply(self, unit: Unit) -> MutationResult:
        content = unit.policy.target
        if not isinstance(content, str):
            return _result(False, "unit policy carries no file content")

        target = Path(self.path)
        data = content.encode("utf-8")
        try:
            previous = target.read_bytes() if target.exists() else None
        except OSError as exc:
            return _result(False, f"cannot read {target}: {exc}")

        if previous is not None and digest_bytes(previous) == digest_bytes(data):
            try:
                os.chmod(target, self.mode)
            except OSError as exc:
                return _result(False, f"chmod {target} failed: {exc}")
            # Content from an earlier run may still be waiting for its reload
            return self._reload(f"{target} already up to date", "up to date but")

        try:
            write_atomic(target, data, self.mode)
        except OSError as exc:
            return _result(False, f"write {target} failed: {exc}")

        if self.validate:
            check = run_command(list(self.validate), timeout=self.timeout)
            if check is None or not check.ok:
                self._revert(target, previous)
                return _failed(f"validation ({format_argv(self.validate)}), reverted", check)

        return self._reload(f"wrote {target}", "written but")

    def _reload(self, done: str, prefix: str) -> MutationResult:
        if self.reload:
            reloaded = run_command(list(self.reload), timeout=self.timeout)
            if reloaded is None or not reloaded.ok:
                return _failed(f"{prefix} {format_argv(self.reload)}", reloaded)
        return _result(True, done)

    def _revert(self, target: Path, previous: bytes | None) -> None:
        try:
            if previous is None:
                target.unlink(missing_ok=True)
            else:
                write_atomic(target, previous, self.mode)
        except OSError:
            logger.exception("Could not revert %s", target)


@dataclass(frozen=True)
class RemountMutator:
    """Persist mount options in fstab and apply them with a remount."""

    mountpoint: str
    options: tuple[str, ...]
    fstab_entry: str
    fstab_path: str = "/etc/fstab"
    timeout: float = DEFAULT_TIMEOUT

    def apply(self, unit: Unit) -> MutationResult:
        fstab = Path(self.fstab_path)
        try:
            lines = fstab.read_text().splitlines() if fstab.exists() else []
        except OSError as exc:
            return _result(False, f"cannot read {fstab}: {exc}")

        has_entry = any(
            len(line.split()) >= 2 and line.split()[1] == self.mountpoint and not line.lstrip().startswith("#")  # noqa: PLR2004
            for line in lines
        )
        if not has_entry:
            try:
                write_atomic(fstab, ("\n".join([*lines, self.fstab_entry]) + "\n").encode(), 0o644)
            except OSError as exc:
                return _result(False, f"cannot update {fstab}: {exc}")
            logger.info("Added %s entry to %s", self.mountpoint, fstab)

        opts = ",".join(["remount", *self.options])
        result = run_command(["mount", "-o", opts, self.mountpoint], timeout=self.timeout)
        if result is None or not result.ok:
            return _failed(f"remount {self.mountpoint} (fstab updated, applies at reboot)", result)
        return _result(True, f"{self.mountpoint} remounted with {','.join(self.options)}")


@dataclass(frozen=True)
class UserMutator:
    """Create a locked service account and tighten its home directory."""

    name: str
    home_mode: int = 0o700
    timeout: float = DEFAULT_TIMEOUT

    def apply(self, unit: Unit) -> MutationResult:
        if isinstance(UserProbe(self.name).evaluate(unit), Absent):
            created = run_command(["useradd", "-m", "-s", "/bin/bash", self.name], timeout=self.timeout)
            if created is None or not created.ok:
                return _failed(f"useradd {self.name}", created)
            # No password is set non-interactively; the operator sets one later
            _ = run_command(["passwd", "-l", self.name], timeout=self.timeout)

        try:
            home = Path(pwd.getpwnam(self.name).pw_dir)
            os.chmod(home, self.home_mode)
        except KeyError:
            return _result(False, f"account {self.name} missing after useradd")
        except OSError as exc:
            return _result(False, f"chmod {home} failed: {exc}")
        return _result(True, f"account {self.name} ready (home {self.home_mode:04o})")


@dataclass(frozen=True)
class CommandMutator:
    """Run a long operation in the background, polling it for progress.

    The call blocks until the command has finished so the next unit never
    races with it. ``timeout`` of None waits indefinitely.
    """

    argv: tuple[str, ...]
    log_path: str
    poll_interval: float = 1.0
    timeout: float | None = None
    kill_grace_period: float = 10.0
    monitor_path: str | None = None

    def apply(self, unit: Unit) -> MutationResult:
        runner = BackgroundRunner(list(self.argv), Path(self.log_path))
        try:
            runner.start()
        except OSError as exc:
            return _result(False, f"cannot start {format_argv(self.argv)}: {exc}")
        logger.info("Started %s (pid %s)", format_argv(self.argv), runner.pid)

        console = Console(stderr=True)
        timed_out = False

        with console.status(f"{unit.id}: running {self.argv[0]}...") as status:

            def tick(elapsed: float) -> None:
                nonlocal timed_out
                if self.timeout is not None and elapsed > self.timeout and not timed_out:
                    timed_out = True
                    _ = runner.kill(grace_period=self.kill_grace_period)
                    return
                status.update(f"{unit.id}: {self._progress(elapsed)}")

            exit_code = runner.wait_with_progress(self.poll_interval, tick)

        if timed_out:
            return _result(False, f"{self.argv[0]} exceeded {self.timeout:.0f}s and was stopped")
        if exit_code != 0:
            return _result(False, f"{self.argv[0]} exited {exit_code}, see {self.log_path}")
        return _result(True, f"{self.argv[0]} completed")

    def _progress(self, elapsed: float) -> str:
        minutes, seconds = divmod(int(elapsed), 60)
        text = f"processing... {minutes}m {seconds}s"
        if self.monitor_path:
            try:
                size_mb = Path(self.monitor_path).stat().st_size / (1024 * 1024)
            except OSError:
                return text
            text += f" ({size_mb:.1f} MiB written)"
        return text


@dataclass(frozen=True)
class ModeMutator:
    """Tighten permission bits, creating listed directories first.

    Paths that do not exist and are not in ``create`` are left alone.
    Created directories are handed to ``owner`` when one is given.
    """

    modes: tuple[tuple[str, int], ...]
    create: frozenset[str] = field(default_factory=frozenset)
    owner: str | None = None

    def apply(self, unit: Unit) -> MutationResult:
        changed: list[str] = []
        for path, wanted in self.modes:
            target = Path(path)
            try:
                if not target.exists():
                    if path not in self.create:
                        continue
                    target.mkdir(parents=True, mode=wanted)
                    if self.owner:
                        shutil.chown(target, user=self.owner, group=self.owner)
                if stat.S_IMODE(target.stat().st_mode) != wanted:
                    os.chmod(target, wanted)
                    changed.append(f"{path}={wanted:04o}")
            except (OSError, LookupError) as exc:
                return _result(False, f"cannot set mode on {path}: {exc}")
        if not changed:
            return _result(True, "permissions already correct")
        return _result(True, f"set {len(changed)}: {', '.join(changed)}")
