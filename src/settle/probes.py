# Copyright (c) Syntropy Systems
"""Read-only state probes for Debian-family hosts.

Every probe is total: "not there" is reported as ``Absent``, and anything
that prevents an answer (missing command, unreadable file, unexpected
exit status) is reported as ``Unknown`` rather than raised.
"""
from __future__ import annotations

import os
import pwd
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import psutil

from settle.commands import run_command
from settle.state import Absent, ObservedState, Present, Unknown, digest_bytes

if TYPE_CHECKING:
    from settle.units import Unit

# dpkg-query exits 1 when some requested packages are unknown to dpkg
DPKG_PARTIAL_MATCH = 1


@dataclass(frozen=True)
class PackageSetProbe:
    """Which of a set of packages are installed (dpkg status ``ii``)."""

    packages: tuple[str, ...]

    def evaluate(self, unit: Unit) -> ObservedState:
        result = run_command(
            ["dpkg-query", "-W", "-f=${Package} ${db:Status-Abbrev}\n", *self.packages],
            timeout=60,
        )
        if result is None:
            return Unknown("dpkg-query unavailable")
        if result.returncode not in (0, DPKG_PARTIAL_MATCH):
            return Unknown(f"dpkg-query exited {result.returncode}")

        installed = sorted(
            name
            for name, status in _parse_dpkg(result.stdout)
            if status.startswith("ii") and name in self.packages
        )
        if not installed:
            return Absent()
        return Present(value=",".join(installed))


def _parse_dpkg(output: str) -> list[tuple[str, str]]:
    rows: list[tuple[str, str]] = []
    for line in output.splitlines():
        parts = line.split(None, 1)
        if len(parts) == 2:  # noqa: PLR2004
            rows.append((parts[0].split(":")[0], parts[1].strip()))
    return rows


@dataclass(frozen=True)
class ServiceProbe:
    """Enablement state of a systemd unit (``enabled``, ``disabled``, ``not-found``...)."""

    service: str

    def evaluate(self, unit: Unit) -> ObservedState:
        result = run_command(["systemctl", "is-enabled", self.service], timeout=30)
        if result is None:
            return Unknown("systemctl unavailable")

        state = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
        if not state:
            if "No such file" in result.stderr or "not found" in result.stderr:
                return Present(value="not-found")
            return Unknown(f"systemctl is-enabled exited {result.returncode}")
        return Present(value=state)


@dataclass(frozen=True)
class BootTargetProbe:
    """Default systemd boot target."""

    def evaluate(self, unit: Unit) -> ObservedState:
        result = run_command(["systemctl", "get-default"], timeout=30)
        if result is None or not result.ok:
            return Unknown("cannot read default target")
        return Present(value=result.stdout.strip())


@dataclass(frozen=True)
class FileProbe:
    """Content digest and mode of a file."""

    path: str

    def evaluate(self, unit: Unit) -> ObservedState:
        target = Path(self.path)
        try:
            data = target.read_bytes()
            mode = stat.S_IMODE(target.stat().st_mode)
        except FileNotFoundError:
            return Absent()
        except OSError as exc:
            return Unknown(f"cannot read {self.path}: {exc.strerror or exc}")
        return Present(value=f"{mode:04o}", digest=digest_bytes(data))


@dataclass(frozen=True)
class PathExistsProbe:
    """Whether a path exists (e.g. the artifact of a long-running operation)."""

    path: str

    def evaluate(self, unit: Unit) -> ObservedState:
        try:
            exists = Path(self.path).exists()
        except OSError as exc:
            return Unknown(str(exc))
        return Present(value=self.path) if exists else Absent()


@dataclass(frozen=True)
class MountOptionProbe:
    """Options of the filesystem mounted at ``mountpoint``."""

    mountpoint: str
    mounts_file: str = "/proc/mounts"

    def evaluate(self, unit: Unit) -> ObservedState:
        try:
            lines = Path(self.mounts_file).read_text().splitlines()
        except OSError as exc:
            return Unknown(f"cannot read {self.mounts_file}: {exc.strerror or exc}")

        options: list[str] | None = None
        for line in lines:
            fields = line.split()
            if len(fields) >= 4 and fields[1] == self.mountpoint:  # noqa: PLR2004
                # Last entry wins for stacked mounts
                options = fields[3].split(",")
        if options is None:
            return Absent()
        return Present(value=",".join(options))


@dataclass(frozen=True)
class OsReleaseProbe:
    """Distribution id from os-release; the only portability logic settle exposes."""

    path: str = "/etc/os-release"

    def evaluate(self, unit: Unit) -> ObservedState:
        try:
            text = Path(self.path).read_text()
        except OSError:
            return Unknown(f"cannot determine OS ({self.path} unreadable)")

        values: dict[str, str] = {}
        for line in text.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                values[key.strip()] = value.strip().strip('"')
        os_id = values.get("ID")
        if not os_id:
            return Unknown("os-release has no ID")
        return Present(value=os_id)


@dataclass(frozen=True)
class DiskSpaceProbe:
    """Free space in MiB on the filesystem holding ``path``."""

    path: str = "/"

    def evaluate(self, unit: Unit) -> ObservedState:
        try:
            usage = psutil.disk_usage(self.path)
        except OSError as exc:
            return Unknown(str(exc))
        return Present(value=str(int(usage.free // (1024 * 1024))))


@dataclass(frozen=True)
class UserProbe:
    """Whether a local account exists."""

    name: str
    home_mode: int | None = field(default=None)

    def evaluate(self, unit: Unit) -> ObservedState:
        try:
            entry = pwd.getpwnam(self.name)
        except KeyError:
            return Absent()
        value = self.name
        if self.home_mode is not None:
            try:
                mode = stat.S_IMODE(os.stat(entry.pw_dir).st_mode)
            except OSError:
                return Present(value=value)
            if mode != self.home_mode:
                # Account exists but the home directory is still too open
                return Present(value=f"{value}:home={mode:04o}")
        return Present(value=value)


@dataclass(frozen=True)
class ModeProbe:
    """Paths whose permission bits differ from the wanted mode.

    Reports ``Absent`` when nothing deviates. Missing paths count only
    when they are listed in ``create``.
    """

    modes: tuple[tuple[str, int], ...]
    create: frozenset[str] = field(default_factory=frozenset)

    def evaluate(self, unit: Unit) -> ObservedState:
        deviations: list[str] = []
        for path, wanted in self.modes:
            try:
                mode = stat.S_IMODE(os.stat(path).st_mode)
            except FileNotFoundError:
                if path in self.create:
                    deviations.append(f"{path}=missing")
                continue
            except OSError as exc:
                return Unknown(f"cannot stat {path}: {exc.strerror or exc}")
            if mode != wanted:
                deviations.append(f"{path}={mode:04o}")
        if not deviations:
            return Absent()
        return Present(value=",".join(deviations))
