# Copyright (c) Syntropy Systems
"""Aggregate host measurements for before/after run reports."""
from __future__ import annotations

import logging

import psutil

from settle.commands import run_command
from settle.db import utcnow
from settle.models.run import Baseline

logger = logging.getLogger(__name__)


def get_free_disk_mb(path: str = "/") -> int | None:
    """Free space on the filesystem holding ``path`` in MiB."""
    try:
        usage = psutil.disk_usage(path)
    except OSError:
        return None
    return int(usage.free // (1024 * 1024))


def get_package_count() -> int | None:
    """Number of installed dpkg packages."""
    result = run_command(["dpkg-query", "-W", "-f=${db:Status-Abbrev}\n"], timeout=60)
    if result is None or not result.ok:
        return None
    return sum(1 for line in result.stdout.splitlines() if line.startswith("ii"))


def get_active_service_count() -> int | None:
    """Number of active systemd services."""
    result = run_command(
        ["systemctl", "list-units", "--type=service", "--state=active", "--no-legend", "--plain"],
        timeout=30,
    )
    if result is None or not result.ok:
        return None
    return sum(1 for line in result.stdout.splitlines() if line.strip())


def capture_baseline() -> Baseline:
    """Take one measurement; unavailable values are left as None."""
    baseline = Baseline(
        timestamp=utcnow(),
        free_disk_mb=get_free_disk_mb(),
        package_count=get_package_count(),
        active_services=get_active_service_count(),
    )
    logger.info(
        "Baseline: free=%sMiB packages=%s services=%s",
        baseline.free_disk_mb,
        baseline.package_count,
        baseline.active_services,
    )
    return baseline


def get_package_selections() -> str | None:
    """The ``dpkg --get-selections`` list, kept so purges can be reverted by hand."""
    result = run_command(["dpkg", "--get-selections"], timeout=60)
    if result is None or not result.ok:
        return None
    return result.stdout
