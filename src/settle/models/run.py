# Copyright (c) Syntropy Systems
"""Pydantic models for run baselines and reports."""

from __future__ import annotations

from typing import Optional

from pydantic import computed_field

from .base import SettleBaseModel


class Baseline(SettleBaseModel):
    """Aggregate host measurement taken at the start or end of a run.

    Fields are None when the measurement could not be taken.
    """

    timestamp: str
    free_disk_mb: Optional[int] = None
    package_count: Optional[int] = None
    active_services: Optional[int] = None


def _delta(before: Optional[int], after: Optional[int]) -> Optional[int]:
    if before is None or after is None:
        return None
    return after - before


class BaselineReport(SettleBaseModel):
    """Before/after comparison emitted at the end of a run."""

    run_id: str
    before: Baseline
    after: Optional[Baseline] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def free_disk_delta_mb(self) -> Optional[int]:
        return _delta(self.before.free_disk_mb, self.after.free_disk_mb if self.after else None)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def package_delta(self) -> Optional[int]:
        return _delta(self.before.package_count, self.after.package_count if self.after else None)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def service_delta(self) -> Optional[int]:
        return _delta(self.before.active_services, self.after.active_services if self.after else None)

    def rows(self) -> list[tuple[str, Optional[int], Optional[int], Optional[int]]]:
        """Return (metric, before, after, delta) rows for display."""
        after = self.after
        return [
            (
                "Free disk (MiB)",
                self.before.free_disk_mb,
                after.free_disk_mb if after else None,
                self.free_disk_delta_mb,
            ),
            (
                "Installed packages",
                self.before.package_count,
                after.package_count if after else None,
                self.package_delta,
            ),
            (
                "Active services",
                self.before.active_services,
                after.active_services if after else None,
                self.service_delta,
            ),
        ]
