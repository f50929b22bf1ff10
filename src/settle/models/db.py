# Copyright (c) Syntropy Systems
"""Pydantic models for ledger records."""

from __future__ import annotations

from typing import Optional, cast

from pydantic import TypeAdapter, field_validator

from settle.state import ObservedState, observed_from_dict

from .base import ObservedDict, SettleBaseModel
from .run import Baseline

_OBSERVED_ADAPTER = TypeAdapter(ObservedDict)


class Outcome(SettleBaseModel):
    """Result of processing one unit in one run.

    ``decision`` is the decision engine's verdict; ``action`` is what the
    run actually did after the confirmation gate (skip, apply or fatal).
    """

    run_id: str
    unit_id: str
    mode: str
    phase: int = 0
    observed: ObservedDict
    decision: str
    action: str
    applied: bool = False
    reason: str = ""
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    policy_fingerprint: Optional[str] = None
    written_digest: Optional[str] = None
    timestamp: str

    @field_validator("observed", mode="before")
    @classmethod
    def _parse_observed(cls, value: object) -> ObservedDict:
        if value is None:
            return {}
        if isinstance(value, str):
            return _OBSERVED_ADAPTER.validate_json(value)
        return cast("ObservedDict", value)

    @field_validator("applied", mode="before")
    @classmethod
    def _parse_applied(cls, value: object) -> bool:
        return bool(value)

    @property
    def observed_state(self) -> ObservedState:
        return observed_from_dict(self.observed)

    @property
    def ok(self) -> bool:
        """True when the unit reached a successful or skip-equivalent state."""
        return self.error_kind is None and self.action != "fatal"


class OutcomeRecord(Outcome):
    """Outcome as stored in the ledger."""

    id: int


class UnitStateRecord(SettleBaseModel):
    """Most recent apply-mode result for a unit."""

    unit_id: str
    outcome_id: Optional[int] = None
    decision: str
    action: str
    applied: bool = False
    reason: str = ""
    error_kind: Optional[str] = None
    observed_digest: Optional[str] = None
    written_digest: Optional[str] = None
    policy_fingerprint: Optional[str] = None
    tool_version: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("applied", mode="before")
    @classmethod
    def _parse_applied(cls, value: object) -> bool:
        return bool(value)


class RunRecord(SettleBaseModel):
    """Ledger run record."""

    id: str
    mode: str
    interactivity: str
    policy_name: Optional[str] = None
    tool_version: str
    status: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    hostname: Optional[str] = None
    baseline: Optional[Baseline] = None
    final: Optional[Baseline] = None

    @field_validator("baseline", "final", mode="before")
    @classmethod
    def _parse_baseline(cls, value: object) -> Optional[Baseline]:
        if value is None:
            return None
        if isinstance(value, str):
            return Baseline.model_validate_json(value)
        return Baseline.model_validate(value)


class BackupRecord(SettleBaseModel):
    """Snapshot of a path taken before a unit mutated it.

    ``existed`` False means the path was absent, so rolling back removes it.
    """

    id: int
    run_id: str
    unit_id: str
    original_path: str
    backup_path: Optional[str] = None
    existed: bool = True
    created_at: str

    @field_validator("existed", mode="before")
    @classmethod
    def _parse_existed(cls, value: object) -> bool:
        return bool(value)
