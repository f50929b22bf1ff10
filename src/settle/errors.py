# Copyright (c) Syntropy Systems
"""Error taxonomy and exit status contract for settle."""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a non-success outcome."""

    PRECONDITION_FAILED = "precondition_failed"
    PROBE_UNKNOWN = "probe_unknown"
    CONFLICT = "conflict"
    MUTATOR_FAILED = "mutator_failed"
    BACKUP_FAILED = "backup_failed"
    DEPENDENCY_FAILED = "dependency_failed"
    INTERRUPTED = "interrupted"


REMEDIATIONS: dict[ErrorKind, str] = {
    ErrorKind.PRECONDITION_FAILED: "Fix the precondition manually, then re-run",
    ErrorKind.PROBE_UNKNOWN: "Install the missing tool or inspect the unit manually, then re-run",
    ErrorKind.CONFLICT: "Local customization kept; merge by hand or re-run interactively to replace it",
    ErrorKind.MUTATOR_FAILED: "Already logged, see the ledger (settle show); re-run after fixing the cause",
    ErrorKind.BACKUP_FAILED: "Check free space and permissions of the backups directory, then re-run",
    ErrorKind.DEPENDENCY_FAILED: "Resolve the failed dependency first; this unit will run on the next run",
    ErrorKind.INTERRUPTED: "Re-run to continue; completed units will be skipped",
}


def remediation_for(kind: ErrorKind | str | None) -> str:
    """Return the operator-facing remediation hint for an error kind."""
    if kind is None:
        return ""
    return REMEDIATIONS.get(ErrorKind(kind), "")


# Exit status codes
EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2
EXIT_PRECONDITION = 3
EXIT_INTERRUPTED = 130


class SettleError(Exception):
    """Base class for settle errors."""

    kind: ErrorKind | None = None


class PolicyError(SettleError):
    """Raised when a policy source is malformed (bad ids, cycles, unknown kinds)."""


class PreconditionFailed(SettleError):
    """Raised when a hard precondition fails and the run must abort."""

    kind = ErrorKind.PRECONDITION_FAILED

    def __init__(self, unit_id: str, detail: str) -> None:
        self.unit_id = unit_id
        self.detail = detail
        super().__init__(f"Precondition {unit_id} failed: {detail}")


class BackupFailed(SettleError):
    """Raised when a snapshot cannot be written."""

    kind = ErrorKind.BACKUP_FAILED

    def __init__(self, path: str, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"Backup of {path} failed: {detail}")


class LedgerError(SettleError):
    """Raised when the state ledger cannot be read or written."""
