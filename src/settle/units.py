# Copyright (c) Syntropy Systems
"""Configuration units, run flags and the probe/mutator contracts."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from settle.policy import Policy
    from settle.state import ObservedState


class Mode(str, Enum):
    """Whether a run may mutate the host."""

    SIMULATE = "simulate"
    APPLY = "apply"


class Interactivity(str, Enum):
    """Whether a human can answer confirmation prompts."""

    INTERACTIVE = "interactive"
    NON_INTERACTIVE = "non_interactive"


class Default(str, Enum):
    """Non-interactive resolution for conflicts and pending confirmations."""

    PRESERVE = "preserve"
    APPLY = "apply"


class Action(str, Enum):
    """Verdict of the decision engine (and of the confirmation gate)."""

    SKIP = "skip"
    APPLY = "apply"
    APPLY_PENDING = "apply_pending"
    CONFLICT = "conflict"
    FATAL = "fatal"


@dataclass(frozen=True)
class RunFlags:
    """Flags fixed for the lifetime of a run."""

    mode: Mode = Mode.APPLY
    interactivity: Interactivity = Interactivity.INTERACTIVE
    skip_long_ops: bool = False
    destructive_mode_enabled: bool = False

    @property
    def simulate(self) -> bool:
        return self.mode is Mode.SIMULATE

    @property
    def interactive(self) -> bool:
        return self.interactivity is Interactivity.INTERACTIVE


@dataclass(frozen=True)
class MutationResult:
    """Result of a mutator invocation."""

    success: bool
    detail: str = ""
    recoverable: bool = False


class Probe(Protocol):
    """Read-only inspector of a unit's current state."""

    def evaluate(self, unit: Unit) -> ObservedState:
        ...


class Mutator(Protocol):
    """Applies one state transition toward a unit's policy."""

    def apply(self, unit: Unit) -> MutationResult:
        ...


@dataclass(frozen=True)
class Unit:
    """An atomic configuration target.

    Units are declared once when the policy source is loaded and are never
    changed afterwards; only their per-run outcome is recorded.
    """

    id: str
    phase: int
    probe: Probe
    policy: Policy
    mutator: Mutator | None = None
    description: str = ""
    depends_on: frozenset[str] = field(default_factory=frozenset)
    destructive: bool = False
    requires_confirmation: bool = False
    default: Default = Default.APPLY
    precondition: bool = False
    long_running: bool = False
    tracks_content: bool = False
    backup_paths: tuple[str, ...] = field(default_factory=tuple)

    @property
    def needs_gate(self) -> bool:
        """True when an apply must pass through the confirmation gate."""
        return self.requires_confirmation or self.destructive
