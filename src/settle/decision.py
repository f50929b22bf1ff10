# Copyright (c) Syntropy Systems
"""Decision engine: observed state + policy + run flags -> action.

The engine is a pure function of its inputs. It never calls a mutator,
never prompts and never reads the mode flag, so simulate and apply runs
reach the same verdict for the same host state and ledger.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from settle.errors import ErrorKind
from settle.state import CustomizedSince, ObservedState, Present, Unknown
from settle.units import Action

if TYPE_CHECKING:
    from settle.models.db import UnitStateRecord
    from settle.units import RunFlags, Unit

PRESERVED = "local customization previously preserved"
INCOMPLETE = "previous apply did not complete"


@dataclass(frozen=True)
class Decision:
    """Verdict for one unit, with the reason shown to the operator."""

    action: Action
    reason: str
    error_kind: ErrorKind | None = None


def classify(
    unit: Unit,
    observed: ObservedState,
    prior: UnitStateRecord | None,
) -> ObservedState:
    """Detect operator customization of content-tracked units.

    Content that neither matches the policy nor equals what settle last
    wrote is reported as ``CustomizedSince``. Content settle wrote under an
    older policy stays ``Present`` so the new policy can replace it.
    """
    if not unit.tracks_content or not isinstance(observed, Present) or observed.digest is None:
        return observed
    if unit.policy.satisfied_by(observed):
        return observed

    written = prior.written_digest if prior is not None else None
    if written is not None and observed.digest == written:
        return observed

    version = prior.tool_version if prior is not None and written is not None else None
    return CustomizedSince(version=version, digest=observed.digest)


def _previously_preserved(
    unit: Unit,
    observed: CustomizedSince,
    prior: UnitStateRecord | None,
    tool_version: str | None,
) -> bool:
    if prior is None:
        return False
    return (
        prior.action == Action.SKIP.value
        and (prior.decision == Action.CONFLICT.value or prior.reason == PRESERVED)
        and prior.observed_digest == observed.digest
        and prior.policy_fingerprint == unit.policy.fingerprint()
        and prior.tool_version == tool_version
    )


def _left_incomplete(unit: Unit, prior: UnitStateRecord | None) -> bool:
    # A write can land and its follow-up step (reload, remount) still fail
    if prior is None or unit.mutator is None or unit.precondition:
        return False
    return prior.action == Action.APPLY.value and prior.error_kind == ErrorKind.MUTATOR_FAILED.value


def decide(  # noqa: PLR0911
    unit: Unit,
    observed: ObservedState,
    flags: RunFlags,
    prior: UnitStateRecord | None = None,
    tool_version: str | None = None,
) -> Decision:
    """Decide what to do with one unit.

    Order matters: unknown state, already satisfied, customization,
    failed precondition, skipped long operation, then apply. Conflict
    therefore always wins over apply. A satisfied unit whose last apply
    failed is applied again so the mutator can finish its follow-up step.
    """
    if isinstance(observed, Unknown):
        if unit.precondition:
            return Decision(
                Action.FATAL,
                f"cannot verify precondition: {observed.reason}",
                ErrorKind.PRECONDITION_FAILED,
            )
        return Decision(Action.SKIP, f"state unknown: {observed.reason}", ErrorKind.PROBE_UNKNOWN)

    if unit.policy.satisfied_by(observed):
        if _left_incomplete(unit, prior):
            return Decision(Action.APPLY, INCOMPLETE)
        return Decision(Action.SKIP, "already satisfied")

    if isinstance(observed, CustomizedSince):
        if _previously_preserved(unit, observed, prior, tool_version):
            return Decision(Action.SKIP, PRESERVED)
        since = f"settle {observed.version}" if observed.version else "before settle managed it"
        return Decision(Action.CONFLICT, f"locally modified (since {since})", ErrorKind.CONFLICT)

    if unit.precondition:
        return Decision(
            Action.FATAL,
            f"requires {unit.policy.describe()}, observed {_render(observed)}",
            ErrorKind.PRECONDITION_FAILED,
        )

    if unit.mutator is None:
        return Decision(Action.SKIP, "not satisfied and no automatic fix; manual step required")

    if unit.long_running and flags.skip_long_ops:
        return Decision(Action.SKIP, "long operation skipped")

    if unit.needs_gate:
        return Decision(Action.APPLY_PENDING, "needs confirmation")

    return Decision(Action.APPLY, f"not satisfied, observed {_render(observed)}")


def _render(observed: ObservedState) -> str:
    if isinstance(observed, Present):
        return observed.value or "present"
    return observed.to_dict()["state"] or "unknown"
