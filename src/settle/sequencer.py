# Copyright (c) Syntropy Systems
"""Run sequencer: drives every unit through probe, decide, gate, apply, record."""
from __future__ import annotations

import contextlib
import logging
import signal
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from settle.baseline import capture_baseline
from settle.config import SettleConfig
from settle.db import utcnow
from settle.decision import Decision, classify, decide
from settle.errors import (
    EXIT_FATAL,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_PRECONDITION,
    BackupFailed,
    ErrorKind,
    PolicyError,
    PreconditionFailed,
    remediation_for,
)
from settle.gate import GATED, default_resolution
from settle.models.db import Outcome
from settle.models.run import Baseline, BaselineReport
from settle.state import ObservedState, Present, Unknown, observed_digest
from settle.units import Action, MutationResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from settle.backup import BackupManager
    from settle.gate import ConfirmationGate
    from settle.ledger import StateLedger
    from settle.units import RunFlags, Unit

logger = logging.getLogger(__name__)

FAILURE_KINDS = (ErrorKind.MUTATOR_FAILED.value, ErrorKind.BACKUP_FAILED.value)
SELECTIONS_LABEL = "dpkg-selections.txt"


class RunState(str, Enum):
    """Run lifecycle. DONE, INTERRUPTED and ABORTED are terminal."""

    INIT = "init"
    BASELINE = "baseline"
    PREFLIGHT = "preflight"
    PHASE = "phase"
    VERIFICATION = "verification"
    DONE = "done"
    INTERRUPTED = "interrupted"
    ABORTED = "aborted"


@dataclass
class RunResult:
    """Everything a caller needs after a run."""

    run_id: str
    status: RunState
    exit_code: int
    outcomes: list[Outcome] = field(default_factory=list)
    report: BaselineReport | None = None
    previous_version: str | None = None

    @property
    def decisions(self) -> list[tuple[str, str]]:
        """(unit_id, decision) pairs in execution order."""
        return [(o.unit_id, o.decision) for o in self.outcomes]

    @property
    def problems(self) -> list[Outcome]:
        """Outcomes to surface with a remediation hint."""
        return [o for o in self.outcomes if not o.ok]


def new_run_id() -> str:
    now = datetime.now(timezone.utc)
    return f"run-{now.strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:6]}"


def plan_phases(units: Sequence[Unit]) -> list[tuple[int, list[Unit]]]:
    """Group units by phase and order each phase by its dependencies.

    Declaration order is kept wherever dependencies allow. Raises
    PolicyError for duplicate ids, unknown dependencies, dependencies on a
    later phase, preconditions depending on ordinary units, and cycles.
    """
    by_id: dict[str, Unit] = {}
    for unit in units:
        if unit.id in by_id:
            msg = f"Duplicate unit id: {unit.id}"
            raise PolicyError(msg)
        by_id[unit.id] = unit

    for unit in units:
        for dep in sorted(unit.depends_on):
            if dep not in by_id:
                msg = f"Unit {unit.id} depends on unknown unit {dep}"
                raise PolicyError(msg)
            if by_id[dep].phase > unit.phase:
                msg = f"Unit {unit.id} (phase {unit.phase}) depends on {dep} in later phase {by_id[dep].phase}"
                raise PolicyError(msg)
            if unit.precondition and not by_id[dep].precondition:
                msg = f"Precondition {unit.id} cannot depend on ordinary unit {dep}"
                raise PolicyError(msg)

    phases: list[tuple[int, list[Unit]]] = []
    for phase in sorted({u.phase for u in units}):
        members = [u for u in units if u.phase == phase]
        phases.append((phase, _order_phase(members)))
    return phases


def _order_phase(members: list[Unit]) -> list[Unit]:
    local = {u.id for u in members}
    pending = list(members)
    done: set[str] = set()
    ordered: list[Unit] = []

    while pending:
        ready = next(
            (u for u in pending if all(d in done for d in u.depends_on if d in local)),
            None,
        )
        if ready is None:
            cycle = ", ".join(u.id for u in pending)
            msg = f"Dependency cycle among: {cycle}"
            raise PolicyError(msg)
        ordered.append(ready)
        done.add(ready.id)
        pending.remove(ready)
    return ordered


def _blocks_dependents(outcome: Outcome) -> bool:
    if outcome.action == Action.FATAL.value:
        return True
    return outcome.error_kind not in (None, ErrorKind.CONFLICT.value)


def _is_failure(outcome: Outcome) -> bool:
    return outcome.action == Action.FATAL.value or outcome.error_kind in FAILURE_KINDS


class RunSequencer:
    """Executes one run over a fixed set of units.

    Units run strictly one at a time: preconditions first, then phases in
    order, dependencies first within a phase. Each outcome is committed to
    the ledger before the next unit starts. SIGINT/SIGTERM (or
    ``request_stop``) lets the current unit finish and then stops.
    """

    def __init__(
        self,
        units: Sequence[Unit],
        ledger: StateLedger,
        backups: BackupManager,
        gate: ConfirmationGate,
        flags: RunFlags,
        *,
        config: SettleConfig | None = None,
        policy_name: str | None = None,
        baseline_fn: Callable[[], Baseline] = capture_baseline,
        selections_fn: Callable[[], str | None] | None = None,
        on_outcome: Callable[[Outcome], None] | None = None,
        install_signal_handlers: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.units = list(units)
        self.ledger = ledger
        self.backups = backups
        self.gate = gate
        self.flags = flags
        self.config = config or SettleConfig()
        self.policy_name = policy_name
        self.baseline_fn = baseline_fn
        self.selections_fn = selections_fn
        self.on_outcome = on_outcome
        self.install_signal_handlers = install_signal_handlers
        self._sleep = sleep

        self.state = RunState.INIT
        self.current_unit: str | None = None
        self._stop = threading.Event()
        self._prompting = False
        self._outcomes: list[Outcome] = []
        self._results: dict[str, Outcome] = {}

    # --- Interruption ---

    def request_stop(self) -> None:
        """Stop after the current unit (same effect as SIGINT)."""
        if self._stop.is_set():
            logger.warning("Stop already requested; ignoring")
            return
        logger.warning("Stop requested; finishing %s first", self.current_unit or "the current step")
        self._stop.set()

    def _signal_handler(self, signum: int, _frame: Any) -> None:
        logger.warning("Received %s", signal.Signals(signum).name)
        self.request_stop()
        if self._prompting:
            # input() resumes after a handled signal; break out of the prompt
            raise KeyboardInterrupt

    def _install_handlers(self) -> dict[int, Any]:
        if not self.install_signal_handlers or threading.current_thread() is not threading.main_thread():
            return {}
        previous: dict[int, Any] = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.getsignal(signum)
            _ = signal.signal(signum, self._signal_handler)
        return previous

    @staticmethod
    def _restore_handlers(previous: dict[int, Any]) -> None:
        for signum, handler in previous.items():
            _ = signal.signal(signum, handler)

    # --- Run ---

    def run(self) -> RunResult:
        """Execute the run and return its result; raises PolicyError before starting."""
        phases = plan_phases(self.units)
        run_id = new_run_id()
        previous_version = self.ledger.last_run_version()
        self._stop.clear()
        self._outcomes = []
        self._results = {}

        handlers = self._install_handlers()
        try:
            self.ledger.begin_run(run_id, self.flags, self.policy_name)
            try:
                result = self._run(run_id, phases)
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self.ledger.finish_run(run_id, RunState.ABORTED.value)
                raise
        finally:
            self._restore_handlers(handlers)

        result.previous_version = previous_version
        return result

    def _enter(self, state: RunState) -> None:
        logger.debug("Run state %s -> %s", self.state.value, state.value)
        self.state = state

    def _run(self, run_id: str, phases: list[tuple[int, list[Unit]]]) -> RunResult:
        logger.info(
            "Run %s: mode=%s interactivity=%s units=%d",
            run_id,
            self.flags.mode.value,
            self.flags.interactivity.value,
            len(self.units),
        )

        self._enter(RunState.BASELINE)
        report = BaselineReport(run_id=run_id, before=self.baseline_fn())
        self.ledger.set_baseline(run_id, report.before)
        if not self.flags.simulate and self.selections_fn is not None:
            self._save_selections(run_id)

        self._enter(RunState.PREFLIGHT)
        preconditions = [u for _, units in phases for u in units if u.precondition]
        try:
            for unit in preconditions:
                if self._stop.is_set():
                    return self._finish(run_id, RunState.INTERRUPTED, EXIT_INTERRUPTED, report)
                outcome = self._process(unit, run_id)
                if outcome.action == Action.FATAL.value:
                    raise PreconditionFailed(unit.id, outcome.reason)
        except PreconditionFailed as e:
            logger.error("%s; aborting before any phase", e)  # noqa: TRY400
            return self._finish(run_id, RunState.ABORTED, EXIT_PRECONDITION, report)

        for phase, units in phases:
            self._enter(RunState.PHASE)
            logger.info("Phase %s: %d units", phase, len(units))
            for unit in units:
                if unit.precondition:
                    continue
                if self._stop.is_set():
                    return self._finish(run_id, RunState.INTERRUPTED, EXIT_INTERRUPTED, report)
                _ = self._process(unit, run_id)

        if self._stop.is_set():
            return self._finish(run_id, RunState.INTERRUPTED, EXIT_INTERRUPTED, report)

        self._enter(RunState.VERIFICATION)
        report.after = self.baseline_fn()
        exit_code = EXIT_FATAL if any(_is_failure(o) for o in self._outcomes) else EXIT_OK
        if not self.flags.simulate:
            self.ledger.mark_version()
        return self._finish(run_id, RunState.DONE, exit_code, report)

    def _finish(self, run_id: str, state: RunState, exit_code: int, report: BaselineReport) -> RunResult:
        self.current_unit = None
        self.ledger.finish_run(run_id, state.value, report.after)
        self._enter(state)
        return RunResult(
            run_id=run_id,
            status=state,
            exit_code=exit_code,
            outcomes=list(self._outcomes),
            report=report,
        )

    def _save_selections(self, run_id: str) -> None:
        if self.selections_fn is None:
            return
        text = self.selections_fn()
        if not text:
            logger.warning("Package selections unavailable; no package baseline saved")
            return
        try:
            record = self.backups.snapshot_text(SELECTIONS_LABEL, text, "baseline", run_id)
        except BackupFailed as e:
            logger.warning("Could not save package selections: %s", e)
            return
        logger.info("Package selections saved to %s", record.backup_path)

    # --- Units ---

    def _process(self, unit: Unit, run_id: str) -> Outcome:
        self.current_unit = unit.id

        blocked = sorted(
            dep for dep in unit.depends_on
            if dep not in self._results or _blocks_dependents(self._results[dep])
        )
        if blocked:
            not_evaluated = Unknown("not evaluated")
            return self._record(
                unit,
                run_id,
                not_evaluated,
                not_evaluated,
                Decision(Action.SKIP, "dependency failed"),
                Action.SKIP,
                reason=f"dependency failed: {', '.join(blocked)}",
                error_kind=ErrorKind.DEPENDENCY_FAILED,
            )

        raw = self._evaluate(unit)
        prior = self.ledger.unit_state(unit.id)
        observed = classify(unit, raw, prior)
        decision = decide(unit, observed, self.flags, prior, self.ledger.tool_version)
        logger.info("%s: %s (%s)", unit.id, decision.action.value, decision.reason)

        action = decision.action
        if action in GATED:
            action = self._resolve(decision, unit)
            if action is Action.SKIP:
                conflict = decision.action is Action.CONFLICT
                return self._record(
                    unit,
                    run_id,
                    observed,
                    raw,
                    decision,
                    Action.SKIP,
                    reason=self._declined_reason(conflict=conflict),
                    error_kind=ErrorKind.CONFLICT if conflict else None,
                )

        if action is Action.FATAL:
            return self._record(
                unit, run_id, observed, raw, decision, Action.FATAL,
                reason=decision.reason, error_kind=decision.error_kind,
            )

        if action is Action.SKIP:
            adopted = raw.digest if unit.tracks_content and isinstance(raw, Present) and unit.policy.satisfied_by(raw) else None
            return self._record(
                unit, run_id, observed, raw, decision, Action.SKIP,
                reason=decision.reason, error_kind=decision.error_kind, written_digest=adopted,
            )

        if self.flags.simulate:
            return self._record(
                unit, run_id, observed, raw, decision, Action.APPLY,
                reason=f"would apply ({decision.reason})",
            )
        return self._apply(unit, run_id, observed, raw, decision)

    def _resolve(self, decision: Decision, unit: Unit) -> Action:
        if self.flags.simulate:
            # No prompt in simulate; report what the default would be
            resolved = default_resolution(decision.action, unit, self.flags)
            logger.info("%s: would prompt, default is %s", unit.id, resolved.value)
            return resolved
        self._prompting = True
        try:
            return self.gate.resolve(decision.action, unit, self.flags)
        except KeyboardInterrupt:
            resolved = default_resolution(decision.action, unit, self.flags)
            logger.warning("%s: confirmation interrupted; taking the default (%s)", unit.id, resolved.value)
            return resolved
        finally:
            self._prompting = False

    def _declined_reason(self, *, conflict: bool) -> str:
        if self.flags.simulate and self.flags.interactive:
            return "would prompt; default keeps current state"
        if not self.flags.interactive:
            return "local changes preserved (default)" if conflict else "not applied (default)"
        return "local changes preserved" if conflict else "declined by operator"

    def _apply(
        self,
        unit: Unit,
        run_id: str,
        observed: ObservedState,
        raw: ObservedState,
        decision: Decision,
    ) -> Outcome:
        try:
            for path in unit.backup_paths:
                _ = self.backups.snapshot(path, unit.id, run_id)
        except BackupFailed as e:
            return self._record(
                unit, run_id, observed, raw, decision, Action.FATAL,
                reason="mutation refused: backup failed",
                error_kind=ErrorKind.BACKUP_FAILED,
                error_message=str(e),
            )

        result = self._mutate(unit)
        if not result.success:
            return self._record(
                unit, run_id, observed, raw, decision, Action.APPLY,
                reason="mutator failed",
                error_kind=ErrorKind.MUTATOR_FAILED,
                error_message=result.detail,
            )

        after = self._evaluate(unit)
        if not unit.policy.satisfied_by(after):
            return self._record(
                unit, run_id, observed, after, decision, Action.APPLY,
                reason="verification failed after apply",
                error_kind=ErrorKind.MUTATOR_FAILED,
                error_message=f"{result.detail}; still {after.to_dict()}",
            )

        return self._record(
            unit, run_id, observed, after, decision, Action.APPLY,
            applied=True,
            reason=result.detail or "applied",
            written_digest=observed_digest(after) if unit.tracks_content else None,
        )

    def _evaluate(self, unit: Unit) -> ObservedState:
        try:
            return unit.probe.evaluate(unit)
        except Exception as e:
            logger.exception("Probe for %s raised", unit.id)
            return Unknown(f"probe error: {e}")

    def _mutate(self, unit: Unit) -> MutationResult:
        if unit.mutator is None:
            return MutationResult(success=False, detail="unit has no mutator")

        attempts = 1 + max(0, self.config.mutator_retries)
        result = MutationResult(success=False)
        for attempt in range(1, attempts + 1):
            try:
                result = unit.mutator.apply(unit)
            except Exception as e:
                logger.exception("Mutator for %s raised", unit.id)
                result = MutationResult(success=False, detail=f"{type(e).__name__}: {e}")

            if result.success or not result.recoverable or attempt == attempts:
                break
            logger.warning(
                "%s: %s (attempt %d/%d, retrying in %.0fs)",
                unit.id, result.detail, attempt, attempts, self.config.retry_delay,
            )
            self._sleep(self.config.retry_delay)
        return result

    def _record(  # noqa: PLR0913
        self,
        unit: Unit,
        run_id: str,
        observed: ObservedState,
        raw: ObservedState,
        decision: Decision,
        action: Action,
        *,
        applied: bool = False,
        reason: str = "",
        error_kind: ErrorKind | None = None,
        error_message: str | None = None,
        written_digest: str | None = None,
    ) -> Outcome:
        outcome = Outcome(
            run_id=run_id,
            unit_id=unit.id,
            mode=self.flags.mode.value,
            phase=unit.phase,
            observed=observed.to_dict(),
            decision=decision.action.value,
            action=action.value,
            applied=applied,
            reason=reason,
            error_kind=error_kind.value if error_kind else None,
            error_message=error_message,
            policy_fingerprint=unit.policy.fingerprint(),
            written_digest=written_digest,
            timestamp=utcnow(),
        )
        _ = self.ledger.record(outcome, observed_digest(raw))
        self._outcomes.append(outcome)
        self._results[unit.id] = outcome

        if not outcome.ok and error_kind is not None:
            logger.warning(
                "%s: %s: %s%s. %s",
                unit.id,
                error_kind.value,
                reason,
                f" ({error_message})" if error_message else "",
                remediation_for(error_kind),
            )
        if self.on_outcome is not None:
            self.on_outcome(outcome)
        return outcome
