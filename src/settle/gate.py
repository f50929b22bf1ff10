# Copyright (c) Syntropy Systems
"""Confirmation gate: turns conflicts and pending applies into yes or no."""
from __future__ import annotations

import logging
from typing import IO, TYPE_CHECKING, Protocol

from rich.console import Console
from rich.prompt import Confirm

from settle.units import Action, Default

if TYPE_CHECKING:
    from settle.units import RunFlags, Unit

logger = logging.getLogger(__name__)

GATED = (Action.CONFLICT, Action.APPLY_PENDING)


def default_answer(unit: Unit, flags: RunFlags) -> bool:
    """The unit's documented answer when nobody can be asked.

    Destructive units are only ever approved when the run was started with
    destructive mode enabled ("remove entirely").
    """
    if unit.destructive and not flags.destructive_mode_enabled:
        return False
    return unit.default is Default.APPLY


def default_resolution(action: Action, unit: Unit, flags: RunFlags) -> Action:
    """Resolve a gated action without prompting."""
    if action not in GATED:
        return action
    return Action.APPLY if default_answer(unit, flags) else Action.SKIP


class ConfirmationGate(Protocol):
    """Resolves CONFLICT / APPLY_PENDING to APPLY or SKIP; other actions pass through."""

    def resolve(self, action: Action, unit: Unit, flags: RunFlags) -> Action:
        ...


class NonInteractiveGate:
    """Deterministic gate used when no human is available."""

    def resolve(self, action: Action, unit: Unit, flags: RunFlags) -> Action:
        resolved = default_resolution(action, unit, flags)
        if action in GATED:
            logger.info("%s: %s resolved to %s by default", unit.id, action.value, resolved.value)
        return resolved


class InteractiveGate:
    """Asks the operator, showing the default.

    Empty input or EOF takes the default, and so does Ctrl-C. Whether an
    interrupt also stops the run is up to the caller's signal handling.
    """

    def __init__(self, console: Console | None = None, stream: IO[str] | None = None) -> None:
        self.console = console or Console()
        self.stream = stream

    def resolve(self, action: Action, unit: Unit, flags: RunFlags) -> Action:
        if action not in GATED:
            return action

        default = default_answer(unit, flags)
        try:
            answer = Confirm.ask(
                self._question(action, unit),
                console=self.console,
                default=default,
                stream=self.stream,
            )
        except EOFError:
            self.console.print()
            answer = default
        except KeyboardInterrupt:
            self.console.print()
            self.console.print(
                f"[yellow]Interrupted:[/yellow] taking the default ({'yes' if default else 'no'}) for {unit.id}"
            )
            answer = default
        logger.info("%s: operator answered %s", unit.id, "yes" if answer else "no")
        return Action.APPLY if answer else Action.SKIP

    def _question(self, action: Action, unit: Unit) -> str:
        what = unit.description or unit.policy.describe()
        if action is Action.CONFLICT:
            return f"[yellow]{unit.id}[/yellow] was modified locally. Replace it ({what})?"
        if unit.destructive:
            return f"[red]{unit.id}[/red]: {what}. This cannot be undone easily. Proceed?"
        return f"[cyan]{unit.id}[/cyan]: {what}. Proceed?"
