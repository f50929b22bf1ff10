# Copyright (c) Syntropy Systems
"""Tests for the confirmation gate."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import pytest
from rich.console import Console

from settle.gate import InteractiveGate, NonInteractiveGate, default_answer
from settle.units import Action, Default, Interactivity, RunFlags

if TYPE_CHECKING:
    from conftest import World

NON_INTERACTIVE = RunFlags(interactivity=Interactivity.NON_INTERACTIVE)


class FailingStream(io.StringIO):
    """Prompt input that fails on the first read."""

    def __init__(self, error: type[BaseException]) -> None:
        super().__init__()
        self.error = error

    def readline(self, size: int | None = -1, /) -> str:
        raise self.error


class TestNonInteractiveGate:
    """Tests for deterministic gate resolution."""

    def test_passes_through_plain_actions(self, world: World) -> None:
        """Test that only conflicts and pending applies are resolved."""
        gate = NonInteractiveGate()
        unit = world.unit("a")
        for action in (Action.SKIP, Action.APPLY, Action.FATAL):
            assert gate.resolve(action, unit, NON_INTERACTIVE) is action

    def test_uses_unit_default(self, world: World) -> None:
        """Test that the documented default decides."""
        gate = NonInteractiveGate()
        keep = world.unit("keep", requires_confirmation=True, default=Default.PRESERVE)
        take = world.unit("take", requires_confirmation=True, default=Default.APPLY)
        assert gate.resolve(Action.APPLY_PENDING, keep, NON_INTERACTIVE) is Action.SKIP
        assert gate.resolve(Action.APPLY_PENDING, take, NON_INTERACTIVE) is Action.APPLY
        assert gate.resolve(Action.CONFLICT, keep, NON_INTERACTIVE) is Action.SKIP

    def test_destructive_needs_explicit_mode(self, world: World) -> None:
        """Test that destructive units are declined unless destructive mode is on."""
        unit = world.unit("purge", destructive=True, default=Default.APPLY)
        assert default_answer(unit, NON_INTERACTIVE) is False
        assert NonInteractiveGate().resolve(Action.APPLY_PENDING, unit, NON_INTERACTIVE) is Action.SKIP

        enabled = RunFlags(interactivity=Interactivity.NON_INTERACTIVE, destructive_mode_enabled=True)
        assert default_answer(unit, enabled) is True
        assert NonInteractiveGate().resolve(Action.APPLY_PENDING, unit, enabled) is Action.APPLY

    def test_deterministic(self, world: World) -> None:
        """Test that repeated resolution gives the same answer."""
        gate = NonInteractiveGate()
        unit = world.unit("a", requires_confirmation=True, default=Default.PRESERVE)
        answers = {gate.resolve(Action.APPLY_PENDING, unit, NON_INTERACTIVE) for _ in range(5)}
        assert answers == {Action.SKIP}


class TestInteractiveGate:
    """Tests for prompting the operator."""

    def _gate(self, answer: str) -> tuple[InteractiveGate, io.StringIO]:
        output = io.StringIO()
        console = Console(file=output, force_terminal=False, width=120)
        return InteractiveGate(console=console, stream=io.StringIO(answer)), output

    @pytest.mark.parametrize(
        ("answer", "expected"),
        [
            ("y\n", Action.APPLY),
            ("n\n", Action.SKIP),
        ],
    )
    def test_operator_answer(self, world: World, answer: str, expected: Action) -> None:
        """Test that the operator's answer is used."""
        gate, _ = self._gate(answer)
        unit = world.unit("a", requires_confirmation=True, default=Default.PRESERVE)
        assert gate.resolve(Action.APPLY_PENDING, unit, RunFlags()) is expected

    def test_empty_input_takes_default(self, world: World) -> None:
        """Test that EOF falls back to the unit default."""
        gate, _ = self._gate("")
        keep = world.unit("keep", requires_confirmation=True, default=Default.PRESERVE)
        assert gate.resolve(Action.APPLY_PENDING, keep, RunFlags()) is Action.SKIP

        gate, _ = self._gate("")
        take = world.unit("take", requires_confirmation=True, default=Default.APPLY)
        assert gate.resolve(Action.APPLY_PENDING, take, RunFlags()) is Action.APPLY

    @pytest.mark.parametrize("error", [EOFError, KeyboardInterrupt])
    def test_closed_or_interrupted_input_takes_default(self, world: World, error: type[BaseException]) -> None:
        """Test that a prompt ended by EOF or Ctrl-C takes the default instead of hanging or crashing."""
        output = io.StringIO()
        console = Console(file=output, force_terminal=False, width=120)
        gate = InteractiveGate(console=console, stream=FailingStream(error))

        keep = world.unit("keep", requires_confirmation=True, default=Default.PRESERVE)
        take = world.unit("take", requires_confirmation=True, default=Default.APPLY)
        assert gate.resolve(Action.APPLY_PENDING, keep, RunFlags()) is Action.SKIP
        assert gate.resolve(Action.APPLY_PENDING, take, RunFlags()) is Action.APPLY

        if error is KeyboardInterrupt:
            assert "Interrupted: taking the default (no) for keep" in output.getvalue()
            assert "Interrupted: taking the default (yes) for take" in output.getvalue()
        else:
            assert "Interrupted" not in output.getvalue()

    def test_conflict_question(self, world: World) -> None:
        """Test that conflicts are described as local modifications."""
        gate, output = self._gate("n\n")
        unit = world.unit("ssh.hardening", description="harden sshd")
        assert gate.resolve(Action.CONFLICT, unit, RunFlags()) is Action.SKIP
        assert "modified locally" in output.getvalue()
        assert "harden sshd" in output.getvalue()

    def test_does_not_prompt_for_plain_actions(self, world: World) -> None:
        """Test that non-gated actions pass straight through."""
        gate, output = self._gate("n\n")
        assert gate.resolve(Action.APPLY, world.unit("a"), RunFlags()) is Action.APPLY
        assert output.getvalue() == ""
