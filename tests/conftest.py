# Copyright (c) Syntropy Systems
"""Pytest fixtures for settle tests."""

from __future__ import annotations

import os
import sqlite3
import tempfile
from collections.abc import Generator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import pytest

from settle.state import Absent, ObservedState, Present, Unknown
from settle.units import MutationResult, Unit

# Store original cwd at module load time
_original_cwd = Path.cwd()

TOOL_VERSION = "1.0.0"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settle_project(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Create a temporary settle state directory and chdir into its parent."""
    from settle.db import init_db

    monkeypatch.delenv("SETTLE_DIR", raising=False)

    settle_dir = temp_dir / ".settle"
    settle_dir.mkdir()
    (settle_dir / "backups").mkdir()
    (settle_dir / "logs").mkdir()

    # Initialize ledger
    init_db(settle_dir / "ledger.db")

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_connection(settle_project: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from settle.db import get_connection

    conn = get_connection(settle_project / ".settle" / "ledger.db")
    yield conn
    conn.close()


@pytest.fixture
def ledger(settle_project: Path) -> Generator[Any, None, None]:
    """A StateLedger on the test project's ledger."""
    from settle.ledger import StateLedger

    with StateLedger(settle_project / ".settle" / "ledger.db", TOOL_VERSION) as state_ledger:
        yield state_ledger


@pytest.fixture
def backups(settle_project: Path, ledger: Any) -> Any:
    """A BackupManager writing into the test project's backups directory."""
    from settle.backup import BackupManager

    return BackupManager(settle_project / ".settle" / "backups", ledger)


# --- A fake host ---


@dataclass
class World:
    """In-memory host state read by WorldProbe and written by WorldMutator."""

    state: dict[str, str] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)
    failures: dict[str, int] = field(default_factory=dict)
    recoverable: bool = False
    unknown: set[str] = field(default_factory=set)
    hooks: dict[str, Callable[[], None]] = field(default_factory=dict)

    def unit(
        self,
        unit_id: str,
        target: str = "on",
        phase: int = 1,
        depends_on: tuple[str, ...] = (),
        **kwargs: Any,
    ) -> Unit:
        from settle.policy import Policy

        return Unit(
            id=unit_id,
            phase=phase,
            probe=WorldProbe(self, unit_id),
            policy=Policy.value(target),
            mutator=WorldMutator(self, unit_id, target),
            depends_on=frozenset(depends_on),
            **kwargs,
        )


@dataclass(frozen=True)
class WorldProbe:
    world: World
    key: str

    def evaluate(self, unit: Unit) -> ObservedState:
        if self.key in self.world.unknown:
            return Unknown("probe offline")
        value = self.world.state.get(self.key)
        if value is None:
            return Absent()
        return Present(value=value)


@dataclass(frozen=True)
class WorldMutator:
    world: World
    key: str
    value: str

    def apply(self, unit: Unit) -> MutationResult:
        self.world.calls.append(unit.id)
        hook = self.world.hooks.get(unit.id)
        if hook is not None:
            hook()
        remaining = self.world.failures.get(self.key, 0)
        if remaining:
            self.world.failures[self.key] = remaining - 1
            return MutationResult(success=False, detail="boom", recoverable=self.world.recoverable)
        self.world.state[self.key] = self.value
        return MutationResult(success=True, detail=f"set {self.key}={self.value}")


@pytest.fixture
def world() -> World:
    """A fresh fake host."""
    return World()


@pytest.fixture
def fixed_baseline() -> Callable[[], Any]:
    """Baseline function that never touches the real host."""
    from settle.db import utcnow
    from settle.models.run import Baseline

    def measure() -> Baseline:
        return Baseline(timestamp=utcnow(), free_disk_mb=2048, package_count=100, active_services=20)

    return measure


@pytest.fixture
def make_sequencer(ledger: Any, backups: Any, fixed_baseline: Callable[[], Any]) -> Callable[..., Any]:
    """Factory for RunSequencers wired to the test ledger and a fake baseline."""
    from settle.config import SettleConfig
    from settle.gate import NonInteractiveGate
    from settle.sequencer import RunSequencer
    from settle.units import Interactivity, RunFlags

    def factory(units: list[Unit], flags: RunFlags | None = None, **kwargs: Any) -> RunSequencer:
        kwargs.setdefault("config", SettleConfig(retry_delay=0.0))
        kwargs.setdefault("baseline_fn", fixed_baseline)
        kwargs.setdefault("install_signal_handlers", False)
        kwargs.setdefault("sleep", lambda _seconds: None)
        gate = kwargs.pop("gate", None) or NonInteractiveGate()
        return RunSequencer(
            units,
            ledger,
            backups,
            gate,
            flags or RunFlags(interactivity=Interactivity.NON_INTERACTIVE),
            **kwargs,
        )

    return factory
