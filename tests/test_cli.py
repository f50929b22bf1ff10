# Copyright (c) Syntropy Systems
"""Tests for settle CLI commands."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from settle.cli.main import app
from settle.db import get_backups, get_connection, get_runs

runner = CliRunner()

BANNER = "Authorized use only.\n"


def _write_policy(root: Path, units: list[dict[str, object]] | None = None) -> Path:
    if units is None:
        units = [
            {
                "id": "motd",
                "kind": "file",
                "phase": 1,
                "path": str(root / "etc" / "motd"),
                "content": BANNER,
                "mode": "0644",
            },
            {
                "id": "issue",
                "kind": "file",
                "phase": 2,
                "depends_on": ["motd"],
                "path": str(root / "etc" / "issue.net"),
                "content": BANNER,
            },
        ]
    policy = root / "banner.yaml"
    policy.write_text(yaml.safe_dump({"name": "banner", "units": units}))
    return policy


def _runs(project: Path) -> list[str]:
    conn = get_connection(project / ".settle" / "ledger.db")
    try:
        return [r.id for r in get_runs(conn)]
    finally:
        conn.close()


@pytest.fixture
def no_selections(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep apply from reading the host's package selections."""
    monkeypatch.setattr("settle.cli.apply.get_package_selections", lambda: None)


class TestInitCommand:
    """Tests for settle init command."""

    def test_init_creates_directory(self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that init creates the .settle layout."""
        monkeypatch.delenv("SETTLE_DIR", raising=False)
        os.chdir(temp_dir)

        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Initialized settle" in result.stdout
        settle_dir = temp_dir / ".settle"
        assert (settle_dir / "ledger.db").exists()
        assert (settle_dir / "config.yaml").exists()
        assert (settle_dir / "backups").is_dir()
        assert (settle_dir / "backups").stat().st_mode & 0o777 == 0o700
        assert (settle_dir / "logs").is_dir()

    def test_init_already_initialized(self, settle_project: Path) -> None:
        """Test init when already initialized."""
        _ = settle_project
        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Already initialized" in result.stdout


class TestApplyCommand:
    """Tests for settle apply command."""

    def test_not_initialized(self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that apply refuses to run without a state directory."""
        monkeypatch.delenv("SETTLE_DIR", raising=False)
        monkeypatch.setattr("settle.config.GLOBAL_SETTLE_DIR", temp_dir / "absent")
        os.chdir(temp_dir)

        result = runner.invoke(app, ["apply", "hardening"])

        assert result.exit_code == 2
        assert "settle init" in result.stdout

    def test_unknown_policy(self, settle_project: Path) -> None:
        """Test that an unknown policy is a usage error."""
        _ = settle_project
        result = runner.invoke(app, ["apply", "does-not-exist"])

        assert result.exit_code == 2
        assert "neither a file nor a built-in catalog" in result.stdout

    def test_simulate_changes_nothing(self, settle_project: Path, no_selections: None) -> None:
        """Test that simulate reports what would happen without writing."""
        _ = no_selections
        policy = _write_policy(settle_project)

        result = runner.invoke(app, ["apply", str(policy), "--simulate"])

        assert result.exit_code == 0
        assert "Simulating" in result.stdout
        assert "would apply" in result.stdout
        assert not (settle_project / "etc" / "motd").exists()

    def test_apply_then_rerun(self, settle_project: Path, no_selections: None) -> None:
        """Test that apply converges and a second apply changes nothing."""
        _ = no_selections
        policy = _write_policy(settle_project)

        first = runner.invoke(app, ["apply", str(policy), "-y"])

        assert first.exit_code == 0
        assert "first run on this host" in first.stdout
        assert (settle_project / "etc" / "motd").read_text() == BANNER
        assert (settle_project / "etc" / "issue.net").read_text() == BANNER
        assert "2 applied" in first.stdout

        second = runner.invoke(app, ["apply", str(policy), "-y"])

        assert second.exit_code == 0
        assert "same version" in second.stdout
        assert "2 skip" in second.stdout
        assert list((settle_project / ".settle" / "logs").glob("settle-*.log"))

    def test_precondition_abort_exit_code(self, settle_project: Path, no_selections: None) -> None:
        """Test that a failed precondition aborts with exit code 3."""
        _ = no_selections
        policy = _write_policy(
            settle_project,
            [
                {"id": "disk", "kind": "disk_space", "min_mb": 10**12},
                {"id": "motd", "kind": "file", "phase": 1, "path": str(settle_project / "motd"), "content": BANNER},
            ],
        )

        result = runner.invoke(app, ["apply", str(policy), "-y"])

        assert result.exit_code == 3
        assert "Aborted" in result.stdout
        assert not (settle_project / "motd").exists()

    def test_failure_exit_code(self, settle_project: Path, no_selections: None) -> None:
        """Test that a failing mutator gives exit code 1 and a remediation."""
        _ = no_selections
        policy = _write_policy(
            settle_project,
            [
                {
                    "id": "motd",
                    "kind": "file",
                    "phase": 1,
                    "path": str(settle_project / "motd"),
                    "content": BANNER,
                    "validate": ["false"],
                },
            ],
        )

        result = runner.invoke(app, ["apply", str(policy), "-y"])

        assert result.exit_code == 1
        assert "Needs attention" in result.stdout
        assert not (settle_project / "motd").exists()


class TestLedgerCommands:
    """Tests for status, runs and show."""

    def test_status_empty(self, settle_project: Path) -> None:
        """Test status before any apply."""
        _ = settle_project
        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "No units recorded" in result.stdout

    def test_status_after_apply(self, settle_project: Path, no_selections: None) -> None:
        """Test that status lists units and their history."""
        _ = no_selections
        _ = runner.invoke(app, ["apply", str(_write_policy(settle_project)), "-y"])

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "motd" in result.stdout
        assert "issue" in result.stdout

        history = runner.invoke(app, ["status", "motd"])
        assert history.exit_code == 0
        assert "written" in history.stdout

        problems = runner.invoke(app, ["status", "--problems"])
        assert problems.exit_code == 0
        assert "No units recorded" in problems.stdout

    def test_status_unknown_unit(self, settle_project: Path) -> None:
        """Test that asking for an unrecorded unit is an error."""
        _ = settle_project
        result = runner.invoke(app, ["status", "nope"])
        assert result.exit_code == 2

    def test_runs_and_show(self, settle_project: Path, no_selections: None) -> None:
        """Test listing runs and showing one by prefix."""
        _ = no_selections
        policy = _write_policy(settle_project)
        _ = runner.invoke(app, ["apply", str(policy), "--simulate"])
        _ = runner.invoke(app, ["apply", str(policy), "-y"])

        listing = runner.invoke(app, ["runs"])
        assert listing.exit_code == 0
        assert "banner" in listing.stdout

        simulated = runner.invoke(app, ["runs", "--mode", "simulate"])
        assert simulated.exit_code == 0
        assert "simulate" in simulated.stdout

        run_ids = _runs(settle_project)
        assert len(run_ids) == 2
        shown = runner.invoke(app, ["show", run_ids[0][:-2]])
        assert shown.exit_code == 0
        assert f"Run {run_ids[0]}" in shown.stdout

    def test_show_not_found(self, settle_project: Path) -> None:
        """Test showing a run that does not exist."""
        _ = settle_project
        result = runner.invoke(app, ["show", "run-nope"])
        assert result.exit_code == 2
        assert "not found" in result.stdout


class TestBackupCommands:
    """Tests for backups and restore."""

    def test_backups_and_restore(self, settle_project: Path, no_selections: None) -> None:
        """Test that a replaced file can be listed and restored."""
        _ = no_selections
        motd = settle_project / "etc" / "motd"
        motd.parent.mkdir()
        motd.write_text("Welcome!\n")

        applied = runner.invoke(app, ["apply", str(_write_policy(settle_project)), "-y"])
        assert applied.exit_code == 0
        assert motd.read_text() == BANNER

        listing = runner.invoke(app, ["backups", "--unit", "motd"])
        assert listing.exit_code == 0
        assert "motd" in listing.stdout

        conn = get_connection(settle_project / ".settle" / "ledger.db")
        try:
            record = get_backups(conn, unit_id="motd")[0]
        finally:
            conn.close()

        restored = runner.invoke(app, ["restore", str(record.id), "--yes"])

        assert restored.exit_code == 0
        assert "Restored" in restored.stdout
        assert motd.read_text() == "Welcome!\n"

    def test_restore_declined(self, settle_project: Path, no_selections: None) -> None:
        """Test that restore asks first and defaults to no."""
        _ = no_selections
        motd = settle_project / "etc" / "motd"
        _ = runner.invoke(app, ["apply", str(_write_policy(settle_project)), "-y"])

        conn = get_connection(settle_project / ".settle" / "ledger.db")
        try:
            record = get_backups(conn, unit_id="motd")[0]
        finally:
            conn.close()

        result = runner.invoke(app, ["restore", str(record.id)], input="\n")

        assert result.exit_code == 0
        assert "Nothing restored" in result.stdout
        assert motd.exists()

    def test_restore_not_found(self, settle_project: Path) -> None:
        """Test restoring a missing backup id."""
        _ = settle_project
        result = runner.invoke(app, ["restore", "999", "--yes"])
        assert result.exit_code == 2

    def test_backups_empty(self, settle_project: Path) -> None:
        """Test listing with no backups."""
        _ = settle_project
        result = runner.invoke(app, ["backups"])
        assert result.exit_code == 0
        assert "No backups found" in result.stdout


class TestDoctorCommand:
    """Tests for settle doctor command."""

    def test_doctor(self, settle_project: Path) -> None:
        """Test doctor on a fresh state directory."""
        _ = settle_project
        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 0
        assert "settle directory" in result.stdout
        assert "WAL mode enabled" in result.stdout
