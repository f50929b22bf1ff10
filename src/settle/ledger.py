# Copyright (c) Syntropy Systems
"""State ledger: durable per-unit outcomes and the tool version marker."""
from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Optional

from settle import db
from settle.errors import LedgerError

if TYPE_CHECKING:
    from pathlib import Path

    from settle.models.db import BackupRecord, Outcome, OutcomeRecord, RunRecord, UnitStateRecord
    from settle.models.run import Baseline
    from settle.units import RunFlags

logger = logging.getLogger(__name__)

TOOL_VERSION_KEY = "tool_version"


class StateLedger:
    """Cross-run memory of what settle has done to this host.

    Every outcome is committed on its own as soon as it is recorded, so a
    crash or interrupt leaves the ledger consistent with the work that
    actually completed.
    """

    def __init__(self, db_path: Path, tool_version: str) -> None:
        self.db_path = db_path
        self.tool_version = tool_version
        try:
            db.init_db(db_path)
            self.conn = db.get_connection(db_path)
        except sqlite3.Error as e:
            msg = f"Cannot open ledger {db_path}: {e}"
            raise LedgerError(msg) from e

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> StateLedger:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # --- Runs ---

    def begin_run(self, run_id: str, flags: RunFlags, policy_name: Optional[str] = None) -> None:
        db.create_run(
            self.conn,
            run_id=run_id,
            mode=flags.mode.value,
            interactivity=flags.interactivity.value,
            tool_version=self.tool_version,
            policy_name=policy_name,
        )

    def set_baseline(self, run_id: str, baseline: Baseline) -> None:
        db.set_run_baseline(self.conn, run_id, baseline)

    def finish_run(self, run_id: str, status: str, final: Optional[Baseline] = None) -> None:
        db.finish_run(self.conn, run_id, status, final)
        logger.info("Run %s finished: %s", run_id, status)

    def run(self, run_id: str) -> Optional[RunRecord]:
        return db.get_run(self.conn, run_id)

    def run_outcomes(self, run_id: str) -> list[OutcomeRecord]:
        return db.get_run_outcomes(self.conn, run_id)

    # --- Outcomes ---

    def record(self, outcome: Outcome, observed_digest: Optional[str] = None) -> int:
        """Durably append an outcome; apply-mode outcomes also update the unit state."""
        try:
            outcome_id = db.record_outcome(self.conn, outcome, self.tool_version, observed_digest)
        except sqlite3.Error as e:
            msg = f"Cannot record outcome for {outcome.unit_id}: {e}"
            raise LedgerError(msg) from e
        logger.debug(
            "Recorded %s: decision=%s action=%s applied=%s",
            outcome.unit_id,
            outcome.decision,
            outcome.action,
            outcome.applied,
        )
        return outcome_id

    def prior_outcomes(self, unit_id: str, limit: int = 20) -> list[OutcomeRecord]:
        """Apply-mode outcomes for a unit from previous runs, newest first."""
        return db.get_unit_outcomes(self.conn, unit_id, mode="apply", limit=limit)

    def unit_state(self, unit_id: str) -> Optional[UnitStateRecord]:
        return db.get_unit_state(self.conn, unit_id)

    def unit_states(self) -> list[UnitStateRecord]:
        return db.get_unit_states(self.conn)

    # --- Version marker ---

    def last_run_version(self) -> Optional[str]:
        """Tool version of the last apply run that completed, or None on first use."""
        return db.get_meta(self.conn, TOOL_VERSION_KEY)

    def mark_version(self) -> None:
        db.set_meta(self.conn, TOOL_VERSION_KEY, self.tool_version)

    # --- Backups ---

    def add_backup(
        self,
        run_id: str,
        unit_id: str,
        original_path: str,
        backup_path: Optional[str],
        existed: bool,  # noqa: FBT001
        created_at: str,
    ) -> int:
        try:
            return db.insert_backup(
                self.conn, run_id, unit_id, original_path, backup_path, existed, created_at
            )
        except sqlite3.Error as e:
            msg = f"Cannot record backup of {original_path}: {e}"
            raise LedgerError(msg) from e

    def backup(self, backup_id: int) -> Optional[BackupRecord]:
        return db.get_backup(self.conn, backup_id)

    def backups(self, unit_id: Optional[str] = None, run_id: Optional[str] = None) -> list[BackupRecord]:
        return db.get_backups(self.conn, unit_id=unit_id, run_id=run_id)
