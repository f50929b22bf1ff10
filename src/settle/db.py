# Copyright (c) Syntropy Systems
"""SQLite ledger storage with WAL mode and per-outcome transactions."""
from __future__ import annotations

import json
import socket
import sqlite3
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from settle.models.db import BackupRecord, OutcomeRecord, RunRecord, UnitStateRecord

if TYPE_CHECKING:
    from pathlib import Path

    from settle.models.db import Outcome
    from settle.models.run import Baseline

SCHEMA_VERSION = "1"

# SQL schema for the settle ledger
SCHEMA = """
-- One row per invocation
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    mode TEXT NOT NULL,            -- simulate, apply
    interactivity TEXT NOT NULL,   -- interactive, non_interactive
    policy_name TEXT,
    tool_version TEXT NOT NULL,
    status TEXT DEFAULT 'running', -- running, done, fatal, aborted, interrupted
    started_at TEXT,
    finished_at TEXT,
    hostname TEXT,
    baseline TEXT,                 -- JSON, measurement at run start
    final TEXT                     -- JSON, measurement at run end
);

-- Append-only outcomes, one per unit per run
CREATE TABLE IF NOT EXISTS outcomes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(id),
    unit_id TEXT NOT NULL,
    mode TEXT NOT NULL,
    phase INTEGER DEFAULT 0,
    observed TEXT,                 -- JSON observed state
    decision TEXT NOT NULL,
    action TEXT NOT NULL,
    applied INTEGER DEFAULT 0,
    reason TEXT,
    error_kind TEXT,
    error_message TEXT,
    policy_fingerprint TEXT,
    written_digest TEXT,
    timestamp TEXT NOT NULL
);

-- Latest apply-mode result per unit
CREATE TABLE IF NOT EXISTS unit_state (
    unit_id TEXT PRIMARY KEY,
    outcome_id INTEGER REFERENCES outcomes(id),
    decision TEXT NOT NULL,
    action TEXT NOT NULL,
    applied INTEGER DEFAULT 0,
    reason TEXT,
    error_kind TEXT,
    observed_digest TEXT,
    written_digest TEXT,           -- digest of content settle last wrote or adopted
    policy_fingerprint TEXT,
    tool_version TEXT,
    updated_at TEXT
);

-- Snapshots taken before mutation; never pruned by settle
CREATE TABLE IF NOT EXISTS backups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    unit_id TEXT NOT NULL,
    original_path TEXT NOT NULL,
    backup_path TEXT,
    existed INTEGER DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE INDEX IF NOT EXISTS idx_outcomes_run ON outcomes(run_id);
CREATE INDEX IF NOT EXISTS idx_outcomes_unit ON outcomes(unit_id);
CREATE INDEX IF NOT EXISTS idx_backups_unit ON backups(unit_id);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection.

    - isolation_level=None for explicit transaction control
    - WAL mode so a crash never leaves a half-applied write
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(str(db_path), timeout=5.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA synchronous=FULL")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.execute(
            "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
            (SCHEMA_VERSION,),
        )
    finally:
        conn.close()


def utcnow() -> str:
    """Get current UTC time as ISO format string (microsecond precision)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# --- Meta ---

def get_meta(conn: sqlite3.Connection, key: str) -> Optional[str]:
    """Read a meta value."""
    row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Write a meta value."""
    conn.execute(
        """
        INSERT INTO meta (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )


# --- Run Operations ---

def create_run(
    conn: sqlite3.Connection,
    run_id: str,
    mode: str,
    interactivity: str,
    tool_version: str,
    policy_name: Optional[str] = None,
) -> None:
    """Create a new run record."""
    conn.execute(
        """
        INSERT INTO runs (id, mode, interactivity, policy_name, tool_version, started_at, hostname)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (run_id, mode, interactivity, policy_name, tool_version, utcnow(), socket.gethostname()),
    )


def set_run_baseline(conn: sqlite3.Connection, run_id: str, baseline: Baseline) -> None:
    """Store the run's starting measurement."""
    conn.execute(
        "UPDATE runs SET baseline = ? WHERE id = ?",
        (baseline.model_dump_json(), run_id),
    )


def finish_run(
    conn: sqlite3.Connection,
    run_id: str,
    status: str,
    final: Optional[Baseline] = None,
) -> None:
    """Mark a run finished with its terminal status."""
    conn.execute(
        "UPDATE runs SET status = ?, finished_at = ?, final = ? WHERE id = ?",
        (status, utcnow(), final.model_dump_json() if final else None, run_id),
    )


def get_run(conn: sqlite3.Connection, run_id: str) -> Optional[RunRecord]:
    """Get a run by ID."""
    row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
    if row is None:
        return None
    return RunRecord.model_validate(dict(row))


def get_runs(
    conn: sqlite3.Connection,
    mode: Optional[str] = None,
    limit: int = 20,
) -> list[RunRecord]:
    """Get the most recent runs, newest first."""
    query = "SELECT * FROM runs WHERE 1=1"
    params: list[Any] = []

    if mode:
        query += " AND mode = ?"
        params.append(mode)

    query += " ORDER BY started_at DESC LIMIT ?"
    params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [RunRecord.model_validate(dict(row)) for row in rows]


# --- Outcome Operations ---

def record_outcome(
    conn: sqlite3.Connection,
    outcome: Outcome,
    tool_version: str,
    observed_digest: Optional[str] = None,
) -> int:
    """
    Persist one outcome and, for apply runs, the unit's latest state.

    Both writes happen in a single transaction so the ledger never holds an
    outcome without its unit state or vice versa.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.execute(
            """
            INSERT INTO outcomes (
                run_id, unit_id, mode, phase, observed, decision, action, applied,
                reason, error_kind, error_message, policy_fingerprint, written_digest, timestamp
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                outcome.run_id,
                outcome.unit_id,
                outcome.mode,
                outcome.phase,
                json.dumps(outcome.observed),
                outcome.decision,
                outcome.action,
                int(outcome.applied),
                outcome.reason,
                outcome.error_kind,
                outcome.error_message,
                outcome.policy_fingerprint,
                outcome.written_digest,
                outcome.timestamp,
            ),
        )
        outcome_id = cursor.lastrowid

        if outcome.mode == "apply":
            conn.execute(
                """
                INSERT INTO unit_state (
                    unit_id, outcome_id, decision, action, applied, reason, error_kind,
                    observed_digest, written_digest, policy_fingerprint, tool_version, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(unit_id) DO UPDATE SET
                    outcome_id = excluded.outcome_id,
                    decision = excluded.decision,
                    action = excluded.action,
                    applied = excluded.applied,
                    reason = excluded.reason,
                    error_kind = excluded.error_kind,
                    observed_digest = excluded.observed_digest,
                    written_digest = COALESCE(excluded.written_digest, unit_state.written_digest),
                    policy_fingerprint = excluded.policy_fingerprint,
                    tool_version = excluded.tool_version,
                    updated_at = excluded.updated_at
                """,
                (
                    outcome.unit_id,
                    outcome_id,
                    outcome.decision,
                    outcome.action,
                    int(outcome.applied),
                    outcome.reason,
                    outcome.error_kind,
                    observed_digest,
                    outcome.written_digest,
                    outcome.policy_fingerprint,
                    tool_version,
                    outcome.timestamp,
                ),
            )

        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    return int(outcome_id or 0)


def get_run_outcomes(conn: sqlite3.Connection, run_id: str) -> list[OutcomeRecord]:
    """Get a run's outcomes in the order they were recorded."""
    rows = conn.execute(
        "SELECT * FROM outcomes WHERE run_id = ? ORDER BY id",
        (run_id,),
    ).fetchall()
    return [OutcomeRecord.model_validate(dict(row)) for row in rows]


def get_unit_outcomes(
    conn: sqlite3.Connection,
    unit_id: str,
    mode: Optional[str] = "apply",
    limit: int = 20,
) -> list[OutcomeRecord]:
    """Get a unit's outcomes, newest first."""
    query = "SELECT * FROM outcomes WHERE unit_id = ?"
    params: list[Any] = [unit_id]
    if mode:
        query += " AND mode = ?"
        params.append(mode)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [OutcomeRecord.model_validate(dict(row)) for row in rows]


def get_unit_state(conn: sqlite3.Connection, unit_id: str) -> Optional[UnitStateRecord]:
    """Get the latest apply-mode state of a unit."""
    row = conn.execute("SELECT * FROM unit_state WHERE unit_id = ?", (unit_id,)).fetchone()
    if row is None:
        return None
    return UnitStateRecord.model_validate(dict(row))


def get_unit_states(conn: sqlite3.Connection) -> list[UnitStateRecord]:
    """Get the latest state of every unit settle has applied."""
    rows = conn.execute("SELECT * FROM unit_state ORDER BY unit_id").fetchall()
    return [UnitStateRecord.model_validate(dict(row)) for row in rows]


# --- Backup Operations ---

def insert_backup(
    conn: sqlite3.Connection,
    run_id: str,
    unit_id: str,
    original_path: str,
    backup_path: Optional[str],
    existed: bool,  # noqa: FBT001
    created_at: str,
) -> int:
    """Record a completed snapshot and return its ID."""
    cursor = conn.execute(
        """
        INSERT INTO backups (run_id, unit_id, original_path, backup_path, existed, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (run_id, unit_id, original_path, backup_path, int(existed), created_at),
    )
    return int(cursor.lastrowid or 0)


def get_backup(conn: sqlite3.Connection, backup_id: int) -> Optional[BackupRecord]:
    """Get a backup by ID."""
    row = conn.execute("SELECT * FROM backups WHERE id = ?", (backup_id,)).fetchone()
    if row is None:
        return None
    return BackupRecord.model_validate(dict(row))


def get_backups(
    conn: sqlite3.Connection,
    unit_id: Optional[str] = None,
    run_id: Optional[str] = None,
    limit: int = 50,
) -> list[BackupRecord]:
    """Get backups with optional filtering, newest first."""
    query = "SELECT * FROM backups WHERE 1=1"
    params: list[Any] = []

    if unit_id:
        query += " AND unit_id = ?"
        params.append(unit_id)
    if run_id:
        query += " AND run_id = ?"
        params.append(run_id)

    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [BackupRecord.model_validate(dict(row)) for row in rows]
