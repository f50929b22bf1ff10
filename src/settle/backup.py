# Copyright (c) Syntropy Systems
"""Snapshots of mutable artifacts, taken before a mutator touches them."""
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from settle.db import utcnow
from settle.errors import BackupFailed, LedgerError
from settle.mutators import write_atomic

if TYPE_CHECKING:
    from settle.ledger import StateLedger
    from settle.models.db import BackupRecord

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"


class BackupManager:
    """Writes snapshots under ``backups/<run_id>/<unit_id>/`` and records them.

    A snapshot is copied to a ``.partial`` file, fsynced, then renamed into
    place; a ledger row is written only after the rename, so an interrupt
    can never leave a half-written backup that looks complete. Backups are
    never pruned here.
    """

    def __init__(self, backups_dir: Path, ledger: StateLedger) -> None:
        self.backups_dir = backups_dir
        self.ledger = ledger

    def snapshot(self, path: str, unit_id: str, run_id: str) -> BackupRecord:
        """Snapshot ``path``; a missing path is recorded as a tombstone."""
        source = Path(path)
        created_at = utcnow()

        if not source.exists():
            backup_id = self._add(run_id, unit_id, str(source), None, created_at)
            logger.info("Backup %s: %s did not exist", backup_id, source)
            return self._load(backup_id)

        dest = self._destination(run_id, unit_id, source)
        try:
            _copy_durably(source, dest)
        except OSError as e:
            raise BackupFailed(str(source), e.strerror or str(e)) from e

        backup_id = self._add(run_id, unit_id, str(source), str(dest), created_at)
        logger.info("Backup %s: %s -> %s", backup_id, source, dest)
        return self._load(backup_id)

    def snapshot_text(self, label: str, text: str, unit_id: str, run_id: str) -> BackupRecord:
        """Store generated text (e.g. the package selection list) as a backup."""
        dest = self.backups_dir / run_id / unit_id / label
        created_at = utcnow()
        try:
            write_atomic(dest, text.encode("utf-8"), 0o600)
        except OSError as e:
            raise BackupFailed(label, e.strerror or str(e)) from e

        backup_id = self._add(run_id, unit_id, label, str(dest), created_at)
        return self._load(backup_id)

    def restore(self, record: BackupRecord) -> str:
        """Put a snapshot back in place and return a summary.

        Restoring a tombstone removes the path. The current content is
        snapshotted first under a ``restore-<id>`` run so a restore can
        itself be undone.
        """
        target = Path(record.original_path)
        if not target.is_absolute():
            msg = f"Backup {record.id} ({record.original_path}) is an artefact, not a restorable path"
            raise ValueError(msg)

        _ = self.snapshot(str(target), record.unit_id, f"restore-{record.id}")

        if not record.existed:
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink(missing_ok=True)
            return f"removed {target} (it did not exist before {record.run_id})"

        if record.backup_path is None:
            msg = f"Backup {record.id} has no stored copy"
            raise ValueError(msg)
        source = Path(record.backup_path)
        if source.is_dir():
            if target.exists():
                shutil.rmtree(target)
            _ = shutil.copytree(source, target, symlinks=True)
        else:
            write_atomic(target, source.read_bytes(), source.stat().st_mode & 0o7777)
        return f"restored {target} from {source}"

    def _destination(self, run_id: str, unit_id: str, source: Path) -> Path:
        relative = Path(*source.resolve().parts[1:])
        dest = self.backups_dir / run_id / unit_id / relative
        # A retried unit snapshots again; keep every copy
        candidate = dest
        counter = 1
        while candidate.exists():
            candidate = dest.with_name(f"{dest.name}.{counter}")
            counter += 1
        return candidate

    def _add(self, run_id: str, unit_id: str, original: str, copy: str | None, created_at: str) -> int:
        # An unrecorded snapshot cannot be restored, so it counts as no backup
        try:
            return self.ledger.add_backup(run_id, unit_id, original, copy, copy is not None, created_at)
        except LedgerError as e:
            raise BackupFailed(original, str(e)) from e

    def _load(self, backup_id: int) -> BackupRecord:
        record = self.ledger.backup(backup_id)
        if record is None:
            msg = f"backup {backup_id} vanished from ledger"
            raise BackupFailed("ledger", msg)
        return record


def _copy_durably(source: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + PARTIAL_SUFFIX)

    try:
        if source.is_dir():
            if partial.exists():
                shutil.rmtree(partial)
            _ = shutil.copytree(source, partial, symlinks=True)
        else:
            with source.open("rb") as src, partial.open("wb") as dst:
                shutil.copyfileobj(src, dst)
                dst.flush()
                os.fsync(dst.fileno())
            shutil.copystat(source, partial)
        os.replace(partial, dest)
    except BaseException:
        if partial.is_dir():
            shutil.rmtree(partial, ignore_errors=True)
        else:
            partial.unlink(missing_ok=True)
        raise
