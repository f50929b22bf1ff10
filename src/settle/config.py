# Copyright (c) Syntropy Systems
"""Configuration management for settle."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

GLOBAL_SETTLE_DIR = Path("/var/lib/settle")
NOT_INITIALIZED = "No .settle directory found. Run 'settle init' first."


@dataclass
class SettleConfig:
    """Configuration for settle."""

    # Minimum free space on / before any phase starts (MiB)
    min_free_mb: int = 500

    # Progress poll interval for long-running operations (seconds)
    poll_interval: float = 1.0

    # Extra attempts after a recoverable mutator failure (e.g. apt lock)
    mutator_retries: int = 1

    # Pause between attempts (seconds)
    retry_delay: float = 2.0

    # Timeout for ordinary host commands (seconds)
    command_timeout: int = 600

    # Grace period before SIGKILL after SIGTERM (seconds)
    kill_grace_period: int = 10

    # Service account managed by the built-in catalogs
    user: str = "openclaw"


def find_settle_dir(start_path: Path | None = None) -> Path | None:
    """Find the settle state directory.

    Looks in:
    1. $SETTLE_DIR
    2. Nearest .settle directory walking up from start_path
    3. /var/lib/settle

    Returns None if none of them exists.
    """
    env_dir = os.environ.get("SETTLE_DIR")
    if env_dir:
        candidate = Path(env_dir)
        return candidate if candidate.is_dir() else None

    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        settle_dir = current / ".settle"
        if settle_dir.is_dir():
            return settle_dir
        current = current.parent

    # Check root
    settle_dir = current / ".settle"
    if settle_dir.is_dir():
        return settle_dir

    if GLOBAL_SETTLE_DIR.is_dir():
        return GLOBAL_SETTLE_DIR

    return None


def _number(data: dict[str, object], key: str) -> float | None:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def load_config(settle_dir: Path | None = None) -> SettleConfig:
    """Load configuration from config.yaml in the settle directory, or defaults."""
    config = SettleConfig()

    if settle_dir is None:
        settle_dir = find_settle_dir()
    if settle_dir is None:
        return config

    config_path = settle_dir / "config.yaml"
    if not config_path.exists():
        return config

    with config_path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})

    min_free_mb = _number(data, "min_free_mb")
    if min_free_mb is not None:
        config.min_free_mb = int(min_free_mb)
    poll_interval = _number(data, "poll_interval")
    if poll_interval is not None:
        config.poll_interval = poll_interval
    mutator_retries = _number(data, "mutator_retries")
    if mutator_retries is not None:
        config.mutator_retries = max(0, int(mutator_retries))
    retry_delay = _number(data, "retry_delay")
    if retry_delay is not None:
        config.retry_delay = retry_delay
    command_timeout = _number(data, "command_timeout")
    if command_timeout is not None:
        config.command_timeout = int(command_timeout)
    kill_grace_period = _number(data, "kill_grace_period")
    if kill_grace_period is not None:
        config.kill_grace_period = int(kill_grace_period)
    user = data.get("user")
    if isinstance(user, str) and user:
        config.user = user

    return config


def require_settle_dir() -> Path:
    """Get settle directory or raise an error if not found."""
    settle_dir = find_settle_dir()
    if settle_dir is None:
        raise RuntimeError(NOT_INITIALIZED)
    return settle_dir


def get_db_path(settle_dir: Path | None = None) -> Path:
    """Get the path to the ledger database."""
    return (settle_dir or require_settle_dir()) / "ledger.db"


def get_backups_dir(settle_dir: Path | None = None) -> Path:
    """Get the path to the backups directory."""
    return (settle_dir or require_settle_dir()) / "backups"


def get_logs_dir(settle_dir: Path | None = None) -> Path:
    """Get the path to the logs directory."""
    return (settle_dir or require_settle_dir()) / "logs"
