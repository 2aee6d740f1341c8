"""
Supervisor configuration.

SupervisorConfig holds every tunable: marker patterns, the idle limit,
backoff delays and teardown timing. It is frozen; build a new one from YAML
with load_config() instead of mutating.

SupervisorContext bundles the values that are computed once per process
(compiled classifier, our own pid and process group) so components receive
them explicitly.
"""

import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import structlog
import yaml

from sync_supervisor.classifier import (
    DEFAULT_DB_LOCK_PATTERN,
    DEFAULT_PROGRESS_PATTERN,
    LineClassifier,
)
from sync_supervisor.errors import ConfigError
from sync_supervisor.run import RunStatus

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SupervisorConfig:
    """
    Supervisor settings. FROZEN - not modified at runtime.
    """

    # ==========================================================================
    # LOG MARKERS
    # ==========================================================================

    # First capture group must be the best block number
    progress_pattern: str = DEFAULT_PROGRESS_PATTERN

    # Storage lock left behind by an unclean shutdown
    db_lock_pattern: str = DEFAULT_DB_LOCK_PATTERN

    # ==========================================================================
    # STALL DETECTION
    # ==========================================================================

    # Kill once the same best number has repeated this many times in a row
    idle_limit: int = 3

    # ==========================================================================
    # RESTART POLICY
    # ==========================================================================

    crash_backoff_seconds: int = 10
    db_locked_backoff_seconds: int = 10
    idle_backoff_seconds: int = 3

    # Stream closing with no fatal/idle signal: restart (True) or stop (False)
    restart_on_exit: bool = False

    # Stop after this many restarts; None means never
    max_restarts: Optional[int] = None

    # ==========================================================================
    # PROCESS CONTROL
    # ==========================================================================

    # Spawn the daemon in its own process group instead of ours
    isolate_process_group: bool = False

    # How long to wait for the child to be reaped after SIGKILL
    kill_grace_seconds: float = 5.0

    # How long to wait for the reader thread once the stream is closed
    reader_join_timeout_seconds: float = 5.0

    # How often the controller checks for shutdown while a run is live
    poll_interval_seconds: float = 0.5

    # Still mirror a line to stdout when it triggered DB_LOCKED / IDLED
    echo_fatal_lines: bool = False

    def __post_init__(self):
        if isinstance(self.idle_limit, bool) or not isinstance(self.idle_limit, int) or self.idle_limit < 1:
            raise ConfigError(f"idle_limit must be a positive integer, got {self.idle_limit!r}")

        for name in (
            "crash_backoff_seconds",
            "db_locked_backoff_seconds",
            "idle_backoff_seconds",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ConfigError(f"{name} must be a non-negative integer, got {value!r}")

        for name in (
            "kill_grace_seconds",
            "reader_join_timeout_seconds",
            "poll_interval_seconds",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"{name} must be a positive number, got {value!r}")

        if self.max_restarts is not None and (
            isinstance(self.max_restarts, bool)
            or not isinstance(self.max_restarts, int)
            or self.max_restarts < 0
        ):
            raise ConfigError(
                f"max_restarts must be a non-negative integer or null, got {self.max_restarts!r}"
            )

        for name in ("restart_on_exit", "isolate_process_group", "echo_fatal_lines"):
            if not isinstance(getattr(self, name), bool):
                raise ConfigError(f"{name} must be true or false")

    def backoff_for(self, status: RunStatus) -> Optional[int]:
        """
        Restart policy.

        Returns:
            Seconds to wait before the next run, or None to stop supervising
        """
        if status == RunStatus.CRASHED:
            return self.crash_backoff_seconds
        if status == RunStatus.DB_LOCKED:
            return self.db_locked_backoff_seconds
        if status == RunStatus.IDLED:
            return self.idle_backoff_seconds
        return None


# Default config instance
DEFAULT_CONFIG = SupervisorConfig()


def load_config(path: Optional[str] = None) -> SupervisorConfig:
    """
    Load configuration from a YAML file.

    A missing file falls back to defaults; a malformed one is an error.

    Raises:
        ConfigError: On unreadable YAML, unknown keys or invalid values
    """
    if path is None:
        return DEFAULT_CONFIG

    config_path = Path(path)

    if not config_path.exists():
        logger.warning("config_not_found_using_defaults", path=path)
        return DEFAULT_CONFIG

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")

    known = {f.name for f in fields(SupervisorConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys in {path}: {', '.join(unknown)}")

    config = SupervisorConfig(**data)
    logger.info("config_loaded", path=path)
    return config


@dataclass(frozen=True)
class SupervisorContext:
    """
    Per-process constants, built once at startup.

    supervisor_pgid is None on platforms without process groups.
    """
    config: SupervisorConfig
    classifier: LineClassifier
    supervisor_pid: int
    supervisor_pgid: Optional[int]

    @classmethod
    def create(cls, config: SupervisorConfig = DEFAULT_CONFIG) -> "SupervisorContext":
        try:
            classifier = LineClassifier(config.progress_pattern, config.db_lock_pattern)
        except (re.error, ValueError) as e:
            raise ConfigError(f"Invalid marker pattern: {e}") from e

        pid = os.getpid()
        pgid = os.getpgid(0) if hasattr(os, "getpgid") else None

        return cls(
            config=config,
            classifier=classifier,
            supervisor_pid=pid,
            supervisor_pgid=pgid,
        )
