"""
Run record and terminal status.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class RunStatus(Enum):
    """Terminal classification of a run. Drives the restart policy."""
    UNKNOWN = "unknown"
    CRASHED = "crashed"
    DB_LOCKED = "db_locked"
    IDLED = "idled"
    CLEAN = "clean"


@dataclass
class Run:
    """
    One supervised execution of the daemon, from spawn to confirmed teardown.

    pid is None when the executable never launched.
    """
    executable_path: str
    pid: Optional[int] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    best_number: int = 0
    idle_times: int = 0
    status: RunStatus = RunStatus.UNKNOWN
    returncode: Optional[int] = None
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def finish(self, status: RunStatus) -> None:
        self.status = status
        self.finished_at = time.time()
