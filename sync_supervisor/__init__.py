"""
Sync supervisor.

Runs a node daemon as a child process and keeps it alive by watching its
stderr:
- a storage lock error (db/LOCK) kills and restarts it
- the same best block number repeating too often kills and restarts it
- a failed launch is retried after a backoff
- a clean exit stops supervision

Every kill takes down the daemon's whole process group, not just the
daemon itself.
"""

from sync_supervisor.classifier import LineClassifier
from sync_supervisor.config import DEFAULT_CONFIG, SupervisorConfig, SupervisorContext
from sync_supervisor.daemon import SupervisorDaemon
from sync_supervisor.process_controller import ProcessController
from sync_supervisor.run import Run, RunStatus
from sync_supervisor.stall_tracker import StallTracker

__all__ = [
    "DEFAULT_CONFIG",
    "LineClassifier",
    "ProcessController",
    "Run",
    "RunStatus",
    "StallTracker",
    "SupervisorConfig",
    "SupervisorContext",
    "SupervisorDaemon",
]
