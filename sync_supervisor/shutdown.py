"""
Shutdown handling for the supervisor process.

SIGINT / SIGTERM only set a flag. The supervisor loop and the process
controller poll that flag and tear the daemon down through the normal kill
path; signals are never forwarded to the child.

The flag is a threading.Event so sleeps can be cut short: wait(1) returns
as soon as a signal arrives instead of finishing the second.
"""

import os
import signal
import threading
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


class ShutdownHandler:
    """
    Turns termination signals into a shutdown flag.

    Usage:
        handler = ShutdownHandler(pid_file="/tmp/sync-supervisor.pid")
        handler.install()

        while not handler.should_shutdown():
            # do work
            if handler.wait(1):
                break

        handler.uninstall()
    """

    def __init__(
        self,
        pid_file: Optional[str] = None,
    ):
        """
        Initialize shutdown handler.

        Args:
            pid_file: Path to PID file (written on install, removed on uninstall)
        """
        self.pid_file = Path(pid_file) if pid_file else None
        self.signal_received: Optional[str] = None
        self._event = threading.Event()
        self._previous_handlers: dict[int, object] = {}

    @property
    def shutdown_requested(self) -> bool:
        return self._event.is_set()

    def install(self) -> None:
        """
        Install signal handlers and write the PID file.

        Must be called from the main thread.
        """
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

        if self.pid_file:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.pid_file, "w") as f:
                f.write(str(os.getpid()))
            logger.info("pid_file_written", path=str(self.pid_file))

        logger.info("signal_handlers_installed")

    def uninstall(self) -> None:
        """Restore previous signal handlers and remove the PID file."""
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous)
        self._previous_handlers.clear()

        if self.pid_file and self.pid_file.exists():
            self.pid_file.unlink()
            logger.info("pid_file_removed", path=str(self.pid_file))

    def _handle_signal(self, signum: int, frame) -> None:
        signal_name = signal.Signals(signum).name
        logger.info("shutdown_signal_received", signal=signal_name)
        self.signal_received = signal_name
        self._event.set()

    def request_shutdown(self) -> None:
        """Set the flag without a signal (tests, embedding callers)."""
        self._event.set()

    def should_shutdown(self) -> bool:
        """Check if shutdown has been requested."""
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`, waking early on shutdown.

        Returns:
            True if shutdown was requested
        """
        return self._event.wait(seconds)
