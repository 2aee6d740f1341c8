"""
Supervisor daemon.

Keeps the node daemon running:
- run it under the process controller until it ends in a terminal status
- map that status to a restart delay (see SupervisorConfig.backoff_for)
- count down the delay one second at a time, then start the next run
- stop on a clean exit, or as soon as SIGINT / SIGTERM arrives

Runs never overlap: the controller returns only after the previous process
tree has been killed and reaped.
"""

import argparse
import logging
import os
import sys
from collections import Counter
from pathlib import Path
from typing import Optional

import structlog
from dotenv import load_dotenv

from sync_supervisor.config import (
    DEFAULT_CONFIG,
    SupervisorConfig,
    SupervisorContext,
    load_config,
)
from sync_supervisor.errors import ConfigError
from sync_supervisor.process_controller import ProcessController
from sync_supervisor.run import Run, RunStatus
from sync_supervisor.shutdown import ShutdownHandler

logger = structlog.get_logger(__name__)

LOG_LEVEL_ENV = "SYNC_LOG"

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


class SupervisorDaemon:
    """
    Restart loop around the process controller.

    State is in-memory only: run counts and per-status totals are logged on
    exit and lost when the supervisor stops.
    """

    def __init__(
        self,
        executable_path: str,
        config: SupervisorConfig = DEFAULT_CONFIG,
        controller: Optional[ProcessController] = None,
        shutdown: Optional[ShutdownHandler] = None,
    ):
        """
        Initialize supervisor daemon.

        Args:
            executable_path: Daemon executable to supervise
            config: Supervisor settings
            controller: Process controller (built from config if omitted)
            shutdown: Shutdown flag shared with the controller
        """
        self.executable_path = executable_path
        self.config = config
        self.shutdown = shutdown or ShutdownHandler()
        self.controller = controller or ProcessController(
            SupervisorContext.create(config),
            shutdown=self.shutdown,
        )

        # State tracking
        self.runs_started = 0
        self.restarts = 0
        self.status_counts: Counter = Counter()
        self.last_run: Optional[Run] = None

        logger.info(
            "supervisor_initialized",
            executable=executable_path,
            idle_limit=config.idle_limit,
            restart_on_exit=config.restart_on_exit,
        )

    def run(self) -> Optional[RunStatus]:
        """
        Supervise until a run ends cleanly or shutdown is requested.

        Returns:
            Status of the last completed run (None if none ran)
        """
        logger.info("supervisor_starting", executable=self.executable_path)

        while not self.shutdown.should_shutdown():
            run = self.run_once()
            delay = self.config.backoff_for(run.status)

            if delay is None:
                logger.info("supervisor_stopping", reason="daemon_exited", status=run.status.value)
                break

            if self.shutdown.should_shutdown():
                break

            if self.config.max_restarts is not None and self.restarts >= self.config.max_restarts:
                logger.warning(
                    "max_restarts_reached",
                    restarts=self.restarts,
                    max_restarts=self.config.max_restarts,
                )
                break

            if not self.countdown(delay, run.status):
                break

            self.restarts += 1

        if self.shutdown.should_shutdown():
            logger.info("supervisor_stopping", reason="shutdown_requested")

        logger.info(
            "supervisor_stopped",
            runs=self.runs_started,
            restarts=self.restarts,
            statuses={status.value: count for status, count in self.status_counts.items()},
        )
        return self.last_run.status if self.last_run else None

    def run_once(self) -> Run:
        """Execute a single supervised run and record its outcome."""
        self.runs_started += 1
        logger.info("run_starting", run=self.runs_started, executable=self.executable_path)

        try:
            run = self.controller.supervise(self.executable_path)
        except Exception as e:
            # Supervisor-side bug; back off like a crash rather than exit
            logger.exception("run_failed", run=self.runs_started, error=str(e))
            run = Run(executable_path=self.executable_path, error=str(e))
            run.finish(RunStatus.CRASHED)

        self.status_counts[run.status] += 1
        self.last_run = run
        return run

    def countdown(self, seconds: int, status: RunStatus) -> bool:
        """
        Wait before restarting, logging each remaining second.

        Returns:
            False if shutdown was requested during the wait
        """
        for remaining in range(seconds, 0, -1):
            logger.info(
                "restart_countdown",
                remaining_seconds=remaining,
                status=status.value,
            )
            if self.shutdown.wait(1):
                return False
        return not self.shutdown.should_shutdown()


# ==============================================================================
# ENTRY POINT
# ==============================================================================


def resolve_log_level(verbose: bool, environ: Optional[dict] = None) -> int:
    """
    Pick the stdlib log level.

    SYNC_LOG is only consulted in verbose mode; "trace" maps to DEBUG.
    """
    if not verbose:
        return logging.INFO

    environ = os.environ if environ is None else environ
    name = environ.get(LOG_LEVEL_ENV, "trace").strip().upper()
    if name == "TRACE":
        return logging.DEBUG
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.DEBUG


def setup_logging(log_level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """Configure structured logging for the supervisor."""
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=handlers,
        force=True,
    )


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sync-supervisor",
        description="Keep a syncing node daemon alive: restart it when it crashes, "
        "stalls, or hits a storage lock.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
The daemon's stderr is echoed to stdout. Its stdout is discarded.

Examples:
    # Supervise a boot script
    sync-supervisor --script ./boot-node.sh

    # With trace logging (level from SYNC_LOG, default trace)
    SYNC_LOG=info sync-supervisor -l -s ./boot-node.sh
        """,
    )

    parser.add_argument(
        "-l", "--log",
        action="store_true",
        help="Enable verbose supervisor logging (level from $SYNC_LOG)",
    )
    parser.add_argument(
        "-s", "--script",
        metavar="PATH",
        help="Daemon boot script / executable to supervise",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="PATH",
        help="YAML configuration file",
    )
    parser.add_argument(
        "--pid-file",
        metavar="PATH",
        help="Write the supervisor's PID here while running",
    )
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        help="Also write supervisor logs to this file",
    )

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the supervisor process."""
    args = parse_args(argv)

    load_dotenv()

    setup_logging(resolve_log_level(args.log), args.log_file)

    if not args.script:
        logger.info("no_script_given")
        return EXIT_OK

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("invalid_config", error=str(e))
        return EXIT_CONFIG_ERROR

    shutdown = ShutdownHandler(pid_file=args.pid_file)
    shutdown.install()

    try:
        daemon = SupervisorDaemon(
            executable_path=args.script,
            config=config,
            shutdown=shutdown,
        )
        daemon.run()
    except ConfigError as e:
        logger.error("invalid_config", error=str(e))
        return EXIT_CONFIG_ERROR
    finally:
        shutdown.uninstall()

    if shutdown.should_shutdown():
        return EXIT_INTERRUPTED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
