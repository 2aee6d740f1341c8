"""
Process controller for the supervised node daemon.

Owns one run at a time:
- spawn the daemon with stdout discarded and stderr piped
- read stderr line by line on a reader thread, mirror it to our stdout,
  classify it and feed the stall tracker
- hand the terminal status back to the controller over a one-slot queue
- kill the daemon and everything in its process group, then reap it

Teardown protocol:
1. Enumerate the process tree (process group members started no earlier
   than the daemon, excluding ourselves)
2. SIGKILL the daemon, then every tree member
3. Sweep the group again for anything forked mid-teardown
4. Reap the daemon (bounded wait; a hang is logged, not raised)

There is no SIGTERM step. The daemon is assumed to be wedged by the time we
act, and the restart backoff gives storage time to settle.
"""

import os
import queue
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import Iterator, Optional, TextIO

import psutil
import structlog

from sync_supervisor.classifier import FatalMarker
from sync_supervisor.config import SupervisorContext
from sync_supervisor.errors import SpawnError, StreamReadError
from sync_supervisor.run import Run, RunStatus
from sync_supervisor.shutdown import ShutdownHandler
from sync_supervisor.stall_tracker import StallTracker

logger = structlog.get_logger(__name__)


@dataclass
class DaemonProcess:
    """
    Handle for a spawned daemon.

    pgid is the process group to sweep on teardown (None: no process groups
    on this platform, fall back to walking descendants). created_at is the
    daemon's creation time as psutil reports it, or the wall clock just
    before the spawn when psutil cannot see it; group members created before
    it are not ours.
    """
    popen: subprocess.Popen
    executable_path: str
    pgid: Optional[int]
    created_at: Optional[float]

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.returncode


class ProcessController:
    """
    Spawns the daemon, watches its stderr and tears it down.

    One controller serves every run; it keeps no per-run state on self, so
    supervise() can be called again as soon as it returns.
    """

    def __init__(
        self,
        context: SupervisorContext,
        shutdown: Optional[ShutdownHandler] = None,
        mirror: Optional[TextIO] = None,
    ):
        """
        Initialize process controller.

        Args:
            context: Startup context (config, classifier, our pid/pgid)
            shutdown: Shutdown flag polled while a run is live
            mirror: Where daemon lines are echoed (defaults to sys.stdout)
        """
        self.context = context
        self.config = context.config
        self.classifier = context.classifier
        self.shutdown = shutdown or ShutdownHandler()
        self.mirror = mirror

    # ==========================================================================
    # RUN
    # ==========================================================================

    def supervise(self, executable_path: str) -> Run:
        """
        Execute one run to completion.

        Never raises for daemon-side failures: a spawn failure becomes
        CRASHED, and every other exit path tears the process tree down
        before the Run is returned.
        """
        run = Run(executable_path=executable_path)

        try:
            daemon, stream = self.spawn(executable_path)
        except SpawnError as e:
            logger.error("daemon_spawn_failed", executable=executable_path, error=e.reason)
            run.error = str(e)
            run.finish(RunStatus.CRASHED)
            return run

        run.pid = daemon.pid
        tracker = StallTracker()
        channel: queue.Queue = queue.Queue(maxsize=1)

        reader = threading.Thread(
            target=self._read_stream,
            args=(stream, tracker, channel, daemon.pid),
            name=f"daemon-reader-{daemon.pid}",
            daemon=True,
        )
        reader.start()

        try:
            status = self._await_status(channel, daemon.pid)
        finally:
            self.terminate(daemon)
            self._release_stream(reader, stream, daemon.pid)

        snapshot = tracker.snapshot()
        run.best_number = snapshot.best_number
        run.idle_times = snapshot.idle_times
        run.returncode = daemon.returncode
        run.finish(status)

        logger.info(
            "run_finished",
            pid=run.pid,
            status=run.status.value,
            returncode=run.returncode,
            best_number=run.best_number,
            idle_times=run.idle_times,
            duration_seconds=round(run.duration_seconds or 0.0, 3),
        )
        return run

    def _await_status(self, channel: queue.Queue, pid: int) -> RunStatus:
        """Block until the reader reports, or shutdown is requested."""
        while True:
            try:
                return channel.get(timeout=self.config.poll_interval_seconds)
            except queue.Empty:
                if self.shutdown.should_shutdown():
                    logger.info("run_aborted_for_shutdown", pid=pid)
                    return RunStatus.CLEAN

    # ==========================================================================
    # SPAWN
    # ==========================================================================

    def spawn(self, executable_path: str) -> tuple[DaemonProcess, TextIO]:
        """
        Launch the daemon.

        Returns:
            (handle, stderr text stream)

        Raises:
            SpawnError: If the executable is missing, not executable or
                otherwise cannot be started
        """
        isolate = self.config.isolate_process_group and hasattr(os, "setsid")
        spawned_at = time.time()

        try:
            popen = subprocess.Popen(
                [executable_path],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=isolate,
            )
        except (OSError, ValueError) as e:
            reason = getattr(e, "strerror", None) or str(e)
            raise SpawnError(executable_path, reason) from e

        if isolate:
            pgid = popen.pid
        else:
            pgid = self.context.supervisor_pgid

        daemon = DaemonProcess(
            popen=popen,
            executable_path=executable_path,
            pgid=pgid,
            created_at=self._creation_time(popen.pid, spawned_at),
        )

        logger.info(
            "daemon_spawned",
            pid=daemon.pid,
            pgid=daemon.pgid,
            executable=executable_path,
        )
        return daemon, popen.stderr

    @staticmethod
    def _creation_time(pid: int, spawned_at: float) -> float:
        try:
            return psutil.Process(pid).create_time()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            # Exited (or a zombie) before we looked; nothing older than the
            # spawn call can be ours
            logger.debug("daemon_create_time_unavailable", pid=pid)
            return spawned_at

    # ==========================================================================
    # STREAM
    # ==========================================================================

    def read_lines(self, stream: TextIO) -> Iterator[str]:
        """
        Yield stderr lines without their line terminator.

        Ends when the daemon closes the stream. Not restartable.

        Raises:
            StreamReadError: On an I/O failure mid-stream
        """
        try:
            for line in stream:
                yield line.rstrip("\r\n")
        except (OSError, ValueError) as e:
            raise StreamReadError(str(e)) from e

    def _read_stream(
        self,
        stream: TextIO,
        tracker: StallTracker,
        channel: queue.Queue,
        pid: int,
    ) -> None:
        """
        Reader thread body. Puts exactly one RunStatus on the channel.
        """
        status = RunStatus.CRASHED if self.config.restart_on_exit else RunStatus.CLEAN

        try:
            for line in self.read_lines(stream):
                verdict = self._check_line(line, tracker, pid)

                if verdict is not None:
                    if self.config.echo_fatal_lines:
                        self._echo(line)
                    status = verdict
                    break

                self._echo(line)
            else:
                logger.info("daemon_stream_closed", pid=pid, status=status.value)

        except StreamReadError as e:
            logger.error("daemon_stream_read_failed", pid=pid, error=str(e))
            status = RunStatus.CRASHED
        except Exception as e:
            logger.exception("daemon_reader_failed", pid=pid, error=str(e))
            status = RunStatus.CRASHED
        finally:
            channel.put(status)

    def _check_line(self, line: str, tracker: StallTracker, pid: int) -> Optional[RunStatus]:
        """
        Classify a line and update the tracker.

        Returns:
            The terminal status if this line ends the run, else None
        """
        signal = self.classifier.classify(line)

        if isinstance(signal, FatalMarker):
            logger.warning("daemon_db_locked", pid=pid, line=line)
            return RunStatus.DB_LOCKED

        if not tracker.observe(signal):
            return None

        logger.debug(
            "sync_progress",
            best_number=tracker.best_number,
            idle_times=tracker.idle_times,
        )
        logger.debug(
            "process_ids",
            supervisor_pid=self.context.supervisor_pid,
            daemon_pid=pid,
        )

        if tracker.is_stalled(self.config.idle_limit):
            logger.warning(
                "daemon_sync_stalled",
                pid=pid,
                best_number=tracker.best_number,
                idle_times=tracker.idle_times,
                idle_limit=self.config.idle_limit,
            )
            return RunStatus.IDLED

        return None

    def _echo(self, line: str) -> None:
        print(line, file=self.mirror or sys.stdout, flush=True)

    def _release_stream(self, reader: threading.Thread, stream: TextIO, pid: int) -> None:
        """Join the reader, then close the stream it was iterating."""
        reader.join(timeout=self.config.reader_join_timeout_seconds)

        if reader.is_alive():
            # Something outside the tree still holds the pipe open. Closing it
            # under a blocked reader would hang us too.
            logger.warning("daemon_reader_still_running", pid=pid)
            return

        stream.close()

    # ==========================================================================
    # TEARDOWN
    # ==========================================================================

    def process_tree(self, daemon: DaemonProcess) -> list[psutil.Process]:
        """
        Find every live process the daemon is responsible for.

        Membership is by process group: same pgid as the daemon, created no
        earlier than the daemon, and not this supervisor. The daemon itself is
        not included; it is killed through its Popen handle. Without process
        groups, the daemon's descendants are walked instead.
        """
        if daemon.pgid is None:
            return self._descendants(daemon)

        members = []
        for proc in psutil.process_iter(["pid", "create_time"]):
            pid = proc.info["pid"]
            if pid in (self.context.supervisor_pid, daemon.pid):
                continue

            try:
                pgid = os.getpgid(pid)
            except (ProcessLookupError, PermissionError):
                continue
            if pgid != daemon.pgid:
                continue

            created = proc.info.get("create_time")
            if daemon.created_at is not None and created is not None and created < daemon.created_at:
                continue

            members.append(proc)

        return members

    def _descendants(self, daemon: DaemonProcess) -> list[psutil.Process]:
        try:
            return psutil.Process(daemon.pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    def terminate(self, daemon: DaemonProcess) -> None:
        """
        Kill the daemon and its process tree, then reap the daemon.

        Best-effort and idempotent: processes that are already gone, or that
        we may not signal, are skipped silently.
        """
        members = self.process_tree(daemon)

        self._kill_daemon(daemon)
        killed = self._kill_all(members)

        if daemon.pgid is not None:
            # Anything forked between the first sweep and the kill
            late = [p for p in self.process_tree(daemon) if p.pid not in killed]
            killed |= self._kill_all(late)

        if killed:
            logger.info("process_tree_killed", pid=daemon.pid, killed=sorted(killed))

        self._reap(daemon)

    def _kill_daemon(self, daemon: DaemonProcess) -> None:
        if daemon.popen.poll() is not None:
            return
        try:
            daemon.popen.kill()
            logger.info("daemon_killed", pid=daemon.pid)
        except (ProcessLookupError, PermissionError) as e:
            logger.debug("daemon_kill_skipped", pid=daemon.pid, error=str(e))

    def _kill_all(self, procs: list[psutil.Process]) -> set[int]:
        killed = set()
        for proc in procs:
            try:
                proc.kill()
                killed.add(proc.pid)
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.debug("process_kill_skipped", pid=proc.pid, error=str(e))
        return killed

    def _reap(self, daemon: DaemonProcess) -> None:
        start = time.time()
        try:
            daemon.popen.wait(timeout=self.config.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(
                "daemon_not_reaped",
                pid=daemon.pid,
                waited_seconds=round(time.time() - start, 3),
            )
