"""
Pytest configuration and fixtures.

Shared fixtures for all tests.
"""

import io
import os
import shutil
import stat
import sys
import tempfile
import textwrap
from pathlib import Path

import pytest

from sync_supervisor.config import SupervisorConfig, SupervisorContext
from sync_supervisor.process_controller import ProcessController
from sync_supervisor.shutdown import ShutdownHandler

# Verbose level must come from the test, not the developer's shell
os.environ.pop("SYNC_LOG", None)


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def make_daemon(temp_dir):
    """
    Factory for fake node daemons.

    Writes an executable Python script whose body is `source`. The script
    runs with the test interpreter, unbuffered.
    """
    counter = {"n": 0}

    def _make(source: str) -> str:
        counter["n"] += 1
        path = temp_dir / f"fake_daemon_{counter['n']}.py"
        path.write_text(f"#!{sys.executable} -u\n" + textwrap.dedent(source))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def fast_config():
    """
    Config tuned for tests: own process group, short waits, no backoff.

    The daemon gets its own group so teardown never touches the test runner's
    siblings.
    """
    return SupervisorConfig(
        idle_limit=3,
        crash_backoff_seconds=0,
        db_locked_backoff_seconds=0,
        idle_backoff_seconds=0,
        isolate_process_group=True,
        kill_grace_seconds=5.0,
        reader_join_timeout_seconds=5.0,
        poll_interval_seconds=0.05,
    )


@pytest.fixture
def shutdown():
    return ShutdownHandler()


@pytest.fixture
def mirror():
    return io.StringIO()


@pytest.fixture
def controller(fast_config, shutdown, mirror):
    return ProcessController(
        SupervisorContext.create(fast_config),
        shutdown=shutdown,
        mirror=mirror,
    )
