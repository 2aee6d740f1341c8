"""
Line classifier for the node daemon's diagnostic stream.

Maps one raw log line to a signal:
- Progress(value): the line carries a best-block marker ("... best ... #1234")
- FatalMarker(kind): the line reports a storage lock conflict ("db/LOCK")
- NoSignal: anything else

The stream is free-form text, so matching is a regex search anywhere in the
line. Nothing here raises on malformed input.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import structlog

logger = structlog.get_logger(__name__)

# Progress values are block heights; anything past u32 is treated as noise.
MAX_PROGRESS_VALUE = 2**32 - 1

DEFAULT_PROGRESS_PATTERN = r".+?best.+?#(\d+)"
DEFAULT_DB_LOCK_PATTERN = r"db/LOCK"


class FatalKind(Enum):
    """Fatal conditions recognised in the log stream."""
    DB_LOCKED = "db_locked"


@dataclass(frozen=True)
class NoSignal:
    """Line carries nothing the supervisor cares about."""


@dataclass(frozen=True)
class Progress:
    """Line reports the daemon's current best number."""
    value: int


@dataclass(frozen=True)
class FatalMarker:
    """Line reports a condition the daemon cannot recover from."""
    kind: FatalKind


Signal = Union[NoSignal, Progress, FatalMarker]

NO_SIGNAL = NoSignal()


class LineClassifier:
    """
    Compiled matchers for the two markers.

    Build one per process (see SupervisorContext) and share it; classify()
    keeps no state.
    """

    def __init__(
        self,
        progress_pattern: str = DEFAULT_PROGRESS_PATTERN,
        db_lock_pattern: str = DEFAULT_DB_LOCK_PATTERN,
    ):
        """
        Compile the marker patterns.

        Args:
            progress_pattern: Regex whose first group captures the progress digits
            db_lock_pattern: Regex matching the storage lock failure

        Raises:
            re.error: If either pattern does not compile
            ValueError: If the progress pattern has no capture group
        """
        self.progress_re = re.compile(progress_pattern)
        self.db_lock_re = re.compile(db_lock_pattern)

        if self.progress_re.groups < 1:
            raise ValueError(
                f"Progress pattern needs a capture group: {progress_pattern!r}"
            )

    def classify(self, line: str) -> Signal:
        """
        Classify a single log line.

        The fatal check runs first: a line matching both markers ends the run,
        so its progress value would never be used.
        """
        if self.db_lock_re.search(line):
            return FatalMarker(FatalKind.DB_LOCKED)

        match = self.progress_re.search(line)
        if match is None:
            return NO_SIGNAL

        value = self._parse_progress(match.group(1))
        if value is None:
            return NO_SIGNAL
        return Progress(value)

    def _parse_progress(self, captured: str) -> Optional[int]:
        # \d also matches non-ASCII digits, which int() may or may not accept
        if not captured or not captured.isascii() or not captured.isdigit():
            logger.debug("progress_capture_unparseable", captured=captured)
            return None

        value = int(captured)
        if value > MAX_PROGRESS_VALUE:
            logger.debug("progress_capture_overflow", captured=captured)
            return None
        return value
