"""
Stall tracker.

Counts how many consecutive progress markers repeated the previous best
number. A daemon that keeps logging the same best number is alive but not
syncing. The tracker only reports; the controller owns the kill decision.
"""

from dataclasses import dataclass

from sync_supervisor.classifier import Progress, Signal


@dataclass(frozen=True)
class StallSnapshot:
    """Point-in-time view of the tracker."""
    best_number: int
    idle_times: int


class StallTracker:
    """
    Accumulates (best_number, idle_times) over one run.

    Both start at zero. Only Progress signals change state:
    - same value as last time: idle_times += 1
    - different value: best_number = value, idle_times = 0
    """

    def __init__(self):
        self.best_number = 0
        self.idle_times = 0

    def observe(self, signal: Signal) -> bool:
        """
        Feed one classified line.

        Returns:
            True if the signal was a progress marker and state was updated
        """
        if not isinstance(signal, Progress):
            return False

        if signal.value == self.best_number:
            self.idle_times += 1
        else:
            self.best_number = signal.value
            self.idle_times = 0
        return True

    def snapshot(self) -> StallSnapshot:
        return StallSnapshot(best_number=self.best_number, idle_times=self.idle_times)

    def is_stalled(self, idle_limit: int) -> bool:
        """True once idle_limit repeats in a row have been seen."""
        return self.idle_times >= idle_limit
