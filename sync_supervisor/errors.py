"""
Exceptions raised by the supervisor.

Only ConfigError is allowed to stop the supervisor, and only at startup.
Everything else is mapped onto a Run status and recovered by the restart
policy.
"""


class SupervisorError(Exception):
    """Base class for supervisor errors."""


class ConfigError(SupervisorError):
    """Configuration file or values are invalid."""


class SpawnError(SupervisorError):
    """The supervised executable could not be launched."""

    def __init__(self, executable_path: str, reason: str):
        self.executable_path = executable_path
        self.reason = reason
        super().__init__(f"Cannot launch {executable_path}: {reason}")


class StreamReadError(SupervisorError):
    """Reading the child's diagnostic stream failed mid-run."""
