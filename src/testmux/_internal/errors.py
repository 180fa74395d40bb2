"""Custom exception hierarchy for testmux."""

from __future__ import annotations


class TestmuxError(Exception):
    """Base exception for all testmux errors.

    All custom exceptions in testmux inherit from this class, making it
    easy to catch any testmux-specific error with a single except clause.
    """


class ConfigError(TestmuxError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Required environment variable has an invalid value.
        - Configuration value is out of acceptable range.
    """


class DiscoveryError(TestmuxError):
    """Raised when a requested test path cannot be resolved."""


class ProtocolError(TestmuxError):
    """Raised when a frame read from a worker cannot be decoded.

    Once a frame fails to decode the stream's frame boundaries can no
    longer be trusted, so the owning worker must not be used again.
    """


class WorkerError(TestmuxError):
    """Raised when a worker is misused or its process cannot be reached.

    Examples:
        - ``run()`` called on a worker that is already running a file.
        - The worker's input pipe is closed when sending a path.
    """


class WorkerStartError(WorkerError):
    """Raised when a worker process fails to launch or is started twice."""


class RunnerError(TestmuxError):
    """Raised when the run itself fails, as opposed to the tests in it.

    Examples:
        - No worker process could be started.
        - Every worker was aborted while files were still pending.
    """
