"""Configuration loading for testmux."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from testmux._internal.errors import ConfigError


def _default_processes() -> int:
    return os.cpu_count() or 1


@dataclass(frozen=True)
class TestmuxConfig:
    """Global testmux configuration.

    Attributes:
        processes: Number of worker processes in the pool.
        poll_timeout: Seconds a single readiness poll may block before the
            scheduler re-checks timeouts and stop requests.
        test_timeout: Seconds a worker may spend on one file before it is
            aborted. None disables the limit.
        chunk_size: Maximum bytes read from a ready stream per poll.
        worker_command: Command used to launch a worker child. Empty means
            ``python -m testmux.child`` with the current interpreter.
    """

    __test__ = False

    processes: int = field(default_factory=_default_processes)
    poll_timeout: float = 0.5
    test_timeout: float | None = None
    chunk_size: int = 4096
    worker_command: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.processes < 1:
            msg = f"processes must be >= 1, got: {self.processes}"
            raise ConfigError(msg)
        if self.chunk_size < 1:
            msg = f"chunk_size must be >= 1, got: {self.chunk_size}"
            raise ConfigError(msg)
        if self.poll_timeout <= 0:
            msg = f"poll_timeout must be positive, got: {self.poll_timeout}"
            raise ConfigError(msg)
        if self.test_timeout is not None and self.test_timeout <= 0:
            msg = f"test_timeout must be positive, got: {self.test_timeout}"
            raise ConfigError(msg)


def _read_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got: {raw!r}"
        raise ConfigError(msg) from None

    if value < 1:
        msg = f"{name} must be >= 1, got: {value}"
        raise ConfigError(msg)
    return value


def _read_float(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        msg = f"{name} must be a number, got: {raw!r}"
        raise ConfigError(msg) from None

    if value <= 0:
        msg = f"{name} must be positive, got: {value}"
        raise ConfigError(msg)
    return value


def load_config() -> TestmuxConfig:
    """Load configuration from environment variables with defaults.

    Environment variables:
        TESTMUX_PROCESSES: Worker process count (default: CPU count).
        TESTMUX_POLL_TIMEOUT: Readiness poll timeout in seconds (default: 0.5).
        TESTMUX_TEST_TIMEOUT: Per-file timeout in seconds (default: none).
        TESTMUX_CHUNK_SIZE: Bytes read per ready stream (default: 4096).

    Returns:
        Populated TestmuxConfig instance.

    Raises:
        ConfigError: If an environment variable has an invalid value.
    """
    processes = _read_int("TESTMUX_PROCESSES", _default_processes())
    chunk_size = _read_int("TESTMUX_CHUNK_SIZE", 4096)
    poll_timeout = _read_float(
        "TESTMUX_POLL_TIMEOUT", os.environ.get("TESTMUX_POLL_TIMEOUT", "0.5")
    )

    test_timeout: float | None = None
    timeout_str = os.environ.get("TESTMUX_TEST_TIMEOUT", "").strip()
    if timeout_str:
        test_timeout = _read_float("TESTMUX_TEST_TIMEOUT", timeout_str)

    return TestmuxConfig(
        processes=processes,
        poll_timeout=poll_timeout,
        test_timeout=test_timeout,
        chunk_size=chunk_size,
    )
