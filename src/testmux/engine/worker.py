"""Worker processes that execute one test file at a time."""

from __future__ import annotations

import contextlib
import os
import subprocess
import sys
import time
from typing import IO, TYPE_CHECKING, Protocol, runtime_checkable

from testmux._internal.errors import WorkerError, WorkerStartError
from testmux._internal.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from testmux._internal.config import TestmuxConfig

logger = get_logger("engine.worker")

DEFAULT_COMMAND: tuple[str, ...] = (sys.executable, "-m", "testmux.child")


@runtime_checkable
class WorkerInterface(Protocol):
    """Contract between the pool/scheduler and a single worker.

    ``run()`` sends a file path to the worker's child. The child answers on
    its output (or error) stream with frames ending in the ``suite.end``
    frame of that file, at which point the scheduler calls ``complete()``.

    Attributes:
        worker_id: Identifier used in logs and failure records.
        current_path: File most recently passed to ``run()``.
        run_started_at: Monotonic time of the last ``run()`` call.
        aborted: True once the worker must not be given more work.
    """

    worker_id: int
    current_path: str | None
    run_started_at: float | None
    aborted: bool

    def start(self) -> None:
        """Launch the child process. Must be called at most once."""

    def get_input_stream(self) -> IO[bytes]:
        """Return the stream the child reads instructions from."""

    def get_output_stream(self) -> IO[bytes]:
        """Return the child's output stream, in non-blocking mode."""

    def get_error_stream(self) -> IO[bytes]:
        """Return the child's error stream, in non-blocking mode."""

    def run(self, path: str) -> None:
        """Instruct the child to execute the test file at ``path``."""

    def is_running(self) -> bool:
        """Return True while a file is assigned and not yet completed."""

    def is_started(self) -> bool:
        """Return True once the child process has been launched."""

    def complete(self) -> None:
        """Mark the current file finished so the worker can be reused."""

    def abort(self, reason: str) -> None:
        """Kill the child and mark the worker unusable."""

    def close(self, timeout: float = 5.0) -> None:
        """Shut the child down and release its streams."""


class ProcessWorker:
    """Worker backed by a ``subprocess.Popen`` child.

    The child reads one path per line on stdin and writes protocol frames
    to stdout. Closing stdin makes it exit. It runs in its own session, so
    a Ctrl-C at the terminal reaches only the parent, which lets in-flight
    files finish.

    Attributes:
        worker_id: Identifier used in logs and failure records.
        command: argv used to launch the child.
    """

    def __init__(self, worker_id: int, command: Sequence[str] = DEFAULT_COMMAND) -> None:
        """Initialize the worker without launching anything.

        Args:
            worker_id: Identifier used in logs and failure records.
            command: argv used to launch the child.
        """
        self.worker_id = worker_id
        self.command = tuple(command)
        self.current_path: str | None = None
        self.run_started_at: float | None = None
        self.aborted = False
        self._process: subprocess.Popen[bytes] | None = None
        self._running = False

    def __repr__(self) -> str:
        pid = self._process.pid if self._process else None
        return f"ProcessWorker(worker_id={self.worker_id}, pid={pid})"

    @property
    def pid(self) -> int | None:
        """Return the child's pid, or None before ``start()``."""
        return self._process.pid if self._process else None

    def start(self) -> None:
        """Launch the child process.

        Raises:
            WorkerStartError: If already started or the launch fails.
        """
        if self._process is not None:
            msg = f"Worker {self.worker_id} is already started"
            raise WorkerStartError(msg)

        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                start_new_session=True,
            )
        except OSError as exc:
            msg = f"Worker {self.worker_id} failed to launch {self.command[0]!r}: {exc}"
            raise WorkerStartError(msg) from exc

        os.set_blocking(self.get_output_stream().fileno(), False)
        os.set_blocking(self.get_error_stream().fileno(), False)
        logger.debug(
            "Started worker %d: pid=%d",
            self.worker_id,
            self._process.pid,
            extra={"worker_id": self.worker_id},
        )

    def _require_process(self) -> subprocess.Popen[bytes]:
        if self._process is None:
            msg = f"Worker {self.worker_id} has not been started"
            raise WorkerError(msg)
        return self._process

    def get_input_stream(self) -> IO[bytes]:
        stream = self._require_process().stdin
        assert stream is not None
        return stream

    def get_output_stream(self) -> IO[bytes]:
        stream = self._require_process().stdout
        assert stream is not None
        return stream

    def get_error_stream(self) -> IO[bytes]:
        stream = self._require_process().stderr
        assert stream is not None
        return stream

    def run(self, path: str) -> None:
        """Send ``path`` to the child and mark the worker running.

        Args:
            path: Test file the child should execute.

        Raises:
            WorkerError: If the worker is not idle or the pipe is closed.
        """
        if self.aborted:
            msg = f"Worker {self.worker_id} is aborted"
            raise WorkerError(msg)
        if self._running:
            msg = f"Worker {self.worker_id} is already running {self.current_path}"
            raise WorkerError(msg)

        stream = self.get_input_stream()
        try:
            stream.write(path.encode("utf-8") + b"\n")
            stream.flush()
        except (BrokenPipeError, ValueError) as exc:
            msg = f"Worker {self.worker_id} cannot accept {path}: {exc}"
            raise WorkerError(msg) from exc

        self._running = True
        self.current_path = path
        self.run_started_at = time.monotonic()
        logger.debug(
            "Worker %d running %s",
            self.worker_id,
            path,
            extra={"worker_id": self.worker_id, "path": path},
        )

    def is_running(self) -> bool:
        return self._running

    def is_started(self) -> bool:
        return self._process is not None

    def complete(self) -> None:
        self._running = False
        self.run_started_at = None

    def abort(self, reason: str) -> None:
        """Kill the child and mark the worker unusable.

        Args:
            reason: Human-readable cause, logged at WARNING.
        """
        logger.warning(
            "Aborting worker %d: %s",
            self.worker_id,
            reason,
            extra={
                "worker_id": self.worker_id,
                "path": self.current_path if self._running else None,
            },
        )
        self.aborted = True
        self._running = False
        if self._process is not None and self._process.poll() is None:
            self._process.kill()

    def close(self, timeout: float = 5.0) -> None:
        """Close stdin, wait for the child, and close its streams.

        The child exits on stdin EOF. If it has not exited within
        ``timeout`` seconds it is killed.

        Args:
            timeout: Seconds to wait for a clean exit.
        """
        process = self._process
        if process is None:
            return

        if process.stdin is not None:
            with contextlib.suppress(BrokenPipeError, OSError):
                process.stdin.close()

        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(
                "Worker %d did not exit in time, killing pid=%d",
                self.worker_id,
                process.pid,
            )
            process.kill()
            process.wait(timeout=2.0)

        for stream in (process.stdout, process.stderr):
            if stream is not None:
                stream.close()

        logger.debug(
            "Worker %d exited with code %s", self.worker_id, process.returncode
        )


def process_worker_factory(config: TestmuxConfig) -> Callable[[int], ProcessWorker]:
    """Return a factory that builds ProcessWorkers for ``config``.

    Args:
        config: Supplies the worker command, if one is configured.

    Returns:
        Callable taking a worker id and returning an unstarted worker.
    """
    command = config.worker_command or DEFAULT_COMMAND

    def _factory(worker_id: int) -> ProcessWorker:
        return ProcessWorker(worker_id, command)

    return _factory
