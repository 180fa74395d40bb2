"""Bounded pool of worker processes and the queue of files waiting for them."""

from __future__ import annotations

from collections import deque
from typing import IO, TYPE_CHECKING

from testmux._internal.errors import RunnerError, WorkerStartError
from testmux._internal.logging import get_logger
from testmux.engine.events import LOAD_EVENT, WORKER_ERROR
from testmux.results.models import WorkerFailure

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from testmux._internal.config import TestmuxConfig
    from testmux.engine.events import EventEmitter
    from testmux.engine.worker import WorkerInterface

logger = get_logger("engine.pool")


class WorkerPool:
    """Owns up to ``capacity`` workers and the pending file queue.

    Workers are kept in attachment order, which doubles as the priority
    order among idle workers. The pool listens for :data:`LOAD_EVENT` on
    the emitter and replaces its pending queue with the paths it carries.

    Attributes:
        capacity: Maximum number of attached workers.
    """

    def __init__(
        self,
        config: TestmuxConfig,
        emitter: EventEmitter,
        factory: Callable[[int], WorkerInterface],
    ) -> None:
        """Initialize an empty pool.

        Args:
            config: Supplies the process count used as capacity.
            emitter: Event hub for work intake and worker errors.
            factory: Builds an unstarted worker from a worker id.
        """
        self.capacity = config.processes
        self._emitter = emitter
        self._factory = factory
        self._workers: list[WorkerInterface] = []
        self._pending: deque[str] = deque()
        self._read_streams: list[IO[bytes]] = []
        self._owners: dict[int, WorkerInterface] = {}

        emitter.on(LOAD_EVENT, self.set_pending)

    def attach(self, worker: WorkerInterface) -> bool:
        """Add a worker to the pool, starting it if needed.

        Args:
            worker: The worker to attach.

        Returns:
            False if the pool is already at capacity, True otherwise.

        Raises:
            WorkerStartError: If the worker has to be started and fails.
        """
        if len(self._workers) >= self.capacity:
            return False

        if not worker.is_started():
            worker.start()

        self._workers.append(worker)
        for stream in (worker.get_output_stream(), worker.get_error_stream()):
            self._read_streams.append(stream)
            self._owners[id(stream)] = worker
        return True

    def start_workers(self) -> None:
        """Fill the pool with ``capacity`` new workers.

        Does nothing if any worker is already attached. Workers that fail
        to start are reported as :data:`WORKER_ERROR` and left out, so the
        run continues with fewer processes.

        Raises:
            RunnerError: If no worker could be started.
        """
        if self._workers:
            return

        for worker_id in range(self.capacity):
            worker = self._factory(worker_id)
            try:
                self.attach(worker)
            except WorkerStartError as exc:
                logger.warning("Worker %d failed to start: %s", worker_id, exc)
                self._emitter.emit(
                    WORKER_ERROR,
                    WorkerFailure(worker_id=worker_id, kind="start", reason=str(exc)),
                )

        if not self._workers:
            msg = f"None of the {self.capacity} worker processes could be started"
            raise RunnerError(msg)

        logger.info("Started %d worker processes", len(self._workers))

    def get_workers(self) -> list[WorkerInterface]:
        """Return the attached workers in attachment order."""
        return list(self._workers)

    def get_available_worker(self) -> WorkerInterface | None:
        """Return the first idle, usable worker in attachment order."""
        for worker in self._workers:
            if not worker.is_running() and not worker.aborted:
                return worker
        return None

    def usable_workers(self) -> list[WorkerInterface]:
        """Return the workers that have not been aborted."""
        return [w for w in self._workers if not w.aborted]

    def any_running(self) -> bool:
        """Return True if any worker has a file in flight."""
        return any(w.is_running() for w in self._workers)

    def get_read_streams(self) -> list[IO[bytes]]:
        """Return every live worker's output and error streams."""
        return list(self._read_streams)

    def owner_of(self, stream: IO[bytes]) -> WorkerInterface:
        """Return the worker that ``stream`` belongs to."""
        return self._owners[id(stream)]

    def release_streams(self, worker: WorkerInterface) -> None:
        """Stop polling ``worker``'s streams."""
        self._read_streams = [
            s for s in self._read_streams if self._owners.get(id(s)) is not worker
        ]

    def set_pending(self, paths: Iterable[str]) -> None:
        """Replace the pending queue with ``paths``, keeping their order."""
        self._pending = deque(paths)
        logger.debug("Queued %d test files", len(self._pending))

    def get_pending(self) -> deque[str]:
        """Return the pending queue itself, for the scheduler to pop from."""
        return self._pending

    def close(self, timeout: float = 5.0) -> None:
        """Shut down every attached worker.

        Failures are logged so one stuck worker does not leave the others
        running.

        Args:
            timeout: Seconds each worker gets to exit cleanly.
        """
        for worker in self._workers:
            try:
                worker.close(timeout)
            except OSError:
                logger.warning(
                    "Failed to close worker %d", worker.worker_id, exc_info=True
                )
        self._read_streams = []
