"""Select loop that dispatches test files to workers and decodes their output."""

from __future__ import annotations

import select
import time
from enum import Enum, auto
from typing import IO, TYPE_CHECKING

from testmux._internal.errors import ProtocolError, RunnerError, WorkerError
from testmux._internal.logging import get_logger
from testmux.engine.events import FILE_COMPLETE, FILES_SKIPPED, WORKER_ERROR
from testmux.engine.protocol import FrameDecoder, emit_frame, is_terminal
from testmux.engine.streams import read_available
from testmux.results.models import WorkerFailure

if TYPE_CHECKING:
    from testmux.engine.events import EventEmitter
    from testmux.engine.pool import WorkerPool
    from testmux.engine.worker import WorkerInterface
    from testmux.results.models import FailureKind

logger = get_logger("engine.scheduler")


class SchedulerState(Enum):
    """Phase of a scheduler run."""

    STARTING = auto()
    DISPATCHING = auto()
    DRAINING = auto()
    DONE = auto()


class Scheduler:
    """Drives a WorkerPool until every pending file has been executed.

    Runs on a single thread. The only blocking call is the readiness poll
    over the pool's read streams, bounded by ``poll_timeout`` so timeouts
    and stop requests are re-checked regularly. Frames are decoded per
    stream in arrival order; no ordering is imposed across workers.

    A worker whose output cannot be decoded, whose child exits, or whose
    file exceeds ``test_timeout`` is aborted and recorded as a
    WorkerFailure. The run goes on with the remaining workers.
    """

    def __init__(
        self,
        pool: WorkerPool,
        emitter: EventEmitter,
        *,
        poll_timeout: float = 0.5,
        test_timeout: float | None = None,
        chunk_size: int = 4096,
    ) -> None:
        """Initialize the scheduler.

        Args:
            pool: Pool holding the workers and pending queue.
            emitter: Receives every decoded frame event plus runner events.
            poll_timeout: Maximum seconds one readiness poll may block.
            test_timeout: Seconds a file may run before its worker is
                aborted. None disables the limit.
            chunk_size: Maximum bytes read from a ready stream at once.
        """
        self._pool = pool
        self._emitter = emitter
        self._poll_timeout = poll_timeout
        self._test_timeout = test_timeout
        self._chunk_size = chunk_size
        self._decoders: dict[int, FrameDecoder] = {}
        self._failures: list[WorkerFailure] = []
        self._skipped: list[str] = []
        self._state = SchedulerState.STARTING
        self._stop_requested = False

    @property
    def state(self) -> SchedulerState:
        """Current phase of the run."""
        return self._state

    @property
    def failures(self) -> list[WorkerFailure]:
        """Worker failures recorded so far."""
        return list(self._failures)

    @property
    def skipped(self) -> list[str]:
        """Files dropped from the queue by a stop request, never run."""
        return list(self._skipped)

    def request_stop(self) -> None:
        """Stop dispatching new files.

        Files already in flight still finish. The rest are dropped from the
        queue and recorded in :attr:`skipped`.
        """
        self._stop_requested = True

    def run(self) -> list[WorkerFailure]:
        """Execute every pending file and tear the pool down.

        Returns:
            Worker failures recorded during the run.

        Raises:
            RunnerError: If files are still pending but no usable worker
                remains.
        """
        self._state = SchedulerState.STARTING
        try:
            if not self._pool.get_workers():
                self._pool.start_workers()

            pending = self._pool.get_pending()
            while pending or self._pool.any_running():
                if self._stop_requested and pending:
                    self._skip_pending()

                self._state = (
                    SchedulerState.DISPATCHING if pending else SchedulerState.DRAINING
                )
                self._dispatch()

                if pending and not self._pool.usable_workers():
                    msg = f"No usable workers left with {len(pending)} files pending"
                    raise RunnerError(msg)

                if self._pool.any_running():
                    self._poll()
                    self._check_timeouts()

            self._state = SchedulerState.DONE
        finally:
            self._pool.close()

        return list(self._failures)

    def _skip_pending(self) -> None:
        pending = self._pool.get_pending()
        skipped = list(pending)
        pending.clear()
        self._skipped.extend(skipped)
        logger.warning("Stop requested, %d pending files were not run", len(skipped))
        self._emitter.emit(FILES_SKIPPED, skipped)

    def _dispatch(self) -> None:
        pending = self._pool.get_pending()
        while pending:
            worker = self._pool.get_available_worker()
            if worker is None:
                return
            path = pending.popleft()
            try:
                worker.run(path)
            except WorkerError as exc:
                pending.appendleft(path)
                self._fail_worker(worker, "dispatch", str(exc))

    def _poll(self) -> None:
        streams = self._pool.get_read_streams()
        if not streams:
            return

        ready, _, _ = select.select(streams, [], [], self._poll_timeout)
        for stream in ready:
            worker = self._pool.owner_of(stream)
            if worker.aborted:
                continue
            self._read(worker, stream)

    def _read(self, worker: WorkerInterface, stream: IO[bytes]) -> None:
        data = read_available(stream, self._chunk_size)
        if data is None:
            return
        if not data:
            self._fail_worker(worker, "exited", "worker process closed its output")
            return

        decoder = self._decoders.setdefault(id(stream), FrameDecoder())
        try:
            for frame in decoder.decode(data):
                emit_frame(self._emitter, frame)
                if worker.is_running() and is_terminal(frame, worker.current_path):
                    self._complete(worker)
        except ProtocolError as exc:
            self._fail_worker(worker, "protocol", str(exc))

    def _complete(self, worker: WorkerInterface) -> None:
        path = worker.current_path
        started = worker.run_started_at
        seconds = time.monotonic() - started if started is not None else 0.0
        worker.complete()
        logger.debug(
            "Worker %d finished %s in %.3fs",
            worker.worker_id,
            path,
            seconds,
            extra={"worker_id": worker.worker_id, "path": path},
        )
        self._emitter.emit(FILE_COMPLETE, worker, path, seconds)

    def _check_timeouts(self) -> None:
        if self._test_timeout is None:
            return

        now = time.monotonic()
        for worker in self._pool.get_workers():
            started = worker.run_started_at
            if (
                worker.is_running()
                and started is not None
                and now - started > self._test_timeout
            ):
                self._fail_worker(
                    worker,
                    "timeout",
                    f"{worker.current_path} exceeded {self._test_timeout:.1f}s",
                )

    def _fail_worker(self, worker: WorkerInterface, kind: FailureKind, reason: str) -> None:
        path = worker.current_path if worker.is_running() else None
        worker.abort(reason)
        self._pool.release_streams(worker)

        failure = WorkerFailure(
            worker_id=worker.worker_id, kind=kind, reason=reason, path=path
        )
        self._failures.append(failure)
        if path is not None:
            logger.error(
                "Worker %d failed (%s) while running %s; outcome unknown",
                worker.worker_id,
                kind,
                path,
                extra={"worker_id": worker.worker_id, "path": path},
            )
        else:
            logger.error(
                "Worker %d failed (%s): %s",
                worker.worker_id,
                kind,
                reason,
                extra={"worker_id": worker.worker_id},
            )
        self._emitter.emit(WORKER_ERROR, failure)
