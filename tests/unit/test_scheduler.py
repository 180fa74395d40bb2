"""Tests for the select-loop scheduler, driven by pipe-backed fake workers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import pytest

from conftest import FakeWorker, passing_file_bytes, suite_frame
from testmux._internal.config import TestmuxConfig
from testmux._internal.errors import RunnerError
from testmux.engine.events import (
    FILE_COMPLETE,
    FILES_SKIPPED,
    LOAD_EVENT,
    WORKER_ERROR,
    EventEmitter,
)
from testmux.engine.pool import WorkerPool
from testmux.engine.protocol import SUITE_START, TEST_PASSED, encode_frame
from testmux.engine.scheduler import Scheduler, SchedulerState

if TYPE_CHECKING:
    from collections.abc import Callable

pytestmark = pytest.mark.timeout(10)


def _build(
    emitter: EventEmitter,
    make_worker: Callable[..., FakeWorker],
    paths: list[str],
    *,
    processes: int = 2,
    factory: Callable[[int], FakeWorker] | None = None,
    **scheduler_kwargs: object,
) -> tuple[WorkerPool, Scheduler]:
    pool = WorkerPool(
        TestmuxConfig(processes=processes),
        emitter,
        factory or (lambda worker_id: make_worker(worker_id)),
    )
    emitter.emit(LOAD_EVENT, paths)
    scheduler = Scheduler(pool, emitter, poll_timeout=0.05, **scheduler_kwargs)  # type: ignore[arg-type]
    return pool, scheduler


def _completed(emitter: EventEmitter) -> list[str]:
    paths: list[str] = []
    emitter.on(FILE_COMPLETE, lambda _worker, path, _seconds: paths.append(path))
    return paths


class TestDispatch:
    """Every pending file runs exactly once on an idle worker."""

    def test_three_files_two_workers(self, emitter, make_worker, fake_workers):
        completed = _completed(emitter)
        pool, scheduler = _build(emitter, make_worker, ["a", "b", "c"], processes=2)

        failures = scheduler.run()

        assert failures == []
        assert sorted(completed) == ["a", "b", "c"]
        assert sorted(p for w in fake_workers for p in w.run_calls) == ["a", "b", "c"]
        assert all(w.runs_while_running == 0 for w in fake_workers)
        assert not pool.get_pending()
        assert not pool.any_running()
        assert scheduler.state is SchedulerState.DONE

    def test_first_idle_worker_preferred(self, emitter, make_worker, fake_workers):
        """With one file, the first worker in attachment order takes it."""
        _, scheduler = _build(emitter, make_worker, ["only"], processes=3)

        scheduler.run()

        assert [w.run_calls for w in fake_workers] == [["only"], [], []]

    def test_test_events_forwarded(self, emitter, make_worker):
        titles: list[str] = []
        emitter.on(TEST_PASSED, lambda test, _frame: titles.append(test.title))
        _, scheduler = _build(emitter, make_worker, ["a", "b"])

        scheduler.run()

        assert sorted(titles) == ["a::test_one", "b::test_one"]

    def test_tiny_reads_reassemble_frames(self, emitter, make_worker):
        """Frames split across many reads decode the same."""
        completed = _completed(emitter)
        passed: list[str] = []
        emitter.on(TEST_PASSED, lambda test, _frame: passed.append(test.title))
        _, scheduler = _build(emitter, make_worker, ["a", "b", "c"], chunk_size=1)

        scheduler.run()

        assert sorted(completed) == ["a", "b", "c"]
        assert len(passed) == 3

    def test_frames_on_error_stream(self, emitter, make_worker):
        """The error stream is decoded like the output stream."""
        completed = _completed(emitter)

        def factory(worker_id: int) -> FakeWorker:
            return make_worker(
                worker_id, script=lambda w, path: w.write_err(passing_file_bytes(path))
            )

        _, scheduler = _build(emitter, make_worker, ["a"], processes=1, factory=factory)

        assert scheduler.run() == []
        assert completed == ["a"]

    def test_pre_attached_workers_used(self, emitter, make_worker, fake_workers):
        """A pool with attached workers is not refilled."""
        pool, scheduler = _build(emitter, make_worker, ["a", "b"], processes=4)
        manual = make_worker(7)
        pool.attach(manual)

        scheduler.run()

        assert fake_workers == [manual]
        assert manual.run_calls == ["a", "b"]

    def test_empty_queue_finishes_immediately(self, emitter, make_worker):
        pool, scheduler = _build(emitter, make_worker, [])

        assert scheduler.run() == []
        assert scheduler.state is SchedulerState.DONE

    def test_pool_closed_after_run(self, emitter, make_worker, fake_workers):
        _, scheduler = _build(emitter, make_worker, ["a"])

        scheduler.run()

        assert fake_workers
        assert all(w.closed for w in fake_workers)


class TestWorkerFailures:
    """Broken workers are isolated and recorded."""

    def test_corrupt_output_isolates_worker(self, emitter, make_worker):
        completed = _completed(emitter)
        errors: list[object] = []
        emitter.on(WORKER_ERROR, errors.append)

        def script(worker: FakeWorker, path: str) -> None:
            if worker.worker_id == 0:
                worker.write_out(b"this is not a frame\n")
            else:
                FakeWorker.pass_file(worker, path)

        def factory(worker_id: int) -> FakeWorker:
            return make_worker(worker_id, script=script)

        _, scheduler = _build(emitter, make_worker, ["a", "b", "c"], factory=factory)

        failures = scheduler.run()

        assert len(failures) == 1
        assert failures[0].kind == "protocol"
        assert failures[0].worker_id == 0
        assert failures[0].path == "a"
        assert errors == failures
        assert sorted(completed) == ["b", "c"]

    def test_failure_log_carries_worker_context(self, emitter, make_worker, caplog):
        """Failure records expose worker_id and path for structured logs."""
        logger = logging.getLogger("testmux.engine.scheduler")
        logger.addHandler(caplog.handler)

        def factory(worker_id: int) -> FakeWorker:
            return make_worker(worker_id, script=lambda w, _p: w.exit_process())

        _, scheduler = _build(emitter, make_worker, ["a"], processes=1, factory=factory)
        try:
            scheduler.run()
        finally:
            logger.removeHandler(caplog.handler)

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert errors
        assert {(r.worker_id, r.path) for r in errors} == {(0, "a")}  # type: ignore[attr-defined]

    def test_no_usable_workers_left(self, emitter, make_worker, fake_workers):
        def factory(worker_id: int) -> FakeWorker:
            return make_worker(worker_id, script=lambda w, _p: w.write_out(b"junk\n"))

        _, scheduler = _build(emitter, make_worker, ["a", "b"], processes=1, factory=factory)

        with pytest.raises(RunnerError, match="No usable workers"):
            scheduler.run()
        assert all(w.closed for w in fake_workers)

    def test_child_exit_recorded(self, emitter, make_worker):
        """EOF on a running worker records the file as unknown."""

        def factory(worker_id: int) -> FakeWorker:
            return make_worker(worker_id, script=lambda w, _p: w.exit_process())

        _, scheduler = _build(emitter, make_worker, ["a"], processes=1, factory=factory)

        failures = scheduler.run()

        assert [(f.kind, f.path) for f in failures] == [("exited", "a")]

    def test_timeout_aborts_worker(self, emitter, make_worker, fake_workers):
        """A file that never finishes is cut off after test_timeout."""

        def hang(worker: FakeWorker, path: str) -> None:
            worker.write_out(encode_frame(suite_frame(SUITE_START, path)))

        def factory(worker_id: int) -> FakeWorker:
            return make_worker(worker_id, script=hang)

        _, scheduler = _build(
            emitter,
            make_worker,
            ["slow"],
            processes=1,
            factory=factory,
            test_timeout=0.1,
        )

        failures = scheduler.run()

        assert [(f.kind, f.path) for f in failures] == [("timeout", "slow")]
        assert fake_workers[0].aborted

    def test_failed_dispatch_requeues_file(self, emitter, make_worker):
        """A worker that cannot accept a path gives it back to the queue."""
        completed = _completed(emitter)

        def factory(worker_id: int) -> FakeWorker:
            return make_worker(worker_id, fail_run=worker_id == 0)

        _, scheduler = _build(emitter, make_worker, ["a", "b"], factory=factory)

        failures = scheduler.run()

        assert [(f.kind, f.worker_id, f.path) for f in failures] == [("dispatch", 0, None)]
        assert sorted(completed) == ["a", "b"]

    def test_frames_before_corrupt_line_are_kept(self, emitter, make_worker):
        """A whole file followed by garbage in one read still counts as completed."""
        completed = _completed(emitter)
        passed: list[str] = []
        emitter.on(TEST_PASSED, lambda test, _frame: passed.append(test.title))

        def factory(worker_id: int) -> FakeWorker:
            return make_worker(
                worker_id,
                script=lambda w, p: w.write_out(passing_file_bytes(p) + b"garbage\n"),
            )

        _, scheduler = _build(emitter, make_worker, ["a"], processes=1, factory=factory)

        failures = scheduler.run()

        assert completed == ["a"]
        assert passed == ["a::test_one"]
        assert [(f.kind, f.path) for f in failures] == [("protocol", None)]


class TestStop:
    """Stop requests drop pending work but let in-flight files finish."""

    def test_request_stop_after_first_file(self, emitter, make_worker, fake_workers):
        _, scheduler = _build(emitter, make_worker, ["a", "b", "c"], processes=1)
        emitter.once(FILE_COMPLETE, lambda *_args: scheduler.request_stop())
        skipped: list[list[str]] = []
        emitter.on(FILES_SKIPPED, skipped.append)

        scheduler.run()

        assert fake_workers[0].run_calls == ["a"]
        assert scheduler.state is SchedulerState.DONE
        assert scheduler.skipped == ["b", "c"]
        assert skipped == [["b", "c"]]
