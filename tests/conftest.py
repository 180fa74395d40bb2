"""Shared test fixtures for the testmux test suite."""

from __future__ import annotations

import io
import os
import textwrap
import time
from typing import TYPE_CHECKING

import pytest

from testmux._internal.config import TestmuxConfig
from testmux._internal.errors import WorkerError, WorkerStartError
from testmux.engine.events import EventEmitter
from testmux.engine.protocol import (
    SUITE_END,
    SUITE_START,
    TEST_PASSED,
    Frame,
    FrameKind,
    encode_frame,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path


# =============================================================================
# Pytest configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-apply markers based on test directory structure."""
    for item in items:
        test_path = str(item.fspath)
        if "/unit/" in test_path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)
        elif "/e2e/" in test_path:
            item.add_marker(pytest.mark.e2e)


# =============================================================================
# Frame helpers
# =============================================================================


def suite_frame(event: str, path: str) -> Frame:
    """Build a root-suite frame for ``path``."""
    return Frame(kind=FrameKind.SUITE, event=event, description=path, title=path)


def passing_file_bytes(path: str) -> bytes:
    """Encoded frames for a file with a single passing test."""
    test = Frame(
        kind=FrameKind.TEST,
        event=TEST_PASSED,
        description="test_one",
        title=f"{path}::test_one",
    )
    return b"".join(
        encode_frame(f)
        for f in (suite_frame(SUITE_START, path), test, suite_frame(SUITE_END, path))
    )


# =============================================================================
# Pipe-backed fake worker
# =============================================================================


class FakeWorker:
    """In-process worker whose output and error streams are real pipes.

    ``run(path)`` calls ``script(worker, path)``, which writes whatever the
    test wants the scheduler to read. The default script writes a single
    passing file.
    """

    def __init__(
        self,
        worker_id: int = 0,
        *,
        started: bool = False,
        fail_start: bool = False,
        fail_run: bool = False,
        script: Callable[[FakeWorker, str], None] | None = None,
    ) -> None:
        self.worker_id = worker_id
        self.current_path: str | None = None
        self.run_started_at: float | None = None
        self.aborted = False
        self.start_calls = 0
        self.run_calls: list[str] = []
        self.runs_while_running = 0
        self.closed = False
        self.abort_reasons: list[str] = []
        self._started = started
        self._fail_start = fail_start
        self._fail_run = fail_run
        self._running = False
        self._script = script or FakeWorker.pass_file
        self._input = io.BytesIO()

        out_r, self._out_w = os.pipe()
        err_r, self._err_w = os.pipe()
        os.set_blocking(out_r, False)
        os.set_blocking(err_r, False)
        self._out = os.fdopen(out_r, "rb", buffering=0)
        self._err = os.fdopen(err_r, "rb", buffering=0)

    @staticmethod
    def pass_file(worker: FakeWorker, path: str) -> None:
        worker.write_out(passing_file_bytes(path))

    def write_out(self, data: bytes) -> None:
        os.write(self._out_w, data)

    def write_err(self, data: bytes) -> None:
        os.write(self._err_w, data)

    def exit_process(self) -> None:
        """Close the write ends, as a dying child would."""
        for attr in ("_out_w", "_err_w"):
            fd = getattr(self, attr)
            if fd is not None:
                os.close(fd)
                setattr(self, attr, None)

    def force_running(self, running: bool) -> None:
        self._running = running

    # -- WorkerInterface ---------------------------------------------------

    def start(self) -> None:
        self.start_calls += 1
        if self._fail_start:
            msg = f"fake worker {self.worker_id} refused to start"
            raise WorkerStartError(msg)
        self._started = True

    def get_input_stream(self) -> io.BytesIO:
        return self._input

    def get_output_stream(self) -> io.FileIO:
        return self._out

    def get_error_stream(self) -> io.FileIO:
        return self._err

    def run(self, path: str) -> None:
        if self.aborted:
            msg = f"fake worker {self.worker_id} is aborted"
            raise WorkerError(msg)
        if self._fail_run:
            msg = f"fake worker {self.worker_id} input pipe is closed"
            raise WorkerError(msg)
        if self._running:
            self.runs_while_running += 1
        self.run_calls.append(path)
        self._input.write(path.encode() + b"\n")
        self._running = True
        self.current_path = path
        self.run_started_at = time.monotonic()
        self._script(self, path)

    def is_running(self) -> bool:
        return self._running

    def is_started(self) -> bool:
        return self._started

    def complete(self) -> None:
        self._running = False
        self.run_started_at = None

    def abort(self, reason: str) -> None:
        self.aborted = True
        self._running = False
        self.abort_reasons.append(reason)

    def close(self, timeout: float = 5.0) -> None:
        if self.closed:
            return
        self.closed = True
        self.exit_process()
        self._out.close()
        self._err.close()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def fake_workers() -> Iterator[list[FakeWorker]]:
    """Registry of every FakeWorker a test creates; closed on teardown."""
    workers: list[FakeWorker] = []
    yield workers
    for worker in workers:
        worker.close()


@pytest.fixture
def make_worker(fake_workers: list[FakeWorker]) -> Callable[..., FakeWorker]:
    """Factory fixture building tracked FakeWorkers."""

    def _make(worker_id: int = 0, **kwargs: object) -> FakeWorker:
        worker = FakeWorker(worker_id, **kwargs)  # type: ignore[arg-type]
        fake_workers.append(worker)
        return worker

    return _make


@pytest.fixture
def fast_config() -> TestmuxConfig:
    """Two processes and a short poll timeout."""
    return TestmuxConfig(processes=2, poll_timeout=0.05)


@pytest.fixture
def write_test_file(tmp_path: Path) -> Callable[[str, str], str]:
    """Write a dedented test file under tmp_path and return its path."""

    def _write(name: str, code: str) -> str:
        path = tmp_path / name
        path.write_text(textwrap.dedent(code))
        return str(path)

    return _write
