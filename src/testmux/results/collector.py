"""Event listener that turns engine events into a run summary."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from testmux.engine.events import FILE_COMPLETE, FILES_SKIPPED, WORKER_ERROR
from testmux.engine.protocol import TEST_FAILED, TEST_PASSED, TEST_PENDING
from testmux.results.models import FileTiming, RunSummary, TestOutcome

if TYPE_CHECKING:
    from testmux.engine.events import EventEmitter
    from testmux.engine.protocol import Frame, RemoteException, RemoteTest
    from testmux.engine.worker import WorkerInterface
    from testmux.results.models import WorkerFailure


def _compute_file_percentiles(seconds: list[float]) -> tuple[float, float, float]:
    """Compute (p50, p95, max) of file durations.

    Args:
        seconds: File durations in seconds.

    Returns:
        Tuple of (p50, p95, max), all zero for an empty list.
    """
    if not seconds:
        return (0.0, 0.0, 0.0)

    arr = np.array(seconds, dtype=np.float64)
    p50, p95 = np.percentile(arr, [50.0, 95.0])
    return (float(p50), float(p95), float(np.max(arr)))


class ResultCollector:
    """Collects test outcomes, file timings, worker failures and skipped files.

    Registers itself on the emitter at construction, so it sees the same
    events any other reporter sees.
    """

    def __init__(self, emitter: EventEmitter) -> None:
        self._outcomes: list[TestOutcome] = []
        self._timings: list[FileTiming] = []
        self._failures: list[WorkerFailure] = []
        self._skipped: list[str] = []

        emitter.on(TEST_PASSED, self._on_passed)
        emitter.on(TEST_FAILED, self._on_failed)
        emitter.on(TEST_PENDING, self._on_pending)
        emitter.on(WORKER_ERROR, self._on_worker_error)
        emitter.on(FILE_COMPLETE, self._on_file_complete)
        emitter.on(FILES_SKIPPED, self._on_files_skipped)

    def _on_passed(self, test: RemoteTest, _frame: Frame) -> None:
        self._outcomes.append(TestOutcome(title=test.title, status="passed"))

    def _on_failed(
        self, test: RemoteTest, error: RemoteException, _frame: Frame
    ) -> None:
        self._outcomes.append(TestOutcome(title=test.title, status="failed", error=error))

    def _on_pending(self, test: RemoteTest, _frame: Frame) -> None:
        self._outcomes.append(TestOutcome(title=test.title, status="pending"))

    def _on_worker_error(self, failure: WorkerFailure) -> None:
        self._failures.append(failure)

    def _on_file_complete(
        self, _worker: WorkerInterface, path: str, seconds: float
    ) -> None:
        self._timings.append(FileTiming(path=path, seconds=seconds))

    def _on_files_skipped(self, paths: list[str]) -> None:
        self._skipped.extend(paths)

    @property
    def outcomes(self) -> list[TestOutcome]:
        """Outcomes recorded so far."""
        return list(self._outcomes)

    def summary(self, duration_seconds: float) -> RunSummary:
        """Build a RunSummary from everything collected.

        Args:
            duration_seconds: Wall-clock duration of the run.

        Returns:
            The aggregated summary.
        """
        p50, p95, slowest = _compute_file_percentiles([t.seconds for t in self._timings])
        counts = {"passed": 0, "failed": 0, "pending": 0}
        for outcome in self._outcomes:
            counts[outcome.status] += 1

        return RunSummary(
            duration_seconds=duration_seconds,
            files=len(self._timings),
            passed=counts["passed"],
            failed=counts["failed"],
            pending=counts["pending"],
            outcomes=list(self._outcomes),
            timings=list(self._timings),
            worker_failures=list(self._failures),
            skipped_files=list(self._skipped),
            file_seconds_p50=p50,
            file_seconds_p95=p95,
            file_seconds_max=slowest,
        )
