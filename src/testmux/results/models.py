"""Result dataclasses for testmux runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from testmux.engine.protocol import RemoteException

FailureKind = Literal["start", "protocol", "exited", "timeout", "dispatch"]


@dataclass(frozen=True)
class WorkerFailure:
    """A worker-level problem that is not a test failure.

    Attributes:
        worker_id: Worker the problem happened on.
        kind: What went wrong: launch failure, undecodable output,
            unexpected exit, timeout, or a failed dispatch.
        reason: Human-readable description.
        path: File that was in flight, whose outcome is unknown.
    """

    worker_id: int
    kind: FailureKind
    reason: str
    path: str | None = None


@dataclass(frozen=True)
class TestOutcome:
    """Final outcome of a single test.

    Attributes:
        title: Full test title.
        status: One of ``"passed"``, ``"failed"``, ``"pending"``.
        error: Exception details for failed tests.
    """

    __test__ = False

    title: str
    status: Literal["passed", "failed", "pending"]
    error: RemoteException | None = None


@dataclass(frozen=True)
class FileTiming:
    """Wall-clock time one file spent on a worker."""

    path: str
    seconds: float


@dataclass
class RunSummary:
    """Aggregated result of a run.

    Attributes:
        duration_seconds: Wall-clock duration of the whole run.
        files: Number of files that completed on a worker.
        passed: Number of passed tests.
        failed: Number of failed tests.
        pending: Number of pending tests.
        outcomes: Every test outcome, in the order received.
        timings: Per-file durations, in completion order.
        worker_failures: Infrastructure problems seen during the run.
        skipped_files: Queued files a stop request kept from running.
        file_seconds_p50: Median file duration.
        file_seconds_p95: 95th percentile file duration.
        file_seconds_max: Slowest file duration.
    """

    duration_seconds: float = 0.0
    files: int = 0
    passed: int = 0
    failed: int = 0
    pending: int = 0
    outcomes: list[TestOutcome] = field(default_factory=list)
    timings: list[FileTiming] = field(default_factory=list)
    worker_failures: list[WorkerFailure] = field(default_factory=list)
    skipped_files: list[str] = field(default_factory=list)
    file_seconds_p50: float = 0.0
    file_seconds_p95: float = 0.0
    file_seconds_max: float = 0.0

    @property
    def total(self) -> int:
        """Total number of tests that reported an outcome."""
        return self.passed + self.failed + self.pending

    @property
    def failures(self) -> list[TestOutcome]:
        """Outcomes of the failed tests."""
        return [o for o in self.outcomes if o.status == "failed"]

    @property
    def exit_code(self) -> int:
        """Process exit code for this run.

        2 if the runner infrastructure failed or the run was stopped
        before every file ran, 1 if any test failed, 0 otherwise.
        """
        if self.worker_failures or self.skipped_files:
            return 2
        if self.failed:
            return 1
        return 0
