"""Top-level test run orchestrator."""

from __future__ import annotations

import signal
import time
from typing import TYPE_CHECKING

from testmux._internal.config import TestmuxConfig
from testmux._internal.errors import RunnerError
from testmux._internal.logging import get_logger, setup_logging
from testmux.engine.events import LOAD_EVENT, RUNNER_END, RUNNER_START, EventEmitter
from testmux.engine.pool import WorkerPool
from testmux.engine.scheduler import Scheduler
from testmux.engine.worker import process_worker_factory
from testmux.results.collector import ResultCollector

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from testmux.engine.worker import WorkerInterface
    from testmux.results.models import RunSummary

logger = get_logger("engine.runner")


class TestRunner:
    """Runs a list of test files across a pool of worker processes.

    Wires together the worker pool, the select-loop scheduler and a
    result collector. Reporters subscribe to ``emitter`` before calling
    ``run()`` to see the same events in real time.

    Attributes:
        paths: Test files to execute, in dispatch order.
        config: Effective configuration.
        emitter: Event hub shared by the engine and reporters.
    """

    __test__ = False

    def __init__(
        self,
        paths: Sequence[str],
        *,
        config: TestmuxConfig | None = None,
        emitter: EventEmitter | None = None,
        worker_factory: Callable[[int], WorkerInterface] | None = None,
        log_level: int = 20,
        json_logs: bool = False,
    ) -> None:
        """Initialize the runner.

        Args:
            paths: Test files to execute.
            config: Configuration; defaults to ``TestmuxConfig()``.
            emitter: Event hub; a new one is created if omitted.
            worker_factory: Builds workers by id. Defaults to
                subprocess-backed workers using ``config.worker_command``.
            log_level: Logging level.
            json_logs: Emit structured JSON logs.
        """
        self.paths = list(paths)
        self.config = config or TestmuxConfig()
        self.emitter = emitter or EventEmitter()
        self._worker_factory = worker_factory or process_worker_factory(self.config)
        self._log_level = log_level
        self._json_logs = json_logs
        self._scheduler: Scheduler | None = None

    def stop(self) -> None:
        """Ask a running scheduler to stop dispatching new files."""
        if self._scheduler is not None:
            self._scheduler.request_stop()

    def run(self) -> RunSummary:
        """Execute every file and return the aggregated results.

        Blocks until all files have run or a stop signal (SIGINT/SIGTERM)
        has been received and in-flight files have drained.

        Returns:
            RunSummary with test outcomes, timings and worker failures.

        Raises:
            RunnerError: If the run could not be carried out.
        """
        setup_logging(level=self._log_level, json_format=self._json_logs)

        collector = ResultCollector(self.emitter)
        start_time = time.monotonic()
        self.emitter.emit(RUNNER_START, list(self.paths))

        if not self.paths:
            logger.info("No test files to run")
            summary = collector.summary(duration_seconds=0.0)
            self.emitter.emit(RUNNER_END, summary)
            return summary

        pool = WorkerPool(self.config, self.emitter, self._worker_factory)
        self.emitter.emit(LOAD_EVENT, list(self.paths))
        self._scheduler = Scheduler(
            pool,
            self.emitter,
            poll_timeout=self.config.poll_timeout,
            test_timeout=self.config.test_timeout,
            chunk_size=self.config.chunk_size,
        )

        logger.info(
            "Starting run: files=%d, processes=%d, test_timeout=%s",
            len(self.paths),
            self.config.processes,
            self.config.test_timeout,
        )

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _signal_handler(signum: int, _frame: object) -> None:
            logger.info("Signal %d received, finishing in-flight files", signum)
            self.stop()

        signal.signal(signal.SIGINT, _signal_handler)
        signal.signal(signal.SIGTERM, _signal_handler)

        try:
            self._scheduler.run()
        except RunnerError:
            logger.exception("Test run aborted")
            raise
        except Exception as exc:
            logger.exception("Test run failed")
            raise RunnerError("Test run failed") from exc
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
            self._scheduler = None

        summary = collector.summary(duration_seconds=time.monotonic() - start_time)

        logger.info(
            "Run completed: duration=%.1fs, files=%d, passed=%d, failed=%d, "
            "pending=%d, worker_failures=%d, skipped_files=%d",
            summary.duration_seconds,
            summary.files,
            summary.passed,
            summary.failed,
            summary.pending,
            len(summary.worker_failures),
            len(summary.skipped_files),
        )

        self.emitter.emit(RUNNER_END, summary)
        return summary
