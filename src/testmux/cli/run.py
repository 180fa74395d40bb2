"""``testmux run``: execute test files concurrently with live terminal output."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from testmux._internal.config import load_config
from testmux._internal.errors import TestmuxError
from testmux.discovery import DEFAULT_PATTERN, discover
from testmux.engine.events import WORKER_ERROR, EventEmitter
from testmux.engine.protocol import TEST_FAILED, TEST_PASSED, TEST_PENDING
from testmux.engine.runner import TestRunner

if TYPE_CHECKING:
    from testmux.engine.protocol import Frame, RemoteException, RemoteTest
    from testmux.results.models import RunSummary, WorkerFailure

console = Console()
err_console = Console(stderr=True)

INFRASTRUCTURE_EXIT_CODE = 2


# ---------------------------------------------------------------------------
# Live progress
# ---------------------------------------------------------------------------


def _attach_progress(emitter: EventEmitter) -> None:
    """Print one character per test as results arrive from the workers.

    Args:
        emitter: Event hub of the run.
    """

    def _passed(_test: RemoteTest, _frame: Frame) -> None:
        console.print("[green].[/green]", end="")

    def _failed(_test: RemoteTest, _error: RemoteException, _frame: Frame) -> None:
        console.print("[bold red]F[/bold red]", end="")

    def _pending(_test: RemoteTest, _frame: Frame) -> None:
        console.print("[yellow]P[/yellow]", end="")

    def _worker_error(_failure: WorkerFailure) -> None:
        console.print("[bold red]![/bold red]", end="")

    emitter.on(TEST_PASSED, _passed)
    emitter.on(TEST_FAILED, _failed)
    emitter.on(TEST_PENDING, _pending)
    emitter.on(WORKER_ERROR, _worker_error)


# ---------------------------------------------------------------------------
# Final report
# ---------------------------------------------------------------------------


def _print_failures(summary: RunSummary) -> None:
    """Print a panel per failed test with its remote traceback.

    Args:
        summary: Completed run summary.
    """
    for outcome in summary.failures:
        error = outcome.error
        body = error.trace.rstrip() if error and error.trace else "(no traceback)"
        subtitle = None
        if error:
            first_line = error.message.splitlines()[0] if error.message else ""
            subtitle = f"{error.class_name}: {first_line}"
        console.print(
            Panel(
                Text(body),
                title=f"[bold red]FAILED[/bold red] {escape(outcome.title)}",
                subtitle=escape(subtitle) if subtitle else None,
                border_style="red",
                expand=True,
            )
        )


def _print_worker_failures(summary: RunSummary) -> None:
    """Print worker failures, which are runner problems rather than test results.

    Args:
        summary: Completed run summary.
    """
    if not summary.worker_failures:
        return

    table = Table(
        title="Worker Failures",
        show_header=True,
        header_style="bold red",
        expand=True,
    )
    table.add_column("Worker", justify="right")
    table.add_column("Kind")
    table.add_column("File (outcome unknown)")
    table.add_column("Reason")

    for failure in summary.worker_failures:
        table.add_row(
            str(failure.worker_id),
            failure.kind,
            escape(failure.path or "-"),
            escape(failure.reason),
        )
    console.print(table)


def _print_skipped_files(summary: RunSummary) -> None:
    """Print the files a stop request kept from running.

    Args:
        summary: Completed run summary.
    """
    if not summary.skipped_files:
        return

    console.print(
        f"[yellow]Stopped before running {len(summary.skipped_files)} file(s):[/yellow]"
    )
    for path in summary.skipped_files:
        console.print(f"  [yellow]-[/yellow] {escape(path)}")


def _print_summary(summary: RunSummary) -> None:
    """Print the final summary table.

    Args:
        summary: Completed run summary.
    """
    style = "bold green" if summary.exit_code == 0 else "bold red"
    table = Table(
        title="Run Complete",
        show_header=True,
        header_style=style,
        expand=True,
    )
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Files", str(summary.files))
    table.add_row("Tests", str(summary.total))
    table.add_row("Passed", str(summary.passed))
    table.add_row("Failed", str(summary.failed))
    table.add_row("Pending", str(summary.pending))
    table.add_row("Skipped Files", str(len(summary.skipped_files)))
    table.add_row("Duration", f"{summary.duration_seconds:.2f}s")
    table.add_row("File p50", f"{summary.file_seconds_p50:.2f}s")
    table.add_row("File p95", f"{summary.file_seconds_p95:.2f}s")
    table.add_row("Slowest File", f"{summary.file_seconds_max:.2f}s")

    console.print(table)


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------


def run_cmd(
    paths: list[Path] = typer.Argument(
        ...,
        help="Test files or directories to search for test files.",
    ),
    processes: int | None = typer.Option(
        None,
        "--processes",
        "-j",
        help="Number of worker processes (default: TESTMUX_PROCESSES or CPU count).",
        min=1,
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Abort a worker whose file runs longer than this many seconds.",
        min=0.001,
    ),
    pattern: str = typer.Option(
        DEFAULT_PATTERN,
        "--pattern",
        "-p",
        help="Glob used to find test files inside directories.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose (DEBUG) logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Emit structured JSON logs on stderr.",
    ),
) -> None:
    """Run test files concurrently across worker processes."""
    log_level = logging.DEBUG if verbose else logging.WARNING

    overrides: dict[str, object] = {}
    if processes is not None:
        overrides["processes"] = processes
    if timeout is not None:
        overrides["test_timeout"] = timeout

    try:
        config = dataclasses.replace(load_config(), **overrides)
        files = discover(paths, pattern=pattern)
    except TestmuxError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=INFRASTRUCTURE_EXIT_CODE) from exc

    if not files:
        console.print("[yellow]No test files found.[/yellow]")
        raise typer.Exit(code=0)

    console.print(
        Panel(
            f"[bold]Files:[/bold]     {len(files)}\n"
            f"[bold]Processes:[/bold] {config.processes}\n"
            f"[bold]Timeout:[/bold]   "
            f"{f'{config.test_timeout}s' if config.test_timeout else 'none'}",
            title="testmux",
            border_style="cyan",
        )
    )

    emitter = EventEmitter()
    _attach_progress(emitter)
    test_runner = TestRunner(
        files,
        config=config,
        emitter=emitter,
        log_level=log_level,
        json_logs=json_logs,
    )

    try:
        summary = test_runner.run()
    except TestmuxError as exc:
        console.print()
        err_console.print(f"[red]Test run failed:[/red] {exc}")
        raise typer.Exit(code=INFRASTRUCTURE_EXIT_CODE) from exc

    console.print()
    _print_failures(summary)
    _print_worker_failures(summary)
    _print_skipped_files(summary)
    _print_summary(summary)

    if summary.exit_code == 0:
        console.print("[green]All tests passed.[/green]")
    elif summary.worker_failures:
        console.print("[red]Run incomplete: worker failures occurred.[/red]")
    elif summary.skipped_files:
        console.print("[red]Run incomplete: stopped before every file ran.[/red]")
    else:
        console.print(f"[red]{summary.failed} test(s) failed.[/red]")
    raise typer.Exit(code=summary.exit_code)
