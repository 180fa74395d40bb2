"""Main Typer application, the entry point for the ``testmux`` CLI."""

from __future__ import annotations

import typer

from testmux import __version__
from testmux.cli.run import run_cmd

app = typer.Typer(
    name="testmux",
    help="Run test files concurrently across worker processes.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command("run", help="Run test files across a pool of worker processes.")(run_cmd)


def _version_callback(value: bool) -> None:
    """Print version and exit.

    Args:
        value: True if --version was passed.
    """
    if value:
        typer.echo(f"testmux {__version__}")
        raise typer.Exit


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """testmux: run test files concurrently across worker processes."""
