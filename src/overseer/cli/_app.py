"""The command-line interface for overseer."""
# ruff: noqa: TC003  # Path needed at runtime for cyclopts parameter parsing

import os
import sys
from enum import IntEnum
from pathlib import Path
from typing import Annotated

import anyio
from cyclopts import App, Parameter
from rich.console import Console
from rich.table import Table

from overseer._binary import Binary, sanity_check
from overseer._config import DEFAULT_SANITY_CHECK_TIMEOUT
from overseer._env import ALL_VARIABLES, resolve_role
from overseer.exceptions import UpgradeValidationError

HELP = "Operator tools for overseer-supervised services."


class ExitCode(IntEnum):
    """Exit codes for overseer CLI commands."""

    SUCCESS = 0
    FAILURE = 1


def create_app(
    console: Console | None = None,
    error_console: Console | None = None,
    *,
    exit_on_error: bool = True,
) -> App:
    """Create the overseer CLI application.

    Args:
        console: Console for regular output.
        error_console: Console for errors.
        exit_on_error: Whether cyclopts exits on parse errors.

    Returns:
        The configured cyclopts App.
    """
    if console is None:
        console = Console()
    if error_console is None:
        error_console = Console(stderr=True)
    app = App(
        name="overseer",
        help=HELP,
        help_on_error=True,
        console=console,
        error_console=error_console,
        exit_on_error=exit_on_error,
    )

    @app.command
    def check(  # pyright: ignore[reportUnusedFunction]
        path: Annotated[Path, Parameter(help="Candidate executable to check")],
        *,
        timeout: Annotated[
            float, Parameter(help="Seconds the candidate gets to answer")
        ] = DEFAULT_SANITY_CHECK_TIMEOUT,
        python: Annotated[
            bool,
            Parameter(help="Launch the candidate with the current Python interpreter"),
        ] = True,
    ) -> None:
        """Run the sanity check against a candidate binary.

        The candidate passes when it prints the check token and exits 0,
        which is what overseer.run() does in an upgrade candidate.

        Args:
            path: Candidate executable to check.
            timeout: Seconds the candidate gets to answer.
            python: Launch the candidate with the current Python interpreter.
        """
        if not path.is_file():
            error_console.print(f"[red]FAIL[/red] {path}: no such file")
            raise SystemExit(ExitCode.FAILURE)

        binary = Binary(
            path=path.resolve(),
            interpreter=(sys.executable,) if python else (),
        )
        try:
            anyio.run(sanity_check, binary, binary.path, timeout)
        except UpgradeValidationError as e:
            error_console.print(f"[red]FAIL[/red] {path}: {e} ({e.reason})")
            raise SystemExit(ExitCode.FAILURE) from None

        console.print(f"[green]PASS[/green] {path}")
        raise SystemExit(ExitCode.SUCCESS)

    @app.command
    def env() -> None:  # pyright: ignore[reportUnusedFunction]
        """Show the overseer environment of the current process."""
        table = Table(title=f"role: {resolve_role(os.environ)}")
        table.add_column("Variable")
        table.add_column("Value")
        for name in ALL_VARIABLES:
            value = os.environ.get(name)
            table.add_row(name, value if value is not None else "[dim]unset[/dim]")
        console.print(table)

    return app


def main() -> None:
    """Default entrypoint for the `overseer` CLI."""
    app = create_app()
    app()


if __name__ == "__main__":
    main()
