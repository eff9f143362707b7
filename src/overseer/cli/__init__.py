"""Command-line tools for operating overseer services."""

from ._app import ExitCode, create_app, main

__all__ = ["ExitCode", "create_app", "main"]
