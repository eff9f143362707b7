"""Logging utilities for overseer.

This module provides a standalone structlog logger factory writing
text-formatted or JSON-formatted logs to stderr. Each logger is
self-contained and does not modify global structlog configuration, so
overseer never interferes with the logging setup of the supervised program.
"""

import logging
import sys
from os import getenv
from typing import TYPE_CHECKING, Literal, TextIO, cast

import structlog

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

LogFormatType = Literal["json", "text"]


def _get_log_level(*, debug: bool, no_warn: bool) -> int:
    """Get the log level for overseer's own messages.

    OVERSEER_DEBUG in the environment enables DEBUG regardless of config.
    Otherwise debug enables DEBUG, no_warn limits output to errors, and
    the default shows warnings.

    Returns:
        The logging level as an integer.
    """
    if debug or getenv("OVERSEER_DEBUG", None):
        return logging.DEBUG
    if no_warn:
        return logging.ERROR
    return logging.WARNING


def create_logger(
    *,
    debug: bool = False,
    no_warn: bool = False,
    log_format: LogFormatType = "text",
    stream: TextIO | None = None,
    **context: object,
) -> "FilteringBoundLogger":  # noqa: UP037
    """Create a standalone structlog logger for overseer.

    Args:
        debug: Enable debug messages.
        no_warn: Suppress warnings; only errors are written.
        log_format: Output format, either "json" or "text".
        stream: Destination stream (defaults to stderr at call time).
        **context: Key-value pairs bound to every log entry, such as the
            process role.

    Returns:
        A configured FilteringBoundLogger instance.
    """
    effective_level = _get_log_level(debug=debug, no_warn=no_warn)

    processors: list[structlog.typing.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if log_format == "json":
        processors.append(structlog.processors.dict_tracebacks)
        processors.append(structlog.processors.JSONRenderer())
    else:
        # Text format: "timestamp [level] event key=value ..."
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    wrapper_class = structlog.make_filtering_bound_logger(effective_level)
    raw_logger = structlog.PrintLogger(file=stream or sys.stderr)

    logger = cast(
        "FilteringBoundLogger",
        structlog.wrap_logger(
            raw_logger,
            processors=processors,
            wrapper_class=wrapper_class,
            context_class=dict,
        ),
    )

    if context:
        return logger.bind(**context)
    return logger
