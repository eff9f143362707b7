"""Shared test fixtures for overseer tests."""

import io
import signal
import sys
import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from rich.console import Console
from structlog.typing import FilteringBoundLogger

from overseer import Binary
from overseer._logging import create_logger

WriteScript = Callable[[str, str], Path]


@pytest.fixture
def console() -> Console:
    return Console(
        width=100,
        force_terminal=True,
        highlight=False,
        color_system=None,
        legacy_windows=False,
    )


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(log_stream: io.StringIO) -> FilteringBoundLogger:
    """Create a debug logger writing into log_stream."""
    return create_logger(debug=True, stream=log_stream)


@pytest.fixture
def write_script(tmp_path: Path) -> WriteScript:
    """Return a function writing a dedented Python script into tmp_path."""

    def _write(name: str, source: str) -> Path:
        path = tmp_path / name
        _ = path.write_text(textwrap.dedent(source))
        path.chmod(0o755)
        return path

    return _write


@pytest.fixture
def python_binary() -> Callable[[Path], Binary]:
    """Return a function describing a script launched by this interpreter."""

    def _load(path: Path) -> Binary:
        return Binary.load(path, interpreter=(sys.executable,))

    return _load


@pytest.fixture
def restore_signals() -> Iterator[None]:
    """Restore handlers of the signals overseer installs."""
    signums = (
        signal.SIGTERM,
        signal.SIGINT,
        signal.SIGHUP,
        signal.SIGUSR1,
        signal.SIGUSR2,
    )
    saved = {signum: signal.getsignal(signum) for signum in signums}
    yield
    for signum, handler in saved.items():
        _ = signal.signal(signum, handler)
