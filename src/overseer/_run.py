"""Process bootstrap.

run() is the single entry point a service calls from its main function.
The same call behaves differently depending on the process it runs in:
a candidate under sanity check answers the token and exits, a process
marked as a slave runs the program, and any other process becomes the
master.
"""

import os
import signal
import sys
from collections.abc import Mapping
from typing import TextIO

from overseer.exceptions import OverseerError, PlatformUnsupportedError

from ._binary import Binary
from ._config import Config, validate
from ._env import resolve_role, sanity_token
from ._logging import create_logger
from ._master import Master
from ._models import ProcessRole
from ._protocol import ProcessHandler
from ._slave import Slave
from ._state import disabled_state


def is_supported() -> bool:
    """Return True if this platform supports supervision.

    Supervision needs POSIX descriptor inheritance and a user-defined
    restart signal.
    """
    return os.name == "posix" and hasattr(signal, "SIGUSR2")


def sanity_check(
    environ: Mapping[str, str] | None = None,
    stdout: TextIO | None = None,
) -> bool:
    """Answer a pending sanity check.

    When the process was started as an upgrade candidate, the check token
    is written to stdout. This function does not exit; the caller ends
    the process, as run() does by exiting with status 0 once run_err()
    reports the answered check.

    Args:
        environ: Environment to inspect, defaults to the current one.
        stdout: Stream to answer on, defaults to sys.stdout.

    Returns:
        True if a token was answered and the process should exit.
    """
    token = sanity_token(os.environ if environ is None else environ)
    if token is None:
        return False
    stream = stdout or sys.stdout
    _ = stream.write(token)
    stream.flush()
    return True


def _handler(config: Config, role: ProcessRole) -> ProcessHandler:
    if role is ProcessRole.SLAVE:
        return Slave(config)
    # Resolved here so a missing executable takes the fallback path
    return Master(config, binary=Binary.current())


def run_err(config: Config) -> int:
    """Run overseer and report failures as exceptions.

    Args:
        config: Configuration to validate and run.

    Returns:
        The exit code of the master or slave.

    Raises:
        PlatformUnsupportedError: If supervision is not available here.
        ConfigInvalidError: If the configuration is invalid.
        BinaryUnavailableError: If the master cannot identify its own
            executable.
        OverseerError: If the master or slave fails.
    """
    if not is_supported():
        msg = f"overseer is not supported on {sys.platform}"
        raise PlatformUnsupportedError(msg, platform=sys.platform)

    config = validate(config)

    if sanity_check():
        return 0

    role = resolve_role(os.environ)
    handler = _handler(config, role)
    return handler.run()


def run(config: Config) -> None:
    """Run the program under supervision and exit with its status.

    If supervision cannot be set up and config.required is False, the
    program runs directly in the current process with a disabled State.
    With config.required set, the failure is fatal.

    Args:
        config: Configuration to run.

    Raises:
        SystemExit: With the exit code of the master or slave, or 1 when
            required supervision fails.
    """
    log = create_logger(
        debug=config.debug,
        no_warn=config.no_warn,
        log_format=config.log_format,
    )
    try:
        code = run_err(config)
    except OverseerError as e:
        if config.required:
            log.critical("overseer failed", error=str(e))
            sys.exit(1)
        if config.program is None:
            raise
        log.warning("overseer disabled, running program directly", error=str(e))
        config.program(disabled_state())
        return
    sys.exit(code)
