"""Zero-downtime restarts and self-upgrades for Python network services.

overseer splits a service into two processes. The master binds the
listening sockets, watches for new binaries and never serves traffic. The
slave inherits the sockets and runs the service's program. Restarting or
upgrading replaces the slave while the master keeps the sockets open, so
no connection is refused during the handover.

Key Components:
    - run: Entry point replacing the service's main function
    - Config: Supervision policy
    - State: What the program learns about its generation
    - Listener: Inherited listening socket with connection draining
    - Fetcher: Protocol for binary fetching backends
    - Master: Supervises slave generations and upgrades
    - Slave: Runs the program against inherited listeners

Example:
    >>> import overseer
    >>> def program(state: overseer.State) -> None:
    ...     while not state.graceful_shutdown.is_set():
    ...         conn, _ = state.listener.accept()
    ...         with conn:
    ...             conn.sendall(b"hello\\n")
    >>> overseer.run(overseer.Config(program=program, address=":8080"))
"""

from ._binary import Binary, Candidate
from ._config import Config, validate
from ._listener import Listener, bind_listeners, parse_address
from ._master import Master
from ._models import ProcessRole, SlaveState, SlaveStatus
from ._protocol import Fetcher, ProcessHandler
from ._run import is_supported, run, run_err, sanity_check
from ._slave import Slave
from ._state import DISABLED_ID, State, disabled_state
from .exceptions import (
    BinaryUnavailableError,
    BindError,
    ConfigInvalidError,
    FetchError,
    ListenerClosedError,
    OverseerError,
    PlatformUnsupportedError,
    SlaveCrashError,
    SlaveEnvironmentError,
    SlaveStartError,
    SwapError,
    UpgradeError,
    UpgradeValidationError,
)

__all__ = [
    "DISABLED_ID",
    "BinaryUnavailableError",
    "BindError",
    "Binary",
    "Candidate",
    "Config",
    "ConfigInvalidError",
    "FetchError",
    "Fetcher",
    "Listener",
    "ListenerClosedError",
    "Master",
    "OverseerError",
    "PlatformUnsupportedError",
    "ProcessHandler",
    "ProcessRole",
    "Slave",
    "SlaveCrashError",
    "SlaveEnvironmentError",
    "SlaveStartError",
    "SlaveState",
    "SlaveStatus",
    "State",
    "SwapError",
    "UpgradeError",
    "UpgradeValidationError",
    "bind_listeners",
    "disabled_state",
    "is_supported",
    "parse_address",
    "run",
    "run_err",
    "sanity_check",
    "validate",
]
