"""Slave half of the supervision protocol.

The slave rebuilds its listeners from inherited descriptors, reports
readiness to the master and runs the user program in the main thread.
Stop requests arrive as signals; they close the slave's listener
descriptors so the program's accept loop ends, and in-flight connections
are drained in the background.
"""

from __future__ import annotations

import contextlib
import os
import signal
import threading
from collections.abc import Mapping
from typing import TYPE_CHECKING, final

import pendulum

from overseer.exceptions import SlaveEnvironmentError

from ._env import ENV_FDS, SlaveEnvironment
from ._listener import Listener
from ._logging import create_logger
from ._state import State

if TYPE_CHECKING:
    from types import FrameType

    from structlog.typing import FilteringBoundLogger

    from ._config import Config

# Interval between checks that the master is still our parent
_WATCHDOG_INTERVAL: float = 1.0

READY_MARKER: bytes = b"1"


@final
class Slave:
    """Runs the user program against listeners inherited from the master.

    Attributes:
        config: Validated configuration.
    """

    __slots__ = (
        "_drain",
        "_environ",
        "_log",
        "_master_pid",
        "_ready_fd",
        "_restart_signal",
        "_state",
        "_stopping",
        "config",
    )

    def __init__(
        self,
        config: Config,
        *,
        environ: Mapping[str, str] | None = None,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        """Initialize the slave.

        Args:
            config: Validated configuration.
            environ: Environment to parse, defaults to the current one.
            logger: Logger to use; a stderr logger is created if None.
        """
        self.config = config
        self._environ: Mapping[str, str] = os.environ if environ is None else environ
        self._log: FilteringBoundLogger = (
            logger
            if logger is not None
            else create_logger(
                debug=config.debug,
                no_warn=config.no_warn,
                log_format=config.log_format,
                role="slave",
            )
        )
        self._state: State | None = None
        self._drain: threading.Thread | None = None
        self._stopping = threading.Lock()
        self._master_pid = os.getppid()
        self._ready_fd: int | None = None
        self._restart_signal: signal.Signals | None = None

    @property
    def state(self) -> State | None:
        """Return the state handed to the program, once built."""
        return self._state

    @property
    def restart_signum(self) -> signal.Signals:
        """Return the restart signal, preferring the one the master passed."""
        if self._restart_signal is not None:
            return self._restart_signal
        return self.config.restart_signum

    def build_state(self) -> State:
        """Parse the environment and rebuild the inherited listeners.

        Returns:
            The state for this generation.

        Raises:
            SlaveEnvironmentError: If the environment is malformed or does
                not carry one descriptor per configured address.
        """
        slave_env = SlaveEnvironment.parse(self._environ)
        addresses = self.config.addresses
        if len(slave_env.fds) != len(addresses):
            msg = (
                f"inherited {len(slave_env.fds)} descriptors "
                f"for {len(addresses)} addresses"
            )
            raise SlaveEnvironmentError(
                msg,
                variable=ENV_FDS,
                value=",".join(str(fd) for fd in slave_env.fds),
            )

        listeners: list[Listener] = []
        for fd, address in zip(slave_env.fds, addresses, strict=True):
            try:
                listeners.append(Listener.from_fd(fd, address))
            except OSError as e:
                for listener in listeners:
                    listener.close()
                msg = f"failed to inherit listener for {address} from fd {fd}: {e}"
                raise SlaveEnvironmentError(
                    msg, variable=ENV_FDS, value=str(fd)
                ) from e

        self._log = self._log.bind(slave_id=slave_env.slave_id)
        self._state = State(
            enabled=True,
            id=str(slave_env.slave_id),
            started_at=pendulum.now("UTC"),
            listeners=tuple(listeners),
            addresses=addresses,
            bin_path=slave_env.bin_path,
            restart_trigger=self.trigger_restart,
        )
        self._ready_fd = slave_env.ready_fd
        self._restart_signal = slave_env.restart_signal
        return self._state

    def run(self) -> int:
        """Run the program once and return after a graceful stop.

        Returns:
            The process exit code.

        Raises:
            SlaveEnvironmentError: If the inherited environment is invalid.
        """
        state = self.build_state()
        self._install_signal_handlers()
        self._start_watchdog()
        self._report_ready()

        program = self.config.program
        assert program is not None  # noqa: S101
        self._log.debug("starting program", pid=os.getpid())
        try:
            program(state)
        finally:
            self._finish()
        return 0

    def trigger_restart(self) -> None:
        """Ask the master to restart this service gracefully."""
        signum = self.restart_signum
        self._log.debug("requesting restart", signal=signum.name)
        with contextlib.suppress(ProcessLookupError):
            os.kill(self._master_pid, signum)

    def stop(self) -> None:
        """Begin a graceful stop.

        Sets the state's graceful_shutdown event, closes this process's
        listener descriptors and drains in-flight connections in a
        background thread. Calling stop() more than once has no effect.
        """
        if not self._stopping.acquire(blocking=False):
            return
        state = self._state
        if state is None:
            return
        self._log.debug("graceful shutdown requested")
        state.graceful_shutdown.set()
        for listener in state.listeners:
            listener.close()
        self._drain = threading.Thread(
            target=self._drain_listeners,
            args=(state,),
            name="overseer-drain",
            daemon=True,
        )
        self._drain.start()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _report_ready(self) -> None:
        ready_fd, self._ready_fd = self._ready_fd, None
        if ready_fd is None:
            return
        try:
            _ = os.write(ready_fd, READY_MARKER)
        except OSError as e:
            self._log.warning("failed to report readiness", error=str(e))
        finally:
            with contextlib.suppress(OSError):
                os.close(ready_fd)

    def _handle_signal(self, signum: int, _frame: FrameType | None) -> None:
        self._log.debug("stop signal received", signal=signal.Signals(signum).name)
        self.stop()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            self._log.warning("not in main thread, signal handlers not installed")
            return
        for signum in {self.restart_signum, signal.SIGTERM, signal.SIGINT}:
            _ = signal.signal(signum, self._handle_signal)

    def _start_watchdog(self) -> None:
        thread = threading.Thread(
            target=self._watch_master,
            name="overseer-watchdog",
            daemon=True,
        )
        thread.start()

    def _watch_master(self) -> None:
        stopped = self._state.graceful_shutdown if self._state else threading.Event()
        while not stopped.wait(_WATCHDOG_INTERVAL):
            if os.getppid() != self._master_pid:
                self._log.warning("master process is gone, stopping")
                os.kill(os.getpid(), signal.SIGTERM)
                return

    def _drain_listeners(self, state: State) -> None:
        deadline = self.config.terminate_timeout
        for listener in state.listeners:
            started = pendulum.now()
            if not listener.wait_idle(deadline):
                self._log.warning(
                    "connections still open after drain timeout",
                    address=listener.address,
                    in_flight=listener.in_flight,
                )
                return
            deadline = max(0.0, deadline - (pendulum.now() - started).total_seconds())

    def _finish(self) -> None:
        state = self._state
        if state is None:
            return
        # Also ends the watchdog when the program returned on its own
        state.graceful_shutdown.set()
        if self._drain is not None:
            self._drain.join(self.config.terminate_timeout)
        for listener in state.listeners:
            listener.close()
        self._log.debug("program returned")
