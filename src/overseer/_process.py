"""Master-side handle for one slave generation.

This module provides the SlaveProcess class that spawns a slave with the
listener descriptors attached, waits for its readiness handshake, and
stops it gracefully or forcefully.
"""

from __future__ import annotations

import contextlib
import dataclasses
import os
import signal
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, final

import anyio
import anyio.abc

from overseer.exceptions import SlaveStartError

from ._models import SlaveState, SlaveStatus

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from ._env import SlaveEnvironment

# Interval between checks of the readiness pipe
_READY_POLL_INTERVAL: float = 0.02


def _get_timestamp() -> str:
    """Get current timestamp in ISO 8601 format."""
    import pendulum  # noqa: PLC0415

    return pendulum.now("UTC").to_iso8601_string()


@final
class SlaveProcess:
    """Manages the lifecycle of one slave generation.

    The slave inherits the listener descriptors named in its environment
    plus the write end of a readiness pipe. It writes a marker to the pipe
    once its listeners are reconstructed.

    Attributes:
        slave_env: Environment schema passed to the slave.
        status: Mutable runtime status tracking.
    """

    __slots__ = (
        "_awaiting_ready",
        "_command",
        "_environ",
        "_log",
        "_process",
        "_ready_fd",
        "slave_env",
        "status",
    )

    def __init__(
        self,
        slave_env: SlaveEnvironment,
        command: Sequence[str],
        logger: FilteringBoundLogger,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize the slave handle.

        Args:
            slave_env: Environment schema for the slave. Its ready_fd is
                filled in when the process starts.
            command: Command line launching the trusted binary.
            logger: Logger bound to the master.
            environ: Base environment, defaults to the current one.
        """
        self.slave_env = slave_env
        self.status = SlaveStatus(slave_id=slave_env.slave_id)
        self._command = tuple(command)
        self._environ = environ
        self._log = logger.bind(slave_id=slave_env.slave_id)
        self._process: anyio.abc.Process | None = None
        self._ready_fd: int | None = None
        self._awaiting_ready = False

    @property
    def slave_id(self) -> int:
        """Return the instance identifier of this generation."""
        return self.slave_env.slave_id

    @property
    def pid(self) -> int | None:
        """Return the process ID if running, None otherwise."""
        return self.status.pid

    @property
    def retiring(self) -> bool:
        """Return True once the master asked this slave to stop."""
        return self.status.state is SlaveState.RETIRING

    def is_running(self) -> bool:
        """Check if the slave process has not exited yet."""
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        """Spawn the slave process.

        Standard streams are inherited from the master. Descriptors keep
        their numbers in the child, in the order of the address list.

        Raises:
            SlaveStartError: If the process cannot be spawned.
        """
        try:
            read_fd, write_fd = os.pipe()
        except OSError as e:
            self.status.state = SlaveState.CRASHED
            msg = f"failed to create readiness pipe for slave #{self.slave_id}: {e}"
            raise SlaveStartError(msg, slave_id=self.slave_id, cause=e) from e
        self.slave_env = dataclasses.replace(self.slave_env, ready_fd=write_fd)
        base = os.environ if self._environ is None else self._environ
        env = {**base, **self.slave_env.to_env()}

        self.status.state = SlaveState.STARTING
        self.status.started_at = _get_timestamp()
        try:
            self._process = await anyio.open_process(
                self._command,
                stdin=None,
                stdout=None,
                stderr=None,
                env=env,
                pass_fds=(*self.slave_env.fds, write_fd),
            )
        except OSError as e:
            os.close(read_fd)
            self.status.state = SlaveState.CRASHED
            msg = f"failed to start slave #{self.slave_id}: {e}"
            raise SlaveStartError(msg, slave_id=self.slave_id, cause=e) from e
        finally:
            # The child holds its own copy; the master must not keep the
            # write end or it would never see EOF.
            os.close(write_fd)

        os.set_blocking(read_fd, False)
        self._ready_fd = read_fd
        self.status.pid = self._process.pid
        self._log.debug("slave started", pid=self.status.pid)

    async def _read_ready(self, fd: int) -> bytes:
        while True:
            try:
                return os.read(fd, 16)
            except BlockingIOError:
                await anyio.sleep(_READY_POLL_INTERVAL)

    def _close_ready_fd(self) -> None:
        if self._ready_fd is not None:
            with contextlib.suppress(OSError):
                os.close(self._ready_fd)
            self._ready_fd = None

    async def wait_ready(self, timeout: float) -> bool:
        """Wait for the slave's readiness handshake.

        Args:
            timeout: Maximum seconds to wait.

        Returns:
            True if the slave reported readiness, False if it exited,
            closed the pipe without a marker, or timed out.
        """
        if self.status.state is SlaveState.READY:
            return True
        if self._ready_fd is None:
            return False

        self._awaiting_ready = True
        try:
            with anyio.move_on_after(timeout):
                data = await self._read_ready(self._ready_fd)
                if data and self.status.state is SlaveState.STARTING:
                    self.status.state = SlaveState.READY
                    self._log.debug("slave ready", pid=self.status.pid)
                    return True
                return False
        finally:
            self._awaiting_ready = False
            self._close_ready_fd()

        self._log.warning("slave readiness timed out", timeout=timeout)
        return False

    async def wait(self) -> int:
        """Wait for the slave to exit.

        Returns:
            The exit code; negative values are terminating signals.
        """
        if self._process is None:
            return self.status.exit_code if self.status.exit_code is not None else 0

        exit_code = await self._process.wait()

        if self.status.stopped_at is None:
            self.status.exit_code = exit_code
            self.status.stopped_at = _get_timestamp()
            self.status.pid = None
            if self.status.state is SlaveState.RETIRING or exit_code == 0:
                self.status.state = SlaveState.STOPPED
            else:
                self.status.state = SlaveState.CRASHED
            if not self._awaiting_ready:
                self._close_ready_fd()
            self._log.debug("slave exited", exit_code=exit_code)
        return exit_code

    def retire(self) -> None:
        """Mark the slave as leaving, so its exit is not a crash."""
        if self.status.state not in (SlaveState.STOPPED, SlaveState.CRASHED):
            self.status.state = SlaveState.RETIRING

    def send_signal(self, signum: signal.Signals) -> None:
        """Deliver a signal to the slave if it is still running."""
        if self.is_running() and self._process is not None:
            with contextlib.suppress(ProcessLookupError):
                self._process.send_signal(signum)

    async def stop(self, signum: signal.Signals, timeout: float) -> int:
        """Stop the slave gracefully.

        Sends signum and waits for the slave to exit. If it doesn't exit
        within the timeout, sends SIGKILL.

        Args:
            signum: Signal requesting a graceful stop.
            timeout: Seconds to wait before killing.

        Returns:
            The exit code of the slave.
        """
        self.retire()
        if not self.is_running():
            return await self.wait()

        self._log.debug("stopping slave", signal=signum.name, pid=self.status.pid)
        self.send_signal(signum)

        with anyio.move_on_after(timeout):
            return await self.wait()

        self._log.warning(
            "graceful stop timed out, killing slave",
            timeout=timeout,
            pid=self.status.pid,
        )
        return await self.kill()

    async def kill(self) -> int:
        """Force-terminate the slave and wait for it to exit."""
        self.retire()
        self.send_signal(signal.SIGKILL)
        return await self.wait()
