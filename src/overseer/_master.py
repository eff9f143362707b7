"""Master controller of the supervision protocol.

This module provides the Master class that owns the listening sockets,
keeps one slave generation serving them, and drives binary upgrades.
Signal handling, the fetch loop, the restart worker and one monitor per
slave run as tasks of a single anyio task group.
"""

from __future__ import annotations

import signal
import socket
import threading
from collections import deque
from collections.abc import AsyncIterator, Mapping
from typing import TYPE_CHECKING, final

import anyio
import anyio.abc
import anyio.to_thread

from overseer.exceptions import (
    FetchError,
    SlaveCrashError,
    SlaveStartError,
    SwapError,
    UpgradeValidationError,
)

from ._binary import Binary, sanity_check, stage_candidate, swap
from ._env import SlaveEnvironment
from ._listener import bind_listeners
from ._logging import create_logger
from ._process import SlaveProcess

if TYPE_CHECKING:
    from pathlib import Path

    from anyio.streams.memory import MemoryObjectSendStream
    from structlog.typing import FilteringBoundLogger

    from ._config import Config
    from ._protocol import Fetcher


@final
class Master:
    """Supervises slave generations and upgrades the binary they run.

    Only one upgrade-or-restart transition runs at a time; a restart
    requested while another is in progress is queued, and further
    requests are coalesced into that one.

    Attributes:
        config: Validated configuration.
    """

    __slots__ = (
        "_active",
        "_binary",
        "_crash_loop",
        "_crash_times",
        "_environ",
        "_exit_code",
        "_fetcher",
        "_handle_signals",
        "_log",
        "_restart_requests",
        "_shutdown_event",
        "_slave_counter",
        "_slaves",
        "_sockets",
        "_task_group",
        "_transition_lock",
        "config",
    )

    def __init__(
        self,
        config: Config,
        *,
        binary: Binary | None = None,
        environ: Mapping[str, str] | None = None,
        logger: FilteringBoundLogger | None = None,
        handle_signals: bool = True,
    ) -> None:
        """Initialize the master.

        Args:
            config: Validated configuration.
            binary: Trusted binary; resolved from the running process if None.
            environ: Base environment for slaves, defaults to the current one.
            logger: Logger to use; a stderr logger is created if None.
            handle_signals: Whether to trap termination and restart signals.
        """
        self.config = config
        self._binary = binary
        self._environ = environ
        self._log: FilteringBoundLogger = (
            logger
            if logger is not None
            else create_logger(
                debug=config.debug,
                no_warn=config.no_warn,
                log_format=config.log_format,
                role="master",
            )
        )
        self._handle_signals = handle_signals
        self._fetcher: Fetcher | None = config.fetcher
        self._sockets: list[socket.socket] = []
        self._slaves: set[SlaveProcess] = set()
        self._active: SlaveProcess | None = None
        self._slave_counter = 0
        self._crash_times: deque[float] = deque()
        self._crash_loop: SlaveCrashError | None = None
        self._exit_code = 0
        self._shutdown_event: anyio.Event | None = None
        self._transition_lock: anyio.Lock | None = None
        self._restart_requests: MemoryObjectSendStream[None] | None = None
        self._task_group: anyio.abc.TaskGroup | None = None

    @property
    def binary(self) -> Binary:
        """Return the trusted binary, resolving it on first access."""
        if self._binary is None:
            self._binary = Binary.current()
        return self._binary

    @property
    def active(self) -> SlaveProcess | None:
        """Return the slave generation currently serving, if any."""
        return self._active

    @property
    def sockets(self) -> list[socket.socket]:
        """Return the bound listening sockets, in address order."""
        return self._sockets

    def run(self) -> int:
        """Run the master in a new event loop until shutdown.

        Returns:
            The process exit code.

        Raises:
            BindError: If a listener cannot be bound.
            SlaveStartError: If the first slave cannot be spawned.
            SlaveCrashError: If slaves crashed faster than allowed.
        """
        return anyio.run(self.serve)

    async def serve(
        self,
        *,
        task_status: anyio.abc.TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> int:
        """Bind listeners, spawn the first slave and supervise until shutdown.

        Signals task_status once the first slave has been spawned and its
        readiness handshake completed or timed out.

        Returns:
            The process exit code.

        Raises:
            BindError: If a listener cannot be bound.
            SlaveStartError: If the first slave cannot be spawned.
            SlaveCrashError: If slaves crashed faster than allowed.
        """
        binary = self.binary
        self._sockets = bind_listeners(self.config.addresses)
        self._log.debug(
            "listening",
            addresses=list(self.config.addresses),
            binary=str(binary.path),
            binary_id=binary.short_id,
        )

        self._shutdown_event = anyio.Event()
        self._transition_lock = anyio.Lock()
        send, receive = anyio.create_memory_object_stream[None](1)
        self._restart_requests = send

        try:
            fetching = await self._init_fetcher()
            first = await self._start_slave()

            async with anyio.create_task_group() as tg:
                self._task_group = tg
                if self._handle_signals:
                    self._start_signal_task(tg)
                tg.start_soon(self._restart_worker, receive)

                self._active = first
                self._watch(first)
                if not await first.wait_ready(self.config.startup_timeout):
                    self._log.warning("first slave did not report readiness")
                task_status.started()

                if fetching:
                    tg.start_soon(self._fetch_loop)

                await self._shutdown_event.wait()
                tg.cancel_scope.cancel()
        finally:
            self._task_group = None
            self._restart_requests = None
            send.close()
            receive.close()
            with anyio.CancelScope(shield=True):
                await self._stop_all()
                await self._close_fetcher()
            for sock in self._sockets:
                sock.close()

        if self._crash_loop is not None:
            raise self._crash_loop
        self._log.debug("master exiting", exit_code=self._exit_code)
        return self._exit_code

    def trigger_restart(self) -> None:
        """Request a coordinated restart of the active slave.

        With no_restart set, the request becomes a graceful shutdown.
        """
        if self.config.no_restart:
            self._log.debug("restarts disabled, shutting down")
            self.shutdown()
            return
        if self._restart_requests is None:
            return
        try:
            self._restart_requests.send_nowait(None)
        except anyio.WouldBlock:
            self._log.debug("restart already pending")

    def shutdown(self) -> None:
        """Trigger graceful shutdown of the master and its slaves."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _shutting_down(self) -> bool:
        return self._shutdown_event is not None and self._shutdown_event.is_set()

    def status(self) -> dict[str, object]:
        """Get a status summary of the master.

        Returns:
            Dictionary describing the binary, the active slave and every
            live slave generation.
        """
        active = self._active
        return {
            "generation": self.binary.generation,
            "binary_id": self.binary.digest,
            "active_slave": active.slave_id if active else None,
            "active_pid": active.pid if active else None,
            "spawned": self._slave_counter,
            "crashes": len(self._crash_times),
            "slaves": {
                slave.slave_id: {
                    "state": slave.status.state.value,
                    "pid": slave.status.pid,
                    "started_at": slave.status.started_at,
                }
                for slave in self._slaves
            },
        }

    # -------------------------------------------------------------------------
    # Slaves
    # -------------------------------------------------------------------------

    async def _start_slave(self) -> SlaveProcess:
        binary = self.binary
        self._slave_counter += 1
        slave_env = SlaveEnvironment(
            slave_id=self._slave_counter,
            fds=tuple(sock.fileno() for sock in self._sockets),
            bin_id=binary.digest,
            bin_path=binary.path,
            restart_signal=self.config.restart_signum,
        )
        slave = SlaveProcess(
            slave_env,
            binary.command(),
            self._log,
            environ=self._environ,
        )
        await slave.start()
        self._slaves.add(slave)
        return slave

    def _watch(self, slave: SlaveProcess) -> None:
        if self._task_group is not None:
            self._task_group.start_soon(self._monitor, slave)

    async def _monitor(self, slave: SlaveProcess) -> None:
        exit_code = await slave.wait()
        self._slaves.discard(slave)

        # Retired and aborted generations are expected to exit
        if slave is not self._active or self._shutting_down():
            return

        self._active = None
        if exit_code == 0:
            self._log.debug("slave exited cleanly, shutting down")
            self._exit_code = 0
            self.shutdown()
            return
        if self.config.no_restart:
            self._log.debug("slave exited, restarts disabled", exit_code=exit_code)
            self._exit_code = exit_code
            self.shutdown()
            return

        await self._respawn_after_crash(exit_code)

    def _record_crash(self, exit_code: int | None) -> bool:
        now = anyio.current_time()
        self._crash_times.append(now)
        while self._crash_times and self._crash_times[0] < now - self.config.crash_window:
            _ = self._crash_times.popleft()

        crashes = len(self._crash_times)
        max_restarts = self.config.max_restarts
        if crashes > max_restarts:
            msg = (
                f"slave crashed {crashes} times within "
                f"{self.config.crash_window:.0f}s, giving up"
            )
            self._log.error(msg, exit_code=exit_code)
            self._crash_loop = SlaveCrashError(
                msg, crashes=crashes, exit_code=exit_code
            )
            self._exit_code = 1
            self.shutdown()
            return False

        self._log.warning(
            "slave crashed, respawning",
            exit_code=exit_code,
            attempt=f"{crashes}/{max_restarts}",
        )
        return True

    async def _respawn_after_crash(self, exit_code: int | None) -> None:
        assert self._transition_lock is not None  # noqa: S101
        while self._record_crash(exit_code):
            async with self._transition_lock:
                if self._shutting_down() or self._active is not None:
                    return
                try:
                    slave = await self._start_slave()
                except SlaveStartError as e:
                    self._log.error("respawn failed", error=str(e))
                    exit_code = None
                    continue
                self._active = slave
                self._watch(slave)
            return

    async def _stop_all(self) -> None:
        timeout = self.config.terminate_timeout
        async with anyio.create_task_group() as tg:
            for slave in list(self._slaves):
                tg.start_soon(slave.stop, signal.SIGTERM, timeout)
        self._slaves.clear()
        self._active = None

    # -------------------------------------------------------------------------
    # Restarts
    # -------------------------------------------------------------------------

    async def _restart_worker(self, requests: AsyncIterator[None]) -> None:
        async for _ in requests:
            await self._restart()

    async def _restart(self) -> None:
        """Hand the listeners over to a new slave generation.

        The new generation is spawned and must report readiness before the
        old one is asked to stop, so the listeners always have a serving
        process. If the new generation fails, the old one keeps serving.
        """
        assert self._transition_lock is not None  # noqa: S101
        async with self._transition_lock:
            if self._shutting_down():
                return
            old = self._active
            self._log.debug(
                "graceful restart triggered",
                old_slave=old.slave_id if old else None,
            )

            try:
                new = await self._start_slave()
            except SlaveStartError as e:
                self._log.error("restart aborted", error=str(e))
                return
            self._watch(new)

            if not await new.wait_ready(self.config.startup_timeout):
                self._log.warning(
                    "restart aborted, new slave not ready", slave_id=new.slave_id
                )
                _ = await new.kill()
                return

            self._active = new
            if old is not None:
                _ = await old.stop(
                    self.config.restart_signum, self.config.terminate_timeout
                )
            self._log.debug("restart success", slave_id=new.slave_id)

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------

    def _start_signal_task(self, tg: anyio.abc.TaskGroup) -> None:
        # Signal receivers can only be installed from the main thread
        if threading.current_thread() is not threading.main_thread():
            self._log.warning("not in main thread, signal handlers not installed")
            return
        tg.start_soon(self._watch_signals)

    async def _watch_signals(self) -> None:
        restart_signal = self.config.restart_signum
        with anyio.open_signal_receiver(
            signal.SIGINT, signal.SIGTERM, restart_signal
        ) as signals:
            async for signum in signals:
                if signum == restart_signal:
                    self._log.debug("restart signal received", signal=signum.name)
                    self.trigger_restart()
                else:
                    self._log.debug("termination signal received", signal=signum.name)
                    self.shutdown()

    # -------------------------------------------------------------------------
    # Upgrades
    # -------------------------------------------------------------------------

    async def _init_fetcher(self) -> bool:
        fetcher = self._fetcher
        if fetcher is None:
            return False
        if not self.binary.is_replaceable():
            self._log.warning(
                "binary directory is not writable, fetcher disabled",
                binary=str(self.binary.path),
            )
            return False
        try:
            await fetcher.init()
        except Exception as e:  # noqa: BLE001
            self._log.warning("fetcher init failed, fetcher disabled", error=str(e))
            return False
        return True

    async def _close_fetcher(self) -> None:
        aclose = getattr(self._fetcher, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:  # noqa: BLE001
            self._log.warning("failed to close fetcher", error=str(e))

    async def _fetch_loop(self) -> None:
        interval = self.config.min_fetch_interval
        await anyio.sleep(interval)
        while True:
            started = anyio.current_time()
            await self._fetch()
            elapsed = anyio.current_time() - started
            if elapsed < interval:
                await anyio.sleep(interval - elapsed)

    async def _fetch(self) -> None:
        assert self._fetcher is not None  # noqa: S101
        assert self._transition_lock is not None  # noqa: S101
        try:
            chunks = await self._fetcher.fetch()
        except Exception as e:  # noqa: BLE001
            error = FetchError(f"failed to get latest version: {e}", cause=e)
            self._log.warning(str(error))
            return
        if chunks is None:
            self._log.debug("no updates")
            return

        async with self._transition_lock:
            upgraded = await self._upgrade(chunks)

        if upgraded and not self.config.no_restart_after_fetch:
            self.trigger_restart()

    async def _upgrade(self, chunks: AsyncIterator[bytes]) -> bool:
        binary = self.binary
        try:
            candidate = await stage_candidate(binary, chunks)
        except Exception as e:  # noqa: BLE001
            error = FetchError(f"failed to download binary: {e}", cause=e)
            self._log.warning(str(error))
            return False

        try:
            if candidate.digest == binary.digest:
                self._log.debug("hash match, skipping", binary_id=binary.short_id)
                return False
            await self._validate(candidate.path)
            old_id = binary.short_id
            swap(binary, candidate)
        except (UpgradeValidationError, SwapError) as e:
            self._log.warning("upgrade aborted", error=str(e))
            return False
        finally:
            candidate.discard()

        self._log.debug(
            "upgraded binary",
            old_id=old_id,
            new_id=binary.short_id,
            generation=binary.generation,
        )
        return True

    async def _validate(self, candidate_path: Path) -> None:
        pre_upgrade = self.config.pre_upgrade
        if pre_upgrade is not None:
            try:
                await anyio.to_thread.run_sync(pre_upgrade, candidate_path)
            except Exception as e:  # noqa: BLE001
                msg = f"user cancelled upgrade: {e}"
                raise UpgradeValidationError(
                    msg, path=candidate_path, reason="pre_upgrade"
                ) from e

        await sanity_check(
            self.binary,
            candidate_path,
            self.config.sanity_check_timeout,
            environ=self._environ,
        )
