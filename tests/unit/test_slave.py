"""Unit tests for the slave runtime."""

from __future__ import annotations

import os
import signal
from collections.abc import Iterator
from typing import TYPE_CHECKING

import pytest
from structlog.typing import FilteringBoundLogger

from overseer import Config, Slave, SlaveEnvironmentError, State, bind_listeners, validate
from overseer._env import SlaveEnvironment
from overseer._slave import READY_MARKER

if TYPE_CHECKING:
    import socket

    from pytest_mock import MockerFixture


@pytest.fixture
def master_socket() -> Iterator[socket.socket]:
    [sock] = bind_listeners(["127.0.0.1:0"])
    yield sock
    sock.close()


def _config(**kwargs: object) -> Config:
    kwargs.setdefault("program", lambda state: None)
    kwargs.setdefault("address", "127.0.0.1:0")
    kwargs.setdefault("terminate_timeout", 2.0)
    return validate(Config(**kwargs))  # pyright: ignore[reportArgumentType]


def _environ(
    *fds: int,
    ready_fd: int | None = None,
    restart_signal: signal.Signals | None = None,
) -> dict[str, str]:
    return SlaveEnvironment(
        slave_id=5, fds=fds, ready_fd=ready_fd, restart_signal=restart_signal
    ).to_env()


class TestBuildState:
    def test_rebuilds_listeners(
        self, master_socket: socket.socket, logger: FilteringBoundLogger
    ) -> None:
        fd = os.dup(master_socket.fileno())
        slave = Slave(_config(), environ=_environ(fd), logger=logger)

        state = slave.build_state()

        assert state.enabled
        assert state.id == "5"
        assert state.address == "127.0.0.1:0"
        assert state.listener is not None
        assert state.listener.fileno() == fd
        assert state.listener.getsockname() == master_socket.getsockname()
        assert state.started_at is not None
        state.listener.close()

    def test_rejects_descriptor_count_mismatch(
        self, master_socket: socket.socket, logger: FilteringBoundLogger
    ) -> None:
        config = _config(address="", addresses=("127.0.0.1:0", "127.0.0.1:0"))
        slave = Slave(config, environ=_environ(master_socket.fileno()), logger=logger)

        with pytest.raises(SlaveEnvironmentError, match="1 descriptors for 2 addresses"):
            _ = slave.build_state()

    def test_rejects_missing_slave_marker(self, logger: FilteringBoundLogger) -> None:
        slave = Slave(_config(), environ={}, logger=logger)

        with pytest.raises(SlaveEnvironmentError):
            _ = slave.build_state()


@pytest.mark.usefixtures("restore_signals")
class TestRun:
    def test_reports_ready_and_stops_on_signal(
        self, master_socket: socket.socket, logger: FilteringBoundLogger
    ) -> None:
        read_fd, write_fd = os.pipe()
        seen: list[State] = []

        def program(state: State) -> None:
            seen.append(state)
            os.kill(os.getpid(), signal.SIGTERM)
            assert state.graceful_shutdown.wait(5)

        fd = os.dup(master_socket.fileno())
        slave = Slave(
            _config(program=program),
            environ=_environ(fd, ready_fd=write_fd),
            logger=logger,
        )

        assert slave.run() == 0

        assert os.read(read_fd, 16) == READY_MARKER
        os.close(read_fd)
        [state] = seen
        assert state.listener is not None
        assert state.listener.closed

    def test_restart_signal_stops_gracefully(
        self, master_socket: socket.socket, logger: FilteringBoundLogger
    ) -> None:
        def program(state: State) -> None:
            os.kill(os.getpid(), signal.SIGUSR2)
            assert state.graceful_shutdown.wait(5)

        fd = os.dup(master_socket.fileno())
        slave = Slave(_config(program=program), environ=_environ(fd), logger=logger)

        assert slave.run() == 0

    def test_master_restart_signal_overrides_config(
        self, master_socket: socket.socket, logger: FilteringBoundLogger
    ) -> None:
        def program(state: State) -> None:
            os.kill(os.getpid(), signal.SIGHUP)
            assert state.graceful_shutdown.wait(5)

        fd = os.dup(master_socket.fileno())
        slave = Slave(
            _config(program=program),
            environ=_environ(fd, restart_signal=signal.SIGHUP),
            logger=logger,
        )

        assert slave.run() == 0
        assert slave.restart_signum is signal.SIGHUP

    def test_program_return_ends_run(
        self, master_socket: socket.socket, logger: FilteringBoundLogger
    ) -> None:
        fd = os.dup(master_socket.fileno())
        slave = Slave(_config(), environ=_environ(fd), logger=logger)

        assert slave.run() == 0
        assert slave.state is not None
        assert slave.state.graceful_shutdown.is_set()
        assert slave.state.listeners[0].closed

    def test_stop_is_idempotent(
        self, master_socket: socket.socket, logger: FilteringBoundLogger
    ) -> None:
        fd = os.dup(master_socket.fileno())
        slave = Slave(_config(), environ=_environ(fd), logger=logger)
        _ = slave.build_state()

        slave.stop()
        slave.stop()

        assert slave.state is not None
        assert slave.state.graceful_shutdown.is_set()


class TestTriggerRestart:
    def test_signals_master(
        self, mocker: MockerFixture, logger: FilteringBoundLogger
    ) -> None:
        kill = mocker.patch("os.kill")
        slave = Slave(_config(), environ={}, logger=logger)

        slave.trigger_restart()

        kill.assert_called_once_with(os.getppid(), signal.SIGUSR2)

    def test_state_restart_uses_trigger(
        self,
        master_socket: socket.socket,
        mocker: MockerFixture,
        logger: FilteringBoundLogger,
    ) -> None:
        fd = os.dup(master_socket.fileno())
        slave = Slave(
            _config(restart_signal=signal.SIGHUP), environ=_environ(fd), logger=logger
        )
        state = slave.build_state()
        kill = mocker.patch("os.kill")

        state.restart()

        kill.assert_called_once_with(os.getppid(), signal.SIGHUP)
        assert state.listener is not None
        state.listener.close()

    def test_uses_restart_signal_from_master(
        self,
        master_socket: socket.socket,
        mocker: MockerFixture,
        logger: FilteringBoundLogger,
    ) -> None:
        fd = os.dup(master_socket.fileno())
        slave = Slave(
            _config(),
            environ=_environ(fd, restart_signal=signal.SIGHUP),
            logger=logger,
        )
        state = slave.build_state()
        kill = mocker.patch("os.kill")

        slave.trigger_restart()

        kill.assert_called_once_with(os.getppid(), signal.SIGHUP)
        assert state.listener is not None
        state.listener.close()
