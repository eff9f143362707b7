"""Environment variables passed from master to slave.

The environment is the only channel a slave has to learn about its
generation, its inherited descriptors and the trusted binary. Values are
validated when parsed; a process that is not explicitly marked as a slave
acts as the master.
"""

from __future__ import annotations

import signal
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from overseer.exceptions import SlaveEnvironmentError

from ._models import ProcessRole

ENV_IS_SLAVE = "OVERSEER_IS_SLAVE"
ENV_SLAVE_ID = "OVERSEER_SLAVE_ID"
ENV_NUM_FDS = "OVERSEER_NUM_FDS"
ENV_FDS = "OVERSEER_FDS"
ENV_BIN_ID = "OVERSEER_BIN_ID"
ENV_BIN_PATH = "OVERSEER_BIN_PATH"
ENV_READY_FD = "OVERSEER_READY_FD"
ENV_RESTART_SIGNAL = "OVERSEER_RESTART_SIGNAL"
ENV_BIN_CHECK = "OVERSEER_BIN_CHECK"
ENV_BIN_CHECK_LEGACY = "GO_UPGRADE_BIN_CHECK"

ALL_VARIABLES: tuple[str, ...] = (
    ENV_IS_SLAVE,
    ENV_SLAVE_ID,
    ENV_NUM_FDS,
    ENV_FDS,
    ENV_BIN_ID,
    ENV_BIN_PATH,
    ENV_READY_FD,
    ENV_RESTART_SIGNAL,
    ENV_BIN_CHECK,
    ENV_BIN_CHECK_LEGACY,
)

# Descriptors inherited without an explicit OVERSEER_FDS list start here
FIRST_INHERITED_FD: int = 3


def resolve_role(environ: Mapping[str, str]) -> ProcessRole:
    """Return the role marked in the environment.

    Only an exact "1" marks a slave; anything else is the master.
    """
    if environ.get(ENV_IS_SLAVE) == "1":
        return ProcessRole.SLAVE
    return ProcessRole.MASTER


def sanity_token(environ: Mapping[str, str]) -> str | None:
    """Return the sanity-check token, preferring the current variable name."""
    return environ.get(ENV_BIN_CHECK) or environ.get(ENV_BIN_CHECK_LEGACY) or None


def _parse_int(environ: Mapping[str, str], name: str, *, minimum: int) -> int:
    raw = environ.get(name)
    if raw is None:
        msg = f"{name} is not set"
        raise SlaveEnvironmentError(msg, variable=name)
    try:
        value = int(raw)
    except ValueError:
        msg = f"{name} is not an integer: {raw!r}"
        raise SlaveEnvironmentError(msg, variable=name, value=raw) from None
    if value < minimum:
        msg = f"{name} must be >= {minimum}: {raw!r}"
        raise SlaveEnvironmentError(msg, variable=name, value=raw)
    return value


def _parse_fds(environ: Mapping[str, str], count: int) -> tuple[int, ...]:
    raw = environ.get(ENV_FDS)
    if raw is None:
        return tuple(range(FIRST_INHERITED_FD, FIRST_INHERITED_FD + count))
    try:
        fds = tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError:
        msg = f"{ENV_FDS} is not a list of integers: {raw!r}"
        raise SlaveEnvironmentError(msg, variable=ENV_FDS, value=raw) from None
    if len(fds) != count or any(fd < 0 for fd in fds):
        msg = f"{ENV_FDS} does not list {count} descriptors: {raw!r}"
        raise SlaveEnvironmentError(msg, variable=ENV_FDS, value=raw)
    return fds


def _parse_signal(environ: Mapping[str, str]) -> signal.Signals | None:
    raw = environ.get(ENV_RESTART_SIGNAL)
    if not raw:
        return None
    try:
        return signal.Signals[raw] if not raw.isdigit() else signal.Signals(int(raw))
    except (KeyError, ValueError):
        msg = f"{ENV_RESTART_SIGNAL} is not a signal: {raw!r}"
        raise SlaveEnvironmentError(msg, variable=ENV_RESTART_SIGNAL, value=raw) from None


@dataclass(frozen=True, slots=True)
class SlaveEnvironment:
    """Typed view of the environment a master hands to a slave.

    Attributes:
        slave_id: Instance identifier of this generation.
        fds: Inherited listener descriptors, in address order.
        bin_id: sha1 hex digest of the trusted binary.
        bin_path: Path of the trusted binary.
        ready_fd: Write end of the readiness pipe, if any.
        restart_signal: Restart signal chosen by the master, if overridden.
    """

    slave_id: int
    fds: tuple[int, ...] = ()
    bin_id: str = ""
    bin_path: Path | None = None
    ready_fd: int | None = None
    restart_signal: signal.Signals | None = None

    @classmethod
    def parse(cls, environ: Mapping[str, str]) -> SlaveEnvironment:
        """Parse and validate a slave environment.

        Args:
            environ: The process environment.

        Returns:
            The parsed environment.

        Raises:
            SlaveEnvironmentError: If the process is not marked as a slave
                or any value is missing or malformed.
        """
        if resolve_role(environ) is not ProcessRole.SLAVE:
            msg = f"{ENV_IS_SLAVE} is not set"
            raise SlaveEnvironmentError(
                msg, variable=ENV_IS_SLAVE, value=environ.get(ENV_IS_SLAVE)
            )

        slave_id = _parse_int(environ, ENV_SLAVE_ID, minimum=1)
        count = _parse_int(environ, ENV_NUM_FDS, minimum=0)
        ready_fd = (
            _parse_int(environ, ENV_READY_FD, minimum=0)
            if environ.get(ENV_READY_FD)
            else None
        )
        bin_path = environ.get(ENV_BIN_PATH)

        return cls(
            slave_id=slave_id,
            fds=_parse_fds(environ, count),
            bin_id=environ.get(ENV_BIN_ID, ""),
            bin_path=Path(bin_path) if bin_path else None,
            ready_fd=ready_fd,
            restart_signal=_parse_signal(environ),
        )

    def to_env(self) -> dict[str, str]:
        """Render the environment variables for a slave process."""
        env = {
            ENV_IS_SLAVE: "1",
            ENV_SLAVE_ID: str(self.slave_id),
            ENV_NUM_FDS: str(len(self.fds)),
            ENV_FDS: ",".join(str(fd) for fd in self.fds),
            ENV_BIN_ID: self.bin_id,
        }
        if self.bin_path is not None:
            env[ENV_BIN_PATH] = str(self.bin_path)
        if self.ready_fd is not None:
            env[ENV_READY_FD] = str(self.ready_fd)
        if self.restart_signal is not None:
            env[ENV_RESTART_SIGNAL] = self.restart_signal.name
        return env
