"""Supervision policy and its validation."""

from __future__ import annotations

import dataclasses
import signal
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from overseer.exceptions import ConfigInvalidError

from ._listener import parse_address
from ._logging import LogFormatType

if TYPE_CHECKING:
    from ._protocol import Fetcher
    from ._state import State

# SIGUSR2 is missing on platforms overseer does not support.
DEFAULT_RESTART_SIGNAL: signal.Signals = getattr(signal, "SIGUSR2", signal.SIGTERM)
DEFAULT_TERMINATE_TIMEOUT: float = 30.0
DEFAULT_MIN_FETCH_INTERVAL: float = 1.0
DEFAULT_STARTUP_TIMEOUT: float = 10.0
DEFAULT_SANITY_CHECK_TIMEOUT: float = 5.0


@dataclass(frozen=True, slots=True)
class Config:
    """Run-time configuration of overseer.

    Attributes:
        program: The service's main function, run inside the slave.
        required: Prevent falling back to running program directly in the
            current process when supervision fails.
        address: Zero-downtime listen address (set this or addresses).
        addresses: Zero-downtime listen addresses (set this or address).
        restart_signal: Signal that triggers a graceful restart manually.
            Defaults to SIGUSR2.
        terminate_timeout: Seconds to wait for a slave to exit by itself
            before it is killed.
        min_fetch_interval: Minimum seconds between two fetch attempts.
        pre_upgrade: Called with the path of a fetched candidate; raising
            cancels the upgrade.
        fetcher: Backend used to fetch new binaries.
        debug: Enable all overseer logs.
        no_warn: Disable warning logs.
        no_restart: Disable all restarts; the restart signal becomes a
            shutdown signal.
        no_restart_after_fetch: Disable the automatic restart after each
            upgrade. Manual restarts still work.
        startup_timeout: Seconds to wait for a new slave's readiness
            handshake during a restart.
        sanity_check_timeout: Seconds a candidate binary gets to answer
            the sanity check.
        max_restarts: Crash respawns allowed inside crash_window before the
            master gives up.
        crash_window: Seconds over which crashes are counted.
        log_format: Output format of overseer logs.
    """

    program: Callable[[State], None] | None = None
    required: bool = False
    address: str = ""
    addresses: tuple[str, ...] = ()
    restart_signal: signal.Signals | None = None
    terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT
    min_fetch_interval: float = DEFAULT_MIN_FETCH_INTERVAL
    pre_upgrade: Callable[[Path], None] | None = None
    fetcher: Fetcher | None = None
    debug: bool = False
    no_warn: bool = False
    no_restart: bool = False
    no_restart_after_fetch: bool = False
    startup_timeout: float = DEFAULT_STARTUP_TIMEOUT
    sanity_check_timeout: float = DEFAULT_SANITY_CHECK_TIMEOUT
    max_restarts: int = 5
    crash_window: float = 60.0
    log_format: LogFormatType = "text"

    @property
    def restart_signum(self) -> signal.Signals:
        """Return the effective restart signal."""
        return self.restart_signal or DEFAULT_RESTART_SIGNAL


def _positive_or(value: float, default: float) -> float:
    return value if value > 0 else default


def validate(config: Config) -> Config:
    """Validate a Config and return its normalized copy.

    Args:
        config: The configuration to validate.

    Returns:
        A new Config with addresses normalized and defaults applied.

    Raises:
        ConfigInvalidError: If the program is missing, both address forms
            are set, an address cannot be parsed, or max_restarts is
            negative.
    """
    if config.program is None:
        msg = "overseer Config.program required"
        raise ConfigInvalidError(msg, field="program")

    address = config.address
    addresses = tuple(config.addresses)
    if address:
        if addresses:
            msg = "overseer Config.address and Config.addresses cannot both be set"
            raise ConfigInvalidError(msg, field="addresses")
        addresses = (address,)
    elif addresses:
        address = addresses[0]

    for addr in addresses:
        try:
            _ = parse_address(addr)
        except ValueError as e:
            msg = f"invalid listen address {addr!r}: {e}"
            raise ConfigInvalidError(msg, field="addresses") from e

    if config.max_restarts < 0:
        msg = "overseer Config.max_restarts must not be negative"
        raise ConfigInvalidError(msg, field="max_restarts")

    if config.log_format not in ("text", "json"):
        msg = f"unknown log format {config.log_format!r}"
        raise ConfigInvalidError(msg, field="log_format")

    return dataclasses.replace(
        config,
        address=address,
        addresses=addresses,
        restart_signal=config.restart_signal or DEFAULT_RESTART_SIGNAL,
        terminate_timeout=_positive_or(
            config.terminate_timeout, DEFAULT_TERMINATE_TIMEOUT
        ),
        min_fetch_interval=_positive_or(
            config.min_fetch_interval, DEFAULT_MIN_FETCH_INTERVAL
        ),
        startup_timeout=_positive_or(config.startup_timeout, DEFAULT_STARTUP_TIMEOUT),
        sanity_check_timeout=_positive_or(
            config.sanity_check_timeout, DEFAULT_SANITY_CHECK_TIMEOUT
        ),
    )
