"""State handed to the user program."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pendulum import DateTime

    from ._listener import Listener

DISABLED_ID = "disabled"


def _no_restart() -> None:
    pass


@dataclass(frozen=True, slots=True)
class State:
    """Runtime state of one slave generation.

    Attributes:
        enabled: False when the program runs without supervision.
        id: Instance identifier, distinct for every slave generation.
        started_at: When this generation started.
        listeners: Listeners for the configured addresses, in order.
        addresses: The configured addresses, in order.
        bin_path: Path of the binary this generation runs.
        graceful_shutdown: Set when the slave has been asked to stop; the
            program should finish in-flight work and return.
    """

    enabled: bool
    id: str
    started_at: DateTime | None = None
    listeners: tuple[Listener, ...] = ()
    addresses: tuple[str, ...] = ()
    bin_path: Path | None = None
    graceful_shutdown: threading.Event = field(default_factory=threading.Event)
    restart_trigger: Callable[[], None] = field(
        default=_no_restart, repr=False, compare=False
    )

    @property
    def listener(self) -> Listener | None:
        """Return the first listener, if any."""
        return self.listeners[0] if self.listeners else None

    @property
    def address(self) -> str:
        """Return the first address, or "" when there is none."""
        return self.addresses[0] if self.addresses else ""

    def restart(self) -> None:
        """Request a graceful restart of the service.

        Equivalent to sending the restart signal to the master. Does
        nothing when supervision is disabled.
        """
        self.restart_trigger()


def disabled_state() -> State:
    """Return the state used when the program runs without supervision."""
    return State(enabled=False, id=DISABLED_ID)
