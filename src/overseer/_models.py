"""Data models for the overseer process protocol.

This module defines the core data types shared by master and slave:
- ProcessRole: Which half of the protocol the current process runs
- SlaveState: Lifecycle states of a spawned slave generation
- SlaveStatus: Mutable runtime status of one slave generation
"""

from dataclasses import dataclass
from enum import StrEnum


class ProcessRole(StrEnum):
    """Role of the current process, resolved once at startup.

    - MASTER: Owns listeners, spawns slaves and drives upgrades
    - SLAVE: Runs the user program against inherited listeners
    - DISABLED: Supervision is unavailable; the program runs directly
    """

    MASTER = "master"
    SLAVE = "slave"
    DISABLED = "disabled"


class SlaveState(StrEnum):
    """Slave generation lifecycle states.

    States represent what the master knows about a spawned slave:
    - STARTING: Process spawned, readiness handshake pending
    - READY: Slave reported readiness and is serving
    - RETIRING: Slave was asked to stop as part of a handover or shutdown
    - STOPPED: Slave exited after being asked to, or exited cleanly
    - CRASHED: Slave exited on its own with a non-zero code
    """

    STARTING = "starting"
    READY = "ready"
    RETIRING = "retiring"
    STOPPED = "stopped"
    CRASHED = "crashed"


@dataclass(slots=True)
class SlaveStatus:
    """Mutable runtime status of a slave generation.

    Attributes:
        slave_id: Instance identifier of the generation.
        state: Current lifecycle state.
        pid: Process ID while the process exists.
        exit_code: Exit code once the process terminated.
        started_at: ISO 8601 timestamp of the spawn.
        stopped_at: ISO 8601 timestamp of the exit.
    """

    slave_id: int
    state: SlaveState = SlaveState.STARTING
    pid: int | None = None
    exit_code: int | None = None
    started_at: str | None = None
    stopped_at: str | None = None
