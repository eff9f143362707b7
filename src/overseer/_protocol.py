"""Protocol definitions for overseer.

This module defines the interfaces that decouple the supervision core
from its pluggable collaborators:
- Fetcher: Backend that supplies candidate binaries
- ProcessHandler: The master or slave half of the protocol
"""

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable


@runtime_checkable
class Fetcher(Protocol):
    """Protocol for binary fetching backends.

    The master calls init() once and then fetch() repeatedly, never
    more often than Config.min_fetch_interval. Backends are expected to
    add their own polling delay and to be cheap when nothing changed.
    A backend holding resources may also define an async aclose(),
    which the master awaits once when it exits.
    """

    async def init(self) -> None:
        """Prepare the fetcher.

        Raises:
            Exception: Any error disables fetching for this master.
        """
        ...

    async def fetch(self) -> AsyncIterator[bytes] | None:
        """Retrieve the latest binary.

        Returns:
            None when there is no update, otherwise an async iterator
            over the bytes of the new binary.

        Raises:
            Exception: Any error is logged and the fetch is retried on
                the next cycle.
        """
        ...


@runtime_checkable
class ProcessHandler(Protocol):
    """Protocol for the two halves of the supervision protocol.

    Implemented by Master and Slave. The bootstrap constructs exactly
    one handler per process and drives it through run().
    """

    def run(self) -> int:
        """Run the handler to completion.

        Returns:
            The process exit code.
        """
        ...

    def trigger_restart(self) -> None:
        """Request a graceful restart of the slave."""
        ...
