"""Listening sockets shared between the master and its slaves.

The master binds one socket per configured address and keeps it open for
its whole lifetime. Slaves receive the descriptors through inheritance and
wrap them in Listener objects. Every process holds its own descriptor for
the same underlying socket, so closing a Listener never affects the master
or another slave generation.
"""

from __future__ import annotations

import select
import socket
import threading
from collections.abc import Callable, Sequence
from typing import Any, final

from overseer.exceptions import BindError, ListenerClosedError

DEFAULT_BACKLOG: int = 128

# Upper bound on how long accept() keeps waiting after the listener is closed
DEFAULT_POLL_INTERVAL: float = 0.5


def parse_address(address: str) -> tuple[str, int]:
    """Split a listen address into host and port.

    Accepts "host:port", ":port" (all interfaces) and "[v6-host]:port".

    Args:
        address: The address to parse.

    Returns:
        A (host, port) tuple; host is "" for all interfaces.

    Raises:
        ValueError: If the address has no port or the port is invalid.
    """
    host, sep, port_str = address.rpartition(":")
    if not sep:
        msg = "missing port"
        raise ValueError(msg)
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_str)
    except ValueError:
        msg = f"invalid port {port_str!r}"
        raise ValueError(msg) from None
    if not 0 <= port <= 65535:  # noqa: PLR2004
        msg = f"port {port} out of range"
        raise ValueError(msg)
    return host, port


def _bind(address: str) -> socket.socket:
    host, port = parse_address(address)
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return socket.create_server(
        (host, port),
        family=family,
        backlog=DEFAULT_BACKLOG,
        reuse_port=False,
    )


def bind_listeners(addresses: Sequence[str]) -> list[socket.socket]:
    """Bind one listening socket per address, in order.

    Args:
        addresses: Normalized listen addresses.

    Returns:
        The bound sockets, in the same order as addresses.

    Raises:
        BindError: If any address fails to bind. Sockets bound before the
            failure are closed.
    """
    bound: list[socket.socket] = []
    for address in addresses:
        try:
            bound.append(_bind(address))
        except (OSError, ValueError) as e:
            for sock in bound:
                sock.close()
            msg = f"failed to bind {address}: {e}"
            raise BindError(msg, address=address, cause=e) from e
    return bound


class _TrackedSocket(socket.socket):
    """Accepted connection that reports its close to the owning Listener."""

    def __init__(self, conn: socket.socket, on_close: Callable[[], None]) -> None:
        super().__init__(conn.family, conn.type, conn.proto, fileno=conn.detach())
        self._on_close: Callable[[], None] | None = on_close

    def close(self) -> None:
        on_close, self._on_close = self._on_close, None
        super().close()
        if on_close is not None:
            on_close()


@final
class Listener:
    """Inherited listening socket owned by a slave.

    Tracks the connections it accepted so that a graceful stop can close
    the listener and then wait for in-flight connections to finish.

    Attributes:
        address: The configured address this listener serves.
        socket: The slave's descriptor for the shared listening socket.
    """

    __slots__ = (
        "_closed",
        "_idle",
        "_in_flight",
        "_poll_interval",
        "address",
        "socket",
    )

    def __init__(
        self,
        sock: socket.socket,
        address: str,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """Initialize the listener.

        Args:
            sock: A bound, listening socket.
            address: The configured address for this socket.
            poll_interval: Seconds between closed-state checks in accept().
        """
        # Several processes accept from the same socket; a lost race must not
        # block in accept()
        sock.setblocking(False)
        self.socket = sock
        self.address = address
        self._poll_interval = poll_interval
        self._closed = False
        self._in_flight = 0
        self._idle = threading.Condition()

    @classmethod
    def from_fd(cls, fd: int, address: str) -> Listener:
        """Rebuild a listener from an inherited file descriptor.

        Args:
            fd: The inherited descriptor number.
            address: The configured address for this descriptor.

        Returns:
            A Listener wrapping the descriptor.

        Raises:
            OSError: If the descriptor is not an open socket.
        """
        return cls(socket.socket(fileno=fd), address)

    @property
    def closed(self) -> bool:
        """Return True once the listener stopped accepting."""
        return self._closed

    @property
    def in_flight(self) -> int:
        """Return the number of accepted connections not yet closed."""
        with self._idle:
            return self._in_flight

    def fileno(self) -> int:
        """Return the descriptor number, or -1 once closed."""
        return self.socket.fileno()

    def getsockname(self) -> Any:  # noqa: ANN401
        """Return the bound address of the underlying socket."""
        return self.socket.getsockname()

    def accept(self) -> tuple[socket.socket, Any]:
        """Wait for and accept the next connection.

        Returns:
            The connection socket and the peer address.

        Raises:
            ListenerClosedError: If the listener is or becomes closed.
        """
        while True:
            if self._closed:
                msg = f"listener {self.address} closed"
                raise ListenerClosedError(msg)
            try:
                readable, _, _ = select.select([self.socket], [], [], self._poll_interval)
                if not readable:
                    continue
                conn, peer = self.socket.accept()
            except BlockingIOError:
                continue
            except (OSError, ValueError) as e:
                if self._closed:
                    msg = f"listener {self.address} closed"
                    raise ListenerClosedError(msg) from e
                raise
            conn.setblocking(True)
            with self._idle:
                self._in_flight += 1
            return _TrackedSocket(conn, self._connection_closed), peer

    def _connection_closed(self) -> None:
        with self._idle:
            self._in_flight -= 1
            if self._in_flight <= 0:
                self._idle.notify_all()

    def close(self) -> None:
        """Stop accepting and close this process's descriptor."""
        if self._closed:
            return
        self._closed = True
        self.socket.close()

    def wait_idle(self, timeout: float) -> bool:
        """Wait until every accepted connection has been closed.

        Args:
            timeout: Maximum seconds to wait.

        Returns:
            True if no connection is in flight, False on timeout.
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight <= 0, timeout)

    def release(self, timeout: float) -> bool:
        """Close the listener and wait for in-flight connections.

        Args:
            timeout: Maximum seconds to wait for connections to close.

        Returns:
            True if all connections closed within the timeout.
        """
        self.close()
        return self.wait_idle(timeout)

    def __enter__(self) -> Listener:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
