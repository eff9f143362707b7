import sys
import textwrap
from collections.abc import Awaitable, Callable
from pathlib import Path

import anyio
import pytest

from overseer import Binary


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        if Path(item.path).is_relative_to(Path(__file__).parent):
            item.add_marker(pytest.mark.integration)


# Service answering every connection with "<listener index>:<state id>:<build>".
# One thread serves each listener; the main thread waits for the stop request.
SERVICE_TEMPLATE = """\
import threading

import overseer

BUILD = {build!r}
ADDRESSES = {addresses!r}


def serve(index, listener):
    while True:
        try:
            conn, _ = listener.accept()
        except overseer.ListenerClosedError:
            return
        with conn:
            conn.recv(64)
            conn.sendall(f"{{index}}:{{STATE.id}}:{{BUILD}}".encode())


def program(state):
    global STATE
    STATE = state
    for index, listener in enumerate(state.listeners):
        threading.Thread(target=serve, args=(index, listener), daemon=True).start()
    while not state.graceful_shutdown.wait(0.05):
        pass


overseer.run(
    overseer.Config(
        program=program,
        addresses=ADDRESSES,
        required=True,
        terminate_timeout=5,
    )
)
"""

ServiceSource = Callable[..., str]
MakeService = Callable[..., Binary]


@pytest.fixture
def service_source() -> ServiceSource:
    """Return a function rendering the test service for a build."""

    def _render(build: str, addresses: tuple[str, ...] = ("127.0.0.1:0",)) -> str:
        return SERVICE_TEMPLATE.format(build=build, addresses=addresses)

    return _render


@pytest.fixture
def make_service(tmp_path: Path, service_source: ServiceSource) -> MakeService:
    """Return a function writing a service script and describing it as a Binary."""

    def _make(source: str | None = None, **kwargs: object) -> Binary:
        path = tmp_path / "service.py"
        text = source if source is not None else service_source("1", **kwargs)
        _ = path.write_text(textwrap.dedent(text))
        path.chmod(0o755)
        return Binary.load(path, interpreter=(sys.executable,))

    return _make


async def _request(address: tuple[str, int]) -> str:
    host, port = address[:2]
    with anyio.fail_after(10):
        async with await anyio.connect_tcp(host, port) as stream:
            await stream.send(b"hi")
            return (await stream.receive()).decode()


async def _wait_until(predicate: Callable[[], bool], timeout: float = 15) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.05)


Request = Callable[[tuple[str, int]], Awaitable[str]]
WaitUntil = Callable[..., Awaitable[None]]


@pytest.fixture
def request_service() -> Request:
    """Return a function opening one connection and returning the answer."""
    return _request


@pytest.fixture
def wait_until() -> WaitUntil:
    """Return a function polling a predicate until it holds."""
    return _wait_until
