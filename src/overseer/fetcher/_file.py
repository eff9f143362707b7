"""File fetcher backend."""

from collections.abc import AsyncGenerator, AsyncIterator
from pathlib import Path
from typing import final

import anyio

DEFAULT_INTERVAL: float = 1.0

_CHUNK_SIZE: int = 64 * 1024


async def _read_file(path: Path) -> AsyncGenerator[bytes]:
    async with await anyio.open_file(path, "rb") as f:
        while chunk := await f.read(_CHUNK_SIZE):
            yield chunk


@final
class FileFetcher:
    """Watches a local file and supplies it whenever it changes.

    Changes are detected from the file's modification time and size. The
    first observation only records the baseline.

    Attributes:
        path: File holding the latest binary.
        interval: Seconds to wait before every poll except the first.
    """

    __slots__ = ("_delay", "_last", "interval", "path")

    def __init__(self, path: Path | str, *, interval: float = DEFAULT_INTERVAL) -> None:
        """Initialize the fetcher.

        Args:
            path: File holding the latest binary.
            interval: Seconds to wait between polls.
        """
        self.path = Path(path)
        self.interval = interval if interval > 0 else DEFAULT_INTERVAL
        self._delay = False
        self._last: tuple[int, int] | None = None

    async def init(self) -> None:
        """Validate the configured path.

        Raises:
            ValueError: If no path is configured.
        """
        if self.path == Path():
            msg = "file fetcher requires a path"
            raise ValueError(msg)

    async def fetch(self) -> AsyncIterator[bytes] | None:
        """Poll the file for a change.

        Returns:
            None on the first poll and while the file is unchanged,
            otherwise the file's contents.

        Raises:
            OSError: If the file cannot be inspected.
        """
        if self._delay:
            await anyio.sleep(self.interval)
        self._delay = True

        info = await anyio.Path(self.path).stat()
        current = (info.st_mtime_ns, info.st_size)
        previous, self._last = self._last, current
        if previous is None or previous == current:
            return None
        return _read_file(self.path)
