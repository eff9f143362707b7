"""HTTP fetcher backend."""

import zlib
from collections.abc import AsyncGenerator, AsyncIterator, Sequence
from typing import final

import anyio
import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

DEFAULT_INTERVAL: float = 300.0
DEFAULT_CHECK_HEADERS: tuple[str, ...] = ("ETag", "Last-Modified")
DEFAULT_TIMEOUT: float = 30.0


@retry(
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
    reraise=True,
)
async def _head(client: httpx.AsyncClient, url: str) -> httpx.Response:
    """Make a HEAD request with retry logic.

    Raises:
        httpx.ConnectError: If connection fails after retries.
        httpx.TimeoutException: If request times out after retries.
    """
    return await client.head(url, follow_redirects=True)


async def _stream_and_close(
    response: httpx.Response, *, gunzip: bool
) -> AsyncGenerator[bytes]:
    """Stream response bytes and ensure the response is closed.

    Args:
        response: The streamed httpx response.
        gunzip: Decompress a gzip body the server did not decode.

    Yields:
        Binary content chunks.
    """
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS) if gunzip else None
    try:
        async for chunk in response.aiter_bytes():
            if decompressor is None:
                yield chunk
                continue
            data = decompressor.decompress(chunk)
            if data:
                yield data
        if decompressor is not None:
            tail = decompressor.flush()
            if tail:
                yield tail
    finally:
        await response.aclose()


@final
class HTTPFetcher:
    """Fetches new binaries from an HTTP(S) URL.

    A HEAD request is made first. When every check header present in the
    response matches the value seen on the previous poll, nothing is
    downloaded. Otherwise the binary is streamed with a GET request. URLs
    ending in ".gz" are decompressed unless the server already applied
    Content-Encoding: gzip.

    Attributes:
        url: Location of the latest binary.
        interval: Seconds to wait before every poll except the first.
        check_headers: Response headers compared between polls.
    """

    __slots__ = (
        "_client",
        "_delay",
        "_lasts",
        "_owns_client",
        "_timeout",
        "check_headers",
        "interval",
        "url",
    )

    def __init__(
        self,
        url: str,
        *,
        interval: float = DEFAULT_INTERVAL,
        check_headers: Sequence[str] = DEFAULT_CHECK_HEADERS,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the fetcher.

        Args:
            url: Location of the latest binary.
            interval: Seconds to wait between polls.
            check_headers: Response headers compared between polls.
            client: Client to use; one is created in init() if None.
            timeout: Request timeout for a created client.
        """
        self.url = url
        self.interval = interval if interval > 0 else DEFAULT_INTERVAL
        self.check_headers = tuple(check_headers) or DEFAULT_CHECK_HEADERS
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._delay = False
        self._lasts: dict[str, str] = {}

    async def init(self) -> None:
        """Validate the URL and create the HTTP client.

        Raises:
            ValueError: If the URL is not an absolute http(s) URL.
        """
        scheme = httpx.URL(self.url).scheme
        if scheme not in ("http", "https"):
            msg = f"HTTP fetcher requires an http(s) URL, got {self.url!r}"
            raise ValueError(msg)
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True

    async def aclose(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers_match(self, response: httpx.Response) -> bool:
        matches = total = 0
        for header in self.check_headers:
            current = response.headers.get(header)
            if not current:
                continue
            if self._lasts.get(header) == current:
                matches += 1
            self._lasts[header] = current
            total += 1
        return matches == total

    async def fetch(self) -> AsyncIterator[bytes] | None:
        """Poll the URL for a new binary.

        Returns:
            None when the check headers are unchanged, otherwise the body
            of the binary.

        Raises:
            httpx.HTTPError: If a request fails.
            RuntimeError: If init() was not called.
        """
        if self._delay:
            await anyio.sleep(self.interval)
        self._delay = True

        client = self._client
        if client is None:
            msg = "HTTP fetcher used before init()"
            raise RuntimeError(msg)

        head = await _head(client, self.url)
        if head.status_code != httpx.codes.OK:
            msg = f"HEAD request failed ({head.status_code})"
            raise httpx.HTTPStatusError(msg, request=head.request, response=head)
        if self._headers_match(head):
            return None

        request = client.build_request("GET", self.url)
        response = await client.send(request, stream=True, follow_redirects=True)
        if response.status_code != httpx.codes.OK:
            await response.aclose()
            msg = f"GET request failed ({response.status_code})"
            raise httpx.HTTPStatusError(msg, request=request, response=response)

        encoding = response.headers.get("Content-Encoding", "").lower()
        gunzip = self.url.endswith(".gz") and encoding != "gzip"
        return _stream_and_close(response, gunzip=gunzip)
