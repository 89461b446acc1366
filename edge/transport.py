# =============================================================================
# Fundus Edge Demo - Resource Transport
# =============================================================================
# Provides ResourceFetcher, which opens model, image and embedding resources
# either over HTTP(S) via a shared requests.Session or from the local
# filesystem. Every transfer is exposed as a ResourceStream of bounded chunks.
# The blocking requests calls (connect, each chunk read) run in worker
# threads via asyncio.to_thread, so the event loop keeps serving other
# coroutines while a transfer waits on the network.
# =============================================================================

import asyncio
import logging
import os
from typing import Callable, Iterator, Optional

import requests

from edge.errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


def is_remote(locator: str) -> bool:
    """Whether the locator refers to an HTTP(S) resource."""
    return locator.startswith(("http://", "https://"))


class ResourceStream:
    """
    An open transfer of a single resource.

    Args:
        locator:    The resource locator being transferred.
        total_size: Total byte size reported before the transfer, or None.
        chunks:     Iterator yielding the resource bytes in order.
        closer:     Callable releasing the underlying connection or file.
    """

    def __init__(
        self,
        locator: str,
        total_size: Optional[int],
        chunks: Iterator[bytes],
        closer: Callable[[], None],
    ):
        self.locator = locator
        self.total_size = total_size
        self._chunks = chunks
        self._closer = closer
        self._closed = False

    def __aiter__(self) -> "ResourceStream":
        return self

    async def __anext__(self) -> bytes:
        chunk = await asyncio.to_thread(next, self._chunks, None)
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    def close(self) -> None:
        """Abort or finish the transfer. Safe to call more than once."""
        if not self._closed:
            self._closed = True
            self._closer()

    def __enter__(self) -> "ResourceStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ResourceFetcher:
    """
    Opens resources from HTTP(S) URLs or local paths.

    Args:
        session:    Optional requests.Session to reuse (one is created if omitted).
        timeout:    Per-request network timeout in seconds.
        chunk_size: Maximum bytes yielded per chunk.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self._session = session if session is not None else requests.Session()
        self._timeout = timeout
        self._chunk_size = chunk_size

    async def open(self, locator: str) -> ResourceStream:
        """
        Start transferring a resource.

        Raises:
            FetchError: If the resource cannot be opened.
        """
        if is_remote(locator):
            return await self._open_http(locator)
        return await asyncio.to_thread(self._open_file, locator)

    async def fetch(self, locator: str) -> bytes:
        """
        Read a whole resource; every chunk read is awaited off the event loop.

        Raises:
            FetchError: If the transfer fails.
        """
        chunks = []
        stream = await self.open(locator)
        with stream:
            async for chunk in stream:
                chunks.append(chunk)
        data = b"".join(chunks)
        logger.debug("Fetched %s (%d bytes)", locator, len(data))
        return data

    async def _open_http(self, locator: str) -> ResourceStream:
        try:
            response = await asyncio.to_thread(
                self._session.get, locator, stream=True, timeout=self._timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise FetchError(locator, str(exc)) from exc

        content_length = response.headers.get("Content-Length")
        total_size = int(content_length) if content_length and content_length.isdigit() else None

        def _chunks() -> Iterator[bytes]:
            try:
                for chunk in response.iter_content(chunk_size=self._chunk_size):
                    if chunk:
                        yield chunk
            except requests.exceptions.RequestException as exc:
                raise FetchError(locator, str(exc)) from exc

        return ResourceStream(locator, total_size, _chunks(), response.close)

    def _open_file(self, locator: str) -> ResourceStream:
        try:
            handle = open(locator, "rb")
            total_size = os.fstat(handle.fileno()).st_size
        except OSError as exc:
            raise FetchError(locator, str(exc)) from exc

        def _chunks() -> Iterator[bytes]:
            try:
                while True:
                    chunk = handle.read(self._chunk_size)
                    if not chunk:
                        return
                    yield chunk
            except OSError as exc:
                raise FetchError(locator, str(exc)) from exc

        return ResourceStream(locator, total_size, _chunks(), handle.close)
