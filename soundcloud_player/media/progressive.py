"""
Read-ahead reader for progressive (single-file) streams.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from soundcloud_player.exceptions import PlayerError, SeekUnsupported, StreamOpenFailed
from soundcloud_player.utils.formatting import format_size, shorten_url

log = logging.getLogger(__name__)


class ProgressiveStream:
    """
    A byte stream over one HTTP response, filled by a background fetch task.

    The fetch task stays at most `read_ahead_bytes` ahead of the reader and
    blocks when it gets there; `read` blocks when the reader catches up with
    the download (an underrun). Up to `keep_behind` already-read bytes are
    retained so that short backward seeks need no new request.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        url: str,
        read_ahead_bytes: int = 512 * 1024,
        chunk_size: int = 16384,
        keep_behind: int = 256 * 1024,
        max_attempts: int = 3,
    ):
        self.session = session
        self.url = url
        self.read_ahead_bytes = read_ahead_bytes
        self.chunk_size = chunk_size
        self.keep_behind = keep_behind
        self.max_attempts = max_attempts

        self.content_length: Optional[int] = None
        self.accepts_ranges = False
        self.mime_type: Optional[str] = None

        self._buf = bytearray()
        self._buf_start = 0  # absolute offset of _buf[0]
        self._pos = 0  # absolute read position
        self._eof = False
        self._error: Optional[PlayerError] = None
        self._closed = False
        self._data_available = asyncio.Event()
        self._space_available = asyncio.Event()
        self._response: Optional[aiohttp.ClientResponse] = None
        self._fetch_task: Optional[asyncio.Task] = None

    @classmethod
    async def open(
        cls,
        session: aiohttp.ClientSession,
        url: str,
        read_ahead_bytes: int = 512 * 1024,
        chunk_size: int = 16384,
        keep_behind: int = 256 * 1024,
        max_attempts: int = 3,
    ) -> "ProgressiveStream":
        """
        Issues the initial request and starts the background fetch.

        Raises:
            StreamOpenFailed: If the server cannot be reached or answers with
                an error status.
        """
        stream = cls(
            session,
            url,
            read_ahead_bytes=read_ahead_bytes,
            chunk_size=chunk_size,
            keep_behind=keep_behind,
            max_attempts=max_attempts,
        )
        response = await stream._request(0)
        stream.mime_type = response.headers.get("Content-Type")
        length = response.headers.get("Content-Length")
        if length is not None and length.isdigit():
            stream.content_length = int(length)
        stream.accepts_ranges = (
            response.headers.get("Accept-Ranges", "").lower() == "bytes"
            and stream.content_length is not None
        )
        log.debug(
            f"Opened progressive stream '{shorten_url(url)}' "
            f"({format_size(stream.content_length or 0)}, "
            f"ranges={'yes' if stream.accepts_ranges else 'no'})"
        )
        stream._start_fetch(response)
        return stream

    async def _request(self, offset: int) -> aiohttp.ClientResponse:
        headers = {"Range": f"bytes={offset}-"} if offset else None
        try:
            response = await self.session.get(self.url, headers=headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StreamOpenFailed(
                f"Could not open stream: {e!r}", retryable=True
            ) from e
        if response.status >= 400:
            response.release()
            raise StreamOpenFailed(
                f"Stream request returned HTTP {response.status}.",
                retryable=response.status >= 500 or response.status == 429,
            )
        if offset and response.status != 206:
            response.release()
            raise StreamOpenFailed(
                f"Server ignored range request (HTTP {response.status})."
            )
        return response

    def _start_fetch(self, response: aiohttp.ClientResponse) -> None:
        self._response = response
        self._fetch_task = asyncio.create_task(self._fetch_loop(response))

    async def _cancel_fetch(self) -> None:
        task, self._fetch_task = self._fetch_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._response is not None:
            self._response.release()
            self._response = None

    @property
    def _buffered_end(self) -> int:
        return self._buf_start + len(self._buf)

    async def _fetch_loop(self, response: aiohttp.ClientResponse) -> None:
        attempts = 0
        while True:
            try:
                async for chunk in response.content.iter_chunked(self.chunk_size):
                    while self._buffered_end - self._pos >= self.read_ahead_bytes:
                        self._space_available.clear()
                        await self._space_available.wait()
                    self._buf.extend(chunk)
                    self._data_available.set()
                    attempts = 0
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                response.release()
                attempts += 1
                if not self.accepts_ranges or attempts >= self.max_attempts:
                    self._fail(StreamOpenFailed(f"Stream interrupted: {e!r}"))
                    return
                log.debug(
                    f"Stream interrupted at {format_size(self._buffered_end)}, "
                    f"resuming (attempt {attempts}/{self.max_attempts - 1})"
                )
                try:
                    response = await self._request(self._buffered_end)
                except StreamOpenFailed as reopen_error:
                    self._fail(reopen_error)
                    return
                self._response = response
                continue

            response.release()
            if (
                self.content_length is not None
                and self._buffered_end < self.content_length
            ):
                self._fail(
                    StreamOpenFailed(
                        f"Stream ended early at {self._buffered_end} of "
                        f"{self.content_length} bytes."
                    )
                )
                return
            self._eof = True
            self._data_available.set()
            return

    def _fail(self, error: PlayerError) -> None:
        self._error = error
        self._data_available.set()

    def _trim(self) -> None:
        excess = self._pos - self._buf_start - self.keep_behind
        if excess > 0:
            del self._buf[:excess]
            self._buf_start += excess

    async def read(self, n: int = -1) -> bytes:
        """
        Returns up to `n` bytes, waiting for the download if nothing is
        buffered. An empty result means end of stream.

        Raises:
            StreamOpenFailed: If the download failed and the buffered data is used up.
        """
        if self._closed:
            return b""
        while self._pos >= self._buffered_end:
            if self._error is not None:
                raise self._error
            if self._eof:
                return b""
            self._data_available.clear()
            await self._data_available.wait()

        start = self._pos - self._buf_start
        end = len(self._buf) if n < 0 else min(len(self._buf), start + n)
        data = bytes(self._buf[start:end])
        self._pos += len(data)
        self._trim()
        self._space_available.set()
        return data

    def can_seek(self, duration: float) -> bool:
        """Whether `seek_time` can map a time offset to a byte offset."""
        return self.accepts_ranges and bool(self.content_length) and duration > 0

    async def seek(self, pos: int) -> None:
        """
        Moves the read position to absolute byte offset `pos`.

        Raises:
            SeekUnsupported: If `pos` is outside the retained window and the
                server does not accept range requests.
        """
        if pos < 0:
            raise SeekUnsupported(f"Invalid stream offset {pos}.")
        if self._buf_start <= pos <= self._buffered_end:
            self._pos = pos
            self._space_available.set()
            return
        if not self.accepts_ranges:
            raise SeekUnsupported("Server does not accept range requests.")
        if self.content_length is not None and pos >= self.content_length:
            pos = self.content_length

        await self._cancel_fetch()
        self._buf = bytearray()
        self._buf_start = self._pos = pos
        self._eof = False
        self._error = None
        self._data_available.clear()
        if self.content_length is not None and pos >= self.content_length:
            self._eof = True
            return
        self._start_fetch(await self._request(pos))

    async def seek_time(self, offset: float, duration: float) -> float:
        """
        Seeks to the byte offset proportional to `offset` seconds. Returns the
        number of seconds the decoder still has to skip, always 0 here.
        """
        if not self.can_seek(duration):
            raise SeekUnsupported("Stream position cannot be mapped to a byte offset.")
        fraction = min(max(offset / duration, 0.0), 1.0)
        await self.seek(int(self.content_length * fraction))
        return 0.0

    async def close(self) -> None:
        self._closed = True
        await self._cancel_fetch()
        self._buf = bytearray()
        self._data_available.set()


class BufferSource:
    """A fully materialized audio buffer, read through the same interface."""

    def __init__(self, data: bytes, mime_type: Optional[str] = None):
        self.data = data
        self._view = memoryview(data)
        self.mime_type = mime_type
        self._pos = 0

    def __len__(self) -> int:
        return len(self._view)

    def can_seek(self, duration: float) -> bool:
        return True

    async def read(self, n: int = -1) -> bytes:
        end = len(self._view) if n < 0 else min(len(self._view), self._pos + n)
        data = bytes(self._view[self._pos : end])
        self._pos = end
        return data

    async def seek(self, pos: int) -> None:
        self._pos = min(max(pos, 0), len(self._view))

    async def seek_time(self, offset: float, duration: float) -> float:
        """Rewinds and lets the decoder skip `offset` seconds itself."""
        self._pos = 0
        return max(offset, 0.0)

    async def close(self) -> None:
        self._pos = len(self._view)
