"""
Low-level HTTP fetching of manifests and media bodies, with bounded retries.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from soundcloud_player.utils.formatting import shorten_url
from soundcloud_player.utils.retry import retry_async

log = logging.getLogger(__name__)


def is_transient_http_error(error: BaseException) -> bool:
    """Connection problems, timeouts and 5xx/429 responses are worth retrying."""
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status >= 500 or error.status == 429
    return isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError))


class Downloader:
    """Fetches whole bodies over a pooled aiohttp session."""

    CHUNK_SIZE = 131072  # 128 KB

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        timeout: float = 30.0,
        max_connections: int = 8,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout
        self.max_connections = max_connections
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def session(self) -> aiohttp.ClientSession:
        """The shared session, created on first use inside the running loop."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.max_connections * 2,
                limit_per_host=self.max_connections,
                ttl_dns_cache=600,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(
                    total=None, sock_connect=15, sock_read=self.timeout
                ),
            )
            log.debug(f"Created media session with limit_per_host={self.max_connections}")
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            log.debug("Media session closed.")

    async def _fetch_once(self, url: str, headers: Optional[dict]) -> bytes:
        async with self.session.get(url, headers=headers, allow_redirects=True) as response:
            response.raise_for_status()
            chunks = []
            async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
                chunks.append(chunk)
            return b"".join(chunks)

    async def fetch_bytes(self, url: str, range_header: Optional[str] = None) -> bytes:
        """
        Downloads a complete body, retrying transient failures. The last error
        is re-raised once attempts are exhausted.
        """
        headers = {"Range": range_header} if range_header else None
        return await retry_async(
            lambda: self._fetch_once(url, headers),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            description=f"Fetch of '{shorten_url(url, 60)}'",
            should_retry=is_transient_http_error,
        )

    async def fetch_text(self, url: str) -> str:
        data = await self.fetch_bytes(url)
        return data.decode("utf-8", errors="replace")
