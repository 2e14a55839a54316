"""
Async client for the SoundCloud api-v2 catalog with circuit breaker protection.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from soundcloud_player.exceptions import MetadataUnavailable
from soundcloud_player.models.track import Track, Variant
from soundcloud_player.utils.circuit_breaker import CircuitBreaker, CircuitBreakerError

log = logging.getLogger(__name__)


class SoundCloudClient:
    """
    Async client for the catalog endpoints needed for playback.

    Every public method issues exactly one request per call (per batch for
    `fetch_tracks`) and never retries; retry policy belongs to the caller.
    """

    BASE_URL = "https://api-v2.soundcloud.com/"
    TRACK_BATCH_SIZE = 50

    def __init__(
        self,
        client_id: str,
        oauth_token: str = "",
        timeout: float = 30.0,
        base_url: Optional[str] = None,
    ):
        """
        Args:
            client_id: Public web client id sent with every request.
            oauth_token: Optional OAuth token for the signed-in user.
            timeout: Total per-request timeout in seconds.
            base_url: Overrides the catalog host (used by tests).
        """
        self.client_id = client_id
        self.oauth_token = oauth_token
        self.timeout = timeout
        self.base_url = base_url or self.BASE_URL
        self._session: Optional[aiohttp.ClientSession] = None
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30,
            success_threshold=1,
        )

    async def _initialize_session(self) -> None:
        """Ensures an active aiohttp session is available."""
        if self._session is None or self._session.closed:
            headers = {
                "User-Agent": "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0",
                "Accept": "application/json",
                "Accept-Encoding": "gzip, deflate",
            }
            if self.oauth_token:
                headers["Authorization"] = f"OAuth {self.oauth_token}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(
                    total=self.timeout, connect=min(self.timeout, 10)
                ),
            )

    async def close(self) -> None:
        """Gracefully closes the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def api_call(self, endpoint: str, **params: Any) -> Any:
        """
        GETs a catalog endpoint (or an absolute catalog URL) and returns the
        decoded JSON body.

        Raises:
            MetadataUnavailable: On network errors and HTTP 5xx/429 (retryable),
                or on not-found, unauthorized and malformed responses.
        """
        await self._initialize_session()
        url = endpoint if endpoint.startswith("http") else self.base_url + endpoint
        query = {"client_id": self.client_id, **params}
        start_time = time.monotonic()

        try:
            async with self._circuit_breaker:
                async with self._session.get(url, params=query) as r:
                    if r.status >= 500 or r.status == 429:
                        raise MetadataUnavailable(
                            f"Catalog returned HTTP {r.status} for {endpoint}.",
                            retryable=True,
                        )
                    status = r.status
                    body = await r.text()
        except CircuitBreakerError as e:
            log.error(f"[red]Catalog requests suspended: {e}[/red]")
            raise MetadataUnavailable(str(e)) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.debug(f"Catalog call to {endpoint} failed: {e!r}")
            raise MetadataUnavailable(
                f"Network error talking to the catalog: {e!r}", retryable=True
            ) from e

        log.debug(
            f"Catalog call to {endpoint} returned {status} in "
            f"{(time.monotonic() - start_time) * 1000:.0f} ms"
        )

        if status == 401:
            raise MetadataUnavailable("Unauthorized - invalid or expired token.")
        if status == 404:
            raise MetadataUnavailable(f"Catalog resource not found: {endpoint}")
        if status >= 400:
            raise MetadataUnavailable(f"Catalog returned HTTP {status} for {endpoint}.")

        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise MetadataUnavailable(f"Malformed catalog response: {e}") from e

    # Public API Methods
    async def fetch_track(self, track_id: int) -> Track:
        """Fetches one complete track including its transcodings."""
        data = await self.api_call(f"tracks/{track_id}")
        try:
            return Track.model_validate(data)
        except ValidationError as e:
            raise MetadataUnavailable(
                f"Malformed track metadata: {e.error_count()} validation errors",
                track_id=track_id,
            ) from e

    async def fetch_tracks(self, track_ids: List[int]) -> Dict[int, Track]:
        """
        Resolves stub tracks in batches. Ids the catalog does not return are
        absent from the result.
        """
        tracks: Dict[int, Track] = {}
        for start in range(0, len(track_ids), self.TRACK_BATCH_SIZE):
            chunk = track_ids[start : start + self.TRACK_BATCH_SIZE]
            data = await self.api_call("tracks", ids=",".join(map(str, chunk)))
            if not isinstance(data, list):
                raise MetadataUnavailable("Malformed batch response: expected a list.")
            for item in data:
                try:
                    track = Track.model_validate(item)
                except ValidationError as e:
                    log.warning(f"Skipping malformed track in batch response: {e}")
                    continue
                tracks[track.id] = track
        return tracks

    async def resolve_stream_url(self, track: Track, variant: Variant) -> str:
        """
        Exchanges a transcoding URL template for the actual stream URL.
        """
        params = {}
        if track.track_authorization:
            params["track_authorization"] = track.track_authorization
        data = await self.api_call(variant.url, **params)
        url = data.get("url") if isinstance(data, dict) else None
        if not url or not isinstance(url, str):
            raise MetadataUnavailable(
                "Stream URL response did not contain a URL.", track_id=track.id
            )
        return url
