"""
Downloads every segment of a segmented stream and joins them into one buffer.
"""

import asyncio
import logging
from dataclasses import replace

import aiohttp

from soundcloud_player.exceptions import (
    ManifestFetchFailed,
    ManifestParseError,
    SegmentFetchFailed,
)
from soundcloud_player.utils.formatting import format_size, shorten_url

from .downloader import Downloader
from .hls import Manifest, looks_like_manifest_url, parse_manifest

log = logging.getLogger(__name__)


class SegmentedStreamAssembler:
    """
    Materializes a segmented stream in memory.

    The decoder needs a complete container, so assembly is all-or-nothing:
    either every segment arrives and one contiguous buffer is returned, or an
    error is raised and nothing is handed on.
    """

    def __init__(self, downloader: Downloader):
        self.downloader = downloader

    async def _fetch_and_parse(self, url: str) -> Manifest:
        try:
            text = await self.downloader.fetch_text(url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ManifestFetchFailed(
                f"Failed to fetch manifest '{shorten_url(url)}': {e!r}"
            ) from e
        return parse_manifest(text, base_url=url)

    async def fetch_manifest(self, url: str) -> Manifest:
        """
        Fetches and parses a media manifest. A master playlist is resolved to
        its highest-bandwidth stream, one level only.
        """
        manifest = await self._fetch_and_parse(url)
        if not manifest.is_master:
            return manifest

        best = max(manifest.variants, key=lambda v: v.bandwidth)
        log.debug(
            f"Master playlist with {len(manifest.variants)} streams, "
            f"using {best.bandwidth} bps"
        )
        media = await self._fetch_and_parse(best.uri)
        if media.is_master:
            raise ManifestParseError("Master playlist points to another master playlist")
        if not media.session_keys and manifest.session_keys:
            media.session_keys = list(manifest.session_keys)
        return media

    async def resolve_segments(self, manifest: Manifest) -> Manifest:
        """
        Expands segment references that are themselves manifests. Expansion
        goes exactly one level deep.
        """
        if not any(looks_like_manifest_url(s.uri) for s in manifest.segments):
            return manifest

        segments = []
        for segment in manifest.segments:
            if not looks_like_manifest_url(segment.uri):
                segments.append(segment)
                continue
            nested = await self._fetch_and_parse(segment.uri)
            if nested.is_master or any(
                looks_like_manifest_url(s.uri) for s in nested.segments
            ):
                raise ManifestParseError(
                    f"Sub-manifest '{shorten_url(segment.uri)}' nests further manifests"
                )
            if nested.init_map and manifest.init_map is None:
                manifest = replace(manifest, init_map=nested.init_map)
            segments.extend(nested.segments)
        return replace(manifest, segments=segments)

    async def assemble(self, manifest: Manifest) -> bytes:
        """
        Downloads the init section and every segment in order.

        Raises:
            SegmentFetchFailed: With the index of the first segment that could
                not be fetched after all attempts.
        """
        manifest = await self.resolve_segments(manifest)
        if not manifest.segments:
            raise ManifestParseError("Manifest has no segments to assemble")

        parts: list[bytes] = []
        if manifest.init_map is not None:
            init = manifest.init_map
            try:
                parts.append(
                    await self.downloader.fetch_bytes(
                        init.uri, init.byterange.header if init.byterange else None
                    )
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise ManifestFetchFailed(f"Failed to fetch init section: {e!r}") from e

        for index, segment in enumerate(manifest.segments):
            range_header = segment.byterange.header if segment.byterange else None
            try:
                parts.append(await self.downloader.fetch_bytes(segment.uri, range_header))
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.debug(f"Segment {index} failed permanently: {e!r}")
                raise SegmentFetchFailed(
                    f"Segment {index + 1}/{len(manifest.segments)} could not be fetched: {e!r}",
                    index=index,
                ) from e

        data = b"".join(parts)
        log.debug(
            f"Assembled {len(manifest.segments)} segments ({format_size(len(data))})"
        )
        return data

    async def assemble_url(self, url: str) -> bytes:
        return await self.assemble(await self.fetch_manifest(url))
