"""
On-disk cache of fully downloaded audio, keyed by track id, with a time-to-live.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from soundcloud_player.media.integrity import AudioIntegrityChecker
from soundcloud_player.utils.formatting import format_size

log = logging.getLogger(__name__)


class AudioCache:
    """
    Stores preloaded audio so that a later Play can start without network I/O.

    Entries older than `max_age_hours` are treated as missing and removed, as
    are entries mutagen cannot identify as audio.
    """

    SUFFIX = ".audio"

    def __init__(self, cache_dir: Path, max_age_hours: int = 24):
        """
        Args:
            cache_dir: Directory for cache files; created if missing.
            max_age_hours: Age after which an entry expires.
        """
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.max_age_seconds = max_age_hours * 3600

    def _path(self, track_id: int) -> Path:
        return self.cache_dir / f"{track_id}{self.SUFFIX}"

    def _is_expired(self, path: Path) -> bool:
        return time.time() - path.stat().st_mtime > self.max_age_seconds

    def has(self, track_id: int) -> bool:
        path = self._path(track_id)
        try:
            return path.is_file() and not self._is_expired(path)
        except OSError:
            return False

    async def read(self, track_id: int) -> Optional[bytes]:
        """
        Returns the cached audio, or None for missing, expired or corrupt entries.
        """
        path = self._path(track_id)
        try:
            if not path.is_file():
                return None
            if self._is_expired(path):
                log.debug(f"Cache entry for track {track_id} expired.")
                await self.remove(track_id)
                return None
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except OSError as e:
            log.debug(f"Cache read failed for track {track_id}: {e}")
            return None

        valid = await asyncio.to_thread(AudioIntegrityChecker.is_valid_audio, data)
        if not valid:
            log.warning(
                f"[yellow]Discarding corrupt cache entry for track {track_id}.[/yellow]"
            )
            await self.remove(track_id)
            return None
        return data

    async def write(self, track_id: int, data: bytes) -> bool:
        path = self._path(track_id)
        tmp_path = path.with_suffix(".part")
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            log.warning(f"Cache write failed for track {track_id}: {e}")
            return False
        log.debug(f"Cached track {track_id} ({format_size(len(data))})")
        return True

    async def remove(self, track_id: int) -> None:
        try:
            await aiofiles.os.remove(self._path(track_id))
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"Could not remove cache entry for track {track_id}: {e}")

    def clear(self) -> int:
        """Removes all entries and returns how many were deleted."""
        removed = 0
        for cache_file in self.cache_dir.glob(f"*{self.SUFFIX}"):
            try:
                cache_file.unlink()
                removed += 1
            except OSError as e:
                log.error(f"Failed to remove cache file {cache_file.name}: {e}")
        return removed
