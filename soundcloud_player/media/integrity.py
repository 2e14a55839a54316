"""
Media probing with mutagen.
"""

import io
import logging
from typing import Optional

from mutagen import File as MutagenFile
from mutagen import MutagenError

log = logging.getLogger(__name__)


class AudioIntegrityChecker:
    """Reads container metadata from in-memory audio buffers."""

    @staticmethod
    def probe_duration(data: bytes) -> Optional[float]:
        """
        Returns the duration in seconds, or None if mutagen cannot identify
        the buffer as audio.
        """
        if not data:
            return None
        try:
            audio = MutagenFile(io.BytesIO(data))
        except (MutagenError, ValueError, EOFError) as e:
            log.debug(f"Could not probe audio buffer: {e}")
            return None
        if audio is None or audio.info is None:
            return None
        length = getattr(audio.info, "length", None)
        return float(length) if length else None

    @staticmethod
    def is_valid_audio(data: bytes) -> bool:
        return AudioIntegrityChecker.probe_duration(data) is not None
