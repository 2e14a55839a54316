"""
Data Models Layer.

This package contains the Pydantic models for tracks and configuration and
the command/event types exchanged with the player thread.
"""

from .config import PlayerConfig
from .playback import PlaybackState, RepeatMode
from .track import Track, Variant, VariantKind

__all__ = [
    "PlaybackState",
    "PlayerConfig",
    "RepeatMode",
    "Track",
    "Variant",
    "VariantKind",
]
