"""
Commands accepted by the player thread and events it reports back.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .track import Track


class PlaybackState(Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"
    FAILED = "failed"
    COMPLETED = "completed"


class RepeatMode(Enum):
    NONE = "none"
    ONE = "one"
    ALL = "all"


# --- Commands (front end -> player) ---


@dataclass(frozen=True)
class Play:
    """Play a track. When `queue` is given it replaces the playback queue."""

    track: Track
    queue: Optional[tuple[Track, ...]] = None


@dataclass(frozen=True)
class Enqueue:
    track: Track


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class Next:
    pass


@dataclass(frozen=True)
class Previous:
    pass


@dataclass(frozen=True)
class Seek:
    offset: float  # seconds from track start


@dataclass(frozen=True)
class SetVolume:
    level: float  # 0.0 - 1.0


@dataclass(frozen=True)
class SetRepeat:
    mode: RepeatMode


@dataclass(frozen=True)
class Preload:
    """Download a track into the audio cache without playing it."""

    track: Track


Command = Union[
    Play, Enqueue, Pause, Resume, Stop, Next, Previous, Seek, SetVolume, SetRepeat, Preload
]


# --- Events (player -> front end) ---


@dataclass(frozen=True)
class StateChanged:
    state: PlaybackState
    track: Optional[Track] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class Progress:
    position: float
    duration: float


@dataclass(frozen=True)
class TrackStarted:
    track: Track


@dataclass(frozen=True)
class TrackFailed:
    track: Track
    reason: str
    stage: Optional[str] = None
    message: str = ""
    # Public page of the track, offered to the user when reason == "drm".
    page_url: Optional[str] = None


@dataclass(frozen=True)
class QueueAdvanced:
    index: int
    track: Track


@dataclass(frozen=True)
class PreloadComplete:
    track_id: int


@dataclass(frozen=True)
class CommandRejected:
    command: object
    reason: str


Event = Union[
    StateChanged,
    Progress,
    TrackStarted,
    TrackFailed,
    QueueAdvanced,
    PreloadComplete,
    CommandRejected,
]
