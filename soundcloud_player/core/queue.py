"""
Ordered playback queue with a cursor.
"""

from collections.abc import Iterable
from typing import Optional

from soundcloud_player.models.playback import RepeatMode
from soundcloud_player.models.track import Track


class PlaybackQueue:
    """
    A list of tracks and the index of the current one.

    The cursor is None exactly when the queue is empty; otherwise it always
    points at an existing entry.
    """

    def __init__(self, tracks: Iterable[Track] = ()):
        self._tracks: list[Track] = list(tracks)
        self._cursor: Optional[int] = 0 if self._tracks else None

    def __len__(self) -> int:
        return len(self._tracks)

    def __iter__(self):
        return iter(self._tracks)

    @property
    def tracks(self) -> tuple[Track, ...]:
        return tuple(self._tracks)

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    @property
    def current(self) -> Optional[Track]:
        return None if self._cursor is None else self._tracks[self._cursor]

    def index_of(self, track_id: int) -> Optional[int]:
        for i, track in enumerate(self._tracks):
            if track.id == track_id:
                return i
        return None

    def replace(self, tracks: Iterable[Track], cursor: int = 0) -> None:
        self._tracks = list(tracks)
        if not self._tracks:
            self._cursor = None
        else:
            self._cursor = min(max(cursor, 0), len(self._tracks) - 1)

    def append(self, track: Track) -> int:
        """Adds a track at the end and returns its index."""
        self._tracks.append(track)
        if self._cursor is None:
            self._cursor = 0
        return len(self._tracks) - 1

    def jump_to(self, index: int) -> Track:
        if not 0 <= index < len(self._tracks):
            raise IndexError(f"Queue index {index} out of range")
        self._cursor = index
        return self._tracks[index]

    def update(self, track: Track) -> None:
        """Replaces entries with the same id, e.g. once a stub has been resolved."""
        self._tracks = [track if t.id == track.id else t for t in self._tracks]

    def clear(self) -> None:
        self._tracks = []
        self._cursor = None

    def next_index(self, repeat: RepeatMode = RepeatMode.NONE) -> Optional[int]:
        """Index that follows the current entry, or None at the end of the queue."""
        if self._cursor is None:
            return None
        if repeat == RepeatMode.ONE:
            return self._cursor
        if self._cursor + 1 < len(self._tracks):
            return self._cursor + 1
        if repeat == RepeatMode.ALL:
            return 0
        return None

    def skip_index(self, repeat: RepeatMode = RepeatMode.NONE) -> Optional[int]:
        """Index for an explicit Next; repeat-one does not pin the cursor here."""
        if repeat == RepeatMode.ONE:
            repeat = RepeatMode.NONE
        return self.next_index(repeat)

    def previous_index(self) -> Optional[int]:
        """Index before the current entry; wraps to the last entry."""
        if self._cursor is None:
            return None
        return (self._cursor - 1) % len(self._tracks)

    def peek_next(self, repeat: RepeatMode = RepeatMode.NONE) -> Optional[Track]:
        index = self.next_index(repeat)
        return None if index is None else self._tracks[index]
