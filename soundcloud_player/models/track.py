"""
Pydantic models for tracks and their transcodings as returned by the catalog.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

# Protocols the catalog uses for segmented delivery; the encrypted ones need
# an external extractor before they can be played.
SEGMENTED_PROTOCOLS = ("hls", "ctr-encrypted-hls", "cbc-encrypted-hls")
ENCRYPTED_PROTOCOLS = ("ctr-encrypted-hls", "cbc-encrypted-hls")
PROGRESSIVE_PROTOCOLS = ("progressive",)


class VariantKind(Enum):
    """Delivery mechanism of a transcoding."""

    SEGMENTED = "segmented"
    PROGRESSIVE = "progressive"
    UNKNOWN = "unknown"


class TranscodingFormat(BaseModel):
    protocol: str
    mime_type: str


class Variant(BaseModel):
    """One encoded representation of a track (a catalog "transcoding")."""

    url: str
    format: TranscodingFormat
    quality: Optional[str] = None
    snipped: bool = False

    class Config:
        frozen = True

    @property
    def kind(self) -> VariantKind:
        protocol = self.format.protocol.lower()
        if protocol in SEGMENTED_PROTOCOLS:
            return VariantKind.SEGMENTED
        if protocol in PROGRESSIVE_PROTOCOLS:
            return VariantKind.PROGRESSIVE
        return VariantKind.UNKNOWN

    @property
    def codec(self) -> str:
        """The container/codec tag, e.g. 'audio/mpeg' or 'audio/mp4; codecs="mp4a.40.2"'."""
        return self.format.mime_type

    @property
    def protected(self) -> Optional[bool]:
        """
        Declared protection: True for encrypted protocols, None when unknown
        until the manifest is probed.
        """
        protocol = self.format.protocol.lower()
        if protocol in ENCRYPTED_PROTOCOLS or any(
            p in self.url for p in ENCRYPTED_PROTOCOLS
        ):
            return True
        return None


class Media(BaseModel):
    transcodings: list[Variant] = Field(default_factory=list)

    class Config:
        frozen = True


class TrackUser(BaseModel):
    id: int = 0
    username: str = ""
    avatar_url: Optional[str] = None

    class Config:
        frozen = True


class Track(BaseModel):
    """
    A catalog track. Playlists may embed "stub" tracks that carry only an id;
    use `is_complete` to tell them apart.
    """

    id: int
    title: str = ""
    user: TrackUser = Field(default_factory=TrackUser)
    artwork_url: Optional[str] = None
    duration: int = 0  # milliseconds
    media: Optional[Media] = None
    permalink_url: Optional[str] = None
    track_authorization: Optional[str] = None

    class Config:
        frozen = True

    @classmethod
    def stub(cls, track_id: int) -> "Track":
        return cls(id=track_id)

    @property
    def artist(self) -> str:
        return self.user.username

    @property
    def variants(self) -> list[Variant]:
        return list(self.media.transcodings) if self.media else []

    @property
    def duration_s(self) -> float:
        return self.duration / 1000

    def is_complete(self) -> bool:
        return bool(self.title) and bool(self.user.username)

    def display_title(self) -> str:
        if not self.is_complete():
            return f"Track {self.id}"
        return f"{self.artist} - {self.title}"
