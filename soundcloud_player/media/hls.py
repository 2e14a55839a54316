"""
Segmented-playlist (HLS, RFC 8216) manifests.

Parsing is delegated to the `m3u8` library; its playlist objects are turned
into the small frozen types below, with every URI made absolute and every
byte range given an explicit offset.
"""

from dataclasses import dataclass, field
from typing import List, Optional

import m3u8
from m3u8.parser import ParseError

from soundcloud_player.exceptions import ManifestParseError


@dataclass(frozen=True)
class ByteRange:
    length: int
    offset: int

    @property
    def header(self) -> str:
        """Value for an HTTP Range header."""
        return f"bytes={self.offset}-{self.offset + self.length - 1}"


@dataclass(frozen=True)
class Key:
    method: str
    uri: Optional[str] = None
    iv: Optional[str] = None
    keyformat: Optional[str] = None


@dataclass(frozen=True)
class Map:
    """Initialization section (`#EXT-X-MAP`) of fragmented MP4 streams."""

    uri: str
    byterange: Optional[ByteRange] = None


@dataclass(frozen=True)
class Segment:
    uri: str
    duration: float
    byterange: Optional[ByteRange] = None
    key: Optional[Key] = None
    title: str = ""


@dataclass(frozen=True)
class VariantStream:
    uri: str
    bandwidth: int = 0
    codecs: Optional[str] = None


@dataclass
class Manifest:
    url: str
    segments: List[Segment] = field(default_factory=list)
    variants: List[VariantStream] = field(default_factory=list)
    target_duration: Optional[float] = None
    init_map: Optional[Map] = None
    session_keys: List[Key] = field(default_factory=list)
    ended: bool = False

    @property
    def is_master(self) -> bool:
        return bool(self.variants) and not self.segments

    @property
    def encryption(self) -> Optional[Key]:
        """The first encryption key in effect for any segment, if any."""
        for segment in self.segments:
            if segment.key is not None:
                return segment.key
        return self.session_keys[0] if self.session_keys else None

    @property
    def duration(self) -> float:
        return sum(s.duration for s in self.segments)


def _parse_byterange(value: str, default_offset: int) -> ByteRange:
    length, _, offset = value.partition("@")
    try:
        return ByteRange(
            length=int(length), offset=int(offset) if offset else default_offset
        )
    except ValueError as e:
        raise ManifestParseError(f"Invalid byte range '{value}'") from e


def _convert_key(key) -> Optional[Key]:
    if key is None or not key.method or key.method == "NONE":
        return None
    return Key(
        method=key.method,
        uri=key.absolute_uri if key.uri else None,
        iv=key.iv,
        keyformat=key.keyformat,
    )


def _convert_segments(playlist: m3u8.M3U8) -> List[Segment]:
    segments = []
    last_uri: Optional[str] = None
    last_range_end = 0
    for item in playlist.segments:
        if item.duration is None:
            raise ManifestParseError(f"Segment '{item.uri}' is not preceded by #EXTINF")
        uri = item.absolute_uri
        byterange = None
        if item.byterange:
            # No explicit offset: continues where the previous sub-range of the
            # same resource ended.
            byterange = _parse_byterange(
                item.byterange, last_range_end if uri == last_uri else 0
            )
            last_range_end = byterange.offset + byterange.length
        segments.append(
            Segment(
                uri=uri,
                duration=float(item.duration),
                byterange=byterange,
                key=_convert_key(item.key),
                title=(item.title or "").strip(),
            )
        )
        last_uri = uri
    return segments


def _convert_init_map(playlist: m3u8.M3U8) -> Optional[Map]:
    for item in playlist.segments:
        section = item.init_section
        if section is None:
            continue
        if not section.uri:
            raise ManifestParseError("EXT-X-MAP without URI")
        return Map(
            uri=section.absolute_uri,
            byterange=(
                _parse_byterange(section.byterange, 0) if section.byterange else None
            ),
        )
    return None


def parse_manifest(text: str, base_url: str) -> Manifest:
    """
    Parses manifest text. Relative URIs are resolved against `base_url`.

    Raises:
        ManifestParseError: If the text is not a manifest or a tag is malformed.
    """
    text = text.lstrip("\ufeff")
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines or lines[0] != "#EXTM3U":
        raise ManifestParseError("Manifest does not start with #EXTM3U")

    try:
        playlist = m3u8.loads(text, uri=base_url)
    except (ParseError, ValueError) as e:
        raise ManifestParseError(f"Malformed manifest: {e}") from e

    manifest = Manifest(
        url=base_url,
        segments=_convert_segments(playlist),
        variants=[
            VariantStream(
                uri=p.absolute_uri,
                bandwidth=p.stream_info.bandwidth or 0,
                codecs=p.stream_info.codecs,
            )
            for p in playlist.playlists
        ],
        target_duration=(
            float(playlist.target_duration)
            if playlist.target_duration is not None
            else None
        ),
        init_map=_convert_init_map(playlist),
        session_keys=[
            key
            for key in (_convert_key(k) for k in playlist.session_keys)
            if key is not None
        ],
        ended=bool(playlist.is_endlist),
    )
    if not manifest.segments and not manifest.variants:
        raise ManifestParseError("Manifest lists no segments or variant streams")
    return manifest


def looks_like_manifest_url(url: str) -> bool:
    """Heuristic used for URIs whose content type is not known yet."""
    path = url.split("?", 1)[0].lower()
    return path.endswith((".m3u8", ".m3u"))
