"""
Defines custom exceptions for the player so that each failure can be reported
with the stage it happened in and the track it belongs to.
"""

from typing import Optional


class PlayerError(Exception):
    """Base exception for all playback-related errors."""

    reason = "error"

    def __init__(
        self,
        message: str = "",
        *,
        track_id: Optional[int] = None,
        stage: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message or self.__class__.__doc__ or self.reason)
        self.track_id = track_id
        self.stage = stage
        self.retryable = retryable

    def with_context(
        self, track_id: Optional[int] = None, stage: Optional[str] = None
    ) -> "PlayerError":
        """Fills in track/stage information that was not known where the error was raised."""
        if self.track_id is None:
            self.track_id = track_id
        if self.stage is None:
            self.stage = stage
        return self


class ConfigurationError(PlayerError):
    """Raised for issues related to configuration loading or validation."""

    reason = "config"


class MetadataUnavailable(PlayerError):
    """Raised when track metadata cannot be retrieved from the catalog."""

    reason = "metadata"


class NoPlayableVariant(PlayerError):
    """Raised when a track offers no transcoding this build can decode."""

    reason = "no_variant"


class ManifestFetchFailed(PlayerError):
    """Raised when a segmented-stream manifest cannot be downloaded."""

    reason = "manifest"


class ManifestParseError(PlayerError):
    """Raised when a manifest does not follow the segmented-playlist grammar."""

    reason = "manifest"


class SegmentFetchFailed(PlayerError):
    """Raised when a media segment cannot be downloaded after all attempts."""

    reason = "segment"

    def __init__(self, message: str = "", *, index: int, **kwargs):
        super().__init__(message or f"Segment {index} could not be fetched.", **kwargs)
        self.index = index


class StreamOpenFailed(PlayerError):
    """Raised when a progressive stream cannot be opened or continued."""

    reason = "stream"


class ExtractionFailed(PlayerError):
    """Raised when the external extraction tool is missing or fails."""

    reason = "drm"


class ExtractionUnsupported(PlayerError):
    """Raised when the extraction tool declines because the content stays protected."""

    reason = "drm"


class DecodeError(PlayerError):
    """Raised when the audio data cannot be decoded."""

    reason = "decode"


class OutputDeviceError(PlayerError):
    """Raised when the audio output device cannot be opened or written to."""

    reason = "output"


class SeekUnsupported(PlayerError):
    """Raised when the current source cannot be repositioned."""

    reason = "seek"
