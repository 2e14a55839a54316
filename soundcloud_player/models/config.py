"""
Pydantic model for player configuration.
Provides validation for all settings.
"""

from pydantic import BaseModel, Field, field_validator

from .playback import RepeatMode

# Public web client id used by the catalog when no other is configured.
DEFAULT_CLIENT_ID = "FPh1fGfGpygQyivIKoNCi4d6d490BOvt"

DEFAULT_QUALITY_RANK = {"hq": 2, "sq": 1}


class PlayerConfig(BaseModel):
    """A validated configuration model for the player."""

    # Catalog access
    client_id: str = DEFAULT_CLIENT_ID
    oauth_token: str = ""
    request_timeout: float = 30.0

    # Playback
    volume: float = 0.8
    repeat_mode: RepeatMode = RepeatMode.NONE
    progress_interval: float = 0.5
    preload_next: bool = False

    # Retry policy for transient network failures
    max_attempts: int = 3
    retry_base_delay: float = 0.5

    # Variant selection
    quality_rank: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_QUALITY_RANK)
    )

    # Streaming
    read_ahead_kb: int = 512

    # External tools and output
    extractor_path: str = "yt-dlp"
    extractor_timeout: float = 60.0
    ffmpeg_path: str = "ffmpeg"
    output_device: str | None = None
    sample_rate: int | None = None

    # Local storage
    cache_dir: str = ""
    cache_max_age_hours: int = 24
    log_dir: str = ""

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("oauth_token")
    @classmethod
    def strip_oauth_prefix(cls, v: str) -> str:
        """Tokens copied from a browser often keep the 'OAuth ' prefix."""
        return v[len("OAuth ") :] if v.startswith("OAuth ") else v

    @field_validator("volume")
    @classmethod
    def validate_volume(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("Volume must be between 0.0 and 1.0.")
        return v

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """Keeps retries short; failures must surface within seconds."""
        if v < 1 or v > 5:
            raise ValueError("max_attempts must be between 1 and 5.")
        return v

    @field_validator("retry_base_delay", "request_timeout", "extractor_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Delays and timeouts cannot be negative.")
        return v

    @field_validator("progress_interval")
    @classmethod
    def validate_progress_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("progress_interval must be greater than zero.")
        return v

    @field_validator("read_ahead_kb")
    @classmethod
    def validate_read_ahead(cls, v: int) -> int:
        if v < 16:
            raise ValueError("read_ahead_kb must be at least 16.")
        return v

    @field_validator("sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int | None) -> int | None:
        if v is not None and not 8000 <= v <= 192000:
            raise ValueError("sample_rate must be between 8000 and 192000.")
        return v

    @property
    def read_ahead_bytes(self) -> int:
        return self.read_ahead_kb * 1024

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns all keys that may appear in the INI file."""
        return set(cls.model_fields)
