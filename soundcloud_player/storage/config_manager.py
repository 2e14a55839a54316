"""
Loads and validates the INI configuration file.
"""

import configparser
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from soundcloud_player.exceptions import ConfigurationError
from soundcloud_player.models.config import PlayerConfig

log = logging.getLogger(__name__)

_BOOL_KEYS = {"preload_next"}
_INT_KEYS = {"max_attempts", "read_ahead_kb", "cache_max_age_hours", "sample_rate"}
_FLOAT_KEYS = {
    "volume",
    "retry_base_delay",
    "request_timeout",
    "progress_interval",
    "extractor_timeout",
}


def parse_quality_rank(value: str) -> dict[str, int]:
    """Parses 'hq:2, sq:1' into {'hq': 2, 'sq': 1}."""
    ranks = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, rank = item.partition(":")
        if not sep or not rank.strip().lstrip("-").isdigit():
            raise ConfigurationError(f"Invalid quality_rank entry '{item}'.")
        ranks[name.strip().lower()] = int(rank)
    return ranks


class ConfigManager:
    """Reads the player's INI config file. Settings are never written back."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = config_file_path
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: dict[str, Any] | None = None) -> PlayerConfig:
        """
        Loads configuration from the INI file, applies CLI overrides, and validates it.

        A missing file is not an error; defaults are used instead.

        Args:
            cli_options: Options given on the command line. None values are ignored.

        Raises:
            ConfigurationError: If the file cannot be parsed or validation fails.
        """
        settings: dict[str, Any] = {}
        if self.config_file_path.is_file():
            try:
                self._parser.read(self.config_file_path, encoding="utf-8")
            except configparser.Error as e:
                raise ConfigurationError(f"Error parsing configuration file: {e}") from e
            settings = self._get_config_as_dict()
        else:
            log.debug(f"No config file at '{self.config_file_path}', using defaults.")

        if cli_options:
            settings.update({k: v for k, v in cli_options.items() if v is not None})

        try:
            return PlayerConfig(**settings)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Reads the 'DEFAULT' section into a dictionary of typed values."""
        section = self._parser["DEFAULT"]
        known = PlayerConfig.get_ini_keys()
        settings: dict[str, Any] = {}

        for key in section:
            if key not in known:
                log.warning(f"[yellow]Ignoring unknown config key '{key}'.[/yellow]")
                continue
            raw = section.get(key, "").strip()
            if raw == "" and key in ("output_device", "sample_rate"):
                continue
            try:
                if key in _BOOL_KEYS:
                    settings[key] = section.getboolean(key)
                elif key in _INT_KEYS:
                    settings[key] = section.getint(key)
                elif key in _FLOAT_KEYS:
                    settings[key] = section.getfloat(key)
                elif key == "quality_rank":
                    settings[key] = parse_quality_rank(raw)
                else:
                    settings[key] = raw
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for '{key}': {e}") from e
        return settings
