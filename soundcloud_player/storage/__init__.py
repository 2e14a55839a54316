"""
Storage Layer.

This package handles local persistence: reading the configuration file and
the on-disk cache of preloaded audio.
"""

from .cache import AudioCache
from .config_manager import ConfigManager

__all__ = ["AudioCache", "ConfigManager"]
