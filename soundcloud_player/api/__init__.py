"""
Catalog API Layer.

This package handles all communication with the SoundCloud api-v2 catalog.
"""

from .client import SoundCloudClient

__all__ = ["SoundCloudClient"]
