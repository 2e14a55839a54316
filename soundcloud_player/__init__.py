"""
soundcloud-player: a terminal player for SoundCloud tracks.
"""

__version__ = "0.1.0"
