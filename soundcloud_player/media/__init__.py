"""
Media Layer.

This package turns a resolved stream URL into audio: manifest parsing and
segment assembly, progressive streaming, protection checks, fallback
extraction, and the decode/output engine.
"""

from .assembler import SegmentedStreamAssembler
from .downloader import Downloader
from .engine import AudioEngine
from .extractor import FallbackExtractor
from .integrity import AudioIntegrityChecker
from .progressive import BufferSource, ProgressiveStream
from .protection import EncryptionDetector

__all__ = [
    "AudioEngine",
    "AudioIntegrityChecker",
    "BufferSource",
    "Downloader",
    "EncryptionDetector",
    "FallbackExtractor",
    "ProgressiveStream",
    "SegmentedStreamAssembler",
]
