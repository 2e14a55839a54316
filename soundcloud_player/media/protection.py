"""
Detection of encrypted/DRM-protected streams.
"""

from typing import Optional

from soundcloud_player.models.track import Variant

from .hls import Key, Manifest

# Key formats used by commercial DRM systems.
DRM_KEYFORMAT_MARKERS = {
    "playready": "playready",
    "widevine": "widevine",
    "fairplay": "fairplay",
    "com.apple.streamingkeydelivery": "fairplay",
    "urn:uuid": "cenc",
}


class EncryptionDetector:
    """Decides whether a variant can be played without an external extractor."""

    @staticmethod
    def _key_scheme(key: Optional[Key]) -> Optional[str]:
        if key is None:
            return None
        keyformat = (key.keyformat or "").lower()
        for marker, scheme in DRM_KEYFORMAT_MARKERS.items():
            if marker in keyformat:
                return scheme
        if "AES" in key.method.upper() and key.uri:
            return key.method.lower()
        return None

    @staticmethod
    def is_protected(variant: Variant, manifest: Optional[Manifest] = None) -> bool:
        """
        True when the variant declares itself protected or, failing that, when
        the already-fetched manifest carries a DRM or AES key. Performs no I/O.
        """
        if variant.protected:
            return True
        return manifest is not None and EncryptionDetector.manifest_is_protected(manifest)

    @staticmethod
    def manifest_is_protected(manifest: Manifest) -> bool:
        keys = [s.key for s in manifest.segments if s.key is not None]
        keys.extend(manifest.session_keys)
        return any(EncryptionDetector._key_scheme(k) for k in keys)

    @staticmethod
    def drm_type(variant: Variant, manifest: Optional[Manifest] = None) -> str:
        """A short label for logs, e.g. 'widevine' or 'aes-128'."""
        if manifest is not None:
            scheme = EncryptionDetector._key_scheme(manifest.encryption)
            if scheme:
                return scheme
        if variant.protected:
            return variant.format.protocol
        return "none"
