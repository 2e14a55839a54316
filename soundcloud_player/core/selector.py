"""
Chooses the transcoding to play for a track.
"""

from collections.abc import Mapping, Sequence
from typing import Optional

from soundcloud_player.exceptions import NoPlayableVariant
from soundcloud_player.models.config import DEFAULT_QUALITY_RANK
from soundcloud_player.models.track import Variant, VariantKind

# Containers the decoder handles.
DECODABLE_MIME_TYPES = ("audio/mpeg", "audio/mp4", "audio/aac", "audio/ogg", "audio/opus")

_KIND_RANK = {VariantKind.SEGMENTED: 1, VariantKind.PROGRESSIVE: 0}


def is_decodable(variant: Variant) -> bool:
    if variant.kind == VariantKind.UNKNOWN:
        return False
    mime = variant.codec.split(";", 1)[0].strip().lower()
    return mime in DECODABLE_MIME_TYPES


def select_variant(
    variants: Sequence[Variant],
    quality_rank: Optional[Mapping[str, int]] = None,
) -> Variant:
    """
    Returns the preferred variant: segmented before progressive, then the
    higher quality tag, then the earliest in source order.

    Raises:
        NoPlayableVariant: If `variants` is empty or none can be decoded.
    """
    ranks = DEFAULT_QUALITY_RANK if quality_rank is None else quality_rank
    candidates = [(i, v) for i, v in enumerate(variants) if is_decodable(v)]
    if not candidates:
        if not variants:
            raise NoPlayableVariant("Track has no transcodings.")
        raise NoPlayableVariant(
            "None of the track's transcodings can be decoded: "
            + ", ".join(f"{v.format.protocol}/{v.codec}" for v in variants)
        )

    def sort_key(item: tuple[int, Variant]) -> tuple[int, int, int]:
        index, variant = item
        quality = ranks.get((variant.quality or "").lower(), 0)
        return (-_KIND_RANK[variant.kind], -quality, index)

    return min(candidates, key=sort_key)[1]
