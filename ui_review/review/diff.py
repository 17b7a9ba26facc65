"""Pixel comparison of two screenshots for poll-cycle change detection."""

from __future__ import annotations

import io

from PIL import Image, ImageChops

from ..config import DIFF_THRESHOLD

# Per-channel delta (0-255) treated as rendering jitter, not change
PIXEL_TOLERANCE = 24


def _load(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as img:
        return img.convert("RGBA")


def diff_ratio(a: bytes, b: bytes, tolerance: int = PIXEL_TOLERANCE) -> float:
    """Fraction of pixels whose largest channel difference exceeds `tolerance`.

    Returns 1.0 when the images have different dimensions.
    """
    if a == b:
        return 0.0

    img_a = _load(a)
    img_b = _load(b)
    if img_a.size != img_b.size:
        return 1.0

    total = img_a.width * img_a.height
    if total == 0:
        return 0.0

    # Largest per-channel difference for every pixel
    bands = ImageChops.difference(img_a, img_b).split()
    strongest = bands[0]
    for band in bands[1:]:
        strongest = ImageChops.lighter(strongest, band)

    differing = sum(strongest.histogram()[tolerance + 1:])
    return differing / total


def has_changed(
    a: bytes,
    b: bytes,
    threshold: float = DIFF_THRESHOLD,
    tolerance: int = PIXEL_TOLERANCE,
) -> bool:
    """True iff more than `threshold` of the pixels differ, or the sizes differ."""
    return diff_ratio(a, b, tolerance) > threshold
