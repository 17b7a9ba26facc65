"""Tests for screenshot change detection."""

import io

from PIL import Image

from tests.conftest import BLACK_PNG, WHITE_PNG, make_png
from ui_review.review.diff import diff_ratio, has_changed


def _with_block(color: tuple[int, int, int], block: tuple[int, int, int, int]) -> bytes:
    img = Image.new("RGB", (40, 30), (255, 255, 255))
    img.paste(color, block)
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def test_identical_images_are_unchanged() -> None:
    assert diff_ratio(WHITE_PNG, WHITE_PNG) == 0.0
    assert not has_changed(WHITE_PNG, WHITE_PNG)


def test_same_pixels_different_encoding_are_unchanged() -> None:
    other = make_png((255, 255, 255))
    assert not has_changed(WHITE_PNG, other)


def test_completely_different_images_changed() -> None:
    assert diff_ratio(WHITE_PNG, BLACK_PNG) == 1.0
    assert has_changed(WHITE_PNG, BLACK_PNG)


def test_comparison_is_symmetric() -> None:
    changed = _with_block((255, 0, 0), (0, 0, 10, 10))

    assert diff_ratio(WHITE_PNG, changed) == diff_ratio(changed, WHITE_PNG)
    assert has_changed(WHITE_PNG, changed) == has_changed(changed, WHITE_PNG)


def test_dimension_mismatch_is_changed() -> None:
    small = make_png((255, 255, 255), size=(20, 30))
    assert has_changed(WHITE_PNG, small)


def test_jitter_below_tolerance_is_ignored() -> None:
    nearly_white = make_png((250, 250, 250))
    assert diff_ratio(WHITE_PNG, nearly_white) == 0.0


def test_small_region_respects_threshold() -> None:
    # 1 of 1200 pixels differs
    one_pixel = _with_block((0, 0, 0), (0, 0, 1, 1))

    assert not has_changed(WHITE_PNG, one_pixel, threshold=0.005)
    assert has_changed(WHITE_PNG, one_pixel, threshold=0.0)
