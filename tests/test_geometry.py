"""
Tests for crop and logo placement geometry.

Test cases:
1. Crop for wider / taller / equal aspect targets
2. Crop containment and aspect ratio over many source/target pairs
3. Logo offsets for every anchor position
4. Format string parsing
"""

import itertools

import pytest

from src.exceptions import ConfigurationError
from src.render.geometry import (
    CropSettings,
    LogoPosition,
    calculate_crop,
    calculate_logo_position,
    parse_format,
)

SOURCE_SIZES = [(1920, 1080), (1080, 1920), (1280, 720), (720, 1280), (1000, 1000), (641, 359), (3840, 2160)]
TARGET_SIZES = [(1080, 1920), (1080, 1080), (1920, 1080), (1080, 1350), (1200, 628), (9, 16), (1, 1)]


class TestCropGeometry:
    """Largest centered crop matching the target aspect ratio."""

    def test_landscape_source_to_portrait_target(self):
        """Portrait output crops the sides of a landscape master."""
        crop = calculate_crop(1920, 1080, 1080, 1920)

        assert crop == CropSettings(width=608, height=1080, x=656, y=0)

    def test_portrait_source_to_landscape_target(self):
        """Landscape output crops top and bottom of a portrait master."""
        crop = calculate_crop(1080, 1920, 1920, 1080)

        assert crop == CropSettings(width=1080, height=608, x=0, y=656)

    def test_landscape_source_to_square_target(self):
        """Square output keeps the full height."""
        crop = calculate_crop(1920, 1080, 1080, 1080)

        assert crop == CropSettings(width=1080, height=1080, x=420, y=0)

    def test_same_aspect_is_not_cropped(self):
        """Equal aspect ratios return the full source rectangle."""
        crop = calculate_crop(1920, 1080, 1280, 720)

        assert crop == CropSettings(width=1920, height=1080, x=0, y=0)

    @pytest.mark.parametrize("source,target", [(500, 1080), (1000, 1), (7, 3000)])
    def test_square_source_square_target_no_crop(self, source, target):
        """Square into square never crops."""
        crop = calculate_crop(source, source, target, target)

        assert crop == CropSettings(width=source, height=source, x=0, y=0)

    @pytest.mark.parametrize(
        "source,target",
        list(itertools.product(SOURCE_SIZES, TARGET_SIZES)),
    )
    def test_crop_is_contained_and_matches_aspect(self, source, target):
        """Crop stays inside the source and keeps the target aspect within a pixel."""
        sw, sh = source
        tw, th = target
        crop = calculate_crop(sw, sh, tw, th)

        assert crop.x >= 0 and crop.y >= 0
        assert crop.x + crop.width <= sw
        assert crop.y + crop.height <= sh
        # Width implied by the crop height at the target aspect, within 1px
        assert abs(crop.width - crop.height * tw / th) <= 1 or abs(crop.height - crop.width * th / tw) <= 1

    def test_crop_is_centered(self):
        """Cropped margins are equal on both sides (within rounding)."""
        crop = calculate_crop(1920, 1080, 1080, 1920)

        left = crop.x
        right = 1920 - crop.x - crop.width
        assert abs(left - right) <= 1

    def test_to_filter(self):
        """Crop renders as an FFmpeg crop filter."""
        assert CropSettings(608, 1080, 656, 0).to_filter() == "crop=608:1080:656:0"

    def test_invalid_dimensions_rejected(self):
        """Zero-sized dimensions are a configuration error."""
        with pytest.raises(ConfigurationError):
            calculate_crop(0, 1080, 1080, 1920)


class TestLogoPosition:
    """Logo offset inside the output frame."""

    def test_center(self):
        """Center anchor with 100x100 logo in 1080x1920 frame."""
        assert calculate_logo_position("center", (100, 100), (1080, 1920)) == (490, 910)

    def test_bottom_right(self):
        """Bottom-right anchor with 200x100 logo in 1920x1080 frame."""
        assert calculate_logo_position(LogoPosition.BOTTOM_RIGHT, (200, 100), (1920, 1080), 20) == (1700, 960)

    def test_top_left(self):
        assert calculate_logo_position("top-left", (200, 100), (1920, 1080), 20) == (20, 20)

    def test_top_right(self):
        assert calculate_logo_position("top-right", (200, 100), (1920, 1080), 20) == (1700, 20)

    def test_bottom_left(self):
        assert calculate_logo_position("bottom-left", (200, 100), (1920, 1080), 20) == (20, 960)

    def test_custom_padding(self):
        """Padding moves the logo away from the edges."""
        assert calculate_logo_position("top-right", (100, 50), (1080, 1080), 40) == (940, 40)

    def test_unknown_position_falls_back_to_top_left(self, caplog):
        """Unrecognised values use top-left and log a warning."""
        assert calculate_logo_position("middle-ish", (100, 100), (1080, 1920), 20) == (20, 20)
        assert "Unknown logo position" in caplog.text

    def test_parse_accepts_enum_and_case(self):
        """Parsing normalizes case and passes enums through."""
        assert LogoPosition.parse("Bottom-Right") is LogoPosition.BOTTOM_RIGHT
        assert LogoPosition.parse(LogoPosition.CENTER) is LogoPosition.CENTER
        assert LogoPosition.parse(None) is LogoPosition.TOP_LEFT


class TestParseFormat:
    """WIDTHxHEIGHT format strings."""

    @pytest.mark.parametrize(
        "value,expected",
        [("1080x1920", (1080, 1920)), ("1920X1080", (1920, 1080)), (" 1080x1080 ", (1080, 1080))],
    )
    def test_valid(self, value, expected):
        assert parse_format(value) == expected

    @pytest.mark.parametrize("value", ["9x0", "abc", "", "1080", "1080x", "-1x100", "10.5x20"])
    def test_invalid(self, value):
        """Malformed formats raise INVALID_FORMAT."""
        with pytest.raises(ConfigurationError) as exc_info:
            parse_format(value)
        assert exc_info.value.code == "INVALID_FORMAT"
