"""Crop and logo placement geometry for multi-format output.

Every output format is cut from the same master video: the largest centered
rectangle matching the target aspect ratio is cropped out and scaled to the
target size, so no output is ever letterboxed.
"""

import logging
import math
import re
from dataclasses import dataclass
from enum import Enum

from src.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_FORMAT_RE = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*$")


class LogoPosition(str, Enum):
    """Where the brand logo is anchored in the output frame."""

    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    CENTER = "center"

    @classmethod
    def parse(cls, value: "str | LogoPosition | None") -> "LogoPosition":
        """Parse a stored position value.

        Unrecognised values fall back to top-left, which is where projects
        created before the position setting existed had their logo.
        """
        if isinstance(value, LogoPosition):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            logger.warning(f"[GEOMETRY] Unknown logo position {value!r}, using top-left")
            return cls.TOP_LEFT


@dataclass(frozen=True)
class CropSettings:
    """Crop rectangle in source-pixel coordinates."""

    width: int
    height: int
    x: int
    y: int

    def to_filter(self) -> str:
        """Render as an FFmpeg crop filter."""
        return f"crop={self.width}:{self.height}:{self.x}:{self.y}"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def parse_format(format_str: str) -> tuple[int, int]:
    """Parse a ``WIDTHxHEIGHT`` format string.

    Raises:
        ConfigurationError: If the string is malformed or a side is zero
    """
    match = _FORMAT_RE.match(format_str or "")
    if not match:
        raise ConfigurationError(f"Invalid format: {format_str!r}", code="INVALID_FORMAT")
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        raise ConfigurationError(f"Invalid format: {format_str!r}", code="INVALID_FORMAT")
    return width, height


def calculate_crop(
    source_width: int,
    source_height: int,
    target_width: int,
    target_height: int,
) -> CropSettings:
    """Largest centered source rectangle with the target aspect ratio.

    Args:
        source_width: Width of the master video
        source_height: Height of the master video
        target_width: Width of the output format
        target_height: Height of the output format

    Returns:
        CropSettings contained within the source bounds
    """
    if min(source_width, source_height, target_width, target_height) <= 0:
        raise ConfigurationError(
            f"Invalid dimensions: source {source_width}x{source_height}, "
            f"target {target_width}x{target_height}"
        )

    # Compare aspect ratios exactly: tw/th vs sw/sh
    target_cross = target_width * source_height
    source_cross = source_width * target_height

    if target_cross > source_cross:
        # Target is relatively wider - crop top and bottom
        exact_height = source_width * target_height / target_width
        crop_height = min(source_height, _round_half_up(exact_height))
        y = _round_half_up((source_height - exact_height) / 2)
        y = max(0, min(y, source_height - crop_height))
        return CropSettings(width=source_width, height=crop_height, x=0, y=y)

    if target_cross < source_cross:
        # Target is relatively taller - crop left and right
        exact_width = source_height * target_width / target_height
        crop_width = min(source_width, _round_half_up(exact_width))
        x = _round_half_up((source_width - exact_width) / 2)
        x = max(0, min(x, source_width - crop_width))
        return CropSettings(width=crop_width, height=source_height, x=x, y=0)

    return CropSettings(width=source_width, height=source_height, x=0, y=0)


def calculate_logo_position(
    position: "LogoPosition | str",
    logo_size: tuple[int, int],
    frame_size: tuple[int, int],
    padding: int = 20,
) -> tuple[int, int]:
    """Top-left pixel offset of the logo inside the output frame.

    Args:
        position: Anchor position (unknown values fall back to top-left)
        logo_size: (width, height) of the scaled logo
        frame_size: (width, height) of the output frame
        padding: Distance from the frame edges in pixels

    Returns:
        (x, y) overlay offset
    """
    logo_width, logo_height = logo_size
    frame_width, frame_height = frame_size
    anchor = LogoPosition.parse(position)

    if anchor is LogoPosition.TOP_RIGHT:
        return frame_width - logo_width - padding, padding
    if anchor is LogoPosition.BOTTOM_LEFT:
        return padding, frame_height - logo_height - padding
    if anchor is LogoPosition.BOTTOM_RIGHT:
        return frame_width - logo_width - padding, frame_height - logo_height - padding
    if anchor is LogoPosition.CENTER:
        return (
            _round_half_up((frame_width - logo_width) / 2),
            _round_half_up((frame_height - logo_height) / 2),
        )
    return padding, padding
