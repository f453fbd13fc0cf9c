from src.render.geometry import (
    CropSettings,
    LogoPosition,
    calculate_crop,
    calculate_logo_position,
    parse_format,
)
from src.render.media_renderer import MediaRenderer
from src.render.workspace import RenderWorkspace, render_workspace

__all__ = [
    "MediaRenderer",
    "RenderWorkspace",
    "render_workspace",
    "CropSettings",
    "LogoPosition",
    "calculate_crop",
    "calculate_logo_position",
    "parse_format",
]
