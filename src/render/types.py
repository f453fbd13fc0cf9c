"""Value types shared by the multi-format render pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from src.config import Settings
from src.render.geometry import LogoPosition

SCENE_COMPLETED = "completed"
VIDEO_COMPLETED = "completed"


class RenderMode(str, Enum):
    """Which formats of a video to (re)render."""

    ALL = "all"
    MISSING = "missing"  # Skip formats already completed with a URL


class RenderStatus(str, Enum):
    """Status of one (video, format) render."""

    PENDING = "pending"
    RENDERING = "rendering"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class EncodeSettings:
    """x264/AAC encoder options for one FFmpeg invocation."""

    crf: int = 18
    preset: str = "slow"
    pixel_format: str = "yuv420p"
    audio_bitrate: str = "128k"
    threads: int = 2

    @classmethod
    def for_concat(cls, settings: Settings) -> "EncodeSettings":
        return cls(
            crf=settings.render_crf,
            preset=settings.render_concat_preset,
            pixel_format=settings.render_pixel_format,
            audio_bitrate=settings.render_audio_bitrate,
            threads=settings.render_ffmpeg_threads,
        )

    @classmethod
    def for_format(cls, settings: Settings) -> "EncodeSettings":
        return cls(
            crf=settings.render_crf,
            preset=settings.render_format_preset,
            pixel_format=settings.render_pixel_format,
            audio_bitrate=settings.render_audio_bitrate,
            threads=settings.render_ffmpeg_threads,
        )


@dataclass(frozen=True)
class LogoOverlayConfig:
    """Brand logo settings of a bulk-video project."""

    logo_url: str
    position: LogoPosition
    width: int
    height: int
    padding: int = 20


@dataclass(frozen=True)
class LogoOverlay:
    """A downloaded logo ready to be composited by FFmpeg."""

    path: str
    position: LogoPosition
    width: int
    height: int
    padding: int = 20


@dataclass(frozen=True)
class VideoRenderOptions:
    """Everything one render run of a video needs besides its scenes."""

    mode: RenderMode
    formats: tuple[str, ...]
    logo: LogoOverlayConfig
    encode: EncodeSettings = field(default_factory=EncodeSettings)


# ============================================================================
# Snapshots read from the data-access layer
# ============================================================================


@dataclass
class SceneSource:
    """A scene as consumed by the renderer (read-only)."""

    id: str
    order: int
    animation_url: Optional[str]
    status: str

    @property
    def is_ready(self) -> bool:
        return self.status == SCENE_COMPLETED and bool(self.animation_url)


@dataclass
class RenderedFormatState:
    """Persisted state of one (video, format) render."""

    format: str
    status: RenderStatus
    url: Optional[str] = None
    error: Optional[str] = None
    thumbnail_url: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_done(self) -> bool:
        return self.status == RenderStatus.COMPLETED and bool(self.url)


@dataclass
class BrandSettings:
    """Project-level defaults used when a video has no overrides."""

    logo_url: Optional[str] = None
    logo_position: Optional[str] = None
    logo_width: Optional[int] = None
    logo_height: Optional[int] = None
    default_formats: list[str] = field(default_factory=list)


@dataclass
class VideoRenderSource:
    """A bulk video with everything needed to render it."""

    id: str
    project_id: str
    name: str
    status: str
    custom_formats: list[str] = field(default_factory=list)
    scenes: list[SceneSource] = field(default_factory=list)
    rendered: dict[str, RenderedFormatState] = field(default_factory=dict)
    brand: BrandSettings = field(default_factory=BrandSettings)

    def ordered_scenes(self) -> list[SceneSource]:
        """Scenes in timeline order (by ``order``, not insertion order)."""
        return sorted(self.scenes, key=lambda s: s.order)

    @property
    def scenes_ready(self) -> bool:
        return bool(self.scenes) and all(scene.is_ready for scene in self.scenes)

    def target_formats(self) -> list[str]:
        return list(self.custom_formats) if self.custom_formats else list(self.brand.default_formats)


# ============================================================================
# Results
# ============================================================================


@dataclass
class VideoRenderResult:
    """Per-format outcome of rendering one video."""

    video_id: str
    completed: dict[str, str] = field(default_factory=dict)  # format -> url
    failed: dict[str, str] = field(default_factory=dict)  # format -> error
    skipped: list[str] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.completed)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary_error(self) -> Optional[str]:
        """Short, user-facing description of failed formats."""
        if not self.failed:
            return None
        total = len(self.completed) + len(self.failed) + len(self.skipped)
        formats = ", ".join(sorted(self.failed))
        return f"{len(self.failed)} of {total} formats failed: {formats}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "video_id": self.video_id,
            "completed": dict(self.completed),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
        }


@dataclass
class BatchRenderResult:
    """Outcome of one batch run across many videos."""

    job_id: str
    mode: RenderMode
    attempted: int = 0
    skipped: dict[str, str] = field(default_factory=dict)  # video_id -> reason
    results: dict[str, VideoRenderResult] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)  # video_id -> error
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (used for the export summary manifest)."""
        return {
            "job_id": self.job_id,
            "mode": self.mode.value,
            "attempted": self.attempted,
            "skipped": dict(self.skipped),
            "errors": dict(self.errors),
            "results": {vid: r.to_dict() for vid, r in self.results.items()},
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
