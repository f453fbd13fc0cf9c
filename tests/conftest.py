"""
Pytest fixtures for the render backend tests.

Most tests run against in-memory fakes of the repository and of FFmpeg.
Tests that run the real ffmpeg/ffprobe binaries generate their own synthetic
clips with the lavfi source and are marked with @pytest.mark.requires_ffmpeg,
so they are skipped on machines without FFmpeg.
"""

import copy
import os
import shutil
import subprocess
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Keep the app from pointing at a real database or storage while importing
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOCAL_STORAGE_PATH", tempfile.mkdtemp(prefix="adreel_test_storage_"))

import pytest
import pytest_asyncio
from PIL import Image

from src.config import Settings
from src.exceptions import RenderError, RenderTimeoutError
from src.render.types import (
    BrandSettings,
    RenderedFormatState,
    RenderStatus,
    SceneSource,
    VideoRenderSource,
)
from src.services.render_repository import RenderStatusSummary
from src.services.storage_service import LocalStorageService


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as running the real ffmpeg/ffprobe binaries",
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def pytest_collection_modifyitems(config, items):
    """Skip @pytest.mark.requires_ffmpeg tests when FFmpeg is not installed."""
    if _ffmpeg_available():
        return
    skip_ffmpeg = pytest.mark.skip(reason="ffmpeg/ffprobe not installed")
    for item in items:
        if "requires_ffmpeg" in item.keywords:
            item.add_marker(skip_ffmpeg)


# =============================================================================
# Settings / storage
# =============================================================================


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="adreel_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings isolated to a temp dir, with fast encoder presets."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        storage_backend="local",
        local_storage_path=str(tmp_path / "storage"),
        public_base_url="http://testserver",
        render_workspace_root=str(tmp_path / "work"),
        render_concat_preset="ultrafast",
        render_format_preset="ultrafast",
        render_timeout_s=120,
        probe_timeout_s=30,
        storage_upload_retries=2,
        bulk_render_concurrency=3,
        export_progress_ttl_s=3600,
    )


@pytest.fixture
def local_storage(test_settings: Settings) -> LocalStorageService:
    return LocalStorageService(test_settings)


@pytest.fixture
def logo_png(tmp_path: Path) -> Path:
    """A small semi-transparent PNG logo."""
    path = tmp_path / "logo.png"
    Image.new("RGBA", (64, 32), (255, 255, 255, 180)).save(path)
    return path


# =============================================================================
# Synthetic media (real FFmpeg)
# =============================================================================


def make_clip(
    path: Path,
    *,
    size: str = "320x240",
    duration: float = 1.0,
    color: str = "red",
    with_audio: bool = True,
) -> Path:
    """Generate a short H.264 test clip with the lavfi source."""
    cmd = [
        "ffmpeg", "-y", "-hide_banner", "-loglevel", "error",
        "-f", "lavfi", "-i", f"color=c={color}:s={size}:d={duration}:r=25",
    ]
    if with_audio:
        cmd += ["-f", "lavfi", "-i", f"sine=frequency=440:duration={duration}"]
    cmd += ["-c:v", "libx264", "-preset", "ultrafast", "-pix_fmt", "yuv420p"]
    if with_audio:
        cmd += ["-c:a", "aac", "-shortest"]
    cmd.append(str(path))
    subprocess.run(cmd, capture_output=True, check=True)
    return path


@pytest.fixture
def clip_factory(temp_output_dir: Path):
    """Create synthetic clips inside the temp dir."""

    def factory(name: str, **kwargs) -> Path:
        return make_clip(temp_output_dir / name, **kwargs)

    return factory


# =============================================================================
# Fakes
# =============================================================================


class FakeRenderRepository:
    """In-memory RenderRepository."""

    def __init__(self) -> None:
        self.videos: dict[str, VideoRenderSource] = {}
        self.transitions: list[tuple[str, str, RenderStatus]] = []
        self.summaries: dict[str, RenderStatusSummary] = {}

    def add_video(self, source: VideoRenderSource) -> VideoRenderSource:
        self.videos[source.id] = source
        return source

    async def get_video_source(self, video_id: str):
        source = self.videos.get(video_id)
        return copy.deepcopy(source) if source is not None else None

    async def upsert_rendered_format(
        self,
        video_id,
        format,
        *,
        status,
        url=None,
        error=None,
        thumbnail_url=None,
    ):
        state = RenderedFormatState(
            format=format,
            status=RenderStatus(status),
            url=url,
            error=error,
            thumbnail_url=thumbnail_url,
            updated_at=datetime.now(timezone.utc),
        )
        self.videos[video_id].rendered[format] = state
        self.transitions.append((video_id, format, RenderStatus(status)))
        return copy.deepcopy(state)

    async def list_rendered_formats(self, video_id):
        source = self.videos.get(video_id)
        if source is None:
            return []
        return [copy.deepcopy(s) for _, s in sorted(source.rendered.items())]

    async def get_render_status_summary(self, project_id):
        return self.summaries.get(project_id)


class FakeMediaRenderer:
    """Stands in for MediaRenderer; writes small marker files instead of video."""

    def __init__(self, fail_formats=(), timeout_formats=()) -> None:
        self.fail_formats = set(fail_formats)
        self.timeout_formats = set(timeout_formats)
        self.concat_inputs: list[list[bytes]] = []
        self.format_calls: list[str] = []
        self.logo_normalizations = 0

    async def concatenate(self, input_paths, output_path, *, progress_callback=None):
        contents = [Path(p).read_bytes() for p in input_paths]
        self.concat_inputs.append(contents)
        Path(output_path).write_bytes(b"|".join(contents))
        return output_path

    async def render_format(self, master_path, format_str, logo, output_path, *, encode=None, progress_callback=None):
        self.format_calls.append(format_str)
        if format_str in self.timeout_formats:
            raise RenderTimeoutError(f"Rendering {format_str} timed out after 1800s", format=format_str)
        if format_str in self.fail_formats:
            raise RenderError(
                f"Rendering {format_str} failed (ffmpeg exit code 1)",
                format=format_str,
                diagnostics="Error while filtering: raw encoder output",
            )
        Path(output_path).write_bytes(f"video:{format_str}".encode())
        return output_path

    async def thumbnail(self, video_path, output_path, at_seconds=0.0):
        Path(output_path).write_bytes(b"jpeg")
        return output_path

    async def normalize_logo(self, source_path, output_path):
        self.logo_normalizations += 1
        shutil.copyfile(source_path, output_path)
        return output_path


@pytest.fixture
def fake_repository() -> FakeRenderRepository:
    return FakeRenderRepository()


@pytest.fixture
def fake_media_renderer() -> FakeMediaRenderer:
    return FakeMediaRenderer()


@pytest.fixture
def fake_renderer_factory():
    """Build FakeMediaRenderer instances with failing or timing-out formats."""
    return FakeMediaRenderer


@pytest.fixture
def make_video(local_storage: LocalStorageService, logo_png: Path, tmp_path: Path):
    """Build a VideoRenderSource whose scene clips and logo live in local storage.

    Scene clip contents are ``scene-<order>`` so concatenation order is visible.
    """
    logo_key = "brand/logo.png"
    logo_target = local_storage.get_file_path(f"assets/{logo_key}")
    logo_target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(logo_png, logo_target)
    logo_url = local_storage.get_public_url("assets", logo_key)

    def factory(
        video_id: str,
        *,
        scene_orders=(0, 1),
        scene_status: str = "completed",
        formats=("1080x1920", "1080x1080"),
        custom_formats=(),
        logo: bool = True,
        project_id: str = "project-1",
    ) -> VideoRenderSource:
        scenes = []
        for order in scene_orders:
            key = f"scenes/{video_id}/{order}.mp4"
            target = local_storage.get_file_path(f"assets/{key}")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(f"scene-{order}".encode())
            scenes.append(
                SceneSource(
                    id=f"{video_id}-scene-{order}",
                    order=order,
                    animation_url=local_storage.get_public_url("assets", key),
                    status=scene_status,
                )
            )
        return VideoRenderSource(
            id=video_id,
            project_id=project_id,
            name=f"Video {video_id}",
            status="completed",
            custom_formats=list(custom_formats),
            scenes=scenes,
            brand=BrandSettings(
                logo_url=logo_url if logo else None,
                logo_position="top-right",
                logo_width=64,
                logo_height=32,
                default_formats=list(formats),
            ),
        )

    return factory


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory SQLite database with all tables."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool

    from src.models import Base

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
