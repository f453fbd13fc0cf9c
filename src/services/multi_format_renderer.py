"""Render every output format of one bulk video.

Pipeline per video:
1. Load the video with its scenes, rendered formats and brand settings
2. Check all scenes are ready and work out the target formats
3. Download scene clips into a private workspace and concatenate them
4. For each format: crop/scale/overlay, upload, record status
5. Remove the workspace (always)

A failure while rendering one format is recorded on that format and never
stops its siblings. Missing prerequisites or configuration abort the whole
video before anything is rendered.
"""

import logging
import uuid
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import urlparse

from src.config import Settings, get_settings
from src.exceptions import (
    AppError,
    ConfigurationError,
    PrerequisiteError,
    RenderError,
    VideoNotFoundError,
)
from src.render.geometry import LogoPosition, parse_format
from src.render.media_renderer import MediaRenderer
from src.render.types import (
    EncodeSettings,
    LogoOverlay,
    LogoOverlayConfig,
    RenderMode,
    RenderStatus,
    VideoRenderOptions,
    VideoRenderResult,
    VideoRenderSource,
)
from src.render.workspace import RenderWorkspace, render_workspace
from src.services.asset_fetcher import AssetFetcher
from src.services.render_repository import RenderRepository
from src.services.storage_service import StorageService

logger = logging.getLogger(__name__)

THUMBNAIL_AT_SECONDS = 0.5


class _LogoCache:
    """Downloads and normalizes the logo at most once per render run."""

    def __init__(self, config: LogoOverlayConfig):
        self.config = config
        self._overlay: Optional[LogoOverlay] = None
        self._error: Optional[AppError] = None

    async def get(
        self,
        fetcher: AssetFetcher,
        renderer: MediaRenderer,
        workspace: RenderWorkspace,
    ) -> LogoOverlay:
        if self._overlay is not None:
            return self._overlay
        if self._error is not None:
            raise self._error

        try:
            source_path = await fetcher.fetch(self.config.logo_url, workspace.file_path("logo_source"))
            logo_path = await renderer.normalize_logo(source_path, workspace.file_path("logo.png"))
        except AppError as e:
            self._error = e
            raise

        self._overlay = LogoOverlay(
            path=logo_path,
            position=self.config.position,
            width=self.config.width,
            height=self.config.height,
            padding=self.config.padding,
        )
        return self._overlay


class MultiFormatRenderer:
    """Builds the master video of a bulk video and renders its formats."""

    def __init__(
        self,
        repository: RenderRepository,
        storage: StorageService,
        renderer: Optional[MediaRenderer] = None,
        fetcher: Optional[AssetFetcher] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository
        self.storage = storage
        self.renderer = renderer or MediaRenderer(self.settings)
        self.fetcher = fetcher or AssetFetcher(storage=storage, settings=self.settings)

    # ========================================================================
    # Public operations
    # ========================================================================

    async def render_all_formats(
        self,
        video_id: str,
        mode: RenderMode = RenderMode.ALL,
    ) -> VideoRenderResult:
        """Render every target format of a video.

        Args:
            video_id: Bulk video to render
            mode: ``all`` re-renders everything, ``missing`` skips formats
                already completed with a URL

        Returns:
            VideoRenderResult with per-format URLs and errors

        Raises:
            VideoNotFoundError: Video does not exist
            PrerequisiteError: Some scene is not completed or has no clip
            ConfigurationError: No target formats or no brand logo
            RenderError/StorageError: The master video could not be built
        """
        source = await self._load_ready_source(video_id)
        options = self.build_options(source, RenderMode(mode))
        result = VideoRenderResult(video_id=video_id)

        to_render: list[str] = []
        for format_str in options.formats:
            existing = source.rendered.get(format_str)
            if options.mode == RenderMode.MISSING and existing is not None and existing.is_done:
                result.skipped.append(format_str)
            else:
                to_render.append(format_str)

        if not to_render:
            logger.info(f"[MULTI-FORMAT] Video {video_id}: all {len(options.formats)} formats already rendered")
            return result

        logger.info(
            f"[MULTI-FORMAT] Video {video_id}: rendering {len(to_render)} formats "
            f"({len(result.skipped)} skipped)"
        )

        async with render_workspace(
            prefix=f"adreel_render_{video_id}_", root=self.settings.render_workspace_root or None
        ) as workspace:
            master_path = await self._build_master(source, workspace)
            logo = _LogoCache(options.logo)

            # Formats run one at a time to bound CPU and disk use per video
            for format_str in to_render:
                try:
                    url = await self._render_format(
                        source, format_str, master_path, logo, workspace, options.encode
                    )
                    result.completed[format_str] = url
                except AppError as e:
                    result.failed[format_str] = e.message
                except Exception:
                    logger.exception(f"[MULTI-FORMAT] Unexpected error rendering {format_str} for {video_id}")
                    result.failed[format_str] = f"Rendering {format_str} failed unexpectedly"

        logger.info(
            f"[MULTI-FORMAT] Video {video_id} done: {result.success_count} completed, "
            f"{result.failure_count} failed, {len(result.skipped)} skipped"
        )
        return result

    async def render_single_format(self, video_id: str, format_str: str) -> str:
        """Re-render one format of a video and return its URL.

        Raises:
            ConfigurationError: ``format_str`` is malformed or logo missing
            RenderError/StorageError: Rendering or upload failed (recorded
                on the format before being raised)
        """
        parse_format(format_str)
        source = await self._load_ready_source(video_id)
        options = self.build_options(source, RenderMode.ALL, formats=[format_str])

        async with render_workspace(
            prefix=f"adreel_render_{video_id}_", root=self.settings.render_workspace_root or None
        ) as workspace:
            master_path = await self._build_master(source, workspace)
            return await self._render_format(
                source, format_str, master_path, _LogoCache(options.logo), workspace, options.encode
            )

    def build_options(
        self,
        source: VideoRenderSource,
        mode: RenderMode,
        formats: Optional[list[str]] = None,
    ) -> VideoRenderOptions:
        """Resolve formats and brand logo for one run.

        Raises:
            ConfigurationError: No formats or no usable logo configuration
        """
        target_formats = list(formats) if formats else source.target_formats()
        if not target_formats:
            raise ConfigurationError(
                f"No output formats configured for video {source.id}",
                code="NO_FORMATS",
            )

        brand = source.brand
        if not brand.logo_url:
            raise ConfigurationError(
                "Brand logo is not configured for this project",
                code="LOGO_NOT_CONFIGURED",
            )
        if not brand.logo_width or not brand.logo_height or brand.logo_width <= 0 or brand.logo_height <= 0:
            raise ConfigurationError(
                "Brand logo size is not configured for this project",
                code="LOGO_NOT_CONFIGURED",
            )

        return VideoRenderOptions(
            mode=mode,
            formats=tuple(dict.fromkeys(target_formats)),
            logo=LogoOverlayConfig(
                logo_url=brand.logo_url,
                position=LogoPosition.parse(brand.logo_position),
                width=brand.logo_width,
                height=brand.logo_height,
                padding=self.settings.logo_padding,
            ),
            encode=EncodeSettings.for_format(self.settings),
        )

    # ========================================================================
    # Steps
    # ========================================================================

    async def _load_ready_source(self, video_id: str) -> VideoRenderSource:
        source = await self.repository.get_video_source(video_id)
        if source is None:
            raise VideoNotFoundError(video_id)
        if not source.scenes_ready:
            not_ready = [s.order for s in source.ordered_scenes() if not s.is_ready]
            detail = f" (scenes {not_ready})" if not_ready else " (no scenes)"
            raise PrerequisiteError(
                f"Not all scenes are ready for video {video_id}{detail}",
                video_id=video_id,
            )
        return source

    async def _build_master(self, source: VideoRenderSource, workspace: RenderWorkspace) -> str:
        """Download scene clips in timeline order and concatenate them."""
        clip_paths = []
        for index, scene in enumerate(source.ordered_scenes()):
            suffix = PurePosixPath(urlparse(scene.animation_url).path).suffix or ".mp4"
            clip_path = workspace.clip_path(index, suffix)
            await self.fetcher.fetch(scene.animation_url, clip_path)
            clip_paths.append(clip_path)

        logger.info(f"[MULTI-FORMAT] Downloaded {len(clip_paths)} scene clips for {source.id}")
        return await self.renderer.concatenate(clip_paths, workspace.file_path("master.mp4"))

    async def _render_format(
        self,
        source: VideoRenderSource,
        format_str: str,
        master_path: str,
        logo: _LogoCache,
        workspace: RenderWorkspace,
        encode: EncodeSettings,
    ) -> str:
        """Render, upload and record one format. Failures are recorded, then raised."""
        await self.repository.upsert_rendered_format(
            source.id, format_str, status=RenderStatus.RENDERING
        )

        try:
            width, height = parse_format(format_str)
            overlay = await logo.get(self.fetcher, self.renderer, workspace)
            output_path = workspace.output_path(f"{width}x{height}.mp4")
            await self.renderer.render_format(
                master_path, format_str, overlay, output_path, encode=encode
            )

            key = f"bulk-videos/{source.project_id}/{source.id}-{width}x{height}-{uuid.uuid4()}.mp4"
            url = await self.storage.upload_file(
                self.settings.videos_bucket, key, output_path, "video/mp4"
            )
            thumbnail_url = await self._make_thumbnail(output_path, key)
        except AppError as e:
            logger.error(f"[MULTI-FORMAT] {format_str} failed for {source.id}: {e.message}")
            await self.repository.upsert_rendered_format(
                source.id, format_str, status=RenderStatus.FAILED, error=e.message
            )
            raise
        except Exception as e:
            await self.repository.upsert_rendered_format(
                source.id,
                format_str,
                status=RenderStatus.FAILED,
                error=f"Rendering {format_str} failed unexpectedly",
            )
            raise RenderError(f"Rendering {format_str} failed unexpectedly", format=format_str) from e

        await self.repository.upsert_rendered_format(
            source.id,
            format_str,
            status=RenderStatus.COMPLETED,
            url=url,
            thumbnail_url=thumbnail_url,
        )
        logger.info(f"[MULTI-FORMAT] {format_str} completed for {source.id}")
        return url

    async def _make_thumbnail(self, video_path: str, video_key: str) -> Optional[str]:
        """Best-effort preview frame; a failure here never fails the format."""
        if not self.settings.render_thumbnails:
            return None
        thumb_path = str(PurePosixPath(video_path).with_suffix(".jpg"))
        thumb_key = str(PurePosixPath(video_key).with_suffix(".jpg"))
        try:
            await self.renderer.thumbnail(video_path, thumb_path, THUMBNAIL_AT_SECONDS)
            return await self.storage.upload_file(
                self.settings.videos_bucket, thumb_key, thumb_path, "image/jpeg"
            )
        except AppError as e:
            logger.warning(f"[MULTI-FORMAT] Thumbnail skipped for {video_key}: {e.message}")
            return None
