"""Data access for the render pipeline.

The renderer and orchestrator only see the ``RenderRepository`` protocol and
the snapshot dataclasses from ``src.render.types``; the SQLAlchemy
implementation below is what the application wires in.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from src.models.bulk_video import BulkVideo
from src.models.project import Project
from src.models.rendered_video import RenderedVideo
from src.render.types import (
    BrandSettings,
    RenderedFormatState,
    RenderStatus,
    SceneSource,
    VIDEO_COMPLETED,
    VideoRenderSource,
)

logger = logging.getLogger(__name__)

MAX_CURRENT_RENDERS = 5


@dataclass
class CurrentRender:
    """A format that is being rendered right now."""

    id: str
    video_id: str
    format: str
    video_index: int
    video_text: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "video_id": self.video_id,
            "format": self.format,
            "video_index": self.video_index,
            "video_text": self.video_text,
        }


@dataclass
class RenderStatusSummary:
    """Aggregate render state of a project's completed videos."""

    project_id: str
    total: int = 0
    completed: int = 0
    failed: int = 0
    rendering: int = 0
    current: list[CurrentRender] = field(default_factory=list)

    @property
    def pending(self) -> int:
        return max(0, self.total - (self.completed + self.failed + self.rendering))

    @property
    def is_rendering(self) -> bool:
        return self.rendering > 0


class RenderRepository(Protocol):
    """What the render pipeline needs from persistence."""

    async def get_video_source(self, video_id: str) -> Optional[VideoRenderSource]:
        ...

    async def upsert_rendered_format(
        self,
        video_id: str,
        format: str,
        *,
        status: RenderStatus,
        url: Optional[str] = None,
        error: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
    ) -> RenderedFormatState:
        ...

    async def list_rendered_formats(self, video_id: str) -> list[RenderedFormatState]:
        ...

    async def get_render_status_summary(self, project_id: str) -> Optional[RenderStatusSummary]:
        ...


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _to_state(row: RenderedVideo) -> RenderedFormatState:
    return RenderedFormatState(
        format=row.format,
        status=RenderStatus(row.status),
        url=row.url,
        error=row.error,
        thumbnail_url=row.thumbnail_url,
        updated_at=row.updated_at,
    )


def _preview_text(text: Optional[str], limit: int = 50) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."


class SQLAlchemyRenderRepository:
    """RenderRepository backed by the application database.

    Every call uses its own short-lived session, so one instance can be
    shared by concurrent background renders.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_video_source(self, video_id: str) -> Optional[VideoRenderSource]:
        """Load a bulk video with its scenes, rendered formats and brand settings."""
        video_uuid = _parse_uuid(video_id)
        if video_uuid is None:
            return None

        async with self._session_factory() as session:
            result = await session.execute(
                select(BulkVideo)
                .where(BulkVideo.id == video_uuid)
                .options(
                    selectinload(BulkVideo.scenes),
                    selectinload(BulkVideo.rendered_videos),
                    selectinload(BulkVideo.project),
                )
            )
            video = result.scalar_one_or_none()
            if video is None:
                return None

            project = video.project
            brand = BrandSettings()
            if project is not None:
                brand = BrandSettings(
                    logo_url=project.brand_logo_url,
                    logo_position=project.logo_position,
                    logo_width=project.logo_width,
                    logo_height=project.logo_height,
                    default_formats=list(project.default_formats or []),
                )

            return VideoRenderSource(
                id=str(video.id),
                project_id=str(video.project_id),
                name=video.name or f"Video {video.row_index + 1}",
                status=video.status,
                custom_formats=list(video.custom_formats or []),
                scenes=[
                    SceneSource(
                        id=str(scene.id),
                        order=scene.order,
                        animation_url=scene.animation_url,
                        status=scene.status,
                    )
                    for scene in video.scenes
                ],
                rendered={row.format: _to_state(row) for row in video.rendered_videos},
                brand=brand,
            )

    async def upsert_rendered_format(
        self,
        video_id: str,
        format: str,
        *,
        status: RenderStatus,
        url: Optional[str] = None,
        error: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
    ) -> RenderedFormatState:
        """Create or update the (video, format) row.

        ``url``, ``error`` and ``thumbnail_url`` are written as given, so a
        new attempt clears the outcome of the previous one.
        """
        video_uuid = uuid.UUID(str(video_id))
        values = {
            "status": RenderStatus(status).value,
            "url": url,
            "error": error,
            "thumbnail_url": thumbnail_url,
        }

        for attempt in range(2):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(RenderedVideo).where(
                        RenderedVideo.bulk_video_id == video_uuid,
                        RenderedVideo.format == format,
                    )
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = RenderedVideo(bulk_video_id=video_uuid, format=format, **values)
                    session.add(row)
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent run inserted the same pair first; update it instead
                    await session.rollback()
                    if attempt == 0:
                        continue
                    raise
                await session.refresh(row)
                return _to_state(row)

        raise RuntimeError("unreachable")

    async def list_rendered_formats(self, video_id: str) -> list[RenderedFormatState]:
        video_uuid = _parse_uuid(video_id)
        if video_uuid is None:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                select(RenderedVideo)
                .where(RenderedVideo.bulk_video_id == video_uuid)
                .order_by(RenderedVideo.format)
            )
            return [_to_state(row) for row in result.scalars().all()]

    async def get_render_status_summary(self, project_id: str) -> Optional[RenderStatusSummary]:
        """Expected vs actual renders across the project's completed videos.

        Returns None if the project does not exist.
        """
        project_uuid = _parse_uuid(project_id)
        if project_uuid is None:
            return None

        async with self._session_factory() as session:
            project = await session.get(Project, project_uuid)
            if project is None:
                return None

            summary = RenderStatusSummary(project_id=str(project.id))
            default_formats = list(project.default_formats or [])

            result = await session.execute(
                select(BulkVideo)
                .where(
                    BulkVideo.project_id == project_uuid,
                    BulkVideo.status == VIDEO_COMPLETED,
                )
                .options(selectinload(BulkVideo.rendered_videos))
            )
            videos = result.scalars().all()
            if not videos:
                return summary

            for video in videos:
                formats = video.custom_formats or default_formats
                summary.total += len(formats)

            counts = await session.execute(
                select(RenderedVideo.status, func.count())
                .join(BulkVideo, RenderedVideo.bulk_video_id == BulkVideo.id)
                .where(BulkVideo.project_id == project_uuid)
                .group_by(RenderedVideo.status)
            )
            for status, count in counts.all():
                if status == RenderStatus.COMPLETED.value:
                    summary.completed = count
                elif status == RenderStatus.FAILED.value:
                    summary.failed = count
                elif status == RenderStatus.RENDERING.value:
                    summary.rendering = count

            current = await session.execute(
                select(RenderedVideo, BulkVideo)
                .join(BulkVideo, RenderedVideo.bulk_video_id == BulkVideo.id)
                .where(
                    BulkVideo.project_id == project_uuid,
                    RenderedVideo.status == RenderStatus.RENDERING.value,
                )
                .order_by(RenderedVideo.updated_at.desc())
                .limit(MAX_CURRENT_RENDERS)
            )
            summary.current = [
                CurrentRender(
                    id=str(row.id),
                    video_id=str(video.id),
                    format=row.format,
                    video_index=video.row_index,
                    video_text=_preview_text(video.text_content),
                )
                for row, video in current.all()
            ]
            return summary
