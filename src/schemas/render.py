from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from src.render.types import RenderMode


class BulkRenderRequest(BaseModel):
    video_ids: list[str] = Field(..., min_length=1)
    mode: RenderMode = RenderMode.ALL  # "missing" skips formats already rendered
    project_id: UUID | None = None


class VideoRenderRequest(BaseModel):
    format: str | None = None  # Render only this format (mode ignored)
    mode: RenderMode = RenderMode.ALL


class RenderJobStartedResponse(BaseModel):
    job_id: str
    total_videos: int


class ExportItemResponse(BaseModel):
    id: str
    name: str
    status: str
    error: str | None = None


class ExportJobResponse(BaseModel):
    job_id: str
    phase: str
    progress: int
    items: list[ExportItemResponse]
    download_url: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class RenderedFormatResponse(BaseModel):
    format: str
    status: str
    url: str | None = None
    thumbnail_url: str | None = None
    error: str | None = None
    updated_at: datetime | None = None


class CurrentRenderResponse(BaseModel):
    id: str
    video_id: str
    format: str
    video_index: int
    video_text: str


class RenderProgressCounts(BaseModel):
    total_renders: int
    completed_renders: int
    failed_renders: int
    pending_renders: int
    processing_renders: int
    current_renders: list[CurrentRenderResponse]


class RenderStatusResponse(BaseModel):
    project_id: str
    is_rendering: bool
    render_progress: RenderProgressCounts
