"""Bulk video render endpoints.

Rendering runs in the background; clients poll the job endpoint until the
phase is ``complete`` or ``error``.
"""

import logging

from fastapi import APIRouter, status

from src.api.deps import Orchestrator, ProgressTracker, Repository
from src.exceptions import ExportJobNotFoundError, NotFoundError, VideoNotFoundError
from src.render.geometry import parse_format
from src.schemas.render import (
    BulkRenderRequest,
    CurrentRenderResponse,
    ExportItemResponse,
    ExportJobResponse,
    RenderedFormatResponse,
    RenderJobStartedResponse,
    RenderProgressCounts,
    RenderStatusResponse,
    VideoRenderRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/render",
    response_model=RenderJobStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_bulk_render(
    request: BulkRenderRequest,
    orchestrator: Orchestrator,
) -> RenderJobStartedResponse:
    """Start rendering all formats of the given videos."""
    project_id = str(request.project_id) if request.project_id else None
    job_id = await orchestrator.start_batch(request.video_ids, request.mode, project_id=project_id)
    total = len(dict.fromkeys(request.video_ids))
    logger.info(f"[BATCH] Job {job_id} accepted ({total} videos, project={project_id})")
    return RenderJobStartedResponse(job_id=job_id, total_videos=total)


@router.get("/render/jobs/{job_id}", response_model=ExportJobResponse)
async def get_render_job(job_id: str, tracker: ProgressTracker) -> ExportJobResponse:
    """Progress of a render job.

    404 means the job is unknown or finished long enough ago to be cleaned up.
    """
    job = await tracker.get(job_id)
    if job is None:
        raise ExportJobNotFoundError(job_id)

    return ExportJobResponse(
        job_id=job.job_id,
        phase=job.phase.value,
        progress=job.progress,
        items=[
            ExportItemResponse(id=item.id, name=item.name, status=item.status.value, error=item.error)
            for item in job.items.values()
        ],
        download_url=job.download_url,
        error=job.error,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


@router.post(
    "/videos/{video_id}/render",
    response_model=RenderJobStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def render_video(
    video_id: str,
    request: VideoRenderRequest,
    orchestrator: Orchestrator,
    repository: Repository,
) -> RenderJobStartedResponse:
    """Render one video; with ``format`` set only that format is rendered."""
    if request.format:
        parse_format(request.format)
    if await repository.get_video_source(video_id) is None:
        raise VideoNotFoundError(video_id)

    job_id = await orchestrator.start_batch([video_id], request.mode, format=request.format)
    return RenderJobStartedResponse(job_id=job_id, total_videos=1)


@router.get("/videos/{video_id}/renders", response_model=list[RenderedFormatResponse])
async def list_video_renders(video_id: str, repository: Repository) -> list[RenderedFormatResponse]:
    """Rendered formats of a video."""
    if await repository.get_video_source(video_id) is None:
        raise VideoNotFoundError(video_id)

    renders = await repository.list_rendered_formats(video_id)
    return [
        RenderedFormatResponse(
            format=r.format,
            status=r.status.value,
            url=r.url,
            thumbnail_url=r.thumbnail_url,
            error=r.error,
            updated_at=r.updated_at,
        )
        for r in renders
    ]


@router.get("/projects/{project_id}/render-status", response_model=RenderStatusResponse)
async def get_project_render_status(project_id: str, repository: Repository) -> RenderStatusResponse:
    summary = await repository.get_render_status_summary(project_id)
    if summary is None:
        raise NotFoundError(f"Project not found: {project_id}")

    return RenderStatusResponse(
        project_id=summary.project_id,
        is_rendering=summary.is_rendering,
        render_progress=RenderProgressCounts(
            total_renders=summary.total,
            completed_renders=summary.completed,
            failed_renders=summary.failed,
            pending_renders=summary.pending,
            processing_renders=summary.rendering,
            current_renders=[CurrentRenderResponse(**c.to_dict()) for c in summary.current],
        ),
    )
