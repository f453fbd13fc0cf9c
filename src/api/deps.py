from typing import Annotated

from fastapi import Depends, Request

from src.services.batch_orchestrator import BatchOrchestrator
from src.services.export_progress import ExportProgressTracker
from src.services.render_repository import RenderRepository
from src.services.storage_service import StorageService


def get_progress_tracker(request: Request) -> ExportProgressTracker:
    """Process-wide tracker created in the application lifespan."""
    return request.app.state.progress_tracker


def get_orchestrator(request: Request) -> BatchOrchestrator:
    return request.app.state.orchestrator


def get_render_repository(request: Request) -> RenderRepository:
    return request.app.state.render_repository


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


# Type aliases for dependency injection
ProgressTracker = Annotated[ExportProgressTracker, Depends(get_progress_tracker)]
Orchestrator = Annotated[BatchOrchestrator, Depends(get_orchestrator)]
Repository = Annotated[RenderRepository, Depends(get_render_repository)]
Storage = Annotated[StorageService, Depends(get_storage)]
