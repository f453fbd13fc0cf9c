import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api import bulk_render, storage
from src.config import get_settings
from src.exceptions import AppError, InternalError
from src.models.database import async_session_maker, engine, init_db
from src.render.media_renderer import MediaRenderer
from src.schemas.envelope import ErrorResponse
from src.services.batch_orchestrator import BatchOrchestrator
from src.services.export_progress import ExportProgressTracker
from src.services.multi_format_renderer import MultiFormatRenderer
from src.services.render_repository import SQLAlchemyRenderRepository
from src.services.storage_service import get_storage_service

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def configure_services(app: FastAPI) -> None:
    """Create the process-wide render services on ``app.state``."""
    storage_service = get_storage_service()
    repository = SQLAlchemyRenderRepository(async_session_maker)
    tracker = ExportProgressTracker(cleanup_delay_s=settings.export_progress_ttl_s)
    renderer = MultiFormatRenderer(
        repository=repository,
        storage=storage_service,
        renderer=MediaRenderer(settings),
        settings=settings,
    )

    app.state.storage = storage_service
    app.state.render_repository = repository
    app.state.progress_tracker = tracker
    app.state.orchestrator = BatchOrchestrator(
        renderer=renderer,
        repository=repository,
        tracker=tracker,
        storage=storage_service,
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    configure_services(app)
    logger.info(f"{settings.app_name} {settings.app_version} started ({settings.environment})")
    yield
    # Shutdown
    await app.state.orchestrator.shutdown()
    app.state.progress_tracker.shutdown()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Convert application errors to ``{"detail", "error"}`` responses."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    body = ErrorResponse(detail=exc.message, error=exc.to_error_info())
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(mode="json", exclude_none=True),
    )


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    error = InternalError()
    body = ErrorResponse(detail=error.message, error=error.to_error_info())
    return JSONResponse(status_code=500, content=body.model_dump(mode="json", exclude_none=True))


# Routers
app.include_router(bulk_render.router, prefix="/api/bulk-video", tags=["bulk-render"])
app.include_router(storage.router, prefix="/api/storage", tags=["storage"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": settings.app_version, "git_hash": settings.git_hash}
