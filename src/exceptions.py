"""Custom exceptions for the render backend.

These exceptions carry machine-readable error codes so the API layer can turn
them into structured error responses, and so the render pipeline can decide
which failures stay local to one format and which abort a whole video.
"""

from src.constants.error_codes import get_error_spec
from src.schemas.envelope import ErrorInfo, ErrorLocation, SuggestedAction


class AppError(Exception):
    """Base exception for all application errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        location: ErrorLocation | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.location = location
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)

        suggested_actions: list[SuggestedAction] = []
        if "suggested_action" in spec:
            suggested_actions.append(
                SuggestedAction(
                    action=spec["suggested_action"],
                    endpoint=spec.get("suggested_endpoint"),
                    parameters=spec.get("parameters", {}),
                )
            )

        return ErrorInfo(
            code=self.code,
            message=self.message,
            location=self.location,
            retryable=spec.get("retryable", False),
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
            suggested_actions=suggested_actions,
        )


# =============================================================================
# Not Found Errors (404)
# =============================================================================


class NotFoundError(AppError):
    """Base class for resource not found errors."""

    code = "NOT_FOUND"
    status_code = 404
    message = "Resource not found"


class VideoNotFoundError(NotFoundError):
    """Bulk video not found."""

    code = "VIDEO_NOT_FOUND"
    message = "Bulk video not found"

    def __init__(self, video_id: str | None = None):
        message = f"Bulk video not found: {video_id}" if video_id else self.message
        location = ErrorLocation(video_id=video_id) if video_id else None
        super().__init__(message, location=location)


class ExportJobNotFoundError(NotFoundError):
    """Export job unknown or already cleaned up."""

    code = "EXPORT_JOB_NOT_FOUND"
    message = "Export job not found"

    def __init__(self, job_id: str | None = None):
        message = f"Export job not found: {job_id}" if job_id else self.message
        super().__init__(message)


# =============================================================================
# Prerequisite / Configuration Errors
# =============================================================================


class PrerequisiteError(AppError):
    """Scenes of a video are not ready for rendering."""

    code = "SCENES_NOT_READY"
    status_code = 409
    message = "Not all scenes are ready for rendering"

    def __init__(self, message: str | None = None, *, video_id: str | None = None):
        location = ErrorLocation(video_id=video_id) if video_id else None
        super().__init__(message, location=location)


class ConfigurationError(AppError):
    """Render configuration is missing or invalid."""

    code = "CONFIGURATION_ERROR"
    status_code = 400
    message = "Invalid render configuration"


# =============================================================================
# Render / Storage Errors
# =============================================================================


class RenderError(AppError):
    """Encoding or probing subprocess failure.

    ``message`` is a short sentence safe to show to end users. The raw
    encoder output is kept in ``diagnostics`` and only ever logged.
    """

    code = "RENDER_FAILED"
    status_code = 500
    message = "Rendering failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        format: str | None = None,
        diagnostics: str | None = None,
    ):
        self.format = format
        self.diagnostics = diagnostics
        location = ErrorLocation(format=format) if format else None
        super().__init__(message, location=location)


class RenderTimeoutError(RenderError):
    """Encoding subprocess exceeded its wall-clock limit."""

    code = "RENDER_TIMEOUT"
    status_code = 504
    message = "Rendering timed out"


class StorageError(AppError):
    """Object storage upload, download or presign failure."""

    code = "STORAGE_ERROR"
    status_code = 502
    message = "Storage error"


class InternalError(AppError):
    """Internal server error."""

    code = "INTERNAL_ERROR"
    status_code = 500
    message = "Internal server error"
