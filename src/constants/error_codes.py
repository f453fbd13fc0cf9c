"""Error codes dictionary for the render API.

This is the single source of truth for all error codes, their retryability,
and suggested recovery actions. Used by exception handlers to generate
machine-readable error responses.
"""

from typing import Any, TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Retry and fix metadata for an error code."""

    retryable: bool
    suggested_fix: str
    suggested_action: str
    suggested_endpoint: str
    parameters: dict[str, Any]


# Error codes dictionary - single source of truth
ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Resource errors
    # ==========================================================================
    "NOT_FOUND": {
        "retryable": False,
    },
    "VIDEO_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "Check the video id; it may have been deleted",
    },
    "EXPORT_JOB_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "The job is unknown or finished and was cleaned up; check rendered formats instead",
        "suggested_action": "list_renders",
        "suggested_endpoint": "GET /api/bulk-video/videos/{video_id}/renders",
    },
    # ==========================================================================
    # Prerequisite / configuration errors (fix input, then retry)
    # ==========================================================================
    "SCENES_NOT_READY": {
        "retryable": True,
        "suggested_fix": "Wait until every scene has a completed animation",
    },
    "CONFIGURATION_ERROR": {
        "retryable": False,
    },
    "NO_FORMATS": {
        "retryable": False,
        "suggested_fix": "Set default formats on the project or custom formats on the video",
    },
    "LOGO_NOT_CONFIGURED": {
        "retryable": False,
        "suggested_fix": "Upload a brand logo and set its size in the project settings",
    },
    "INVALID_FORMAT": {
        "retryable": False,
        "suggested_fix": "Use WIDTHxHEIGHT with positive integers, e.g. 1080x1920",
    },
    # ==========================================================================
    # Render / storage errors
    # ==========================================================================
    "RENDER_FAILED": {
        "retryable": True,
        "suggested_action": "rerender_missing",
        "suggested_endpoint": "POST /api/bulk-video/render",
        "parameters": {"mode": "missing"},
    },
    "RENDER_TIMEOUT": {
        "retryable": True,
        "suggested_fix": "Check the source clips; encoding stalled past the time limit",
    },
    "STORAGE_ERROR": {
        "retryable": True,
    },
    # ==========================================================================
    # System errors
    # ==========================================================================
    "INTERNAL_ERROR": {
        "retryable": True,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get the metadata for an error code.

    Unknown codes get an empty entry (not retryable, no suggestions).
    """
    return ERROR_CODES.get(code, {})


def is_retryable(code: str) -> bool:
    """Check whether an error code is retryable."""
    return get_error_spec(code).get("retryable", False)
