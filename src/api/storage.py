"""Local storage file serving for development."""

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

from src.api.deps import Storage
from src.exceptions import StorageError
from src.services.storage_service import LocalStorageService, guess_content_type

router = APIRouter()


@router.get("/files/{storage_path:path}")
async def get_file(storage_path: str, storage: Storage):
    """Serve ``bucket/key`` from local storage."""
    if not isinstance(storage, LocalStorageService):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Local storage not enabled",
        )

    try:
        file_path = storage.get_file_path(storage_path)
    except StorageError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )
    if not file_path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )

    return FileResponse(
        path=str(file_path),
        media_type=guess_content_type(str(file_path)),
        filename=file_path.name,
    )
