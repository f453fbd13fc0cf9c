"""Object storage backends for rendered videos, thumbnails and exports.

Three interchangeable backends share one async interface:

- LocalStorageService: files under ``local_storage_path`` (development, tests)
- S3StorageService: AWS S3 or any S3-compatible endpoint (Wasabi, MinIO)
- GCSStorageService: Google Cloud Storage

Objects are addressed by (bucket, key). Blocking SDK calls run in a worker
thread so uploads never stall the event loop.
"""

import asyncio
import logging
import os
import shutil
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.config import Settings, get_settings
from src.exceptions import StorageError

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".json": "application/json",
    ".mp3": "audio/mpeg",
    ".aac": "audio/aac",
}


def guess_content_type(path: str) -> str:
    return MEDIA_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


def _ensure_non_empty(local_path: str) -> None:
    if not os.path.exists(local_path):
        raise StorageError(f"File to upload does not exist: {local_path}")
    if os.path.getsize(local_path) == 0:
        raise StorageError(f"Refusing to upload empty file: {local_path}")


class _RetryingUploads:
    """Mixin running blocking SDK uploads with exponential backoff."""

    settings: Settings

    async def _with_retries(self, description: str, func, *args, **kwargs) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.settings.storage_upload_retries)),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(Exception),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"[STORAGE] Retrying {description} "
                            f"(attempt {attempt.retry_state.attempt_number})"
                        )
                    return await asyncio.to_thread(func, *args, **kwargs)
        except StorageError:
            raise
        except Exception as e:
            logger.error(f"[STORAGE] {description} failed: {e}")
            raise StorageError(f"{description} failed") from e


class LocalStorageService:
    """Local file storage for development without a cloud bucket."""

    backend = "local"

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.base_path = Path(self.settings.local_storage_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.files_url_prefix = f"{self.settings.public_base_url.rstrip('/')}/api/storage/files/"

    def _get_full_path(self, bucket: str, key: str) -> Path:
        full_path = (self.base_path / bucket / key).resolve()
        if self.base_path not in full_path.parents:
            raise StorageError(f"Invalid storage path: {bucket}/{key}")
        return full_path

    def get_public_url(self, bucket: str, key: str) -> str:
        """Get URL for accessing the file through the storage API."""
        return f"{self.files_url_prefix}{bucket}/{key}"

    async def upload_file(
        self,
        bucket: str,
        key: str,
        local_path: str,
        content_type: str | None = None,
    ) -> str:
        """Copy a local file into storage and return its public URL."""
        _ensure_non_empty(local_path)
        full_path = self._get_full_path(bucket, key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, local_path, str(full_path))
        logger.info(f"[STORAGE] Stored {bucket}/{key} ({full_path.stat().st_size} bytes)")
        return self.get_public_url(bucket, key)

    async def upload_buffer(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        full_path = self._get_full_path(bucket, key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(full_path.write_bytes, data)
        return self.get_public_url(bucket, key)

    async def download_file(self, bucket: str, key: str, local_path: str) -> str:
        """Copy file to local path."""
        full_path = self._get_full_path(bucket, key)
        if not full_path.exists():
            raise StorageError(f"Object not found: {bucket}/{key}")
        await asyncio.to_thread(shutil.copyfile, str(full_path), local_path)
        return local_path

    async def get_presigned_download_url(
        self,
        bucket: str,
        key: str,
        expires_in: int | None = None,
    ) -> str:
        """Local files need no signature; hand out a file:// URI."""
        return self._get_full_path(bucket, key).as_uri()

    def resolve_bucket_and_key(self, url: str) -> Optional[tuple[str, str]]:
        """Map one of our public URLs (or file:// URIs) back to (bucket, key)."""
        if url.startswith(self.files_url_prefix):
            path = unquote(url[len(self.files_url_prefix):].split("?", 1)[0])
        elif url.startswith("file://"):
            file_path = Path(unquote(urlparse(url).path)).resolve()
            if self.base_path not in file_path.parents:
                return None
            path = file_path.relative_to(self.base_path).as_posix()
        else:
            return None

        bucket, _, key = path.partition("/")
        if not bucket or not key:
            return None
        return bucket, key

    def file_exists(self, bucket: str, key: str) -> bool:
        return self._get_full_path(bucket, key).exists()

    def get_file_path(self, storage_path: str) -> Path:
        """Get the actual file path for serving ``bucket/key``."""
        bucket, _, key = storage_path.partition("/")
        if not bucket or not key:
            raise StorageError(f"Invalid storage path: {storage_path}")
        return self._get_full_path(bucket, key)


class S3StorageService(_RetryingUploads):
    """S3 or S3-compatible object storage."""

    backend = "s3"

    def __init__(self, settings: Optional[Settings] = None, client: Any = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            import boto3
            from botocore.config import Config

            self._client = boto3.client(
                "s3",
                endpoint_url=self.settings.s3_endpoint_url or None,
                region_name=self.settings.s3_region,
                aws_access_key_id=self.settings.s3_access_key_id or None,
                aws_secret_access_key=self.settings.s3_secret_access_key or None,
                config=Config(signature_version="s3v4"),
            )
        return self._client

    def get_public_url(self, bucket: str, key: str) -> str:
        if self.settings.s3_endpoint_url:
            return f"{self.settings.s3_endpoint_url.rstrip('/')}/{bucket}/{key}"
        return f"https://{bucket}.s3.{self.settings.s3_region}.amazonaws.com/{key}"

    async def upload_file(
        self,
        bucket: str,
        key: str,
        local_path: str,
        content_type: str | None = None,
    ) -> str:
        """Upload a local file, retrying transient failures."""
        _ensure_non_empty(local_path)
        size = os.path.getsize(local_path)
        await self._with_retries(
            f"Upload of {bucket}/{key}",
            self.client.upload_file,
            local_path,
            bucket,
            key,
            ExtraArgs={"ContentType": content_type or guess_content_type(local_path)},
        )
        logger.info(f"[STORAGE] Uploaded s3://{bucket}/{key} ({size} bytes)")
        return self.get_public_url(bucket, key)

    async def upload_buffer(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        await self._with_retries(
            f"Upload of {bucket}/{key}",
            self.client.put_object,
            Bucket=bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        return self.get_public_url(bucket, key)

    async def download_file(self, bucket: str, key: str, local_path: str) -> str:
        try:
            await asyncio.to_thread(self.client.download_file, bucket, key, local_path)
        except Exception as e:
            raise StorageError(f"Download of {bucket}/{key} failed") from e
        return local_path

    async def get_presigned_download_url(
        self,
        bucket: str,
        key: str,
        expires_in: int | None = None,
    ) -> str:
        try:
            return await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=expires_in or self.settings.presigned_url_expiration_s,
            )
        except Exception as e:
            raise StorageError(f"Could not presign {bucket}/{key}") from e

    def resolve_bucket_and_key(self, url: str) -> Optional[tuple[str, str]]:
        """Extract (bucket, key) from a path-style or virtual-hosted S3 URL."""
        if url.startswith("s3://"):
            parsed = urlparse(url)
            key = unquote(parsed.path.lstrip("/"))
            return (parsed.netloc, key) if parsed.netloc and key else None

        parsed = urlparse(url)
        host = (parsed.hostname or "").lower()
        path = unquote(parsed.path.lstrip("/"))
        if not host or not path:
            return None

        endpoint_host = urlparse(self.settings.s3_endpoint_url).hostname if self.settings.s3_endpoint_url else None
        first_label = host.split(".", 1)[0]

        if host == endpoint_host or first_label == "s3" or first_label.startswith("s3-"):
            # Path-style: https://s3.region.provider.com/bucket/key
            bucket, _, key = path.partition("/")
            return (bucket, key) if bucket and key else None

        if ".s3." in host or ".s3-" in host or host.endswith(".s3.amazonaws.com"):
            # Virtual-hosted: https://bucket.s3.region.provider.com/key
            bucket = host.split(".s3", 1)[0]
            return bucket, path

        return None


class GCSStorageService(_RetryingUploads):
    """Google Cloud Storage backend."""

    backend = "gcs"

    def __init__(self, settings: Optional[Settings] = None, client: Any = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            from google.cloud import storage

            if self.settings.gcs_project_id:
                self._client = storage.Client(project=self.settings.gcs_project_id)
            else:
                self._client = storage.Client()
        return self._client

    def _blob(self, bucket: str, key: str) -> Any:
        return self.client.bucket(bucket).blob(key)

    def get_public_url(self, bucket: str, key: str) -> str:
        """Get the public URL for a stored file."""
        return f"https://storage.googleapis.com/{bucket}/{key}"

    async def upload_file(
        self,
        bucket: str,
        key: str,
        local_path: str,
        content_type: str | None = None,
    ) -> str:
        """Upload a local file to GCS."""
        _ensure_non_empty(local_path)
        blob = self._blob(bucket, key)
        await self._with_retries(
            f"Upload of {bucket}/{key}",
            blob.upload_from_filename,
            local_path,
            content_type=content_type or guess_content_type(local_path),
        )
        logger.info(f"[STORAGE] Uploaded gs://{bucket}/{key}")
        return self.get_public_url(bucket, key)

    async def upload_buffer(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        blob = self._blob(bucket, key)
        await self._with_retries(
            f"Upload of {bucket}/{key}",
            blob.upload_from_string,
            data,
            content_type=content_type,
        )
        return self.get_public_url(bucket, key)

    async def download_file(self, bucket: str, key: str, local_path: str) -> str:
        """Download a file from GCS to local path."""
        try:
            await asyncio.to_thread(self._blob(bucket, key).download_to_filename, local_path)
        except Exception as e:
            raise StorageError(f"Download of {bucket}/{key} failed") from e
        return local_path

    async def get_presigned_download_url(
        self,
        bucket: str,
        key: str,
        expires_in: int | None = None,
    ) -> str:
        """Generate a V4 signed download URL."""
        # V4 signatures are limited to 7 days
        seconds = min(expires_in or self.settings.presigned_url_expiration_s, 7 * 24 * 3600)
        try:
            return await asyncio.to_thread(
                self._blob(bucket, key).generate_signed_url,
                version="v4",
                expiration=timedelta(seconds=seconds),
                method="GET",
            )
        except Exception as e:
            raise StorageError(f"Could not presign {bucket}/{key}") from e

    def resolve_bucket_and_key(self, url: str) -> Optional[tuple[str, str]]:
        parsed = urlparse(url)
        path = unquote(parsed.path.lstrip("/"))

        if parsed.scheme == "gs":
            return (parsed.netloc, path) if parsed.netloc and path else None

        host = (parsed.hostname or "").lower()
        if host == "storage.googleapis.com":
            bucket, _, key = path.partition("/")
            return (bucket, key) if bucket and key else None
        if host.endswith(".storage.googleapis.com") and path:
            return host[: -len(".storage.googleapis.com")], path
        return None


StorageService = LocalStorageService | S3StorageService | GCSStorageService

_storage_service: Optional[StorageService] = None


def create_storage_service(settings: Optional[Settings] = None) -> StorageService:
    """Build the backend selected by ``storage_backend``."""
    settings = settings or get_settings()
    if settings.storage_backend == "s3":
        return S3StorageService(settings)
    if settings.storage_backend == "gcs":
        return GCSStorageService(settings)
    return LocalStorageService(settings)


def get_storage_service() -> StorageService:
    global _storage_service
    if _storage_service is None:
        _storage_service = create_storage_service()
        logger.info(f"[STORAGE] Using {_storage_service.backend} storage backend")
    return _storage_service
