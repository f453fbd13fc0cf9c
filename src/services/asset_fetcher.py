"""Download scene clips and logos referenced by URL into a render workspace."""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from src.config import Settings, get_settings
from src.exceptions import StorageError
from src.services.storage_service import StorageService, get_storage_service

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class AssetFetcher:
    """Fetches remote assets, signing URLs for objects in our own buckets."""

    def __init__(
        self,
        storage: Optional[StorageService] = None,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.storage = storage or get_storage_service()
        self.settings = settings or get_settings()
        self._http_client = http_client

    async def resolve_download_url(self, url: str) -> str:
        """Presign URLs that point into our storage; pass others through.

        Signing failures are not fatal: the original URL may still be
        publicly readable.
        """
        location = self.storage.resolve_bucket_and_key(url)
        if location is None:
            return url

        bucket, key = location
        try:
            return await self.storage.get_presigned_download_url(bucket, key)
        except StorageError as e:
            logger.warning(f"[FETCH] Could not presign {bucket}/{key}, using original URL: {e}")
            return url

    async def fetch(self, url: str, dest_path: str) -> str:
        """Download ``url`` to ``dest_path``.

        Raises:
            StorageError: If the asset cannot be downloaded
        """
        download_url = await self.resolve_download_url(url)
        parsed = urlparse(download_url)

        if parsed.scheme == "file":
            # Only files inside our own local storage may be read from disk
            if self.storage.resolve_bucket_and_key(download_url) is None:
                raise StorageError(f"Local file outside storage: {url}")
            source = Path(unquote(parsed.path))
            if not source.is_file():
                raise StorageError(f"Asset not found: {url}")
            await asyncio.to_thread(shutil.copyfile, str(source), dest_path)
        elif parsed.scheme in ("http", "https"):
            await self._download_http(download_url, dest_path, original_url=url)
        else:
            raise StorageError(f"Unsupported asset URL: {url}")

        if Path(dest_path).stat().st_size == 0:
            Path(dest_path).unlink(missing_ok=True)
            raise StorageError(f"Downloaded asset is empty: {url}")

        logger.debug(f"[FETCH] {url} -> {dest_path}")
        return dest_path

    async def _download_http(self, download_url: str, dest_path: str, *, original_url: str) -> None:
        client = self._http_client or httpx.AsyncClient(
            timeout=self.settings.download_timeout_s, follow_redirects=True
        )
        try:
            async with client.stream("GET", download_url) as response:
                if response.status_code != 200:
                    raise StorageError(
                        f"Download failed with HTTP {response.status_code}: {original_url}"
                    )
                f = await asyncio.to_thread(open, dest_path, "wb")
                try:
                    async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                        await asyncio.to_thread(f.write, chunk)
                finally:
                    await asyncio.to_thread(f.close)
        except httpx.HTTPError as e:
            Path(dest_path).unlink(missing_ok=True)
            raise StorageError(f"Download failed: {original_url}") from e
        except StorageError:
            Path(dest_path).unlink(missing_ok=True)
            raise
        finally:
            if self._http_client is None:
                await client.aclose()
