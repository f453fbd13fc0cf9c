"""Batch rendering of many bulk videos as one background job.

Job lifecycle (visible through ExportProgressTracker):
  preparing -> processing -> packaging -> complete
  error is reachable from any phase if the job itself crashes.

Videos run concurrently up to ``bulk_render_concurrency``; a failed or
skipped video is recorded on its item and never stops the rest.
"""

import asyncio
import json
import logging
import uuid
import zipfile
from datetime import datetime, timezone
from typing import Any, Optional

from src.config import Settings, get_settings
from src.exceptions import AppError
from src.render.types import (
    VIDEO_COMPLETED,
    BatchRenderResult,
    RenderMode,
    VideoRenderResult,
    VideoRenderSource,
)
from src.render.workspace import render_workspace
from src.services.asset_fetcher import AssetFetcher
from src.services.export_progress import ExportPhase, ExportProgressTracker, ItemStatus
from src.services.multi_format_renderer import MultiFormatRenderer
from src.services.render_repository import RenderRepository
from src.services.storage_service import StorageService

logger = logging.getLogger(__name__)

# Share of the progress bar used by the processing phase; packaging takes the rest
PROCESSING_PROGRESS_SHARE = 90
SUMMARY_FILENAME = "export-summary.json"
ARCHIVE_FILENAME = "bulk-export.zip"


class BatchOrchestrator:
    """Runs bulk render jobs and reports their progress."""

    def __init__(
        self,
        renderer: MultiFormatRenderer,
        repository: RenderRepository,
        tracker: ExportProgressTracker,
        storage: StorageService,
        settings: Optional[Settings] = None,
        fetcher: Optional[AssetFetcher] = None,
    ):
        self.settings = settings or get_settings()
        self.renderer = renderer
        self.repository = repository
        self.tracker = tracker
        self.storage = storage
        self.fetcher = fetcher or AssetFetcher(storage=storage, settings=self.settings)
        self._semaphore = asyncio.Semaphore(max(1, self.settings.bulk_render_concurrency))
        self._tasks: set[asyncio.Task] = set()

    # ========================================================================
    # Background job hand-off
    # ========================================================================

    async def start_batch(
        self,
        video_ids: list[str],
        mode: RenderMode = RenderMode.ALL,
        *,
        format: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> str:
        """Register a job and run it in the background.

        Returns immediately with the job id. The spawned task has a done
        callback that moves the job to the error phase if it crashes.
        """
        job_id = str(uuid.uuid4())
        video_ids = list(dict.fromkeys(video_ids))

        names: dict[str, str] = {}
        for video_id in video_ids:
            try:
                source = await self.repository.get_video_source(video_id)
            except Exception as e:
                # The item keeps its id as name; run_batch records the failure
                logger.warning(f"[BATCH] Could not load name of video {video_id}: {e}")
                continue
            if source is not None:
                names[video_id] = source.name
        await self.tracker.initialize(job_id, video_ids, names)

        task = asyncio.create_task(
            self.run_batch(job_id, video_ids, mode, format=format, project_id=project_id),
            name=f"bulk-render-{job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_batch_done(job_id, t))
        logger.info(f"[BATCH] Started job {job_id}: {len(video_ids)} videos, mode={RenderMode(mode).value}")
        return job_id

    def _on_batch_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            message = "Render job was cancelled"
        elif task.exception() is not None:
            error = task.exception()
            logger.error(f"[BATCH] Job {job_id} crashed", exc_info=error)
            message = error.message if isinstance(error, AppError) else "Render job failed unexpectedly"
        else:
            return

        async def mark_failed() -> None:
            await self.tracker.update_progress(job_id, phase=ExportPhase.ERROR, error=message)
            self.tracker.schedule_cleanup(job_id)

        try:
            failure_task = asyncio.get_running_loop().create_task(mark_failed())
        except RuntimeError:
            # Event loop already closed (shutdown); nothing left to report to
            return
        self._tasks.add(failure_task)
        failure_task.add_done_callback(self._tasks.discard)

    async def shutdown(self) -> None:
        """Cancel running jobs (application shutdown)."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ========================================================================
    # Batch execution
    # ========================================================================

    async def run_batch(
        self,
        job_id: str,
        video_ids: list[str],
        mode: RenderMode = RenderMode.ALL,
        *,
        format: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> BatchRenderResult:
        """Render all videos of a job.

        Args:
            job_id: Tracker entry to report into (must be initialized)
            video_ids: Videos to render
            mode: ``all`` or ``missing``
            format: Render only this format (re-render of one output)
            project_id: If set, only completed videos of this project render;
                others are skipped

        Returns:
            BatchRenderResult; ``attempted`` counts videos whose render started
        """
        mode = RenderMode(mode)
        result = BatchRenderResult(job_id=job_id, mode=mode, started_at=datetime.now(timezone.utc))
        total = len(video_ids)
        finished = 0

        await self.tracker.update_progress(job_id, phase=ExportPhase.PROCESSING, progress=0)

        async def run_one(video_id: str) -> None:
            nonlocal finished
            async with self._semaphore:
                await self._process_video(job_id, video_id, mode, format, project_id, result)
            finished += 1
            await self.tracker.update_progress(
                job_id, progress=finished * PROCESSING_PROGRESS_SHARE // max(1, total)
            )

        await asyncio.gather(*(run_one(video_id) for video_id in video_ids))

        await self.tracker.update_progress(
            job_id, phase=ExportPhase.PACKAGING, progress=PROCESSING_PROGRESS_SHARE
        )
        result.completed_at = datetime.now(timezone.utc)
        download_url = await self._package(result)

        await self.tracker.update_progress(
            job_id, phase=ExportPhase.COMPLETE, progress=100, download_url=download_url
        )
        self.tracker.schedule_cleanup(job_id)

        logger.info(
            f"[BATCH] Job {job_id} complete: {result.attempted}/{total} attempted, "
            f"{len(result.skipped)} skipped, {len(result.errors)} failed"
        )
        return result

    async def _process_video(
        self,
        job_id: str,
        video_id: str,
        mode: RenderMode,
        format: Optional[str],
        project_id: Optional[str],
        result: BatchRenderResult,
    ) -> None:
        """Render one video; every outcome ends up on its tracker item."""
        await self.tracker.update_item_status(job_id, video_id, ItemStatus.PROCESSING)
        try:
            await self._render_video(job_id, video_id, mode, format, project_id, result)
        except AppError as e:
            logger.warning(f"[BATCH] Video {video_id} failed: {e.message}")
            result.errors[video_id] = e.message
            await self.tracker.update_item_status(job_id, video_id, ItemStatus.ERROR, e.message)
        except Exception:
            logger.exception(f"[BATCH] Unexpected error rendering video {video_id}")
            message = "Rendering failed unexpectedly"
            result.errors[video_id] = message
            await self.tracker.update_item_status(job_id, video_id, ItemStatus.ERROR, message)

    async def _render_video(
        self,
        job_id: str,
        video_id: str,
        mode: RenderMode,
        format: Optional[str],
        project_id: Optional[str],
        result: BatchRenderResult,
    ) -> None:
        source = await self.repository.get_video_source(video_id)
        if source is None:
            message = f"Bulk video not found: {video_id}"
            result.errors[video_id] = message
            await self.tracker.update_item_status(job_id, video_id, ItemStatus.ERROR, message)
            return

        reason = self._skip_reason(source, project_id)
        if reason:
            logger.info(f"[BATCH] Skipping video {video_id}: {reason}")
            result.skipped[video_id] = reason
            await self.tracker.update_item_status(job_id, video_id, ItemStatus.SKIPPED, reason)
            return

        result.attempted += 1
        if format:
            url = await self.renderer.render_single_format(video_id, format)
            video_result = VideoRenderResult(video_id=video_id, completed={format: url})
        else:
            video_result = await self.renderer.render_all_formats(video_id, mode)

        result.results[video_id] = video_result
        if video_result.ok:
            await self.tracker.update_item_status(job_id, video_id, ItemStatus.COMPLETED)
        else:
            await self.tracker.update_item_status(
                job_id, video_id, ItemStatus.ERROR, video_result.summary_error()
            )

    @staticmethod
    def _skip_reason(source: VideoRenderSource, project_id: Optional[str]) -> Optional[str]:
        if project_id is not None:
            if source.project_id != project_id:
                return f"Not part of project {project_id}"
            if source.status != VIDEO_COMPLETED:
                return "Video generation is not completed"
        if not source.scenes:
            return "No scenes"
        if not source.scenes_ready:
            return "Not all scenes are ready"
        return None

    # ========================================================================
    # Packaging
    # ========================================================================

    async def _package(self, result: BatchRenderResult) -> Optional[str]:
        """Zip the rendered outputs with a summary manifest and presign it.

        Outputs that cannot be downloaded are listed in the manifest instead.
        Failing to store the archive does not fail the job.
        """
        bucket = self.settings.exports_bucket
        key = f"bulk-exports/{result.job_id}/{ARCHIVE_FILENAME}"
        try:
            async with render_workspace(
                prefix=f"adreel_export_{result.job_id}_", root=self.settings.render_workspace_root or None
            ) as workspace:
                files: list[tuple[str, str]] = []
                missing: list[str] = []
                for video_id, video_result in result.results.items():
                    for format_str, url in video_result.completed.items():
                        arcname = f"{video_id}/{video_id}-{format_str.replace('x', '-')}.mp4"
                        local_path = workspace.output_path(f"{len(files):04d}.mp4")
                        try:
                            await self.fetcher.fetch(url, local_path)
                        except AppError as e:
                            logger.warning(f"[BATCH] Leaving {arcname} out of the archive: {e.message}")
                            missing.append(arcname)
                            continue
                        files.append((arcname, local_path))

                manifest = result.to_dict()
                manifest["files"] = [arcname for arcname, _ in files]
                manifest["missing_files"] = missing

                archive_path = workspace.file_path(ARCHIVE_FILENAME)
                await asyncio.to_thread(write_archive, archive_path, files, manifest)
                await self.storage.upload_file(bucket, key, archive_path, "application/zip")

            logger.info(f"[BATCH] Packaged job {result.job_id}: {len(files)} files, {len(missing)} missing")
            return await self.storage.get_presigned_download_url(bucket, key)
        except AppError as e:
            logger.warning(f"[BATCH] Could not store archive for job {result.job_id}: {e.message}")
            return None


def write_archive(archive_path: str, files: list[tuple[str, str]], manifest: dict[str, Any]) -> None:
    """Write ``files`` and the JSON manifest into a zip archive.

    Videos are stored as-is; only the manifest is deflated.
    """
    with zipfile.ZipFile(archive_path, "w") as archive:
        for arcname, local_path in files:
            archive.write(local_path, arcname, compress_type=zipfile.ZIP_STORED)
        archive.writestr(
            SUMMARY_FILENAME,
            json.dumps(manifest, indent=2),
            compress_type=zipfile.ZIP_DEFLATED,
        )
