"""
Tests for BatchOrchestrator.

Test cases:
1. A video that cannot render is skipped; the rest of the batch completes
2. End-to-end job: phases, progress, per-format URLs, zip archive with manifest
3. A crashing job ends in the error phase
4. Concurrency is bounded
5. Single-format jobs
6. Repository errors and project scoping stay per video
"""

import asyncio
import json
import zipfile
from urllib.parse import unquote, urlparse

import pytest

from src.render.types import RenderMode, RenderStatus, VideoRenderResult
from src.services.batch_orchestrator import BatchOrchestrator
from src.services.export_progress import ExportPhase, ExportProgressTracker, ItemStatus
from src.services.multi_format_renderer import MultiFormatRenderer


async def wait_for_phase(tracker, job_id, phases, timeout=5.0):
    """Poll the tracker until the job reaches one of ``phases``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        job = await tracker.get(job_id)
        if job is not None and job.phase in phases:
            return job
        await asyncio.sleep(0.01)
    raise AssertionError(f"Job {job_id} did not reach {phases}")


@pytest.fixture
def tracker() -> ExportProgressTracker:
    return ExportProgressTracker(cleanup_delay_s=3600)


@pytest.fixture
def orchestrator(fake_repository, fake_media_renderer, local_storage, test_settings, tracker):
    renderer = MultiFormatRenderer(
        repository=fake_repository,
        storage=local_storage,
        renderer=fake_media_renderer,
        settings=test_settings,
    )
    orchestrator = BatchOrchestrator(renderer, fake_repository, tracker, local_storage, test_settings)
    yield orchestrator
    tracker.shutdown()


class TestBatchRun:
    """Synchronous execution of a job."""

    @pytest.mark.asyncio
    async def test_unready_video_is_skipped(self, orchestrator, fake_repository, tracker, make_video):
        """One video with an incomplete scene does not affect the other two."""
        fake_repository.add_video(make_video("v1"))
        fake_repository.add_video(make_video("v2", scene_status="generating"))
        fake_repository.add_video(make_video("v3"))
        await tracker.initialize("job-1", ["v1", "v2", "v3"])

        result = await orchestrator.run_batch("job-1", ["v1", "v2", "v3"])

        assert result.attempted == 2
        assert result.skipped == {"v2": "Not all scenes are ready"}
        assert set(result.results) == {"v1", "v3"}

        job = await tracker.get("job-1")
        assert job.items["v1"].status == ItemStatus.COMPLETED
        assert job.items["v2"].status == ItemStatus.SKIPPED
        assert job.items["v3"].status == ItemStatus.COMPLETED
        assert fake_repository.videos["v2"].rendered == {}

    @pytest.mark.asyncio
    async def test_end_to_end(self, orchestrator, fake_repository, tracker, local_storage, make_video):
        """Two videos x two formats: all completed, job complete with an archive."""
        fake_repository.add_video(make_video("v1"))
        fake_repository.add_video(make_video("v2"))
        await tracker.initialize("job-1", ["v1", "v2"])

        result = await orchestrator.run_batch("job-1", ["v1", "v2"])

        for video_id in ("v1", "v2"):
            rendered = fake_repository.videos[video_id].rendered
            assert set(rendered) == {"1080x1920", "1080x1080"}
            assert all(s.status == RenderStatus.COMPLETED and s.url for s in rendered.values())

        job = await tracker.get("job-1")
        assert job.phase == ExportPhase.COMPLETE
        assert job.progress == 100
        assert job.download_url

        bucket, key = local_storage.resolve_bucket_and_key(job.download_url)
        assert (bucket, key) == ("adreel-exports", "bulk-exports/job-1/bulk-export.zip")
        with zipfile.ZipFile(unquote(urlparse(job.download_url).path)) as archive:
            assert set(archive.namelist()) == {
                "v1/v1-1080-1920.mp4",
                "v1/v1-1080-1080.mp4",
                "v2/v2-1080-1920.mp4",
                "v2/v2-1080-1080.mp4",
                "export-summary.json",
            }
            assert archive.read("v2/v2-1080-1080.mp4") == b"video:1080x1080"
            manifest = json.loads(archive.read("export-summary.json"))
        assert manifest["attempted"] == 2
        assert set(manifest["results"]["v1"]["completed"]) == {"1080x1920", "1080x1080"}
        assert manifest["missing_files"] == []
        assert result.completed_at is not None

    @pytest.mark.asyncio
    async def test_unknown_and_failing_videos(
        self, fake_repository, local_storage, test_settings, tracker, make_video, fake_renderer_factory
    ):
        """Missing videos and failed formats are item errors, not job errors."""
        fake_repository.add_video(make_video("v1"))
        renderer = MultiFormatRenderer(
            fake_repository, local_storage, renderer=fake_renderer_factory(fail_formats={"1080x1080"}), settings=test_settings
        )
        orchestrator = BatchOrchestrator(renderer, fake_repository, tracker, local_storage, test_settings)
        await tracker.initialize("job-1", ["v1", "ghost"])

        result = await orchestrator.run_batch("job-1", ["v1", "ghost"])

        job = await tracker.get("job-1")
        assert job.phase == ExportPhase.COMPLETE
        assert job.items["ghost"].status == ItemStatus.ERROR
        assert job.items["v1"].status == ItemStatus.ERROR
        assert job.items["v1"].error == "1 of 2 formats failed: 1080x1080"
        assert "ghost" in result.errors
        assert result.attempted == 1

    @pytest.mark.asyncio
    async def test_prerequisite_failure_is_item_error(self, orchestrator, fake_repository, tracker, make_video):
        """A video without logo configuration fails on its own."""
        fake_repository.add_video(make_video("v1", logo=False))
        fake_repository.add_video(make_video("v2"))
        await tracker.initialize("job-1", ["v1", "v2"])

        await orchestrator.run_batch("job-1", ["v1", "v2"])

        job = await tracker.get("job-1")
        assert job.items["v1"].status == ItemStatus.ERROR
        assert "logo" in job.items["v1"].error.lower()
        assert job.items["v2"].status == ItemStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_single_format_job(self, orchestrator, fake_repository, fake_media_renderer, tracker, make_video):
        fake_repository.add_video(make_video("v1"))
        await tracker.initialize("job-1", ["v1"])

        result = await orchestrator.run_batch("job-1", ["v1"], format="1200x628")

        assert fake_media_renderer.format_calls == ["1200x628"]
        assert list(result.results["v1"].completed) == ["1200x628"]

    @pytest.mark.asyncio
    async def test_archive_upload_failure_still_completes(
        self, orchestrator, fake_repository, tracker, make_video, test_settings, monkeypatch
    ):
        """The job completes without a download URL if the archive cannot be stored."""
        from src.exceptions import StorageError

        upload_file = orchestrator.storage.upload_file

        async def exports_unavailable(bucket, key, *args, **kwargs):
            if bucket == test_settings.exports_bucket:
                raise StorageError("bucket unavailable")
            return await upload_file(bucket, key, *args, **kwargs)

        monkeypatch.setattr(orchestrator.storage, "upload_file", exports_unavailable)
        fake_repository.add_video(make_video("v1"))
        await tracker.initialize("job-1", ["v1"])

        await orchestrator.run_batch("job-1", ["v1"])

        job = await tracker.get("job-1")
        assert job.phase == ExportPhase.COMPLETE
        assert job.download_url is None
        assert job.items["v1"].status == ItemStatus.COMPLETED


class TestPerVideoIsolation:
    """Failures and scoping decided per video."""

    @pytest.mark.asyncio
    async def test_repository_error_stays_on_its_video(
        self, orchestrator, fake_repository, tracker, make_video, monkeypatch
    ):
        """A connection error loading one video does not stop the others."""
        fake_repository.add_video(make_video("v1"))
        fake_repository.add_video(make_video("v2"))
        get_video_source = fake_repository.get_video_source

        async def flaky_lookup(video_id):
            if video_id == "v1":
                raise ConnectionError("db dropped")
            return await get_video_source(video_id)

        monkeypatch.setattr(fake_repository, "get_video_source", flaky_lookup)
        await tracker.initialize("job-1", ["v1", "v2"])

        result = await orchestrator.run_batch("job-1", ["v1", "v2"])

        job = await tracker.get("job-1")
        assert job.phase == ExportPhase.COMPLETE
        assert job.items["v1"].status == ItemStatus.ERROR
        assert job.items["v1"].error == "Rendering failed unexpectedly"
        assert job.items["v2"].status == ItemStatus.COMPLETED
        assert result.errors == {"v1": "Rendering failed unexpectedly"}
        assert result.attempted == 1

    @pytest.mark.asyncio
    async def test_start_batch_survives_name_lookup_error(
        self, orchestrator, fake_repository, tracker, make_video, monkeypatch
    ):
        """A lookup error while registering the job is recorded on its item."""
        fake_repository.add_video(make_video("v1"))

        async def broken_lookup(video_id):
            raise ConnectionError("db dropped")

        monkeypatch.setattr(fake_repository, "get_video_source", broken_lookup)

        job_id = await orchestrator.start_batch(["v1"])

        job = await wait_for_phase(tracker, job_id, {ExportPhase.COMPLETE})
        assert job.items["v1"].name == "v1"
        assert job.items["v1"].status == ItemStatus.ERROR

    @pytest.mark.asyncio
    async def test_project_scope(self, orchestrator, fake_repository, tracker, make_video):
        """Only completed videos of the requested project render."""
        fake_repository.add_video(make_video("v1", project_id="p1"))
        fake_repository.add_video(make_video("v2", project_id="p2"))
        pending = make_video("v3", project_id="p1")
        pending.status = "generating"
        fake_repository.add_video(pending)
        await tracker.initialize("job-1", ["v1", "v2", "v3"])

        result = await orchestrator.run_batch("job-1", ["v1", "v2", "v3"], project_id="p1")

        assert set(result.results) == {"v1"}
        assert result.skipped == {
            "v2": "Not part of project p1",
            "v3": "Video generation is not completed",
        }
        assert fake_repository.videos["v2"].rendered == {}
        job = await tracker.get("job-1")
        assert job.items["v2"].status == ItemStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_unreachable_output_is_listed_as_missing(
        self, orchestrator, fake_repository, tracker, local_storage, make_video
    ):
        """Outputs that cannot be downloaded are left out of the archive and listed."""
        fake_repository.add_video(make_video("v1", formats=("1080x1080",)))
        await tracker.initialize("job-1", ["v1"])
        result = await orchestrator.run_batch("job-1", ["v1"])

        url = result.results["v1"].completed["1080x1080"]
        bucket, key = local_storage.resolve_bucket_and_key(url)
        local_storage.get_file_path(f"{bucket}/{key}").unlink()

        download_url = await orchestrator._package(result)

        with zipfile.ZipFile(unquote(urlparse(download_url).path)) as archive:
            assert archive.namelist() == ["export-summary.json"]
            manifest = json.loads(archive.read("export-summary.json"))
        assert manifest["missing_files"] == ["v1/v1-1080-1080.mp4"]
        assert manifest["files"] == []


class _SlowRenderer:
    """Records how many videos render at the same time."""

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0

    async def render_all_formats(self, video_id, mode=RenderMode.ALL):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.02)
        self.active -= 1
        return VideoRenderResult(video_id=video_id, completed={"1080x1080": f"url-{video_id}"})


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, fake_repository, local_storage, test_settings, tracker, make_video):
        """No more than ``bulk_render_concurrency`` videos render at once."""
        test_settings.bulk_render_concurrency = 2
        video_ids = [f"v{i}" for i in range(6)]
        for video_id in video_ids:
            fake_repository.add_video(make_video(video_id))
        renderer = _SlowRenderer()
        orchestrator = BatchOrchestrator(renderer, fake_repository, tracker, local_storage, test_settings)
        await tracker.initialize("job-1", video_ids)

        result = await orchestrator.run_batch("job-1", video_ids)

        assert renderer.peak == 2
        assert result.attempted == 6


class TestBackgroundJobs:
    """start_batch hand-off and crash handling."""

    @pytest.mark.asyncio
    async def test_start_batch_returns_immediately(self, orchestrator, fake_repository, tracker, make_video):
        fake_repository.add_video(make_video("v1"))

        job_id = await orchestrator.start_batch(["v1", "v1"], RenderMode.MISSING)

        job = await tracker.get(job_id)
        assert list(job.items) == ["v1"]
        assert job.items["v1"].name == "Video v1"

        job = await wait_for_phase(tracker, job_id, {ExportPhase.COMPLETE})
        assert job.items["v1"].status == ItemStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_crashed_job_reports_error(self, orchestrator, fake_repository, tracker, make_video, monkeypatch):
        """An unexpected crash moves the job to the error phase."""

        async def crash(result):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(orchestrator, "_package", crash)
        fake_repository.add_video(make_video("v1"))

        job_id = await orchestrator.start_batch(["v1"])

        job = await wait_for_phase(tracker, job_id, {ExportPhase.ERROR})
        assert job.error == "Render job failed unexpectedly"

    @pytest.mark.asyncio
    async def test_shutdown_cancels_jobs(self, fake_repository, local_storage, test_settings, tracker, make_video):
        fake_repository.add_video(make_video("v1"))

        class _Hanging:
            async def render_all_formats(self, video_id, mode=RenderMode.ALL):
                await asyncio.sleep(3600)

        orchestrator = BatchOrchestrator(_Hanging(), fake_repository, tracker, local_storage, test_settings)
        job_id = await orchestrator.start_batch(["v1"])
        await asyncio.sleep(0.05)

        await orchestrator.shutdown()

        job = await wait_for_phase(tracker, job_id, {ExportPhase.ERROR})
        assert job.error == "Render job was cancelled"
