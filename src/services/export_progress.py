"""In-memory progress store for bulk render jobs.

One tracker is created per process and shared by the batch orchestrator and
the status endpoint. Entries are best-effort UX feedback: they are lost on
restart and removed some time after a job reaches a terminal phase, so a
poller cannot tell "finished and cleaned up" from "never existed".
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from src.config import get_settings

logger = logging.getLogger(__name__)


class ExportPhase(str, Enum):
    PREPARING = "preparing"
    PROCESSING = "processing"
    PACKAGING = "packaging"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ExportPhase.COMPLETE, ExportPhase.ERROR)


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class ExportItem:
    id: str
    name: str
    status: ItemStatus = ItemStatus.PENDING
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class ExportJobProgress:
    """Progress of one export job."""

    job_id: str
    phase: ExportPhase = ExportPhase.PREPARING
    progress: int = 0
    items: dict[str, ExportItem] = field(default_factory=dict)
    download_url: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "phase": self.phase.value,
            "progress": self.progress,
            "items": [item.to_dict() for item in self.items.values()],
            "download_url": self.download_url,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class ExportProgressTracker:
    """Concurrency-safe keyed store of ExportJobProgress.

    Mutations of one job are serialized by a per-job asyncio.Lock so that
    items of the same batch finishing concurrently never lose updates.
    """

    def __init__(self, cleanup_delay_s: Optional[float] = None) -> None:
        self._jobs: dict[str, ExportJobProgress] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}
        self.cleanup_delay_s = (
            cleanup_delay_s if cleanup_delay_s is not None else get_settings().export_progress_ttl_s
        )

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        return self._locks.setdefault(job_id, asyncio.Lock())

    async def initialize(
        self,
        job_id: str,
        item_ids: list[str],
        item_metadata: Optional[dict[str, str]] = None,
    ) -> ExportJobProgress:
        """Create a job at phase ``preparing`` with every item pending.

        Args:
            job_id: Identifier returned to the client
            item_ids: Items (videos) in display order
            item_metadata: Optional display name per item id

        Returns:
            Snapshot of the new entry
        """
        names = item_metadata or {}
        async with self._lock_for(job_id):
            self._cancel_cleanup(job_id)
            job = ExportJobProgress(
                job_id=job_id,
                items={
                    item_id: ExportItem(id=item_id, name=names.get(item_id, item_id))
                    for item_id in item_ids
                },
            )
            self._jobs[job_id] = job
            logger.info(f"[PROGRESS] Initialized job {job_id} with {len(item_ids)} items")
            return copy.deepcopy(job)

    async def update_progress(
        self,
        job_id: str,
        *,
        phase: Optional[ExportPhase] = None,
        progress: Optional[int] = None,
        download_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Merge the given fields into a job.

        Returns False (and changes nothing) if the job is unknown.
        """
        async with self._lock_for(job_id):
            job = self._jobs.get(job_id)
            if job is None:
                logger.debug(f"[PROGRESS] update_progress for unknown job {job_id}")
                return False
            if phase is not None:
                job.phase = ExportPhase(phase)
            if progress is not None:
                job.progress = max(0, min(100, int(progress)))
            if download_url is not None:
                job.download_url = download_url
            if error is not None:
                job.error = error
            job.updated_at = datetime.now(timezone.utc)
            return True

    async def update_item_status(
        self,
        job_id: str,
        item_id: str,
        status: ItemStatus,
        error: Optional[str] = None,
    ) -> bool:
        """Update one item in place. Unknown items are added."""
        async with self._lock_for(job_id):
            job = self._jobs.get(job_id)
            if job is None:
                logger.debug(f"[PROGRESS] update_item_status for unknown job {job_id}")
                return False
            item = job.items.get(item_id)
            if item is None:
                item = job.items[item_id] = ExportItem(id=item_id, name=item_id)
            item.status = ItemStatus(status)
            item.error = error
            job.updated_at = datetime.now(timezone.utc)
            return True

    async def get(self, job_id: str) -> Optional[ExportJobProgress]:
        """Snapshot of a job, or None if unknown or cleaned up."""
        async with self._lock_for(job_id):
            job = self._jobs.get(job_id)
            if job is None:
                self._locks.pop(job_id, None)
                return None
            return copy.deepcopy(job)

    def schedule_cleanup(self, job_id: str, delay_s: Optional[float] = None) -> None:
        """Remove the job once ``delay_s`` seconds have elapsed from now."""
        delay = self.cleanup_delay_s if delay_s is None else delay_s
        self._cancel_cleanup(job_id)
        loop = asyncio.get_running_loop()
        self._cleanup_handles[job_id] = loop.call_later(delay, self.remove, job_id)
        logger.debug(f"[PROGRESS] Job {job_id} will be removed in {delay:.0f}s")

    def remove(self, job_id: str) -> None:
        self._cancel_cleanup(job_id)
        if self._jobs.pop(job_id, None) is not None:
            logger.info(f"[PROGRESS] Removed job {job_id}")
        lock = self._locks.get(job_id)
        if lock is not None and not lock.locked():
            del self._locks[job_id]

    def _cancel_cleanup(self, job_id: str) -> None:
        handle = self._cleanup_handles.pop(job_id, None)
        if handle is not None:
            handle.cancel()

    def shutdown(self) -> None:
        """Cancel pending cleanups (application shutdown)."""
        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()

    def __len__(self) -> int:
        return len(self._jobs)
