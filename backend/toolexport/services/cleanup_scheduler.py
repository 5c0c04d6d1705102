"""Cleanup scheduler.

Reclaims disk space held by expired export packages and purges old
terminal job rows. A run is a no-op while another run is in progress in
the same process.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from toolexport.core.errors import ExportServiceError
from toolexport.middleware.prometheus import record_cleanup
from toolexport.models.export_job import ExportJob
from toolexport.services.audit_service import AuditService
from toolexport.services.export_job_store import ExportJobStore, JobUpdate


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupResult:
    deleted_count: int = 0
    freed_space_bytes: int = 0
    purged_jobs: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "deletedCount": self.deleted_count,
            "freedSpaceBytes": self.freed_space_bytes,
            "purgedJobs": self.purged_jobs,
        }


def _unlink_package(path: Path) -> int:
    """Delete a package file and return the bytes freed (0 when already gone)."""
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return 0
    try:
        path.unlink()
    except FileNotFoundError:
        return 0
    return size


class CleanupScheduler:
    def __init__(
        self,
        store: ExportJobStore,
        audit: AuditService,
        *,
        job_retention_days: int,
        package_retention_days: int,
        batch_size: int = 200,
    ):
        self._store = store
        self._audit = audit
        # Rows must outlive their packages or files would lose their owner row.
        self._job_retention_days = max(int(job_retention_days), int(package_retention_days))
        self._batch_size = max(1, int(batch_size))
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run(self) -> CleanupResult:
        """
        Delete expired packages, then purge terminal jobs past retention.

        Returns a zero result without touching anything when a run is
        already in progress.
        """
        if self._lock.locked():
            logger.info("Export cleanup already running; skipping")
            record_cleanup("skipped")
            return CleanupResult()

        async with self._lock:
            deleted, freed = await self._delete_expired_packages()
            purged = await self._store.delete_older_than(self._job_retention_days)

        result = CleanupResult(deleted_count=deleted, freed_space_bytes=freed, purged_jobs=purged)
        record_cleanup("completed", freed)
        logger.info(
            "Export cleanup finished: %s packages removed, %s bytes freed, %s jobs purged",
            deleted,
            freed,
            purged,
        )
        return result

    async def _delete_expired_packages(self) -> tuple[int, int]:
        deleted = 0
        freed = 0
        failed: set[str] = set()

        while True:
            batch = [
                job
                for job in await self._store.find_expired_packages(limit=self._batch_size + len(failed))
                if job.job_id not in failed
            ]
            if not batch:
                break

            for job in batch:
                freed_bytes = await self._remove_package(job)
                if freed_bytes is None:
                    failed.add(job.job_id)
                    continue
                deleted += 1
                freed += freed_bytes

            if len(batch) < self._batch_size:
                break

        return deleted, freed

    async def _remove_package(self, job: ExportJob) -> Optional[int]:
        path = Path(job.package_path)
        try:
            freed = await asyncio.to_thread(_unlink_package, path)
        except OSError as exc:
            # Path stays on the row so the next run retries.
            logger.warning(
                "Could not delete expired package for export job %s: %s",
                job.job_id,
                exc.strerror or type(exc).__name__,
                extra={"job_id": job.job_id, "package_path": str(path)},
            )
            return None

        try:
            await self._store.update(job.job_id, JobUpdate(package_path=None))
        except ExportServiceError as exc:
            logger.warning("Expired package for export job %s removed but row not updated: %s", job.job_id, exc)
            return None

        logger.debug("Removed expired package for export job %s (%s bytes)", job.job_id, freed)
        await self._audit.log_event(
            "export.package_expired_deleted",
            actor_type="system",
            resource_id=job.job_id,
            details={"freedSpaceBytes": freed, "expiredAt": job.package_expires_at.isoformat() if job.package_expires_at else None},
        )
        return freed

    async def start(self, interval_seconds: float) -> None:
        """Run once now, then every ``interval_seconds`` until stopped."""
        if self._timer is not None and not self._timer.done():
            return
        self._timer = asyncio.create_task(self._loop(float(interval_seconds)), name="export-cleanup-timer")

    async def stop(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None:
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass

    async def _loop(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.run()
            except Exception:
                logger.exception("Scheduled export cleanup failed")
                record_cleanup("failed")
            await asyncio.sleep(interval_seconds)
