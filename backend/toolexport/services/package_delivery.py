"""Package delivery.

Streams completed export packages to their owners (or admins), with
single byte-range support for resumable downloads. The stored checksum is
re-verified before any byte is released, and download counters move only
after a stream has been consumed to the end.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

from toolexport.core.errors import BadRequestError, ForbiddenError, GoneError, NotFoundError
from toolexport.middleware.prometheus import record_download
from toolexport.models.base import utc_now
from toolexport.models.export_job import ExportJob, ExportJobStatus
from toolexport.services.audit_service import AuditService
from toolexport.services.export_orchestrator import ExportOrchestrator


logger = logging.getLogger(__name__)

PACKAGE_MEDIA_TYPE = "application/gzip"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-Download-Options": "noopen",
    "X-XSS-Protection": "1; mode=block",
    "Content-Security-Policy": "default-src 'none'",
    "Referrer-Policy": "no-referrer",
}

_RANGE_RE = re.compile(r"^\s*(\d*)\s*-\s*(\d*)\s*$")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def _invalid_range(header: str, size: int) -> BadRequestError:
    return BadRequestError(
        "Requested range is not satisfiable for this package",
        code="INVALID_RANGE",
        details={"range": header, "packageSizeBytes": size},
    )


def parse_range_header(header: Optional[str], size: int) -> Optional[ByteRange]:
    """
    Parse a single ``Range: bytes=start-end`` header against a file size.

    Supports ``start-end``, open-ended ``start-`` and suffix ``-count``.
    Multi-range requests are rejected.

    Raises:
        BadRequestError: INVALID_RANGE unless 0 <= start <= end < size
    """
    if header is None or not header.strip():
        return None

    unit, sep, spec = header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes" or "," in spec:
        raise _invalid_range(header, size)

    match = _RANGE_RE.match(spec)
    if match is None:
        raise _invalid_range(header, size)
    first, last = match.groups()

    if first == "" and last == "":
        raise _invalid_range(header, size)

    if first == "":
        suffix = int(last)
        if suffix <= 0 or size <= 0:
            raise _invalid_range(header, size)
        start, end = max(size - suffix, 0), size - 1
    else:
        start = int(first)
        end = int(last) if last != "" else size - 1

    if not (0 <= start <= end < size):
        raise _invalid_range(header, size)
    return ByteRange(start=start, end=end)


def build_download_filename(job: ExportJob) -> str:
    completed = job.completed_at or job.created_at or utc_now()
    slug = _UNSAFE_FILENAME_CHARS.sub("-", job.tool_id).strip("-") or "tool"
    return f"export-{slug}-{completed.strftime('%Y-%m-%d')}.tar.gz"


@dataclass(frozen=True)
class PreparedPackage:
    job: ExportJob
    path: Path
    size: int
    filename: str


@dataclass
class PackageDownload:
    status_code: int
    headers: dict[str, str]
    body: AsyncIterator[bytes]
    media_type: str = PACKAGE_MEDIA_TYPE


class PackageDelivery:
    def __init__(
        self,
        orchestrator: ExportOrchestrator,
        audit: AuditService,
        *,
        chunk_size: int = 64 * 1024,
    ):
        self._orchestrator = orchestrator
        self._audit = audit
        self._chunk_size = int(chunk_size)

    async def download_package(
        self,
        job_id: str,
        requester_id: Optional[str],
        *,
        is_admin: bool = False,
        range_header: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> PackageDownload:
        """
        Resolve, authorize and verify a package, then describe the response.

        All checks run before the first byte is produced; the returned body
        is a lazy stream.

        Raises:
            NotFoundError: PACKAGE_NOT_READY, JOB_NOT_FOUND or FILE_NOT_FOUND
            GoneError: PACKAGE_EXPIRED
            ForbiddenError: DOWNLOAD_UNAUTHORIZED or PACKAGE_TAMPERED
            BadRequestError: INVALID_RANGE
        """
        package = await self.prepare(job_id, requester_id, is_admin=is_admin, request_id=request_id)
        byte_range = parse_range_header(range_header, package.size)
        return self.build_download(package, byte_range, requester_id=requester_id, request_id=request_id)

    async def prepare(
        self,
        job_id: str,
        requester_id: Optional[str],
        *,
        is_admin: bool = False,
        request_id: Optional[str] = None,
    ) -> PreparedPackage:
        job = await self._orchestrator.get_export_status(job_id)

        if job.status != ExportJobStatus.COMPLETED.value:
            raise NotFoundError(
                "Export package is not ready",
                code="PACKAGE_NOT_READY",
                details={"jobId": job_id, "status": job.status},
            )

        expires_at = job.package_expires_at
        if not job.package_path or (expires_at is not None and expires_at <= utc_now()):
            raise GoneError(
                "Export package has expired",
                code="PACKAGE_EXPIRED",
                details={"jobId": job_id, "expiresAt": expires_at.isoformat() if expires_at else None},
            )

        if not is_admin and (job.user_id is None or job.user_id != requester_id):
            raise ForbiddenError(
                "You are not allowed to download this export package",
                code="DOWNLOAD_UNAUTHORIZED",
            )

        path = Path(job.package_path)
        try:
            st = await asyncio.to_thread(path.stat)
        except OSError:
            st = None
        if st is None or not stat.S_ISREG(st.st_mode):
            logger.error(
                "Export job %s is completed but its package file is missing",
                job_id,
                extra={"job_id": job_id, "package_path": str(path)},
            )
            raise NotFoundError("Export package file not found", code="FILE_NOT_FOUND")

        if job.package_checksum:
            try:
                result = await self._orchestrator.verify_package_integrity(
                    job_id, path, job.package_checksum, requester_id
                )
            except FileNotFoundError:
                logger.error("Package for export job %s vanished during verification", job_id)
                raise NotFoundError("Export package file not found", code="FILE_NOT_FOUND") from None
            if not result.valid:
                raise ForbiddenError(
                    "Package integrity verification failed; download refused",
                    code="PACKAGE_TAMPERED",
                )
        else:
            logger.warning("Serving export job %s without a stored checksum", job_id)
            await self._audit.log_event(
                "export.legacy_package_download",
                actor_id=requester_id,
                resource_id=job_id,
                request_id=request_id,
                severity="warning",
                details={"reason": "no checksum on record"},
            )

        return PreparedPackage(job=job, path=path, size=st.st_size, filename=build_download_filename(job))

    def build_download(
        self,
        package: PreparedPackage,
        byte_range: Optional[ByteRange],
        *,
        requester_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> PackageDownload:
        headers = {
            **SECURITY_HEADERS,
            "Content-Disposition": f'attachment; filename="{package.filename}"',
            "Cache-Control": "private, max-age=3600",
            "Accept-Ranges": "bytes",
            "X-Package-Size": str(package.size),
        }
        if package.job.package_checksum:
            headers["X-Package-Checksum"] = package.job.package_checksum

        if byte_range is not None:
            headers["Content-Range"] = byte_range.content_range(package.size)
            headers["Content-Length"] = str(byte_range.length)
            status_code = 206
        else:
            headers["Content-Length"] = str(package.size)
            status_code = 200

        body = self.stream(package, byte_range, requester_id=requester_id, request_id=request_id)
        return PackageDownload(status_code=status_code, headers=headers, body=body)

    async def stream(
        self,
        package: PreparedPackage,
        byte_range: Optional[ByteRange] = None,
        *,
        requester_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        """
        Yield the package bytes (or the requested slice).

        Download tracking runs only once every byte has been handed to the
        consumer. I/O errors are logged and re-raised so the server aborts
        the connection; a consumer that stops early never reaches tracking.
        """
        start = byte_range.start if byte_range else 0
        length = byte_range.length if byte_range else package.size
        job_id = package.job.job_id

        try:
            async with contextlib.aclosing(self._read_chunks(package.path, start, length)) as chunks:
                async for chunk in chunks:
                    yield chunk
        except OSError:
            logger.exception(
                "Stream error while delivering export job %s",
                job_id,
                extra={"job_id": job_id, "user_id": requester_id, "offset": start},
            )
            raise

        await self._track_download(package, partial=byte_range is not None, requester_id=requester_id, request_id=request_id)

    async def _read_chunks(self, path: Path, start: int, length: int) -> AsyncIterator[bytes]:
        fh = await asyncio.to_thread(path.open, "rb")
        try:
            if start:
                await asyncio.to_thread(fh.seek, start)
            remaining = length
            while remaining > 0:
                chunk = await asyncio.to_thread(fh.read, min(self._chunk_size, remaining))
                if not chunk:
                    raise OSError("Package file ended before the expected length")
                remaining -= len(chunk)
                yield chunk
        finally:
            fh.close()

    async def _track_download(
        self,
        package: PreparedPackage,
        *,
        partial: bool,
        requester_id: Optional[str],
        request_id: Optional[str],
    ) -> None:
        job = package.job
        record_download("partial" if partial else "full")
        try:
            await self._orchestrator.update_download_tracking(job.job_id, job.download_count or 0)
        except Exception:
            # Bytes are already delivered; the counter is best effort from here.
            logger.exception("Failed to update download tracking for export job %s", job.job_id)
            return

        await self._audit.log_event(
            "export.package_downloaded",
            actor_id=requester_id,
            resource_id=job.job_id,
            request_id=request_id,
            details={"partial": partial, "packageSizeBytes": package.size},
        )
