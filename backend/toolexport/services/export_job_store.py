"""Export job record store.

The only writer of ``export_jobs`` rows. Each operation runs in its own
session/transaction; every mutation is a conditional UPDATE guarded by the
row's previous ``updated_at`` so concurrent writers never lose each other's
changes and ``updated_at`` strictly increases.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import asc, delete, desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from toolexport.core.errors import (
    BadRequestError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
)
from toolexport.models.base import generate_uuid, utc_now
from toolexport.models.export_job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ExportJob,
    ExportJobStatus,
)
from toolexport.services.export_state_machine import TransitionManager


logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


@dataclass(frozen=True)
class JobUpdate:
    """Typed partial update. Fields left as UNSET are not written; None clears."""

    status: Any = UNSET
    steps_completed: Any = UNSET
    steps_total: Any = UNSET
    current_step: Any = UNSET
    package_path: Any = UNSET
    package_size_bytes: Any = UNSET
    package_checksum: Any = UNSET
    package_algorithm: Any = UNSET
    package_expires_at: Any = UNSET
    checksum_verified_at: Any = UNSET
    error_message: Any = UNSET
    started_at: Any = UNSET
    completed_at: Any = UNSET

    def column_values(self) -> dict[Any, Any]:
        return {
            _FIELD_COLUMNS[f.name]: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }


# Explicit field -> column table for partial updates.
_FIELD_COLUMNS = {
    "status": ExportJob.status,
    "steps_completed": ExportJob.steps_completed,
    "steps_total": ExportJob.steps_total,
    "current_step": ExportJob.current_step,
    "package_path": ExportJob.package_path,
    "package_size_bytes": ExportJob.package_size_bytes,
    "package_checksum": ExportJob.package_checksum,
    "package_algorithm": ExportJob.package_algorithm,
    "package_expires_at": ExportJob.package_expires_at,
    "checksum_verified_at": ExportJob.checksum_verified_at,
    "error_message": ExportJob.error_message,
    "started_at": ExportJob.started_at,
    "completed_at": ExportJob.completed_at,
}


SORTABLE_COLUMNS = {
    "created_at": ExportJob.created_at,
    "completed_at": ExportJob.completed_at,
    "download_count": ExportJob.download_count,
    "package_size_bytes": ExportJob.package_size_bytes,
}

MAX_PAGE_SIZE = 100


def _split_csv(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class JobListQuery:
    limit: int = 20
    offset: int = 0
    sort_by: str = "created_at"
    sort_order: str = "desc"
    statuses: list[str] = field(default_factory=list)
    tool_types: list[str] = field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @classmethod
    def from_params(
        cls,
        *,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        status_filter: Optional[str] = None,
        tool_type_filter: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> "JobListQuery":
        return cls(
            limit=limit,
            offset=offset,
            sort_by=(sort_by or "created_at").strip(),
            sort_order=(sort_order or "desc").strip().lower(),
            statuses=_split_csv(status_filter),
            tool_types=_split_csv(tool_type_filter),
            start_date=start_date,
            end_date=end_date,
        )

    def validate(self) -> None:
        if not isinstance(self.limit, int) or not 1 <= self.limit <= MAX_PAGE_SIZE:
            raise BadRequestError(
                f"limit must be between 1 and {MAX_PAGE_SIZE}",
                code="INVALID_LIMIT",
                details={"limit": self.limit},
            )
        if not isinstance(self.offset, int) or self.offset < 0:
            raise BadRequestError(
                "offset must be greater than or equal to 0",
                code="INVALID_OFFSET",
                details={"offset": self.offset},
            )
        if self.sort_by not in SORTABLE_COLUMNS:
            raise BadRequestError(
                f"sort_by must be one of: {', '.join(sorted(SORTABLE_COLUMNS))}",
                details={"sort_by": self.sort_by},
            )
        if self.sort_order not in ("asc", "desc"):
            raise BadRequestError("sort_order must be asc or desc", details={"sort_order": self.sort_order})
        known = {s.value for s in ExportJobStatus}
        unknown = [s for s in self.statuses if s not in known]
        if unknown:
            raise BadRequestError(
                f"Unknown status filter: {', '.join(unknown)}",
                details={"status_filter": unknown},
            )
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise BadRequestError("start_date must not be after end_date")


def _next_updated_at(previous: Optional[datetime]) -> datetime:
    now = utc_now()
    if previous is None:
        return now
    return max(now, previous + timedelta(microseconds=1))


class ExportJobStore:
    """Persistent export job records."""

    # Optimistic write attempts before giving up on a hot row.
    MAX_WRITE_ATTEMPTS = 8

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_by_id(self, job_id: str) -> ExportJob | None:
        async with self._session_factory() as session:
            return await session.get(ExportJob, job_id)

    async def find_by_status(self, statuses: Iterable[str]) -> list[ExportJob]:
        stmt = (
            select(ExportJob)
            .where(ExportJob.status.in_(list(statuses)))
            .order_by(ExportJob.created_at.asc())
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def find_expired_packages(
        self,
        *,
        now: Optional[datetime] = None,
        limit: int = 200,
    ) -> list[ExportJob]:
        now = now or utc_now()
        stmt = (
            select(ExportJob)
            .where(
                ExportJob.package_expires_at.is_not(None),
                ExportJob.package_expires_at < now,
                ExportJob.package_path.is_not(None),
            )
            .order_by(ExportJob.package_expires_at.asc())
            .limit(int(limit))
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def list_jobs(
        self,
        query: JobListQuery,
        *,
        user_id: Optional[str] = None,
    ) -> tuple[list[ExportJob], int]:
        """
        Page through jobs.

        Args:
            query: Pagination, sort and filter parameters
            user_id: Restrict to one owner; None lists every job

        Returns:
            (jobs for the requested page, total matching rows)

        Raises:
            BadRequestError: On out-of-range pagination or unknown filters
        """
        query.validate()

        conditions = []
        if user_id is not None:
            conditions.append(ExportJob.user_id == user_id)
        if query.statuses:
            conditions.append(ExportJob.status.in_(query.statuses))
        if query.tool_types:
            conditions.append(ExportJob.tool_type.in_(query.tool_types))
        if query.start_date is not None:
            conditions.append(ExportJob.created_at >= query.start_date)
        if query.end_date is not None:
            conditions.append(ExportJob.created_at <= query.end_date)

        sort_column = SORTABLE_COLUMNS[query.sort_by]
        order = desc(sort_column) if query.sort_order == "desc" else asc(sort_column)

        count_stmt = select(func.count()).select_from(ExportJob).where(*conditions)
        page_stmt = (
            select(ExportJob)
            .where(*conditions)
            .order_by(order, ExportJob.job_id.asc())
            .offset(query.offset)
            .limit(query.limit)
        )

        async with self._session_factory() as session:
            total = int((await session.execute(count_stmt)).scalar() or 0)
            rows = list((await session.execute(page_stmt)).scalars().all())
        return rows, total

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        tool_id: str,
        user_id: Optional[str],
        tool_type: Optional[str] = None,
        current_step: str = "Initializing export...",
    ) -> ExportJob:
        """
        Insert a pending job for a tool.

        The active-job check and the insert share one transaction; the partial
        unique index on tool_id catches writers that pass the check together.

        Raises:
            ConflictError: A pending/in_progress job already exists for the tool
        """
        now = utc_now()
        job = ExportJob(
            job_id=generate_uuid(),
            tool_id=tool_id,
            tool_type=tool_type,
            user_id=user_id,
            status=ExportJobStatus.PENDING.value,
            steps_completed=0,
            steps_total=0,
            current_step=current_step,
            download_count=0,
            created_at=now,
            updated_at=now,
        )

        active_stmt = (
            select(ExportJob.job_id)
            .where(ExportJob.tool_id == tool_id, ExportJob.status.in_(sorted(ACTIVE_STATUSES)))
            .limit(1)
        )

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    existing = (await session.execute(active_stmt)).scalar_one_or_none()
                    if existing is not None:
                        raise ConflictError(
                            f"An export is already running for tool {tool_id}",
                            code="EXPORT_IN_PROGRESS",
                            details={"toolId": tool_id, "jobId": existing},
                        )
                    session.add(job)
        except IntegrityError as exc:
            raise ConflictError(
                f"An export is already running for tool {tool_id}",
                code="EXPORT_IN_PROGRESS",
                details={"toolId": tool_id},
            ) from exc

        return job

    async def update(
        self,
        job_id: str,
        changes: JobUpdate,
        *,
        expected_statuses: Optional[Iterable[str]] = None,
    ) -> ExportJob:
        """
        Apply a partial update and bump ``updated_at``.

        Args:
            job_id: Job to update
            changes: Fields to write
            expected_statuses: Compare-and-set guard on the current status

        Raises:
            NotFoundError: No such job
            InvalidTransitionError: Status guard failed or the state machine
                does not allow the requested status change
        """
        values = changes.column_values()
        expected = None if expected_statuses is None else frozenset(expected_statuses)
        new_status = None if changes.status is UNSET else changes.status

        def build(current: ExportJob) -> dict[Any, Any]:
            if expected is not None and current.status not in expected:
                raise InvalidTransitionError(job_id, current.status, new_status)
            if new_status is not None and new_status != current.status:
                TransitionManager.validate_transition(job_id, current.status, new_status)

            completed = values.get(ExportJob.steps_completed, current.steps_completed) or 0
            total = values.get(ExportJob.steps_total, current.steps_total) or 0
            if completed < 0 or total < 0:
                raise ValueError("step counters must be non-negative")
            if total > 0 and completed > total:
                raise ValueError(f"steps_completed ({completed}) exceeds steps_total ({total})")
            return dict(values)

        return await self._apply(job_id, build)

    async def increment_download_count(self, job_id: str, previous_count: int) -> ExportJob:
        """
        Record a completed download.

        Writes ``previous_count + 1`` unless the stored count is already
        higher; concurrent downloads that read the same count collapse into
        one increment, and the counter never goes backwards.
        """

        def build(current: ExportJob) -> dict[Any, Any]:
            target = max(int(current.download_count or 0), int(previous_count) + 1)
            return {
                ExportJob.download_count: target,
                ExportJob.last_downloaded_at: utc_now(),
            }

        return await self._apply(job_id, build)

    async def delete_older_than(
        self,
        retention_days: int,
        statuses: Iterable[str] = TERMINAL_STATUSES,
    ) -> int:
        """
        Delete terminal jobs older than ``retention_days``.

        Age is measured from completion (or creation for jobs that never
        completed). pending/in_progress/cancelling rows are never touched.

        Returns:
            Number of deleted rows
        """
        if retention_days < 0:
            raise BadRequestError("retention_days must be non-negative", details={"retention_days": retention_days})

        requested = frozenset(statuses)
        not_deletable = requested - TERMINAL_STATUSES
        if not_deletable:
            raise BadRequestError(
                f"Refusing to delete jobs in non-terminal status: {', '.join(sorted(not_deletable))}",
            )
        if not requested:
            return 0

        cutoff = utc_now() - timedelta(days=retention_days)
        stmt = delete(ExportJob).where(
            ExportJob.status.in_(sorted(requested)),
            func.coalesce(ExportJob.completed_at, ExportJob.created_at) < cutoff,
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        deleted = int(result.rowcount or 0)
        if deleted:
            logger.info("Deleted %s export jobs older than %s days", deleted, retention_days)
        return deleted

    async def _apply(
        self,
        job_id: str,
        build_values: Callable[[ExportJob], dict[Any, Any]],
    ) -> ExportJob:
        for attempt in range(1, self.MAX_WRITE_ATTEMPTS + 1):
            async with self._session_factory() as session:
                async with session.begin():
                    current = await session.get(ExportJob, job_id)
                    if current is None:
                        raise NotFoundError(f"Export job {job_id} not found", code="JOB_NOT_FOUND")

                    values = build_values(current)
                    previous = current.updated_at
                    values[ExportJob.updated_at] = _next_updated_at(previous)

                    stmt = (
                        update(ExportJob)
                        .where(ExportJob.job_id == job_id, ExportJob.updated_at == previous)
                        .values(values)
                        .execution_options(synchronize_session=False)
                    )
                    result = await session.execute(stmt)
                    if result.rowcount == 1:
                        for column, value in values.items():
                            set_committed_value(current, column.key, value)
                        return current

            logger.debug("Concurrent write on export job %s (attempt %s)", job_id, attempt)

        raise ConflictError(
            f"Export job {job_id} is being modified concurrently",
            code="CONCURRENT_MODIFICATION",
        )
