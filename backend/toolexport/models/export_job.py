"""Export job model.

One row per export attempt for a tool. Package bytes live on disk at
``package_path``; the row tracks lifecycle status, step progress, package
metadata and download counters.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import BigInteger, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from toolexport.models.base import Base, TimestampMixin, UTCDateTime, generate_uuid


class ExportJobStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CANCELLING = "cancelling"
    ROLLED_BACK = "rolled_back"


ACTIVE_STATUSES = frozenset({ExportJobStatus.PENDING.value, ExportJobStatus.IN_PROGRESS.value})

TERMINAL_STATUSES = frozenset(
    {
        ExportJobStatus.COMPLETED.value,
        ExportJobStatus.FAILED.value,
        ExportJobStatus.CANCELLED.value,
        ExportJobStatus.ROLLED_BACK.value,
    }
)

_ACTIVE_PREDICATE = "status IN ('pending', 'in_progress')"


class ExportJob(Base, TimestampMixin):
    __tablename__ = "export_jobs"

    job_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    tool_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    tool_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ExportJobStatus.PENDING.value,
        doc="pending|in_progress|completed|failed|cancelled|cancelling|rolled_back",
    )

    # Progress
    steps_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    steps_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_step: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Package
    package_path: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    package_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    package_checksum: Mapped[str | None] = mapped_column(String(128), nullable=True)
    package_algorithm: Mapped[str | None] = mapped_column(String(32), nullable=True)
    package_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)
    checksum_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_downloaded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Error handling
    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    # Timing
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_export_jobs_status_created", "status", "created_at"),
        Index("ix_export_jobs_user_created", "user_id", "created_at"),
        # At most one pending/in_progress job per tool, enforced by storage.
        Index(
            "uq_export_jobs_active_tool",
            "tool_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PREDICATE),
            sqlite_where=text(_ACTIVE_PREDICATE),
        ),
    )

    @property
    def progress_percentage(self) -> int:
        if not self.steps_total or self.steps_total <= 0:
            return 0
        # Half-up rounding of 100 * completed / total, in integer arithmetic.
        return (200 * (self.steps_completed or 0) + self.steps_total) // (2 * self.steps_total)
