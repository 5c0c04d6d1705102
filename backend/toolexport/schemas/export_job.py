from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import Field

from toolexport.schemas.base import BaseSchema


class ExportJobResponse(BaseSchema):
    job_id: str
    tool_id: str
    tool_type: Optional[str] = None
    user_id: Optional[str] = None
    status: str

    steps_completed: int
    steps_total: int
    current_step: Optional[str] = None
    progress_percentage: int

    package_size_bytes: Optional[int] = None
    package_checksum: Optional[str] = None
    package_algorithm: Optional[str] = None
    package_expires_at: Optional[datetime] = None
    checksum_verified_at: Optional[datetime] = None
    download_count: int = 0
    last_downloaded_at: Optional[datetime] = None

    error_message: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ExportJobListResponse(BaseSchema):
    jobs: list[ExportJobResponse]
    total: int
    limit: int
    offset: int
    page: int
    total_pages: int

    @classmethod
    def create(cls, jobs: list[ExportJobResponse], total: int, limit: int, offset: int) -> "ExportJobListResponse":
        return cls(
            jobs=jobs,
            total=total,
            limit=limit,
            offset=offset,
            page=offset // limit + 1,
            total_pages=(total + limit - 1) // limit if total > 0 else 0,
        )


class CancelExportResponse(BaseSchema):
    job_id: str
    status: str
    message: str = "Cancellation requested; the export stops at its next checkpoint"


class PackageChecksumResponse(BaseSchema):
    job_id: str
    package_checksum: str
    algorithm: str
    package_size_bytes: Optional[int] = None
    package_size_mb: str = Field(alias="packageSizeMB")
    created_at: datetime
    verified_at: Optional[datetime] = None


class ValidationIssueSchema(BaseSchema):
    message: str
    field: Optional[str] = None
    severity: str


class ValidationReportResponse(BaseSchema):
    tool_id: str
    success: bool
    errors: list[ValidationIssueSchema]
    warnings: list[ValidationIssueSchema]
    info: list[ValidationIssueSchema]
    timestamp: datetime
    estimated_duration_ms: int
