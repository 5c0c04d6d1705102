"""Export job endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse

from toolexport.api.deps import ExportServices, get_export_services
from toolexport.core.config import settings
from toolexport.core.errors import BadRequestError
from toolexport.middleware.auth import AuthContext, get_auth_context
from toolexport.middleware.rate_limiter import rate_limiter
from toolexport.middleware.request_id import get_request_id
from toolexport.models.export_job import ExportJob, ExportJobStatus
from toolexport.schemas.export_job import (
    CancelExportResponse,
    ExportJobListResponse,
    ExportJobResponse,
    PackageChecksumResponse,
    ValidationReportResponse,
)
from toolexport.services.export_job_store import JobListQuery


logger = logging.getLogger(__name__)

router = APIRouter()

_NO_STORE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _job_to_response(job: ExportJob) -> ExportJobResponse:
    return ExportJobResponse.model_validate(job)


def _parse_int(raw: Optional[str], default: int, *, name: str, code: str) -> int:
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise BadRequestError(f"{name} must be an integer", code=code, details={name: raw}) from None


@router.post(
    "/tools/{tool_id}/export/validate",
    response_model=ValidationReportResponse,
    responses={422: {"model": ValidationReportResponse}},
)
async def validate_tool_export(
    tool_id: str,
    auth: AuthContext = Depends(get_auth_context),
    services: ExportServices = Depends(get_export_services),
):
    report = await services.validator.validate(tool_id, use_cache=True)
    body = ValidationReportResponse.model_validate(report.to_dict())
    if not report.success:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json", by_alias=True),
        )
    return body


@router.post(
    "/tools/{tool_id}/export",
    response_model=ExportJobResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_export(
    request: Request,
    tool_id: str,
    auth: AuthContext = Depends(get_auth_context),
    services: ExportServices = Depends(get_export_services),
):
    job = await services.orchestrator.start_export(
        tool_id,
        auth.user_id,
        is_admin=auth.is_admin,
        request_id=get_request_id(request),
    )
    return _job_to_response(job)


@router.get("/export-jobs", response_model=ExportJobListResponse)
async def list_export_jobs(
    limit: Optional[str] = Query(None, description="Page size (1-100, default 20)"),
    offset: Optional[str] = Query(None, description="Rows to skip (>= 0)"),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc"),
    status_filter: Optional[str] = Query(None, description="Comma-separated statuses"),
    tool_type_filter: Optional[str] = Query(None, description="Comma-separated tool types"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    auth: AuthContext = Depends(get_auth_context),
    services: ExportServices = Depends(get_export_services),
):
    query = JobListQuery.from_params(
        limit=_parse_int(limit, 20, name="limit", code="INVALID_LIMIT"),
        offset=_parse_int(offset, 0, name="offset", code="INVALID_OFFSET"),
        sort_by=sort_by,
        sort_order=sort_order,
        status_filter=status_filter,
        tool_type_filter=tool_type_filter,
        start_date=start_date,
        end_date=end_date,
    )
    rows, total = await services.store.list_jobs(
        query,
        user_id=None if auth.is_admin else auth.user_id,
    )
    return ExportJobListResponse.create(
        jobs=[_job_to_response(r) for r in rows],
        total=total,
        limit=query.limit,
        offset=query.offset,
    )


@router.get("/export-jobs/{job_id}", response_model=ExportJobResponse)
@rate_limiter.limit(
    "export_status",
    max_requests=settings.EXPORT_STATUS_RATE_LIMIT,
    window_seconds=settings.EXPORT_STATUS_RATE_WINDOW_SECONDS,
)
async def get_export_status(
    job_id: str,
    response: Response,
    auth: AuthContext = Depends(get_auth_context),
    services: ExportServices = Depends(get_export_services),
):
    job = await services.orchestrator.get_export_status(job_id)
    response.headers.update(_NO_STORE_HEADERS)
    return _job_to_response(job)


@router.post("/export-jobs/{job_id}/cancel", response_model=CancelExportResponse)
async def cancel_export(
    request: Request,
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
    services: ExportServices = Depends(get_export_services),
):
    job = await services.orchestrator.cancel_export(
        job_id,
        auth.user_id,
        is_admin=auth.is_admin,
        request_id=get_request_id(request),
    )
    return CancelExportResponse(job_id=job.job_id, status=job.status)


@router.get("/export-jobs/{job_id}/checksum", response_model=PackageChecksumResponse)
async def get_package_checksum(
    job_id: str,
    response: Response,
    auth: AuthContext = Depends(get_auth_context),
    services: ExportServices = Depends(get_export_services),
):
    job = await services.orchestrator.get_export_status(job_id)

    if job.status != ExportJobStatus.COMPLETED.value:
        raise BadRequestError(
            f"Cannot get checksum for job with status: {job.status}. Job must be completed.",
            code="JOB_NOT_COMPLETED",
            details={"jobId": job_id, "status": job.status},
        )
    if not job.package_checksum:
        logger.error("Completed export job %s has no package checksum", job_id)
        raise BadRequestError(
            "Package checksum not available; the package predates checksum support",
            code="CHECKSUM_NOT_AVAILABLE",
        )

    size = job.package_size_bytes
    size_mb = f"{size / (1024 * 1024):.1f} MB" if size is not None else "Unknown"

    response.headers["Cache-Control"] = "public, max-age=31536000, immutable"
    return PackageChecksumResponse(
        job_id=job.job_id,
        package_checksum=job.package_checksum,
        algorithm=job.package_algorithm or "sha256",
        package_size_bytes=size,
        package_size_mb=size_mb,
        created_at=job.completed_at or job.created_at,
        verified_at=job.checksum_verified_at,
    )


@router.get(
    "/export-jobs/{job_id}/download",
    response_class=StreamingResponse,
    responses={
        200: {"content": {"application/gzip": {}}},
        206: {"content": {"application/gzip": {}}},
    },
)
async def download_package(
    request: Request,
    job_id: str,
    range_header: Optional[str] = Header(None, alias="Range"),
    auth: AuthContext = Depends(get_auth_context),
    services: ExportServices = Depends(get_export_services),
):
    download = await services.delivery.download_package(
        job_id,
        auth.user_id,
        is_admin=auth.is_admin,
        range_header=range_header,
        request_id=get_request_id(request),
    )
    return StreamingResponse(
        download.body,
        status_code=download.status_code,
        headers=download.headers,
        media_type=download.media_type,
    )
