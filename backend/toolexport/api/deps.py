"""
API Dependencies
================

Composition root for the export services and the FastAPI dependencies that
hand them to endpoints.
"""

from dataclasses import dataclass
from pathlib import Path

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from toolexport.core.config import Settings
from toolexport.services.audit_service import AuditService
from toolexport.services.cleanup_scheduler import CleanupScheduler
from toolexport.services.export_job_store import ExportJobStore
from toolexport.services.export_orchestrator import ExportOrchestrator
from toolexport.services.package_delivery import PackageDelivery
from toolexport.services.preflight_validator import PreFlightValidator
from toolexport.services.task_runner import BackgroundTaskRunner
from toolexport.services.tool_repository import ToolRepository


@dataclass
class ExportServices:
    """Everything the export endpoints need, built once per application."""

    store: ExportJobStore
    tools: ToolRepository
    audit: AuditService
    validator: PreFlightValidator
    runner: BackgroundTaskRunner
    orchestrator: ExportOrchestrator
    delivery: PackageDelivery
    cleanup: CleanupScheduler


def build_export_services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> ExportServices:
    work_dir = Path(settings.EXPORT_WORK_DIR)

    store = ExportJobStore(session_factory)
    tools = ToolRepository(session_factory)
    audit = AuditService(session_factory)
    runner = BackgroundTaskRunner()
    validator = PreFlightValidator(
        tools,
        work_dir=work_dir,
        min_free_disk_bytes=settings.EXPORT_MIN_FREE_DISK_BYTES,
        package_retention_days=settings.EXPORT_PACKAGE_RETENTION_DAYS,
        cache_ttl_seconds=settings.EXPORT_VALIDATION_CACHE_SECONDS,
    )
    orchestrator = ExportOrchestrator(
        store,
        tools,
        validator,
        audit,
        runner,
        work_dir=work_dir,
        package_retention_days=settings.EXPORT_PACKAGE_RETENTION_DAYS,
    )
    delivery = PackageDelivery(orchestrator, audit, chunk_size=settings.EXPORT_DOWNLOAD_CHUNK_BYTES)
    cleanup = CleanupScheduler(
        store,
        audit,
        job_retention_days=settings.EXPORT_JOB_RETENTION_DAYS,
        package_retention_days=settings.EXPORT_PACKAGE_RETENTION_DAYS,
        batch_size=settings.EXPORT_CLEANUP_BATCH_SIZE,
    )
    return ExportServices(
        store=store,
        tools=tools,
        audit=audit,
        validator=validator,
        runner=runner,
        orchestrator=orchestrator,
        delivery=delivery,
        cleanup=cleanup,
    )


def get_export_services(request: Request) -> ExportServices:
    return request.app.state.export_services
