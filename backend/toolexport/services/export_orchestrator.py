"""Export orchestrator.

Owns the export job lifecycle: validates and creates jobs, drives
generation in the background, handles cooperative cancellation, and
verifies package integrity. All cross-step coordination goes through the
persisted job row; nothing is held in process memory across awaits.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import shutil
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from toolexport.core.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UnprocessableError,
)
from toolexport.middleware.prometheus import export_jobs_running, record_export_job, record_integrity_failure
from toolexport.models.base import utc_now
from toolexport.models.export_job import ACTIVE_STATUSES, ExportJob, ExportJobStatus
from toolexport.models.tool import Tool
from toolexport.services.audit_service import AuditService
from toolexport.services.export_job_store import ExportJobStore, JobUpdate
from toolexport.services.export_strategies import (
    CancellationToken,
    ExportCancelled,
    ExportContext,
    ExportStep,
    ExportStrategy,
    get_strategy,
)
from toolexport.services.preflight_validator import PreFlightValidator
from toolexport.services.task_runner import BackgroundTaskRunner
from toolexport.services.tool_repository import ToolRepository, resolve_tool_type


logger = logging.getLogger(__name__)

CHECKSUM_ALGORITHM = "sha256"
_ERROR_MESSAGE_LIMIT = 2000


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _describe_error(exc: BaseException) -> str:
    # OSError text embeds file paths; keep only the reason.
    if isinstance(exc, OSError):
        return exc.strerror or type(exc).__name__
    return str(exc) or type(exc).__name__


class _StepFailed(Exception):
    def __init__(self, step: ExportStep, cause: BaseException):
        super().__init__(f"Step {step.name} failed: {_describe_error(cause)}")
        self.step = step


@dataclass(frozen=True)
class IntegrityResult:
    valid: bool
    expected_checksum: str
    actual_checksum: str
    algorithm: str = CHECKSUM_ALGORITHM


class ExportOrchestrator:
    def __init__(
        self,
        store: ExportJobStore,
        tools: ToolRepository,
        validator: PreFlightValidator,
        audit: AuditService,
        runner: BackgroundTaskRunner,
        *,
        work_dir: Path,
        package_retention_days: int = 30,
        strategy_factory: Callable[[str], ExportStrategy] = get_strategy,
    ):
        self._store = store
        self._tools = tools
        self._validator = validator
        self._audit = audit
        self._runner = runner
        self._work_dir = Path(work_dir).resolve()
        self._package_retention_days = int(package_retention_days)
        self._strategy_factory = strategy_factory

    @property
    def store(self) -> ExportJobStore:
        return self._store

    def job_work_dir(self, job_id: str) -> Path:
        return self._work_dir / job_id

    def job_package_path(self, job_id: str) -> Path:
        return self._work_dir / f"{job_id}.tar.gz"

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start_export(
        self,
        tool_id: str,
        user_id: Optional[str],
        *,
        is_admin: bool = False,
        request_id: Optional[str] = None,
    ) -> ExportJob:
        """
        Create a pending export job and start generation in the background.

        Returns as soon as the pending row exists; callers poll
        :meth:`get_export_status` for progress.

        Raises:
            NotFoundError: Tool does not exist (TOOL_NOT_FOUND)
            ForbiddenError: Caller may not export this tool
            UnprocessableError: Pre-flight validation failed
            ConflictError: A pending/in_progress job already exists for the tool
        """
        tool = await self._tools.get_tool(tool_id)
        if tool is None:
            raise NotFoundError(f"Tool {tool_id} not found", code="TOOL_NOT_FOUND")

        if tool.owner_id and not is_admin and tool.owner_id != user_id:
            raise ForbiddenError(
                "You do not have permission to export this tool",
                code="EXPORT_FORBIDDEN",
            )

        report = await self._validator.validate(tool_id)
        if not report.success:
            raise UnprocessableError(
                "Export validation failed: " + "; ".join(e.message for e in report.errors),
                code="EXPORT_VALIDATION_FAILED",
                details=report.to_dict(),
            )
        if report.warnings:
            logger.warning(
                "Pre-flight validation warnings for tool %s",
                tool_id,
                extra={"user_id": user_id, "warnings": [w.to_dict() for w in report.warnings]},
            )

        tool_type = resolve_tool_type(tool)
        job = await self._store.create(tool_id=tool_id, user_id=user_id, tool_type=tool_type)
        logger.info("Created export job %s for tool %s", job.job_id, tool_id, extra={"user_id": user_id})

        self._runner.spawn(self._run_job(job, tool, tool_type), name=f"export-{job.job_id}")

        await self._audit.log_event(
            "export.job_started",
            actor_id=user_id,
            resource_id=job.job_id,
            request_id=request_id,
            details={"toolId": tool_id, "toolType": tool_type},
        )
        return job

    async def get_export_status(self, job_id: str) -> ExportJob:
        job = await self._store.find_by_id(job_id)
        if job is None:
            raise NotFoundError(f"Export job {job_id} not found", code="JOB_NOT_FOUND")
        return job

    async def cancel_export(
        self,
        job_id: str,
        user_id: Optional[str],
        *,
        is_admin: bool = False,
        request_id: Optional[str] = None,
    ) -> ExportJob:
        """
        Request cooperative cancellation.

        The job moves to ``cancelling`` immediately; the generation routine
        settles it into ``cancelled`` at its next checkpoint.

        Raises:
            NotFoundError: No such job
            ForbiddenError: Caller is neither the owner nor an admin
            InvalidTransitionError: Job is not pending or in_progress
        """
        job = await self.get_export_status(job_id)

        if not is_admin and (job.user_id is None or job.user_id != user_id):
            raise ForbiddenError(
                "Unauthorized to cancel this export job",
                code="UNAUTHORIZED_CANCELLATION",
            )

        if job.status not in ACTIVE_STATUSES:
            raise InvalidTransitionError(job_id, job.status)

        updated = await self._store.update(
            job_id,
            JobUpdate(status=ExportJobStatus.CANCELLING.value, current_step="Cancelling export..."),
            expected_statuses=ACTIVE_STATUSES,
        )

        await self._audit.log_event(
            "export.job_cancel_requested",
            actor_id=user_id,
            resource_id=job_id,
            request_id=request_id,
            details={"previousStatus": job.status},
        )
        return updated

    async def verify_package_integrity(
        self,
        job_id: str,
        file_path: Path | str,
        expected_checksum: str,
        user_id: Optional[str] = None,
    ) -> IntegrityResult:
        """
        Recompute the package digest and compare it to the stored checksum.

        A match stamps ``checksum_verified_at``. A mismatch is returned as
        ``valid=False`` and recorded as a critical audit event; callers must
        refuse delivery.
        """
        actual = await asyncio.to_thread(sha256_file, Path(file_path))
        expected = (expected_checksum or "").strip().lower()
        valid = bool(expected) and hmac.compare_digest(actual, expected)

        if valid:
            await self._store.update(job_id, JobUpdate(checksum_verified_at=utc_now()))
        else:
            record_integrity_failure()
            logger.warning(
                "Package integrity check failed for export job %s",
                job_id,
                extra={"job_id": job_id, "user_id": user_id},
            )
            await self._audit.log_event(
                "export.package_tampered",
                actor_id=user_id,
                resource_id=job_id,
                success=False,
                severity="critical",
                details={"expectedChecksum": expected, "actualChecksum": actual},
            )

        return IntegrityResult(valid=valid, expected_checksum=expected, actual_checksum=actual)

    async def update_download_tracking(self, job_id: str, previous_count: int) -> ExportJob:
        return await self._store.increment_download_count(job_id, previous_count)

    async def recover_orphaned_jobs(self) -> dict[str, int]:
        """
        Settle jobs left active by a previous process.

        pending/in_progress become ``rolled_back`` and cancelling becomes
        ``cancelled``; their partial artifacts are removed.
        """
        rolled_back = 0
        cancelled = 0
        orphans = await self._store.find_by_status(
            [
                ExportJobStatus.PENDING.value,
                ExportJobStatus.IN_PROGRESS.value,
                ExportJobStatus.CANCELLING.value,
            ]
        )
        for job in orphans:
            if job.status == ExportJobStatus.CANCELLING.value:
                changes = JobUpdate(
                    status=ExportJobStatus.CANCELLED.value,
                    current_step="Export cancelled",
                    completed_at=utc_now(),
                )
            else:
                changes = JobUpdate(
                    status=ExportJobStatus.ROLLED_BACK.value,
                    current_step="Export interrupted by restart and rolled back",
                    completed_at=utc_now(),
                )
            try:
                await self._store.update(job.job_id, changes, expected_statuses={job.status})
            except InvalidTransitionError:
                logger.debug("Export job %s moved on before recovery", job.job_id)
                continue

            await self._remove_artifacts(job.job_id)
            if changes.status == ExportJobStatus.CANCELLED.value:
                cancelled += 1
            else:
                rolled_back += 1

        if orphans:
            logger.warning(
                "Recovered orphaned export jobs: %s rolled back, %s cancelled",
                rolled_back,
                cancelled,
            )
        return {"rolledBack": rolled_back, "cancelled": cancelled}

    # ------------------------------------------------------------------
    # Background generation
    # ------------------------------------------------------------------

    async def _run_job(self, job: ExportJob, tool: Tool, tool_type: Optional[str]) -> None:
        job_id = job.job_id
        ctx = ExportContext(
            job_id=job_id,
            tool=tool,
            tool_type=tool_type or "",
            work_dir=self.job_work_dir(job_id),
            package_path=self.job_package_path(job_id),
            tools=self._tools,
            token=CancellationToken(job_id, self._store),
        )
        completed_steps: list[ExportStep] = []
        in_progress = {ExportJobStatus.IN_PROGRESS.value}

        export_jobs_running.inc()
        try:
            try:
                await self._store.update(
                    job_id,
                    JobUpdate(
                        status=ExportJobStatus.IN_PROGRESS.value,
                        started_at=utc_now(),
                        current_step="Selecting export strategy...",
                    ),
                    expected_statuses={ExportJobStatus.PENDING.value},
                )
            except InvalidTransitionError:
                raise ExportCancelled(job_id) from None

            strategy = self._strategy_factory(ctx.tool_type)
            steps = strategy.build_steps(tool)
            await self._store.update(
                job_id,
                JobUpdate(steps_total=len(steps), current_step=f"Preparing {len(steps)} export steps..."),
                expected_statuses=in_progress,
            )
            await asyncio.to_thread(ctx.work_dir.mkdir, parents=True, exist_ok=True)

            for index, step in enumerate(steps):
                await ctx.checkpoint()
                await self._store.update(
                    job_id,
                    JobUpdate(current_step=step.description),
                    expected_statuses=in_progress,
                )
                logger.info("Export job %s: step %s/%s %s", job_id, index + 1, len(steps), step.name)
                try:
                    await step.execute(ctx)
                except ExportCancelled:
                    raise
                except Exception as exc:
                    raise _StepFailed(step, exc) from exc
                completed_steps.append(step)
                await self._store.update(
                    job_id,
                    JobUpdate(steps_completed=index + 1),
                    expected_statuses=in_progress,
                )

            await self._complete(ctx, len(steps))

        except (ExportCancelled, InvalidTransitionError):
            await self._rollback(ctx, completed_steps)
            await self._remove_work_dir(ctx)
            await self._settle_cancelled(job_id, job.user_id)
        except asyncio.CancelledError:
            # Process shutdown; startup recovery settles the row.
            await self._rollback(ctx, completed_steps)
            raise
        except Exception as exc:
            logger.exception(
                "Export job %s failed",
                job_id,
                extra={"job_id": job_id, "user_id": job.user_id},
            )
            await self._rollback(ctx, completed_steps)
            await self._remove_work_dir(ctx)
            await self._settle_failed(job_id, job.user_id, exc)
        finally:
            await self._remove_work_dir(ctx)
            export_jobs_running.dec()

    async def _complete(self, ctx: ExportContext, steps_total: int) -> None:
        package_path = ctx.package_path
        if not await asyncio.to_thread(package_path.is_file):
            raise RuntimeError("Package archive was not produced")

        checksum = await asyncio.to_thread(sha256_file, package_path)
        size = (await asyncio.to_thread(package_path.stat)).st_size

        await ctx.checkpoint()
        await self._remove_work_dir(ctx)

        completed_at = utc_now()
        await self._store.update(
            ctx.job_id,
            JobUpdate(
                status=ExportJobStatus.COMPLETED.value,
                current_step="Export completed successfully",
                steps_completed=steps_total,
                package_path=str(package_path),
                package_size_bytes=size,
                package_checksum=checksum,
                package_algorithm=CHECKSUM_ALGORITHM,
                package_expires_at=completed_at + timedelta(days=self._package_retention_days),
                completed_at=completed_at,
                error_message=None,
            ),
            expected_statuses={ExportJobStatus.IN_PROGRESS.value},
        )
        record_export_job(ExportJobStatus.COMPLETED.value)
        logger.info("Export job %s completed (%s bytes)", ctx.job_id, size)
        await self._audit.log_event(
            "export.job_completed",
            actor_id=None,
            actor_type="system",
            resource_id=ctx.job_id,
            details={"packageSizeBytes": size, "packageChecksum": checksum},
        )

    async def _remove_work_dir(self, ctx: ExportContext) -> None:
        await asyncio.to_thread(shutil.rmtree, ctx.work_dir, ignore_errors=True)

    async def _rollback(self, ctx: ExportContext, completed_steps: list[ExportStep]) -> None:
        for step in reversed(completed_steps):
            try:
                await step.rollback(ctx)
            except Exception:
                logger.exception(
                    "Rollback of step %s failed for export job %s",
                    step.name,
                    ctx.job_id,
                    extra={"job_id": ctx.job_id},
                )

    async def _settle_cancelled(self, job_id: str, user_id: Optional[str]) -> None:
        current = await self._store.find_by_id(job_id)
        if current is None or current.status != ExportJobStatus.CANCELLING.value:
            logger.warning(
                "Export job %s interrupted in unexpected status %s",
                job_id,
                getattr(current, "status", None),
            )
            return
        await self._store.update(
            job_id,
            JobUpdate(
                status=ExportJobStatus.CANCELLED.value,
                current_step="Export cancelled by user",
                completed_at=utc_now(),
            ),
            expected_statuses={ExportJobStatus.CANCELLING.value},
        )
        record_export_job(ExportJobStatus.CANCELLED.value)
        logger.info("Export job %s cancelled", job_id)
        await self._audit.log_event("export.job_cancelled", actor_id=user_id, resource_id=job_id)

    async def _settle_failed(self, job_id: str, user_id: Optional[str], exc: BaseException) -> None:
        message = _describe_error(exc)[:_ERROR_MESSAGE_LIMIT]
        if isinstance(exc, _StepFailed):
            current_step = f"Failed at: {exc.step.description}"
        else:
            current_step = "Export failed unexpectedly"
        try:
            await self._store.update(
                job_id,
                JobUpdate(
                    status=ExportJobStatus.FAILED.value,
                    error_message=message,
                    current_step=current_step,
                    completed_at=utc_now(),
                ),
                expected_statuses={ExportJobStatus.IN_PROGRESS.value},
            )
        except InvalidTransitionError:
            # Cancellation arrived while the failing step ran.
            await self._settle_cancelled(job_id, user_id)
            return

        record_export_job(ExportJobStatus.FAILED.value)
        await self._audit.log_event(
            "export.job_failed",
            actor_id=user_id,
            resource_id=job_id,
            success=False,
            error_message=message,
            severity="error",
        )

    async def _remove_artifacts(self, job_id: str) -> None:
        await asyncio.to_thread(shutil.rmtree, self.job_work_dir(job_id), ignore_errors=True)
        package = self.job_package_path(job_id)
        await asyncio.to_thread(package.with_name(package.name + ".partial").unlink, missing_ok=True)
        await asyncio.to_thread(package.unlink, missing_ok=True)
