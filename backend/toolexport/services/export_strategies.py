"""Export generation strategies.

A strategy turns a tool into an ordered list of steps. Steps write files
into the job's working directory; the last step packs that directory into
``{work_root}/{job_id}.tar.gz``. Every step can undo its own output.
"""

from __future__ import annotations

import asyncio
import json
import logging
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from toolexport.models.base import utc_now
from toolexport.models.export_job import ExportJobStatus
from toolexport.models.tool import Tool
from toolexport.services.tool_repository import ToolRepository

if TYPE_CHECKING:
    from toolexport.services.export_job_store import ExportJobStore


logger = logging.getLogger(__name__)

SUBMISSION_BATCH_SIZE = 500

_CANCELLED_STATUSES = frozenset({ExportJobStatus.CANCELLING.value, ExportJobStatus.CANCELLED.value})


class ExportCancelled(Exception):
    """Raised at a checkpoint once the job has been asked to cancel."""

    def __init__(self, job_id: str):
        super().__init__(f"Export job {job_id} was cancelled")
        self.job_id = job_id


class CancellationToken:
    """
    Cooperative cancellation backed by the persisted job status.

    Cancellation only takes effect when generation code reaches a checkpoint;
    a step that is mid-write finishes that write first.
    """

    def __init__(self, job_id: str, store: "ExportJobStore"):
        self.job_id = job_id
        self._store = store

    async def is_cancelled(self) -> bool:
        job = await self._store.find_by_id(self.job_id)
        return job is None or job.status in _CANCELLED_STATUSES

    async def checkpoint(self) -> None:
        if await self.is_cancelled():
            raise ExportCancelled(self.job_id)


@dataclass
class ExportContext:
    job_id: str
    tool: Tool
    tool_type: str
    work_dir: Path
    package_path: Path
    tools: ToolRepository
    token: CancellationToken
    metadata: dict[str, Any] = field(default_factory=dict)

    async def checkpoint(self) -> None:
        await self.token.checkpoint()


def _write_json(path: Path, payload: Any) -> int:
    data = json.dumps(payload, indent=2, sort_keys=True, default=str).encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return len(data)


def _build_tarball(source_dir: Path, target: Path, arc_root: str) -> int:
    tmp = target.with_name(target.name + ".partial")
    target.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(tmp, "w:gz") as tar:
        for path in sorted(source_dir.rglob("*")):
            if path.is_file():
                tar.add(path, arcname=f"{arc_root}/{path.relative_to(source_dir).as_posix()}")
    tmp.replace(target)
    return target.stat().st_size


class ExportStep:
    name = "step"
    description = "Running export step"

    async def execute(self, ctx: ExportContext) -> None:
        raise NotImplementedError

    async def rollback(self, ctx: ExportContext) -> None:
        return None


class _FileStep(ExportStep):
    """Step that writes one file under the working directory."""

    filename = ""

    def target(self, ctx: ExportContext) -> Path:
        return ctx.work_dir / self.filename

    async def write_json(self, ctx: ExportContext, payload: Any) -> None:
        size = await asyncio.to_thread(_write_json, self.target(ctx), payload)
        ctx.metadata.setdefault("files", {})[self.filename] = size

    async def rollback(self, ctx: ExportContext) -> None:
        await asyncio.to_thread(self.target(ctx).unlink, missing_ok=True)
        ctx.metadata.get("files", {}).pop(self.filename, None)


class WriteManifestStep(_FileStep):
    name = "write_manifest"
    description = "Writing export manifest..."
    filename = "manifest.json"

    async def execute(self, ctx: ExportContext) -> None:
        tool = ctx.tool
        await self.write_json(
            ctx,
            {
                "jobId": ctx.job_id,
                "toolId": tool.tool_id,
                "toolName": tool.name,
                "toolVersion": tool.version,
                "toolType": ctx.tool_type,
                "exportedAt": utc_now().isoformat(),
                "manifest": tool.manifest_json or {},
            },
        )


class ExportFormSchemaStep(_FileStep):
    name = "export_form_schema"
    description = "Exporting form schema..."
    filename = "form-schema.json"

    async def execute(self, ctx: ExportContext) -> None:
        schema_id = str(ctx.tool.config.get("formSchemaId"))
        schema = await ctx.tools.get_form_schema(schema_id)
        if schema is None:
            raise LookupError(f"Form schema {schema_id} not found")
        await self.write_json(ctx, {"id": schema.id, "name": schema.name, "schema": schema.schema_json})


class ExportSubmissionsStep(_FileStep):
    name = "export_submissions"
    description = "Exporting form submissions..."
    filename = "submissions.jsonl"

    async def execute(self, ctx: ExportContext) -> None:
        schema_id = str(ctx.tool.config.get("formSchemaId"))
        target = self.target(ctx)
        await asyncio.to_thread(target.write_bytes, b"")

        offset = 0
        written = 0
        while True:
            batch = await ctx.tools.list_submissions(schema_id, offset=offset, limit=SUBMISSION_BATCH_SIZE)
            if not batch:
                break
            lines = "".join(
                json.dumps(
                    {"id": s.id, "createdAt": s.created_at, "values": s.values_json},
                    sort_keys=True,
                    default=str,
                )
                + "\n"
                for s in batch
            )
            await asyncio.to_thread(_append_text, target, lines)
            written += len(batch)
            offset += len(batch)
            if len(batch) < SUBMISSION_BATCH_SIZE:
                break
            await ctx.checkpoint()

        ctx.metadata["submission_count"] = written
        ctx.metadata.setdefault("files", {})[self.filename] = written


def _append_text(path: Path, text: str) -> None:
    with path.open("a", encoding="utf-8") as fh:
        fh.write(text)


class ExportThemeStep(_FileStep):
    name = "export_theme"
    description = "Exporting theme configuration..."
    filename = "theme.json"

    async def execute(self, ctx: ExportContext) -> None:
        theme_id = str(ctx.tool.config.get("themeId"))
        theme = await ctx.tools.get_theme(theme_id)
        if theme is None:
            raise LookupError(f"Theme {theme_id} not found")
        await self.write_json(ctx, {"id": theme.id, "name": theme.name, "config": theme.theme_config})


class ExportWorkflowStep(_FileStep):
    name = "export_workflow"
    description = "Exporting workflow definition..."
    filename = "workflow.json"

    async def execute(self, ctx: ExportContext) -> None:
        config = ctx.tool.config
        await self.write_json(
            ctx,
            {
                "workflowId": config.get("workflowId"),
                "definition": config.get("workflow") or {},
            },
        )


class WriteReadmeStep(ExportStep):
    name = "write_readme"
    description = "Writing package README..."
    filename = "README.md"

    async def execute(self, ctx: ExportContext) -> None:
        tool = ctx.tool
        files = sorted(ctx.metadata.get("files", {}))
        body = "\n".join(
            [
                f"# Export of {tool.name}",
                "",
                f"- Tool ID: {tool.tool_id}",
                f"- Tool type: {ctx.tool_type}",
                f"- Version: {tool.version}",
                f"- Job ID: {ctx.job_id}",
                f"- Exported at: {utc_now().isoformat()}",
                "",
                "## Contents",
                "",
                *[f"- {name}" for name in files],
                "",
            ]
        )
        await asyncio.to_thread((ctx.work_dir / self.filename).write_text, body, encoding="utf-8")

    async def rollback(self, ctx: ExportContext) -> None:
        await asyncio.to_thread((ctx.work_dir / self.filename).unlink, missing_ok=True)


class PackageArchiveStep(ExportStep):
    name = "package_archive"
    description = "Creating package archive..."

    async def execute(self, ctx: ExportContext) -> None:
        size = await asyncio.to_thread(
            _build_tarball,
            ctx.work_dir,
            ctx.package_path,
            f"export-{ctx.tool.tool_id}",
        )
        ctx.metadata["package_path"] = str(ctx.package_path)
        ctx.metadata["package_size"] = size

    async def rollback(self, ctx: ExportContext) -> None:
        partial = ctx.package_path.with_name(ctx.package_path.name + ".partial")
        await asyncio.to_thread(partial.unlink, missing_ok=True)
        await asyncio.to_thread(ctx.package_path.unlink, missing_ok=True)
        ctx.metadata.pop("package_path", None)
        ctx.metadata.pop("package_size", None)


class ExportStrategy:
    tool_type = ""

    def build_steps(self, tool: Tool) -> list[ExportStep]:
        raise NotImplementedError


class FormsExportStrategy(ExportStrategy):
    tool_type = "forms"

    def build_steps(self, tool: Tool) -> list[ExportStep]:
        return [
            WriteManifestStep(),
            ExportFormSchemaStep(),
            ExportSubmissionsStep(),
            WriteReadmeStep(),
            PackageArchiveStep(),
        ]


class ThemesExportStrategy(ExportStrategy):
    tool_type = "themes"

    def build_steps(self, tool: Tool) -> list[ExportStep]:
        return [
            WriteManifestStep(),
            ExportThemeStep(),
            WriteReadmeStep(),
            PackageArchiveStep(),
        ]


class WorkflowsExportStrategy(ExportStrategy):
    tool_type = "workflows"

    def build_steps(self, tool: Tool) -> list[ExportStep]:
        return [
            WriteManifestStep(),
            ExportWorkflowStep(),
            WriteReadmeStep(),
            PackageArchiveStep(),
        ]


_STRATEGIES: dict[str, Callable[[], ExportStrategy]] = {
    "forms": FormsExportStrategy,
    "themes": ThemesExportStrategy,
    "workflows": WorkflowsExportStrategy,
}


def get_strategy(tool_type: str) -> ExportStrategy:
    try:
        return _STRATEGIES[tool_type]()
    except KeyError:
        raise ValueError(f"No export strategy for tool type '{tool_type}'") from None
