"""Pre-flight export validation.

Inspects a tool before an export job is created and produces a structured
report of errors (export blocked), warnings (export allowed) and info.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from toolexport.models.base import utc_now
from toolexport.services.tool_repository import SUPPORTED_TOOL_TYPES, ToolRepository, resolve_tool_type


logger = logging.getLogger(__name__)

BASE_DURATION_MS = 30_000
PER_WARNING_DURATION_MS = 5_000

# tool type -> manifest config key naming the exported content
_REQUIRED_CONFIG_KEYS = {
    "forms": "formSchemaId",
    "workflows": "workflowId",
    "themes": "themeId",
}


@dataclass(frozen=True)
class ValidationIssue:
    message: str
    field: Optional[str] = None
    severity: str = "error"

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "field": self.field, "severity": self.severity}


@dataclass
class ValidationReport:
    tool_id: str
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    info: list[ValidationIssue] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)
    tool_found: bool = True

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def estimated_duration_ms(self) -> int:
        return BASE_DURATION_MS + PER_WARNING_DURATION_MS * len(self.warnings)

    def error(self, message: str, field: Optional[str] = None) -> None:
        self.errors.append(ValidationIssue(message, field, "error"))

    def warn(self, message: str, field: Optional[str] = None) -> None:
        self.warnings.append(ValidationIssue(message, field, "warning"))

    def note(self, message: str, field: Optional[str] = None) -> None:
        self.info.append(ValidationIssue(message, field, "info"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolId": self.tool_id,
            "success": self.success,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "info": [i.to_dict() for i in self.info],
            "timestamp": self.timestamp.isoformat(),
            "estimatedDurationMs": self.estimated_duration_ms,
        }


class PreFlightValidator:
    """Checks a tool's exportability: registry state, content and local storage."""

    def __init__(
        self,
        tools: ToolRepository,
        *,
        work_dir: Path,
        min_free_disk_bytes: int,
        package_retention_days: int,
        cache_ttl_seconds: int = 300,
    ):
        self._tools = tools
        self._work_dir = Path(work_dir)
        self._min_free_disk_bytes = int(min_free_disk_bytes)
        self._package_retention_days = int(package_retention_days)
        self._cache_ttl_seconds = int(cache_ttl_seconds)
        self._cache: dict[str, tuple[float, ValidationReport]] = {}

    async def validate(self, tool_id: str, *, use_cache: bool = False) -> ValidationReport:
        if use_cache and self._cache_ttl_seconds > 0:
            cached = self._cache.get(tool_id)
            if cached is not None and cached[0] > time.monotonic():
                return cached[1]

        report = await self._run_checks(tool_id)

        # Unknown ids stay uncached; the validate endpoint accepts any id.
        if self._cache_ttl_seconds > 0 and report.tool_found:
            now = time.monotonic()
            self._evict_expired(now)
            self._cache[tool_id] = (now + self._cache_ttl_seconds, report)

        if report.success:
            logger.info(
                "Pre-flight validation passed for tool %s (%s warnings)",
                tool_id,
                len(report.warnings),
            )
        else:
            logger.warning(
                "Pre-flight validation failed for tool %s",
                tool_id,
                extra={"errors": [e.to_dict() for e in report.errors]},
            )
        return report

    def invalidate(self, tool_id: str) -> None:
        self._cache.pop(tool_id, None)

    def _evict_expired(self, now: float) -> None:
        for key in [k for k, (expires, _) in self._cache.items() if expires <= now]:
            del self._cache[key]

    async def _run_checks(self, tool_id: str) -> ValidationReport:
        report = ValidationReport(tool_id=tool_id)

        tool = await self._tools.get_tool(tool_id)
        if tool is None:
            report.error(f"Tool {tool_id} not found", "toolId")
            report.tool_found = False
            return report

        if tool.status != "active":
            report.warn(f"Tool status is '{tool.status}'; exporting a non-active tool", "status")

        tool_type = resolve_tool_type(tool)
        if tool_type not in SUPPORTED_TOOL_TYPES:
            report.error(
                f"Unsupported tool type '{tool_type or 'unknown'}'. "
                f"Supported types: {', '.join(SUPPORTED_TOOL_TYPES)}",
                "toolType",
            )
        else:
            config = tool.config
            required_key = _REQUIRED_CONFIG_KEYS[tool_type]
            content_id = config.get(required_key)
            if not content_id:
                report.error(f"Tool metadata is missing '{required_key}'", f"manifest.config.{required_key}")
            elif tool_type == "forms":
                await self._check_form(report, str(content_id))
            elif tool_type == "themes":
                await self._check_theme(report, str(content_id))
            else:
                self._check_workflow(report, config)

        await self._check_storage(report)
        report.note(f"Package will be retained for {self._package_retention_days} days after completion")
        return report

    async def _check_form(self, report: ValidationReport, schema_id: str) -> None:
        schema = await self._tools.get_form_schema(schema_id)
        if schema is None:
            report.error(f"Form schema {schema_id} not found", "formSchemaId")
            return
        if not schema.fields:
            report.error("Form schema has no fields", "formSchema.fields")
        else:
            report.note(f"Form schema has {len(schema.fields)} fields")

        submissions = await self._tools.count_submissions(schema_id)
        if submissions == 0:
            report.warn("Form has no submissions; the package will contain the schema only", "submissions")
        else:
            report.note(f"{submissions} submissions will be included")

    async def _check_theme(self, report: ValidationReport, theme_id: str) -> None:
        theme = await self._tools.get_theme(theme_id)
        if theme is None:
            report.error(f"Theme {theme_id} not found", "themeId")
            return
        if not theme.theme_config:
            report.error("Theme has no configuration", "theme.themeConfig")

    @staticmethod
    def _check_workflow(report: ValidationReport, config: dict[str, Any]) -> None:
        if not isinstance(config.get("workflow"), dict):
            report.warn("Workflow definition not embedded in manifest; package will contain metadata only", "workflow")

    async def _check_storage(self, report: ValidationReport) -> None:
        writable, free_bytes = await asyncio.to_thread(self._probe_work_dir)
        if not writable:
            report.error("Export working directory is not writable", "workDir")
            return
        if free_bytes < self._min_free_disk_bytes:
            report.error(
                f"Insufficient disk space: {free_bytes // (1024 * 1024)} MB free, "
                f"{self._min_free_disk_bytes // (1024 * 1024)} MB required",
                "diskSpace",
            )

    def _probe_work_dir(self) -> tuple[bool, int]:
        try:
            self._work_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=self._work_dir, prefix=".probe-", delete=True) as fh:
                fh.write(b"ok")
                fh.flush()
                os.fsync(fh.fileno())
        except OSError:
            logger.warning("Export work dir %s is not writable", self._work_dir, exc_info=True)
            return False, 0
        return True, shutil.disk_usage(self._work_dir).free
