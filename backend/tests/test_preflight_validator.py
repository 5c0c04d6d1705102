"""Tests for pre-flight export validation."""

from pathlib import Path

import pytest

from toolexport.models import Tool
from toolexport.services.preflight_validator import PreFlightValidator
from toolexport.services.tool_repository import ToolRepository, resolve_tool_type


def _validator(session_factory, work_dir: Path, **kwargs) -> PreFlightValidator:
    options = dict(min_free_disk_bytes=0, package_retention_days=30, cache_ttl_seconds=300)
    options.update(kwargs)
    return PreFlightValidator(ToolRepository(session_factory), work_dir=work_dir, **options)


def _fields(issues):
    return [i.field for i in issues]


@pytest.mark.asyncio
async def test_missing_tool_is_an_error(session_factory, tmp_path):
    report = await _validator(session_factory, tmp_path).validate("nope")

    assert not report.success
    assert _fields(report.errors) == ["toolId"]


@pytest.mark.asyncio
async def test_valid_form_tool(session_factory, tmp_path, seed_form_tool):
    await seed_form_tool(submissions=2)

    report = await _validator(session_factory, tmp_path).validate("contact-form")

    assert report.success
    assert report.warnings == []
    assert report.estimated_duration_ms == 30_000
    messages = [i.message for i in report.info]
    assert "2 submissions will be included" in messages
    assert any("retained for 30 days" in m for m in messages)

    body = report.to_dict()
    assert body["toolId"] == "contact-form"
    assert body["success"] is True
    assert body["estimatedDurationMs"] == 30_000


@pytest.mark.asyncio
async def test_warnings_do_not_block(session_factory, tmp_path, seed_form_tool):
    await seed_form_tool(submissions=0, status="deprecated")

    report = await _validator(session_factory, tmp_path).validate("contact-form")

    assert report.success
    assert set(_fields(report.warnings)) == {"status", "submissions"}
    assert report.estimated_duration_ms == 40_000


@pytest.mark.asyncio
async def test_form_without_fields_is_an_error(session_factory, tmp_path, seed_form_tool):
    await seed_form_tool(fields=[])

    report = await _validator(session_factory, tmp_path).validate("contact-form")

    assert not report.success
    assert "formSchema.fields" in _fields(report.errors)


@pytest.mark.asyncio
async def test_unsupported_tool_type(session_factory, tmp_path, add_rows):
    await add_rows(Tool(tool_id="mystery", name="Mystery", status="active", tool_type="canvas", manifest_json={}))

    report = await _validator(session_factory, tmp_path).validate("mystery")

    assert not report.success
    assert _fields(report.errors) == ["toolType"]


@pytest.mark.asyncio
async def test_missing_content_reference(session_factory, tmp_path, add_rows):
    await add_rows(Tool(tool_id="signup-form", name="Signup", status="active", manifest_json={"config": {}}))

    report = await _validator(session_factory, tmp_path).validate("signup-form")

    assert not report.success
    assert _fields(report.errors) == ["manifest.config.formSchemaId"]


@pytest.mark.asyncio
async def test_theme_checks(session_factory, tmp_path, seed_theme_tool):
    await seed_theme_tool("good-theme")
    await seed_theme_tool("empty-theme", theme_config={})
    validator = _validator(session_factory, tmp_path)

    assert (await validator.validate("good-theme")).success
    empty = await validator.validate("empty-theme")
    assert not empty.success
    assert _fields(empty.errors) == ["theme.themeConfig"]


@pytest.mark.asyncio
async def test_workflow_without_embedded_definition_warns(session_factory, tmp_path, add_rows):
    await add_rows(
        Tool(
            tool_id="approval-workflow",
            name="Approvals",
            status="active",
            manifest_json={"config": {"workflowId": "wf-1"}},
        )
    )

    report = await _validator(session_factory, tmp_path).validate("approval-workflow")

    assert report.success
    assert _fields(report.warnings) == ["workflow"]


@pytest.mark.asyncio
async def test_insufficient_disk_space(session_factory, tmp_path, seed_form_tool):
    await seed_form_tool()

    report = await _validator(session_factory, tmp_path, min_free_disk_bytes=1 << 62).validate("contact-form")

    assert not report.success
    assert _fields(report.errors) == ["diskSpace"]


@pytest.mark.asyncio
async def test_unwritable_work_dir(session_factory, tmp_path, seed_form_tool):
    await seed_form_tool()
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied")

    report = await _validator(session_factory, blocker / "work").validate("contact-form")

    assert not report.success
    assert _fields(report.errors) == ["workDir"]


@pytest.mark.asyncio
async def test_cached_reports(session_factory, tmp_path, seed_form_tool):
    await seed_form_tool()
    validator = _validator(session_factory, tmp_path)

    first = await validator.validate("contact-form", use_cache=True)
    assert await validator.validate("contact-form", use_cache=True) is first
    assert await validator.validate("contact-form") is not first

    validator.invalidate("contact-form")
    assert await validator.validate("contact-form", use_cache=True) is not first


@pytest.mark.asyncio
async def test_unknown_tools_are_not_cached(session_factory, tmp_path):
    validator = _validator(session_factory, tmp_path)

    for i in range(5):
        report = await validator.validate(f"ghost-{i}", use_cache=True)
        assert not report.tool_found

    assert validator._cache == {}


@pytest.mark.asyncio
async def test_expired_cache_entries_are_evicted_on_write(session_factory, tmp_path, seed_form_tool):
    await seed_form_tool()
    validator = _validator(session_factory, tmp_path)
    stale = await validator.validate("contact-form")
    validator._cache = {"retired-tool": (0.0, stale), "contact-form": (0.0, stale)}

    fresh = await validator.validate("contact-form", use_cache=True)

    assert fresh is not stale
    assert set(validator._cache) == {"contact-form"}
    assert validator._cache["contact-form"][1] is fresh


def test_resolve_tool_type_fallbacks():
    assert resolve_tool_type(Tool(tool_id="x", tool_type="forms", manifest_json={})) == "forms"
    assert resolve_tool_type(Tool(tool_id="x", manifest_json={"config": {"toolType": "themes"}})) == "themes"
    assert resolve_tool_type(Tool(tool_id="Onboarding-Workflow", manifest_json={})) == "workflows"
    assert resolve_tool_type(Tool(tool_id="canvas", manifest_json={})) is None
