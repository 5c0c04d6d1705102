"""Pytest configuration.

Settings come from the environment, so minimal test defaults are set here
before anything from the package is imported. Every test gets its own
SQLite database and export work directory under ``tmp_path``.
"""

import os


os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("APP_NAME", "toolexport")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("API_PREFIX", "/api/v1")
# pydantic-settings parses List[str] from env/.env as JSON; force a safe value
# to keep tests import-safe regardless of local developer .env contents.
os.environ["CORS_ORIGINS"] = "[]"
os.environ.setdefault("JWT_ALGORITHM", "HS256")
os.environ.setdefault("JWT_ACCESS_TOKEN_EXPIRE_MINUTES", "30")
# Module-level engine only; fixtures below build per-test engines.
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("EXPORT_RECOVER_ON_STARTUP", "false")
os.environ.setdefault("EXPORT_CLEANUP_ENABLED", "false")

import asyncio
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from toolexport.api.deps import ExportServices, build_export_services
from toolexport.core.config import Settings, settings
from toolexport.core.database import build_session_factory, create_db_and_tables
from toolexport.core.security import create_access_token
from toolexport.main import create_application
from toolexport.middleware.rate_limiter import rate_limiter
from toolexport.models import AuditEvent, ExportJob, FormSchema, FormSubmission, Theme, Tool
from toolexport.models.base import generate_uuid


def auth_headers(user_id: str = "user-1", role: str = "user") -> dict[str, str]:
    token = create_access_token(user_id=user_id, role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def export_settings(tmp_path: Path) -> Settings:
    return settings.model_copy(
        update={
            "EXPORT_WORK_DIR": str(tmp_path / "work"),
            "EXPORT_MIN_FREE_DISK_BYTES": 0,
            "EXPORT_DOWNLOAD_CHUNK_BYTES": 1024,
        }
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'exports.db'}", poolclass=NullPool)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def services(session_factory, export_settings) -> AsyncGenerator[ExportServices, None]:
    services = build_export_services(session_factory, export_settings)
    yield services
    await services.cleanup.stop()
    await services.runner.shutdown(timeout=5)


@pytest_asyncio.fixture
async def client(services: ExportServices) -> AsyncGenerator[AsyncClient, None]:
    rate_limiter.configure(None)
    app = create_application(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    rate_limiter.reset()


@pytest.fixture
def add_rows(session_factory) -> Callable[..., Awaitable[None]]:
    async def _add(*rows: Any) -> None:
        async with session_factory() as session:
            async with session.begin():
                session.add_all(rows)

    return _add


@pytest.fixture
def seed_form_tool(add_rows) -> Callable[..., Awaitable[Tool]]:
    """Insert a forms tool with a schema and ``submissions`` submissions."""

    async def _seed(
        tool_id: str = "contact-form",
        *,
        owner_id: Optional[str] = None,
        submissions: int = 3,
        status: str = "active",
        fields: Optional[list[dict[str, Any]]] = None,
    ) -> Tool:
        schema = FormSchema(
            id=generate_uuid(),
            name=f"{tool_id} schema",
            schema_json={"fields": fields if fields is not None else [{"name": "email", "type": "email"}]},
        )
        tool = Tool(
            tool_id=tool_id,
            name=f"Tool {tool_id}",
            version="1.2.0",
            status=status,
            tool_type="forms",
            owner_id=owner_id,
            manifest_json={"config": {"formSchemaId": schema.id}},
        )
        rows: list[Any] = [schema, tool]
        rows.extend(
            FormSubmission(id=generate_uuid(), form_schema_id=schema.id, values_json={"email": f"person{i}@example.com"})
            for i in range(submissions)
        )
        await add_rows(*rows)
        return tool

    return _seed


@pytest.fixture
def seed_theme_tool(add_rows) -> Callable[..., Awaitable[Tool]]:
    async def _seed(tool_id: str = "brand-theme", *, theme_config: Optional[dict] = None) -> Tool:
        theme = Theme(id=generate_uuid(), name="Brand", theme_config=theme_config if theme_config is not None else {"primary": "#123456"})
        tool = Tool(
            tool_id=tool_id,
            name="Brand theme",
            status="active",
            manifest_json={"config": {"toolType": "themes", "themeId": theme.id}},
        )
        await add_rows(theme, tool)
        return tool

    return _seed


@pytest.fixture
def seed_job(add_rows) -> Callable[..., Awaitable[ExportJob]]:
    """Insert an export job row directly, bypassing generation."""

    async def _seed(**fields: Any) -> ExportJob:
        values = {
            "job_id": generate_uuid(),
            "tool_id": "contact-form",
            "tool_type": "forms",
            "user_id": "user-1",
            "status": "pending",
            "steps_completed": 0,
            "steps_total": 0,
            "download_count": 0,
        }
        values.update(fields)
        job = ExportJob(**values)
        await add_rows(job)
        return job

    return _seed


@pytest.fixture
def fetch_audit_events(session_factory) -> Callable[..., Awaitable[list[AuditEvent]]]:
    async def _fetch(event_type: Optional[str] = None) -> list[AuditEvent]:
        stmt = select(AuditEvent).order_by(AuditEvent.timestamp.asc())
        if event_type is not None:
            stmt = stmt.where(AuditEvent.event_type == event_type)
        async with session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    return _fetch


async def wait_for_status(
    services: ExportServices,
    job_id: str,
    statuses: set[str],
    timeout: float = 10.0,
) -> ExportJob:
    """Poll the store until the job reaches one of ``statuses``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = await services.store.find_by_id(job_id)
        if job is not None and job.status in statuses:
            return job
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} stuck in {getattr(job, 'status', None)}")
        await asyncio.sleep(0.02)
