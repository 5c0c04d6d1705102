"""Read access to tools and the content an export packages."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from toolexport.models.tool import FormSchema, FormSubmission, Theme, Tool


SUPPORTED_TOOL_TYPES = ("forms", "workflows", "themes")

# tool_id substring -> tool type, checked in order
_TOOL_ID_HINTS = (
    ("form", "forms"),
    ("workflow", "workflows"),
    ("theme", "themes"),
)


def resolve_tool_type(tool: Tool) -> Optional[str]:
    """Tool type from the registry column, the manifest config, or the tool id."""
    if tool.tool_type:
        return tool.tool_type
    config_type = tool.config.get("toolType")
    if isinstance(config_type, str) and config_type.strip():
        return config_type.strip()
    tool_id = (tool.tool_id or "").lower()
    for hint, tool_type in _TOOL_ID_HINTS:
        if hint in tool_id:
            return tool_type
    return None


class ToolRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_tool(self, tool_id: str) -> Tool | None:
        async with self._session_factory() as session:
            return await session.get(Tool, tool_id)

    async def get_form_schema(self, schema_id: str) -> FormSchema | None:
        async with self._session_factory() as session:
            return await session.get(FormSchema, schema_id)

    async def count_submissions(self, schema_id: str) -> int:
        stmt = select(func.count()).select_from(FormSubmission).where(FormSubmission.form_schema_id == schema_id)
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar() or 0)

    async def list_submissions(self, schema_id: str, *, offset: int = 0, limit: int = 500) -> list[FormSubmission]:
        stmt = (
            select(FormSubmission)
            .where(FormSubmission.form_schema_id == schema_id)
            .order_by(FormSubmission.created_at.asc(), FormSubmission.id.asc())
            .offset(offset)
            .limit(limit)
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def get_theme(self, theme_id: str) -> Theme | None:
        async with self._session_factory() as session:
            return await session.get(Theme, theme_id)
