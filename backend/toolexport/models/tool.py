"""Tool registry and exportable content models.

A tool is the unit that gets exported. Its manifest points at the content
the export steps read: a form schema (plus submissions), a theme, or an
inline workflow definition.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import ForeignKey, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from toolexport.models.base import Base, TimestampMixin, generate_uuid


class Tool(Base, TimestampMixin):
    __tablename__ = "tool_registry"

    tool_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(50), nullable=False, default="1.0.0")
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="active",
        doc="active|inactive|deprecated",
    )
    tool_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    manifest_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    @property
    def config(self) -> dict[str, Any]:
        manifest = self.manifest_json or {}
        config = manifest.get("config") if isinstance(manifest, dict) else None
        return config if isinstance(config, dict) else {}


class FormSchema(Base, TimestampMixin):
    __tablename__ = "form_schemas"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    schema_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    @property
    def fields(self) -> list[Any]:
        fields = (self.schema_json or {}).get("fields")
        return fields if isinstance(fields, list) else []


class FormSubmission(Base, TimestampMixin):
    __tablename__ = "form_submissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    form_schema_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("form_schemas.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    values_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class Theme(Base, TimestampMixin):
    __tablename__ = "themes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    theme_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
