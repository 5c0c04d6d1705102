"""Create tool registry, content, audit and export job tables.

Revision ID: 2026_10_01_0001
Revises:
Create Date: 2026-10-01
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "2026_10_01_0001"
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_PREDICATE = "status IN ('pending', 'in_progress')"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    op.create_table(
        "tool_registry",
        sa.Column("tool_id", sa.String(length=255), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("version", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("tool_type", sa.String(length=50), nullable=True),
        sa.Column("owner_id", sa.String(length=255), nullable=True),
        sa.Column("manifest_json", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_tool_registry_owner_id", "tool_registry", ["owner_id"], unique=False)

    op.create_table(
        "form_schemas",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("schema_json", sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "form_submissions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "form_schema_id",
            sa.String(length=36),
            sa.ForeignKey("form_schemas.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("values_json", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_form_submissions_form_schema_id", "form_submissions", ["form_schema_id"], unique=False)

    op.create_table(
        "themes",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("theme_config", sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_category", sa.String(length=50), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("resource_type", sa.String(length=50), nullable=True),
        sa.Column("resource_id", sa.String(length=255), nullable=True),
        sa.Column("request_id", sa.String(length=100), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
    )
    op.create_index("ix_audit_events_timestamp", "audit_events", ["timestamp"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_actor_id", "audit_events", ["actor_id"], unique=False)
    op.create_index("ix_audit_events_resource_id", "audit_events", ["resource_id"], unique=False)

    op.create_table(
        "export_jobs",
        sa.Column("job_id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("tool_id", sa.String(length=255), nullable=False),
        sa.Column("tool_type", sa.String(length=50), nullable=True),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("steps_completed", sa.Integer(), nullable=False),
        sa.Column("steps_total", sa.Integer(), nullable=False),
        sa.Column("current_step", sa.String(length=255), nullable=True),
        sa.Column("package_path", sa.String(length=2048), nullable=True),
        sa.Column("package_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("package_checksum", sa.String(length=128), nullable=True),
        sa.Column("package_algorithm", sa.String(length=32), nullable=True),
        sa.Column("package_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("checksum_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_downloaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.String(length=2000), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_export_jobs_tool_id", "export_jobs", ["tool_id"], unique=False)
    op.create_index("ix_export_jobs_user_id", "export_jobs", ["user_id"], unique=False)
    op.create_index("ix_export_jobs_package_expires_at", "export_jobs", ["package_expires_at"], unique=False)
    op.create_index("ix_export_jobs_status_created", "export_jobs", ["status", "created_at"], unique=False)
    op.create_index("ix_export_jobs_user_created", "export_jobs", ["user_id", "created_at"], unique=False)
    op.create_index(
        "uq_export_jobs_active_tool",
        "export_jobs",
        ["tool_id"],
        unique=True,
        postgresql_where=sa.text(_ACTIVE_PREDICATE),
        sqlite_where=sa.text(_ACTIVE_PREDICATE),
    )


def downgrade() -> None:
    op.drop_index("uq_export_jobs_active_tool", table_name="export_jobs")
    op.drop_index("ix_export_jobs_user_created", table_name="export_jobs")
    op.drop_index("ix_export_jobs_status_created", table_name="export_jobs")
    op.drop_index("ix_export_jobs_package_expires_at", table_name="export_jobs")
    op.drop_index("ix_export_jobs_user_id", table_name="export_jobs")
    op.drop_index("ix_export_jobs_tool_id", table_name="export_jobs")
    op.drop_table("export_jobs")

    op.drop_index("ix_audit_events_resource_id", table_name="audit_events")
    op.drop_index("ix_audit_events_actor_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_timestamp", table_name="audit_events")
    op.drop_table("audit_events")

    op.drop_table("themes")
    op.drop_index("ix_form_submissions_form_schema_id", table_name="form_submissions")
    op.drop_table("form_submissions")
    op.drop_table("form_schemas")
    op.drop_index("ix_tool_registry_owner_id", table_name="tool_registry")
    op.drop_table("tool_registry")
