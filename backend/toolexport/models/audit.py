"""
Audit Models
============

Append-only audit trail for export lifecycle and security events.
"""

from typing import Optional
from datetime import datetime

from sqlalchemy import Boolean, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from toolexport.models.base import Base, UTCDateTime, generate_uuid, utc_now


class AuditEvent(Base):
    """
    Audit event model (append-only).
    
    Event types:
    - export.job_started, export.job_completed, export.job_failed
    - export.job_cancel_requested, export.job_cancelled
    - export.package_downloaded, export.legacy_package_download
    - export.package_tampered, export.package_expired_deleted
    """
    
    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    # Timestamp (no updated_at for audit events - immutable)
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        index=True,
        doc="When the event occurred (UTC)",
    )
    
    event_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        doc="Event type (category.action format)",
    )
    event_category: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(
        String(20),
        default="info",
        nullable=False,
        doc="Severity: debug, info, warning, error, critical",
    )
    
    actor_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    actor_type: Mapped[str] = mapped_column(String(50), nullable=False, default="user")

    resource_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
