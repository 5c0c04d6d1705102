"""
Audit Service
=============

Service for creating audit events.
All security-relevant export actions are logged through this service.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from toolexport.models.audit import AuditEvent
from toolexport.models.base import utc_now


logger = logging.getLogger(__name__)


class AuditService:
    """
    Audit logging service.
    
    Writes immutable audit records in their own transaction so a failed
    export or download still leaves a trail.
    
    Event Categories:
    - export: Export lifecycle and package delivery events
    """
    
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
    
    async def log_event(
        self,
        event_type: str,
        actor_id: Optional[str] = None,
        resource_type: Optional[str] = "export_job",
        resource_id: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        details: Optional[dict] = None,
        request_id: Optional[str] = None,
        severity: str = "info",
        actor_type: str = "user",
    ) -> Optional[AuditEvent]:
        """
        Create an audit event.
        
        Args:
            event_type: Event type in category.action format
            actor_id: User who performed the action
            resource_type: Type of affected resource
            resource_id: ID of affected resource
            success: Whether the action succeeded
            error_message: Error message if failed
            details: Event-specific details
            request_id: Request ID for correlation
            severity: Event severity (debug, info, warning, error, critical)
            actor_type: Type of actor (user, system)
        
        Returns:
            Created AuditEvent, or None if the write failed
        """
        category = event_type.split(".")[0] if "." in event_type else "unknown"
        
        event = AuditEvent(
            timestamp=utc_now(),
            event_type=event_type,
            event_category=category,
            severity=severity,
            actor_id=actor_id or None,
            actor_type=actor_type,
            resource_type=resource_type,
            resource_id=resource_id or None,
            request_id=request_id,
            success=success,
            error_message=error_message,
            details=details or {},
        )

        log_level = logging.WARNING if severity in ("warning", "error", "critical") else logging.INFO
        logger.log(
            log_level,
            "audit %s resource=%s actor=%s",
            event_type,
            resource_id,
            actor_id,
            extra={"event_type": event_type, "severity": severity, "details": details or {}},
        )

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(event)
        except Exception:
            logger.exception("Failed to write audit event", extra={"event_type": event_type})
            return None
        return event
