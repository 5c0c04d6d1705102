"""
SQLAlchemy Models
=================

Importing this package registers every table on ``Base.metadata``.
"""

from toolexport.models.base import Base
from toolexport.models.export_job import ExportJob, ExportJobStatus
from toolexport.models.tool import Tool, FormSchema, FormSubmission, Theme
from toolexport.models.audit import AuditEvent

__all__ = [
    "Base",
    "ExportJob",
    "ExportJobStatus",
    "Tool",
    "FormSchema",
    "FormSubmission",
    "Theme",
    "AuditEvent",
]
