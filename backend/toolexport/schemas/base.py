"""
Base Schemas
============

Common schema configuration. API payloads are camelCase on the wire and
snake_case in Python.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class BaseSchema(BaseModel):
    """
    Base Pydantic schema with common configuration.
    
    All API schemas should inherit from this base.
    """
    
    model_config = ConfigDict(
        # Allow ORM mode for SQLAlchemy models
        from_attributes=True,
        # Validate default values
        validate_default=True,
        # Use enum values instead of names
        use_enum_values=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class ErrorResponse(BaseSchema):
    """Standard error response."""
    
    code: str
    message: str
    timestamp: datetime
    request_id: Optional[str] = None
    details: Optional[dict[str, Any]] = None
