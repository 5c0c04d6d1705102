"""
Service Errors
==============

Typed error taxonomy raised by the export services and rendered by the
global exception handlers as ``{code, message, timestamp}`` responses.
"""

from typing import Any, Optional


class ExportServiceError(Exception):
    """Base class for every caller-facing error."""

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}


class NotFoundError(ExportServiceError):
    status_code = 404
    default_code = "NOT_FOUND"


class ForbiddenError(ExportServiceError):
    status_code = 403
    default_code = "FORBIDDEN"


class ConflictError(ExportServiceError):
    status_code = 409
    default_code = "CONFLICT"


class GoneError(ExportServiceError):
    status_code = 410
    default_code = "GONE"


class BadRequestError(ExportServiceError):
    status_code = 400
    default_code = "INVALID_PARAMETERS"


class UnprocessableError(ExportServiceError):
    status_code = 422
    default_code = "VALIDATION_ERROR"


class AuthenticationError(ExportServiceError):
    status_code = 401
    default_code = "UNAUTHORIZED"


class RateLimitedError(ExportServiceError):
    status_code = 429
    default_code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))


class InvalidTransitionError(ConflictError):
    """Raised when a job status change is not allowed by the state machine."""

    default_code = "INVALID_JOB_STATUS"

    def __init__(self, job_id: str, current_status: str, new_status: str | None = None):
        if new_status is None:
            message = f"Export job {job_id} is {current_status}; operation not allowed in this state"
        else:
            message = f"Invalid transition for export job {job_id} from {current_status} to {new_status}"
        super().__init__(message, details={"jobId": job_id, "status": current_status})
        self.job_id = job_id
        self.current_status = current_status
        self.new_status = new_status
