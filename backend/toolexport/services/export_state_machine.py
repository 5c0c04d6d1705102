"""
Export Job State Machine
========================

Defines the valid statuses and transitions for export jobs.
"""

from toolexport.core.errors import InvalidTransitionError
from toolexport.models.export_job import ExportJobStatus


class TransitionManager:
    """Manages valid state transitions for export jobs."""

    # key = current status, value = set of valid next statuses
    _VALID_TRANSITIONS = {
        ExportJobStatus.PENDING: {
            ExportJobStatus.IN_PROGRESS,
            ExportJobStatus.CANCELLING,
            ExportJobStatus.ROLLED_BACK,  # orphaned by a restart
        },
        ExportJobStatus.IN_PROGRESS: {
            ExportJobStatus.COMPLETED,
            ExportJobStatus.FAILED,
            ExportJobStatus.CANCELLING,
            ExportJobStatus.ROLLED_BACK,  # orphaned by a restart
        },
        ExportJobStatus.CANCELLING: {
            ExportJobStatus.CANCELLED,
        },
        ExportJobStatus.COMPLETED: set(),
        ExportJobStatus.FAILED: set(),
        ExportJobStatus.CANCELLED: set(),
        ExportJobStatus.ROLLED_BACK: set(),
    }

    @classmethod
    def can_transition(cls, current_status: str, new_status: str) -> bool:
        try:
            current = ExportJobStatus(current_status)
            new = ExportJobStatus(new_status)
        except ValueError:
            return False
        return new in cls._VALID_TRANSITIONS.get(current, set())

    @classmethod
    def validate_transition(cls, job_id: str, current_status: str, new_status: str) -> None:
        """
        Validate a status change.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        if not cls.can_transition(current_status, new_status):
            raise InvalidTransitionError(job_id, current_status, new_status)

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        try:
            return not cls._VALID_TRANSITIONS[ExportJobStatus(status)]
        except ValueError:
            return False
