from cloudmigrate.models.entities import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobCancellation,
    JobRecord,
    JobStatus,
    can_transition,
)

__all__ = [
    "JobRecord",
    "JobStatus",
    "JobCancellation",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "can_transition",
]
