"""Domain layer definitions."""

from .errors import (
    JobCancelledError,
    JobError,
    NoResultsError,
    PermanentJobError,
    ProviderError,
    RetriesExhaustedError,
    ValidationError,
)
from .jobs import (
    BackgroundTask,
    JobFamily,
    JobSpec,
    LostJob,
    Pending,
    PermanentFailure,
    PollOutcome,
    RemoteJobHandle,
    RemoteStatus,
    Success,
    TaskStatus,
)

__all__ = [
    "BackgroundTask",
    "JobCancelledError",
    "JobError",
    "JobFamily",
    "JobSpec",
    "LostJob",
    "NoResultsError",
    "Pending",
    "PermanentFailure",
    "PermanentJobError",
    "PollOutcome",
    "ProviderError",
    "RemoteJobHandle",
    "RemoteStatus",
    "RetriesExhaustedError",
    "Success",
    "TaskStatus",
    "ValidationError",
]
