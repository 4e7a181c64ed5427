"""Domain entities describing remote jobs and their local bookkeeping."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Union


class JobFamily(str, Enum):
    """Kinds of slow remote work the dashboard orchestrates."""

    REVIEWS = "reviews"
    SCRAPE = "scrape"
    RANK_CHECK = "rank_check"


class TaskStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class JobSpec:
    """Immutable description of one unit of remote work."""

    family: JobFamily
    subject_id: str
    params: Mapping[str, Any] = field(default_factory=dict)
    max_wait_ms: int = 60_000
    poll_interval_ms: int = 3_000
    max_retries: int = 1
    retry_delay_ms: int = 2_000

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.max_wait_ms <= 0:
            raise ValueError("max_wait_ms must be positive")
        if self.poll_interval_ms < 0 or self.retry_delay_ms < 0:
            raise ValueError("intervals cannot be negative")
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))


@dataclass(frozen=True, slots=True)
class RemoteJobHandle:
    """Provider-issued identifier of a submitted job."""

    task_id: str
    family: JobFamily


@dataclass(frozen=True, slots=True)
class RemoteStatus:
    """Raw answer of a single poll, before classification."""

    status_code: int
    status_message: str = ""
    result: Any = None


@dataclass(frozen=True, slots=True)
class Pending:
    pass


@dataclass(frozen=True, slots=True)
class Success:
    payload: Any


@dataclass(frozen=True, slots=True)
class PermanentFailure:
    reason: str
    status_code: int | None = None
    kind: str = "unclassified"


@dataclass(frozen=True, slots=True)
class LostJob:
    reason: str = "Task Not Found"


PollOutcome = Union[Pending, Success, PermanentFailure, LostJob]


@dataclass(slots=True)
class BackgroundTask:
    """Bookkeeping record for a job that runs independently of the UI."""

    id: str
    family: JobFamily
    subject_id: str
    subject_label: str
    started_at: str
    status: TaskStatus = TaskStatus.RUNNING
    completed_at: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "family": self.family.value,
            "subject_id": self.subject_id,
            "subject_label": self.subject_label,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }
