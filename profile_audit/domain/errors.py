"""Error taxonomy shared by the job client and its orchestrators."""
from __future__ import annotations


class JobError(RuntimeError):
    """Base class for every terminal, non-success job resolution."""

    user_message = "The request could not be completed"


class PermanentJobError(JobError):
    """The provider rejected the job; retrying with the same input is pointless."""

    def __init__(self, reason: str, *, status_code: int | None = None, kind: str = "rejected") -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
        self.kind = kind

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return f"The provider rejected the request: {self.reason}"


class NoResultsError(PermanentJobError):
    """The provider found nothing for the given input."""

    def __init__(self, reason: str = "No Search Results", *, status_code: int | None = 40102) -> None:
        super().__init__(reason, status_code=status_code, kind="no_results")

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return "No results found: check the business name and try again"


class RetriesExhaustedError(JobError):
    """Every submission attempt stalled, expired or failed in transit."""

    user_message = "The service is temporarily unavailable, please try again later"

    def __init__(self, attempts: int, last_error: str | None = None) -> None:
        message = f"gave up after {attempts} attempt(s)"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class JobCancelledError(JobError):
    """The caller withdrew interest before the job resolved."""

    user_message = "The request was cancelled"


class ProviderError(RuntimeError):
    """Raised when the remote provider cannot be reached or answers garbage."""


class ValidationError(ValueError):
    """Raised when request parameters fall outside the supported domain."""


__all__ = [
    "JobCancelledError",
    "JobError",
    "NoResultsError",
    "PermanentJobError",
    "ProviderError",
    "RetriesExhaustedError",
    "ValidationError",
]
