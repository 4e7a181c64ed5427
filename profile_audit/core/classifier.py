"""Map raw provider task statuses onto poll outcomes."""
from __future__ import annotations

from profile_audit.domain.jobs import (
    LostJob,
    Pending,
    PermanentFailure,
    PollOutcome,
    RemoteStatus,
    Success,
)

STATUS_OK = 20000
STATUS_CREATED = 20100
STATUS_NO_RESULTS = 40102
STATUS_TASK_NOT_FOUND = 40401
STATUS_HANDED = 40601
STATUS_IN_QUEUE = 40602

PENDING_CODES = frozenset({STATUS_CREATED, STATUS_HANDED, STATUS_IN_QUEUE})
LOST_JOB_MARKER = "Task Not Found"


def classify(status: RemoteStatus) -> PollOutcome:
    """Decide what a single poll answer means for the submit/poll loop.

    ``40102`` is checked first: a search without results is final even if the
    message happens to look like a queue notice. A ``20000`` answer only counts
    as success once a result is attached. Unknown codes are reported as
    permanent failures so that they are surfaced instead of polled forever.
    """

    code = status.status_code
    message = status.status_message or ""

    if code == STATUS_NO_RESULTS:
        return PermanentFailure(reason=message or "No Search Results", status_code=code, kind="no_results")

    if code == STATUS_TASK_NOT_FOUND or LOST_JOB_MARKER in message:
        return LostJob(reason=message or LOST_JOB_MARKER)

    if code in PENDING_CODES:
        return Pending()

    if code == STATUS_OK:
        # 20000 without a result means the task is still being worked on
        if status.result is None:
            return Pending()
        return Success(payload=status.result)

    return PermanentFailure(
        reason=message or f"unexpected status {code}",
        status_code=code,
        kind="unclassified",
    )


__all__ = ["classify", "PENDING_CODES", "STATUS_OK", "STATUS_CREATED"]
