"""Application services."""

from .audits import (
    AuditService,
    build_audit_service,
    configure_audit_service,
    get_audit_service,
    reset_audit_state,
)
from .cache import ResultCache
from .grid import GridRun, GridSampler, GridTarget, summarize_grid
from .job_client import JobAdapter, JobClient
from .tasks import TaskRegistry

__all__ = [
    "AuditService",
    "GridRun",
    "GridSampler",
    "GridTarget",
    "JobAdapter",
    "JobClient",
    "ResultCache",
    "TaskRegistry",
    "build_audit_service",
    "configure_audit_service",
    "get_audit_service",
    "reset_audit_state",
    "summarize_grid",
]
