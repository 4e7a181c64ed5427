"""Process-wide bookkeeping of background jobs."""
from __future__ import annotations

import asyncio
import itertools
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable

from profile_audit.core.logger import logger
from profile_audit.domain.jobs import BackgroundTask, JobFamily, TaskStatus


class TaskRegistry:
    """Tracks running, completed and failed jobs independently of any view.

    Completed tasks disappear ``prune_delay`` seconds after completion so the
    list shows a short-lived "done" marker; failed tasks stay until cleared.
    Each mutation swaps the whole tuple, so readers never see a half-applied
    change.
    """

    def __init__(self, *, prune_delay: float = 5.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._prune_delay = prune_delay
        self._clock = clock
        self._tasks: tuple[BackgroundTask, ...] = ()
        self._completed_at: dict[str, float] = {}
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    def _update(self, task_id: str, **changes: object) -> BackgroundTask | None:
        with self._lock:
            updated: BackgroundTask | None = None
            tasks: list[BackgroundTask] = []
            for task in self._tasks:
                if task.id == task_id:
                    task = replace(task, **changes)
                    updated = task
                tasks.append(task)
            self._tasks = tuple(tasks)
        return updated

    def _remove(self, task_id: str) -> None:
        with self._lock:
            self._tasks = tuple(task for task in self._tasks if task.id != task_id)
            self._completed_at.pop(task_id, None)

    def _prune_expired(self) -> None:
        now = self._clock()
        with self._lock:
            expired = {
                task_id for task_id, finished in self._completed_at.items() if now - finished >= self._prune_delay
            }
            if not expired:
                return
            self._tasks = tuple(task for task in self._tasks if task.id not in expired)
            for task_id in expired:
                self._completed_at.pop(task_id, None)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start(self, family: JobFamily, subject_id: str, subject_label: str) -> str:
        started_at = self._now_iso()
        with self._lock:
            task_id = f"{family.value}-{subject_id}-{time.time_ns()}-{next(self._sequence)}"
            task = BackgroundTask(
                id=task_id,
                family=family,
                subject_id=subject_id,
                subject_label=subject_label,
                started_at=started_at,
            )
            self._tasks = (*self._tasks, task)
        logger.debug("Started %s task %s", family.value, task_id)
        return task_id

    def complete(self, task_id: str) -> None:
        task = self._update(task_id, status=TaskStatus.COMPLETED, completed_at=self._now_iso())
        if task is None:
            return
        with self._lock:
            self._completed_at[task_id] = self._clock()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(self._prune_delay, self._remove, task_id)

    def fail(self, task_id: str, error: str) -> None:
        task = self._update(task_id, status=TaskStatus.FAILED, completed_at=self._now_iso(), error=error)
        if task is not None:
            logger.warning("%s task for %s failed: %s", task.family.value, task.subject_label or task.subject_id, error)

    def clear_completed(self) -> None:
        """Drop every finished task, failed ones included."""

        with self._lock:
            self._tasks = tuple(task for task in self._tasks if task.status is TaskStatus.RUNNING)
            self._completed_at.clear()

    def clear_subject(self, subject_id: str) -> None:
        """Forget finished tasks of one subject when its context is reset."""

        with self._lock:
            removed = {
                task.id
                for task in self._tasks
                if task.subject_id == subject_id and task.status is not TaskStatus.RUNNING
            }
            self._tasks = tuple(task for task in self._tasks if task.id not in removed)
            for task_id in removed:
                self._completed_at.pop(task_id, None)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def get(self, task_id: str) -> BackgroundTask | None:
        self._prune_expired()
        return next((task for task in self._tasks if task.id == task_id), None)

    def list_tasks(self, subject_id: str | None = None) -> list[BackgroundTask]:
        self._prune_expired()
        tasks = self._tasks
        if subject_id is not None:
            return [task for task in tasks if task.subject_id == subject_id]
        return list(tasks)

    def is_running(self, family: JobFamily, subject_id: str) -> bool:
        return any(
            task.family is family and task.subject_id == subject_id and task.status is TaskStatus.RUNNING
            for task in self.list_tasks()
        )

    def reset(self) -> None:
        with self._lock:
            self._tasks = ()
            self._completed_at.clear()


__all__ = ["TaskRegistry"]
