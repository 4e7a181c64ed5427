from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from profile_audit.core.logger import logger

JobFactory = Callable[[asyncio.Event], Awaitable[Any]]


@dataclass
class _SubjectJobs:
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


class BackgroundRunner:
    """Runs orchestrated jobs as ``asyncio`` tasks grouped by subject.

    Every subject shares one cancel event; setting it makes the job client
    abandon polling at its next wait, which lets orchestrators record the
    cancellation in the task registry instead of being torn down mid-write.
    """

    def __init__(self) -> None:
        self._subjects: dict[str, _SubjectJobs] = {}

    def spawn(self, subject_id: str, factory: JobFactory, *, name: str | None = None) -> asyncio.Task[Any]:
        jobs = self._subjects.get(subject_id)
        if jobs is None or jobs.cancel_event.is_set():
            jobs = _SubjectJobs()
            self._subjects[subject_id] = jobs

        task = asyncio.get_running_loop().create_task(factory(jobs.cancel_event), name=name)
        jobs.tasks.add(task)
        task.add_done_callback(lambda done, jobs=jobs: self._finished(subject_id, jobs, done))
        return task

    def _finished(self, subject_id: str, jobs: _SubjectJobs, task: asyncio.Task[Any]) -> None:
        jobs.tasks.discard(task)
        if not jobs.tasks and self._subjects.get(subject_id) is jobs:
            self._subjects.pop(subject_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background job %s for %s crashed", task.get_name(), subject_id, exc_info=exc)

    def running(self, subject_id: str | None = None) -> int:
        if subject_id is not None:
            jobs = self._subjects.get(subject_id)
            return len(jobs.tasks) if jobs else 0
        return sum(len(jobs.tasks) for jobs in self._subjects.values())

    def cancel_subject(self, subject_id: str) -> int:
        """Signal every running job of ``subject_id`` to stop; returns how many were signalled."""

        jobs = self._subjects.get(subject_id)
        if jobs is None or not jobs.tasks:
            return 0
        jobs.cancel_event.set()
        logger.info("Cancelling %d job(s) for %s", len(jobs.tasks), subject_id)
        return len(jobs.tasks)

    async def drain(self) -> None:
        """Wait for every spawned job to finish."""

        while True:
            pending = [task for jobs in self._subjects.values() for task in jobs.tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def reset(self) -> None:
        for jobs in self._subjects.values():
            for task in jobs.tasks:
                task.cancel()
        self._subjects = {}


__all__ = ["BackgroundRunner", "JobFactory"]
