"""Generic submit/poll loop shared by every job family."""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Mapping, Protocol

from profile_audit.core.classifier import classify
from profile_audit.core.logger import logger
from profile_audit.domain.errors import (
    JobCancelledError,
    NoResultsError,
    PermanentJobError,
    ProviderError,
    RetriesExhaustedError,
)
from profile_audit.domain.jobs import (
    JobSpec,
    LostJob,
    PermanentFailure,
    RemoteJobHandle,
    RemoteStatus,
    Success,
)


class JobAdapter(Protocol):
    """Family-specific capabilities plugged into :class:`JobClient`."""

    async def submit(self, params: Mapping[str, Any]) -> RemoteJobHandle: ...

    async def fetch(self, handle: RemoteJobHandle) -> RemoteStatus: ...

    def parse(self, result: Any, params: Mapping[str, Any]) -> Any: ...


Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class JobClient:
    """Runs one :class:`JobSpec` to a terminal state.

    The client only talks to the provider; it never touches the task registry
    or the result cache. ``run_job`` either returns the parsed payload or
    raises one of :class:`PermanentJobError`, :class:`RetriesExhaustedError`
    or :class:`JobCancelledError`.
    """

    def __init__(self, *, clock: Clock = time.monotonic, sleep: Sleeper = asyncio.sleep) -> None:
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    async def _wait(self, seconds: float, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is None:
            await self._sleep(seconds)
            return
        if cancel_event.is_set():
            raise JobCancelledError("job cancelled")
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        canceller = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, canceller):
                if not pending.done():
                    pending.cancel()
        if cancel_event.is_set():
            raise JobCancelledError("job cancelled")

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelledError("job cancelled")

    @staticmethod
    def _raise_permanent(outcome: PermanentFailure) -> None:
        if outcome.kind == "no_results":
            raise NoResultsError(outcome.reason, status_code=outcome.status_code)
        raise PermanentJobError(outcome.reason, status_code=outcome.status_code, kind=outcome.kind)

    async def _poll(
        self,
        spec: JobSpec,
        adapter: JobAdapter,
        handle: RemoteJobHandle,
        cancel_event: asyncio.Event | None,
    ) -> tuple[bool, Any, str]:
        """Poll ``handle`` until terminal; returns ``(done, payload, stall_reason)``."""

        deadline = self._clock() + spec.max_wait_ms / 1000
        polls = 0
        while self._clock() < deadline:
            self._check_cancelled(cancel_event)
            polls += 1
            try:
                status = await adapter.fetch(handle)
            except ProviderError as exc:
                return False, None, str(exc)

            outcome = classify(status)
            if isinstance(outcome, Success):
                logger.debug("%s task %s resolved after %d poll(s)", spec.family.value, handle.task_id, polls)
                return True, outcome.payload, ""
            if isinstance(outcome, PermanentFailure):
                self._raise_permanent(outcome)
            if isinstance(outcome, LostJob):
                logger.info("%s task %s lost (%s), resubmitting", spec.family.value, handle.task_id, outcome.reason)
                return False, None, f"task {handle.task_id} lost: {outcome.reason}"

            await self._wait(spec.poll_interval_ms / 1000, cancel_event)

        logger.info("%s task %s timed out after %d poll(s)", spec.family.value, handle.task_id, polls)
        return False, None, f"task {handle.task_id} timed out after {spec.max_wait_ms} ms"

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    async def run_job(
        self,
        spec: JobSpec,
        adapter: JobAdapter,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> Any:
        last_error: str | None = None
        for attempt in range(1, spec.max_retries + 1):
            self._check_cancelled(cancel_event)
            if attempt > 1:
                logger.info("Retrying %s job for %s (%d/%d)", spec.family.value, spec.subject_id, attempt, spec.max_retries)

            try:
                handle = await adapter.submit(spec.params)
            except ProviderError as exc:
                last_error = str(exc)
                logger.warning("Submitting %s job failed: %s", spec.family.value, exc)
            else:
                done, payload, last_error = await self._poll(spec, adapter, handle, cancel_event)
                if done:
                    return adapter.parse(payload, spec.params)

            if attempt < spec.max_retries and spec.retry_delay_ms:
                await self._wait(spec.retry_delay_ms / 1000, cancel_event)

        raise RetriesExhaustedError(spec.max_retries, last_error)


__all__ = ["JobAdapter", "JobClient"]
