from __future__ import annotations

import asyncio
from pathlib import Path
import sys
from typing import Any, Callable

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from profile_audit.application import (
    AuditService,
    JobClient,
    ResultCache,
    TaskRegistry,
    configure_audit_service,
)
from profile_audit.core.schema import PostsSummary, QnASummary, RankCheckResult, ReviewAudit, Review
from profile_audit.core.settings import Settings
from profile_audit.domain.jobs import JobFamily, RemoteJobHandle, RemoteStatus
from profile_audit.workers.background import BackgroundRunner


class FakeAdapter:
    """Provider stand-in answering every poll with ``status``.

    ``gate`` holds every poll as pending until it is set, which lets a test
    interleave subject switches with a running job.
    """

    def __init__(
        self,
        family: JobFamily,
        parse: Callable[[Any, Any], Any] | None = None,
        *,
        status: RemoteStatus | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.family = family
        self._parse = parse or DEFAULT_PARSERS[family]
        self.status = status or RemoteStatus(status_code=20000, result={})
        self.gate = gate
        self.submitted: list[dict[str, Any]] = []

    async def submit(self, params: Any) -> RemoteJobHandle:
        self.submitted.append(dict(params))
        return RemoteJobHandle(task_id=f"{self.family.value}-{len(self.submitted)}", family=self.family)

    async def fetch(self, handle: RemoteJobHandle) -> RemoteStatus:
        if self.gate is not None and not self.gate.is_set():
            return RemoteStatus(status_code=40602, status_message="Task In Queue")
        return self.status

    def parse(self, result: Any, params: Any) -> Any:
        return self._parse(result, params)


def parse_reviews(result: Any, params: Any) -> ReviewAudit:
    return ReviewAudit(reviews=[Review(author="kim", rating=5, text="great")], total_reviews=1, place_id=params.get("place_id"))


def parse_rank(result: Any, params: Any) -> RankCheckResult:
    return RankCheckResult(lat=params["lat"], lng=params["lng"], rank=2)


DEFAULT_PARSERS: dict[JobFamily, Callable[[Any, Any], Any]] = {
    JobFamily.REVIEWS: parse_reviews,
    JobFamily.RANK_CHECK: parse_rank,
    JobFamily.SCRAPE: lambda result, params: None,
}


async def yield_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


def build_service(settings: Settings | None = None, **adapters: Any) -> AuditService:
    adapters.setdefault("reviews_adapter", FakeAdapter(JobFamily.REVIEWS, parse_reviews))
    adapters.setdefault("updates_adapter", FakeAdapter(JobFamily.SCRAPE, lambda result, params: PostsSummary(count=4)))
    adapters.setdefault(
        "questions_adapter",
        FakeAdapter(JobFamily.SCRAPE, lambda result, params: QnASummary(total_count=2, answered_count=2)),
    )
    adapters.setdefault("rank_adapter", FakeAdapter(JobFamily.RANK_CHECK, parse_rank))
    return AuditService(
        settings or Settings(),
        cache=ResultCache(),
        registry=TaskRegistry(),
        runner=BackgroundRunner(),
        job_client=JobClient(sleep=yield_sleep),
        **adapters,
    )


@pytest.fixture()
def fake_adapter() -> type[FakeAdapter]:
    return FakeAdapter


@pytest.fixture()
def service_factory():
    created: list[AuditService] = []

    def factory(settings: Settings | None = None, **adapters: Any) -> AuditService:
        service = build_service(settings, **adapters)
        configure_audit_service(service)
        created.append(service)
        return service

    yield factory
    for service in created:
        service.reset()
    configure_audit_service(None)
