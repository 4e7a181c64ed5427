from __future__ import annotations

import asyncio
from pathlib import Path
import sys

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from profile_audit.application.audits import classify_scrape_error
from profile_audit.core.schema import BusinessProfile, Coordinate, GridRequest, Review, ReviewAudit
from profile_audit.core.settings import Settings
from profile_audit.domain.errors import (
    NoResultsError,
    PermanentJobError,
    ProviderError,
    RetriesExhaustedError,
    ValidationError,
)
from profile_audit.domain.jobs import JobFamily, RemoteJobHandle, RemoteStatus, TaskStatus

NO_RESULTS = RemoteStatus(status_code=40102, status_message="No Search Results.")
REJECTED = RemoteStatus(status_code=40501, status_message="Invalid Field")


@pytest.mark.asyncio
async def test_reviews_are_cached_for_the_subject_and_task_completes(service_factory):
    service = service_factory()
    service.switch_subject("biz-1", label="Corner Cafe")

    audit = await service.fetch_reviews("biz-1", place_id="ChIJ-cafe", depth=30)

    assert audit.place_id == "ChIJ-cafe"
    entry = service.get_audit("biz-1")
    assert entry.review_data == audit
    assert entry.review_depth == 30
    assert entry.review_fetched_at is not None
    [task] = service.registry.list_tasks("biz-1")
    assert task.status is TaskStatus.COMPLETED
    assert task.subject_label == "Corner Cafe"


@pytest.mark.asyncio
async def test_results_follow_the_subject_captured_at_start(service_factory, fake_adapter):
    gate = asyncio.Event()
    service = service_factory(reviews_adapter=fake_adapter(JobFamily.REVIEWS, gate=gate))
    service.switch_subject("biz-a")

    task_id = service.start_reviews("biz-a", keyword="corner cafe")
    await asyncio.sleep(0)
    service.switch_subject("biz-b")
    gate.set()
    await service.drain()

    assert service.get_audit("biz-a").review_data is not None
    assert service.get_audit("biz-b").review_data is None
    assert service.registry.get(task_id).status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_job_marks_task_and_leaves_cache_untouched(service_factory, fake_adapter):
    service = service_factory(reviews_adapter=fake_adapter(JobFamily.REVIEWS, status=NO_RESULTS))

    with pytest.raises(NoResultsError):
        await service.fetch_reviews("biz-1", keyword="nothing here")

    assert service.cache.get_entry("biz-1") is None
    [task] = service.registry.list_tasks()
    assert task.status is TaskStatus.FAILED
    assert task.error == "No results found: check the business name and try again"
    assert "40102" not in task.error


@pytest.mark.asyncio
async def test_invalid_input_is_rejected_before_a_task_opens(service_factory):
    service = service_factory()

    with pytest.raises(ValidationError):
        await service.fetch_reviews("biz-1")
    with pytest.raises(ValidationError):
        await service.fetch_scrape("biz-1", "")

    assert service.registry.list_tasks() == []


@pytest.mark.asyncio
async def test_scrape_keeps_defaults_for_the_failed_half(service_factory, fake_adapter):
    service = service_factory(
        questions_adapter=fake_adapter(JobFamily.SCRAPE, lambda result, params: None, status=REJECTED),
    )

    scraped = await service.fetch_scrape("biz-1", "ChIJ-cafe")

    assert scraped.posts.count == 4
    assert scraped.qna.total_count == 0
    assert scraped.has_menu is False
    assert service.get_audit("biz-1").scraped_data == scraped
    assert service.scrape_error("biz-1") is None


@pytest.mark.asyncio
async def test_scrape_failure_is_typed(service_factory, fake_adapter):
    service = service_factory(
        updates_adapter=fake_adapter(JobFamily.SCRAPE, lambda result, params: None, status=NO_RESULTS),
        questions_adapter=fake_adapter(JobFamily.SCRAPE, lambda result, params: None, status=NO_RESULTS),
    )

    with pytest.raises(NoResultsError):
        await service.fetch_scrape("biz-1", "ChIJ-cafe")

    error = service.scrape_error("biz-1")
    assert error.error_type == "NOT_FOUND"
    assert error.params == {"place_id": "ChIJ-cafe"}
    assert service.cache.get_entry("biz-1") is None


@pytest.mark.asyncio
async def test_scrape_uses_place_id_keyword(service_factory, fake_adapter):
    updates = fake_adapter(JobFamily.SCRAPE, lambda result, params: None)
    service = service_factory(updates_adapter=updates)

    await service.fetch_scrape("biz-1", "ChIJ-cafe")

    assert updates.submitted == [{"keyword": "place_id:ChIJ-cafe"}]


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (RetriesExhaustedError(2, "task t1 timed out after 60000 ms"), "TIMEOUT"),
        (RetriesExhaustedError(2, "GET x failed: connection refused"), "NETWORK"),
        (ProviderError("POST x failed"), "NETWORK"),
        (PermanentJobError("Access denied for this account"), "BLOCKED"),
        (PermanentJobError("Browser crashed"), "BROWSER"),
        (PermanentJobError("Invalid Field"), "UNKNOWN"),
    ],
)
def test_scrape_error_classification(error, expected):
    assert classify_scrape_error(error, {"place_id": "x"}).error_type == expected


@pytest.mark.asyncio
async def test_single_rank_check_uses_business_as_target(service_factory, fake_adapter):
    rank = fake_adapter(JobFamily.RANK_CHECK)
    service = service_factory(rank_adapter=rank)
    business = BusinessProfile(place_id="111", name="Corner Cafe", location=Coordinate(lat=37.5, lng=127.0))
    service.set_business("biz-1", business, basic_score=70)

    result = await service.fetch_rank_single("biz-1", keyword="cafe", lat=37.51, lng=127.01, target_place_id="111")

    assert result.rank == 2
    assert rank.submitted[0]["target_name"] == "Corner Cafe"
    assert rank.submitted[0]["target_lat"] == 37.5
    entry = service.get_audit("biz-1")
    assert entry.rank_keyword == "cafe"
    assert entry.basic_score == 70
    assert [point.rank for point in entry.rank_results] == [2]


@pytest.mark.asyncio
async def test_rank_grid_is_cached_with_its_keyword(service_factory):
    service = service_factory()
    request = GridRequest(
        keyword="seoul cafe",
        center_lat=37.5,
        center_lng=127.0,
        target_place_id="111",
        grid_size=5,
        radius_miles=1,
    )

    run = await service.fetch_rank_grid("biz-1", request)

    assert len(run.points) == 25
    assert run.summary.average_rank == 2
    entry = service.get_audit("biz-1")
    assert entry.rank_keyword == "seoul cafe"
    assert len(entry.rank_results) == 25


@pytest.mark.asyncio
async def test_switch_cancels_previous_subject_when_enabled(service_factory, fake_adapter):
    gate = asyncio.Event()
    service = service_factory(
        Settings(cancel_on_switch=True),
        reviews_adapter=fake_adapter(JobFamily.REVIEWS, gate=gate),
    )
    service.switch_subject("biz-a")
    task_id = service.start_reviews("biz-a", keyword="cafe")
    await asyncio.sleep(0)

    service.switch_subject("biz-b")
    await service.drain()

    task = service.registry.get(task_id)
    assert task.status is TaskStatus.FAILED
    assert task.error == "The request was cancelled"
    assert service.cache.get_entry("biz-a") is None


@pytest.mark.asyncio
async def test_switch_keeps_jobs_running_by_default(service_factory, fake_adapter):
    gate = asyncio.Event()
    service = service_factory(reviews_adapter=fake_adapter(JobFamily.REVIEWS, gate=gate))
    service.switch_subject("biz-a")
    service.start_reviews("biz-a", keyword="cafe")
    await asyncio.sleep(0)

    service.switch_subject("biz-b")
    assert service.runner.running("biz-a") == 1
    gate.set()
    await service.drain()

    assert service.runner.running() == 0
    assert service.cache.get_entry("biz-a").review_data is not None


def test_failed_tasks_are_dismissed_when_returning_to_the_subject(service_factory):
    service = service_factory()
    service.switch_subject("biz-1")
    failed = service.registry.start(JobFamily.REVIEWS, "biz-1", "Cafe")
    service.registry.fail(failed, "boom")

    service.switch_subject("biz-2")
    assert service.registry.get(failed) is not None
    service.switch_subject("biz-1")

    assert service.registry.get(failed) is None


def test_reset_subject_clears_finished_tasks(service_factory):
    service = service_factory()
    service.switch_subject("biz-1")
    service.set_business("biz-1", BusinessProfile(place_id="1", name="Cafe"))
    failed = service.registry.start(JobFamily.REVIEWS, "biz-1", "Cafe")
    service.registry.fail(failed, "boom")

    service.reset_subject("biz-1")

    assert service.registry.list_tasks("biz-1") == []
    assert service.cache.live_state().business is None


class SequencedReviews:
    """Answers polls from ``statuses`` in order, repeating the last one."""

    family = JobFamily.REVIEWS

    def __init__(self, *statuses: RemoteStatus) -> None:
        self._statuses = list(statuses)
        self.fetches = 0

    async def submit(self, params):
        return RemoteJobHandle(task_id="reviews-1", family=self.family)

    async def fetch(self, handle):
        self.fetches += 1
        return self._statuses[min(self.fetches, len(self._statuses)) - 1]

    def parse(self, result, params):
        reviews = [Review(author=name, rating=4) for name in result["authors"]]
        return ReviewAudit(reviews=reviews, total_reviews=len(reviews), place_id=params.get("place_id"))


@pytest.mark.asyncio
async def test_ok_answer_without_result_does_not_overwrite_cached_reviews(service_factory):
    adapter = SequencedReviews(
        RemoteStatus(status_code=20000, status_message="Ok.", result=None),
        RemoteStatus(status_code=20000, status_message="Ok.", result={"authors": ["lee", "park"]}),
    )
    service = service_factory(reviews_adapter=adapter)
    service.cache.merge_patch(
        "biz-1", {"review_data": ReviewAudit(reviews=[Review(author="kim", rating=5)], total_reviews=1)}
    )

    audit = await service.fetch_reviews("biz-1", place_id="ChIJ-cafe")

    assert adapter.fetches == 2
    assert [review.author for review in audit.reviews] == ["lee", "park"]
    assert service.get_audit("biz-1").review_data.total_reviews == 2
