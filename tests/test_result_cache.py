from __future__ import annotations

from pathlib import Path
import sys
import threading

sys.path.append(str(Path(__file__).resolve().parents[1]))

import httpx
import pytest

from profile_audit.application.cache import ResultCache
from profile_audit.core.schema import (
    BusinessProfile,
    Coordinate,
    PostsSummary,
    RankCheckResult,
    Review,
    ReviewAudit,
    ScrapedData,
)
from profile_audit.domain.errors import ProviderError
from profile_audit.infrastructure.persistence import (
    HttpAuditRecordStore,
    InMemoryAuditRecordStore,
    InMemorySnapshotStore,
    JsonFileSnapshotStore,
    PersistenceMirror,
)


def _business(name: str = "Corner Cafe") -> BusinessProfile:
    return BusinessProfile(
        place_id="ChIJ-cafe",
        name=name,
        category="Cafe",
        rating=4.4,
        review_count=120,
        location=Coordinate(lat=37.5665, lng=126.978),
    )


def _reviews() -> ReviewAudit:
    return ReviewAudit(reviews=[Review(author="kim", rating=5, text="great")], total_reviews=1)


def _scraped() -> ScrapedData:
    return ScrapedData(posts=PostsSummary(count=3), has_menu=True, scraped_at="2024-05-01T00:00:00+00:00")


def test_switching_to_the_same_subject_is_a_no_op():
    store = InMemorySnapshotStore()
    cache = ResultCache(snapshot_store=store)
    assert cache.switch_subject("biz-1") is True
    cache.merge_patch("biz-1", {"business": _business()})
    writes = store.writes
    entry = cache.get_entry("biz-1")

    assert cache.switch_subject("biz-1") is False

    assert store.writes == writes
    assert cache.get_entry("biz-1") == entry


def test_save_switch_and_back_round_trips_the_live_state():
    cache = ResultCache()
    cache.switch_subject("biz-1")
    cache.merge_patch("biz-1", {"business": _business(), "basic_score": 72, "review_data": _reviews()})
    cache.merge_patch("biz-1", {"rank_keyword": "seoul cafe", "review_depth": 200})
    before = cache.live_state()

    assert cache.save_current() is True
    assert cache.get_entry("biz-1").last_audit_at is not None
    cache.switch_subject("biz-2")
    assert cache.live_state().business is None
    cache.switch_subject("biz-1")

    assert cache.live_state() == before


def test_switching_saves_the_previous_subject_only_when_it_has_data():
    cache = ResultCache()
    cache.switch_subject("empty")
    cache.switch_subject("biz-1")

    assert cache.get_entry("empty") is None
    assert cache.subject_ids() == []


def test_patches_on_disjoint_fields_commute():
    reviews = {"review_data": _reviews(), "review_fetched_at": "2024-05-01T00:00:00+00:00"}
    scraped = {"scraped_data": _scraped()}

    first = ResultCache()
    first.merge_patch("biz-1", reviews)
    first.merge_patch("biz-1", scraped)

    second = ResultCache()
    second.merge_patch("biz-1", scraped)
    second.merge_patch("biz-1", reviews)

    assert first.get_entry("biz-1") == second.get_entry("biz-1")


def test_merge_patch_preserves_untouched_fields():
    cache = ResultCache()
    cache.merge_patch("biz-1", {"business": _business(), "basic_score": 50})
    cache.merge_patch("biz-1", {"rank_results": [RankCheckResult(lat=1, lng=2, rank=3)], "rank_keyword": "cafe"})

    entry = cache.get_entry("biz-1")
    assert entry.business.name == "Corner Cafe"
    assert entry.basic_score == 50
    assert entry.rank_results[0].rank == 3


def test_late_results_land_on_the_subject_they_were_started_for():
    cache = ResultCache()
    cache.switch_subject("biz-a")
    cache.merge_patch("biz-a", {"business": _business("A")})
    # a reviews job for biz-a is still running when the user moves on
    cache.switch_subject("biz-b")
    cache.merge_patch("biz-a", {"review_data": _reviews()})

    assert cache.current_subject_id == "biz-b"
    assert cache.live_state().review_data is None
    assert cache.get_entry("biz-a").review_data == _reviews()
    assert cache.get_entry("biz-b") is None


def test_patch_for_the_active_subject_updates_the_live_state():
    cache = ResultCache()
    cache.switch_subject("biz-1")
    cache.merge_patch("biz-1", {"scraped_data": _scraped()})

    assert cache.live_state().scraped_data.has_menu is True


def test_unknown_fields_are_rejected():
    cache = ResultCache()
    with pytest.raises(ValueError):
        cache.merge_patch("biz-1", {"last_audit_at": "now"})
    with pytest.raises(ValueError):
        cache.merge_patch("biz-1", {"photos": 3})


def test_reset_current_keeps_the_cache_entry():
    cache = ResultCache()
    cache.switch_subject("biz-1")
    cache.merge_patch("biz-1", {"business": _business()})

    cache.reset_current()

    assert cache.live_state().business is None
    assert cache.get_entry("biz-1").business is not None


def test_restore_reloads_the_snapshot(tmp_path):
    store = JsonFileSnapshotStore(tmp_path / "snapshot.json")
    cache = ResultCache(snapshot_store=store)
    cache.switch_subject("biz-1")
    cache.merge_patch("biz-1", {"business": _business(), "review_data": _reviews()})
    cache.switch_subject("biz-2")
    cache.merge_patch("biz-2", {"rank_keyword": "bakery"})

    restored = ResultCache(snapshot_store=JsonFileSnapshotStore(tmp_path / "snapshot.json"))
    assert restored.restore() is True

    assert restored.current_subject_id == "biz-2"
    assert restored.live_state() == cache.live_state()
    assert restored.get_entry("biz-1") == cache.get_entry("biz-1")


def test_restore_without_snapshot_is_a_no_op(tmp_path):
    cache = ResultCache(snapshot_store=JsonFileSnapshotStore(tmp_path / "missing.json"))
    assert cache.restore() is False
    assert cache.current_subject_id is None


def test_restore_ignores_incompatible_snapshot():
    store = InMemorySnapshotStore()
    store.save({"current_subject_id": "biz-1", "entries": {"biz-1": {"basic_score": "high"}}})

    cache = ResultCache(snapshot_store=store)

    assert cache.restore() is False
    assert cache.current_subject_id is None


@pytest.mark.asyncio
async def test_mirror_receives_renamed_keys_and_merges_shallowly():
    store = InMemoryAuditRecordStore()
    mirror = PersistenceMirror(store, initial_delay=0, max_delay=0, jitter=0)
    cache = ResultCache(mirror=mirror)

    cache.merge_patch("biz-1", {"review_data": _reviews(), "basic_score": 10})
    await mirror.drain()
    cache.merge_patch("biz-1", {"rank_results": [RankCheckResult(lat=1, lng=2, rank=7)], "rank_keyword": "cafe"})
    await mirror.drain()

    record = store.get("biz-1")
    assert set(record) == {"reviewData", "teleportResults", "teleportKeyword"}
    assert record["reviewData"]["reviews"][0]["author"] == "kim"
    assert record["teleportResults"][0]["rank"] == 7
    assert record["teleportKeyword"] == "cafe"


class FailingStore:
    def __init__(self) -> None:
        self.attempts = 0

    async def merge_patch(self, subject_id, document):
        self.attempts += 1
        raise ProviderError("store offline")


@pytest.mark.asyncio
async def test_mirror_failures_never_reach_the_cache():
    store = FailingStore()
    mirror = PersistenceMirror(store, max_attempts=2, initial_delay=0, max_delay=0, jitter=0)
    cache = ResultCache(mirror=mirror)

    cache.merge_patch("biz-1", {"scraped_data": _scraped()})
    await mirror.drain()

    assert store.attempts == 2
    assert cache.get_entry("biz-1").scraped_data == _scraped()


class ThreadRecordingStore(InMemorySnapshotStore):
    def __init__(self) -> None:
        super().__init__()
        self.threads: list[int] = []

    def save(self, snapshot):
        self.threads.append(threading.get_ident())
        super().save(snapshot)


@pytest.mark.asyncio
async def test_snapshot_writes_run_off_the_event_loop_in_order():
    store = ThreadRecordingStore()
    cache = ResultCache(snapshot_store=store)

    cache.switch_subject("biz-1")
    for keyword in ("cafe", "bakery", "brunch"):
        cache.merge_patch("biz-1", {"rank_keyword": keyword})
    await cache.flush()

    assert store.writes == 4
    assert threading.get_ident() not in store.threads
    assert store.load()["live"]["rank_keyword"] == "brunch"
    assert store.load()["entries"]["biz-1"]["rank_keyword"] == "brunch"
    await cache.aclose()


@pytest.mark.asyncio
async def test_mirror_close_releases_the_store_client():
    store = HttpAuditRecordStore("http://audit.local")
    mirror = PersistenceMirror(store)

    await mirror.aclose()

    assert store._client.is_closed


@pytest.mark.asyncio
async def test_mirror_close_leaves_an_injected_client_open():
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(204)))
    mirror = PersistenceMirror(HttpAuditRecordStore("http://audit.local", http_client=http_client))

    await mirror.aclose()

    assert not http_client.is_closed
    await http_client.aclose()
