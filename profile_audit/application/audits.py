"""Application service coordinating audit jobs, task bookkeeping and the cache."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from profile_audit.application.cache import ResultCache
from profile_audit.application.grid import GridRun, GridSampler, GridTarget
from profile_audit.application.job_client import JobAdapter, JobClient
from profile_audit.application.tasks import TaskRegistry
from profile_audit.core.logger import logger
from profile_audit.core.schema import (
    AuditWorkingState,
    BusinessProfile,
    CachedAudit,
    Coordinate,
    GridRequest,
    PostsSummary,
    QnASummary,
    RankCheckResult,
    ReviewAudit,
    ScrapedData,
    ScrapeError,
)
from profile_audit.core.settings import JobProfile, Settings, get_settings
from profile_audit.domain.errors import (
    JobCancelledError,
    JobError,
    NoResultsError,
    PermanentJobError,
    ProviderError,
    RetriesExhaustedError,
    ValidationError,
)
from profile_audit.domain.jobs import JobFamily, JobSpec
from profile_audit.infrastructure.dataforseo import (
    BusinessUpdatesJobAdapter,
    DataForSEOClient,
    QuestionsJobAdapter,
    RankCheckJobAdapter,
    ReviewsJobAdapter,
    detect_menu,
)
from profile_audit.infrastructure.persistence import (
    HttpAuditRecordStore,
    InMemoryAuditRecordStore,
    JsonFileSnapshotStore,
    PersistenceMirror,
)
from profile_audit.workers.background import BackgroundRunner

T = TypeVar("T")

BUSINESS_INFO_ENDPOINT = "business_data/google/my_business_info"
DEFAULT_REVIEW_DEPTH = 100


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def classify_scrape_error(exc: BaseException, params: Mapping[str, str]) -> ScrapeError:
    """Describe a failed scrape with a coarse error type for the dashboard."""

    message = str(exc)
    lowered = message.lower()
    if isinstance(exc, NoResultsError):
        error_type, detail = "NOT_FOUND", exc.user_message
    elif "timed out" in lowered or "timeout" in lowered:
        error_type, detail = "TIMEOUT", "The scrape took too long to finish"
    elif isinstance(exc, ProviderError) or (isinstance(exc, RetriesExhaustedError) and "failed" in lowered):
        error_type, detail = "NETWORK", "The provider could not be reached"
    elif "blocked" in lowered or "denied" in lowered:
        error_type, detail = "BLOCKED", "The request was blocked by the provider"
    elif "browser" in lowered or "chromium" in lowered:
        error_type, detail = "BROWSER", "The scraping browser failed to start"
    else:
        error_type = "UNKNOWN"
        detail = exc.user_message if isinstance(exc, JobError) else "The scrape failed"
    return ScrapeError(
        error=f"{detail} ({message})",
        error_type=error_type,
        original_error=message,
        params=dict(params),
        timestamp=_utc_now(),
    )


class AuditService:
    """Runs audit jobs for subjects and keeps their results.

    Each ``fetch_*`` coroutine pins the subject id it was called with, opens
    a registry entry, runs the remote job and merge-patches only its own
    slice of that subject's cache entry. The ``start_*`` variants do the same
    work in the background and return the registry task id immediately.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        cache: ResultCache,
        registry: TaskRegistry,
        runner: BackgroundRunner,
        job_client: JobClient | None = None,
        client: DataForSEOClient | None = None,
        reviews_adapter: JobAdapter | None = None,
        updates_adapter: JobAdapter | None = None,
        questions_adapter: JobAdapter | None = None,
        rank_adapter: JobAdapter | None = None,
        mirror: PersistenceMirror | None = None,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self._registry = registry
        self._runner = runner
        self._job_client = job_client or JobClient()
        self._client = client
        self._mirror = mirror

        locale = {"location_name": settings.location_name, "language_code": settings.language_code}
        if client is not None:
            reviews_adapter = reviews_adapter or ReviewsJobAdapter(client, **locale)
            updates_adapter = updates_adapter or BusinessUpdatesJobAdapter(client, **locale)
            questions_adapter = questions_adapter or QuestionsJobAdapter(client, **locale)
            rank_adapter = rank_adapter or RankCheckJobAdapter(client, **locale)
        self._reviews_adapter = reviews_adapter
        self._updates_adapter = updates_adapter
        self._questions_adapter = questions_adapter
        self._rank_adapter = rank_adapter

        self._labels: dict[str, str] = {}
        self._scrape_errors: dict[str, ScrapeError] = {}

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------
    @property
    def cache(self) -> ResultCache:
        return self._cache

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def runner(self) -> BackgroundRunner:
        return self._runner

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _require(adapter: JobAdapter | None, family: str) -> JobAdapter:
        if adapter is None:
            raise PermanentJobError(f"no provider configured for {family} jobs", kind="rejected")
        return adapter

    def _label(self, subject_id: str) -> str:
        return self._labels.get(subject_id, subject_id)

    def _spec(self, family: JobFamily, subject_id: str, params: Mapping[str, Any], profile: JobProfile) -> JobSpec:
        return JobSpec(
            family=family,
            subject_id=subject_id,
            params=params,
            max_wait_ms=profile.max_wait_ms,
            poll_interval_ms=profile.poll_interval_ms,
            max_retries=profile.max_retries,
            retry_delay_ms=profile.retry_delay_ms,
        )

    async def _track(self, task_id: str, work: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await work()
        except JobError as exc:
            self._registry.fail(task_id, exc.user_message)
            raise
        except asyncio.CancelledError:
            self._registry.fail(task_id, JobCancelledError.user_message)
            raise
        except Exception:
            self._registry.fail(task_id, JobError.user_message)
            raise
        self._registry.complete(task_id)
        return result

    async def _run_tracked(
        self,
        family: JobFamily,
        subject_id: str,
        work: Callable[[asyncio.Event | None], Awaitable[T]],
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        task_id = self._registry.start(family, subject_id, self._label(subject_id))
        return await self._track(task_id, lambda: work(cancel_event))

    def _spawn_tracked(
        self,
        family: JobFamily,
        subject_id: str,
        work: Callable[[asyncio.Event | None], Awaitable[Any]],
    ) -> str:
        task_id = self._registry.start(family, subject_id, self._label(subject_id))

        async def _background(cancel_event: asyncio.Event) -> None:
            try:
                await self._track(task_id, lambda: work(cancel_event))
            except JobError as exc:
                logger.debug("Background task %s ended with %s", task_id, type(exc).__name__, exc_info=exc)

        self._runner.spawn(subject_id, _background, name=task_id)
        return task_id

    # ------------------------------------------------------------------
    # subject context
    # ------------------------------------------------------------------
    def switch_subject(self, subject_id: str, *, label: str | None = None) -> AuditWorkingState:
        if label:
            self._labels[subject_id] = label
        previous = self._cache.current_subject_id
        switched = self._cache.switch_subject(subject_id)
        if switched:
            # failed tasks of a subject are dismissed when the user comes back to it
            self._registry.clear_subject(subject_id)
            if previous is not None and self._settings.cancel_on_switch:
                self._runner.cancel_subject(previous)
        return self._cache.live_state()

    def reset_subject(self, subject_id: str) -> None:
        """Clear the active working state and finished tasks of ``subject_id``."""

        if subject_id == self._cache.current_subject_id:
            self._cache.reset_current()
        self._registry.clear_subject(subject_id)
        self._scrape_errors.pop(subject_id, None)

    def set_business(self, subject_id: str, business: BusinessProfile, *, basic_score: int = 0) -> CachedAudit:
        self._labels[subject_id] = business.name
        return self._cache.merge_patch(subject_id, {"business": business, "basic_score": basic_score})

    def get_audit(self, subject_id: str) -> CachedAudit | None:
        entry = self._cache.get_entry(subject_id)
        if subject_id != self._cache.current_subject_id:
            return entry
        live = self._cache.live_state()
        return CachedAudit.model_validate(
            {**live.model_dump(), "last_audit_at": entry.last_audit_at if entry else None}
        )

    def scrape_error(self, subject_id: str) -> ScrapeError | None:
        return self._scrape_errors.get(subject_id)

    # ------------------------------------------------------------------
    # reviews
    # ------------------------------------------------------------------
    def _review_params(self, keyword: str | None, place_id: str | None, depth: int | None) -> dict[str, Any]:
        if not (keyword or place_id):
            raise ValidationError("keyword or place_id is required")
        depth = depth or DEFAULT_REVIEW_DEPTH
        if depth < 1:
            raise ValidationError("depth must be positive")
        return {"keyword": keyword, "place_id": place_id, "depth": depth, "sort_by": "newest"}

    def _reviews_work(self, subject_id: str, params: dict[str, Any]) -> Callable[[asyncio.Event | None], Awaitable[ReviewAudit]]:
        adapter = self._require(self._reviews_adapter, "reviews")
        spec = self._spec(JobFamily.REVIEWS, subject_id, params, self._settings.profile_for("reviews"))

        async def work(cancel_event: asyncio.Event | None) -> ReviewAudit:
            audit: ReviewAudit = await self._job_client.run_job(spec, adapter, cancel_event=cancel_event)
            self._cache.merge_patch(
                subject_id,
                {"review_data": audit, "review_fetched_at": _utc_now(), "review_depth": params["depth"]},
            )
            logger.info("Collected %d review(s) for %s", len(audit.reviews), self._label(subject_id))
            return audit

        return work

    async def fetch_reviews(
        self,
        subject_id: str,
        *,
        keyword: str | None = None,
        place_id: str | None = None,
        depth: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ReviewAudit:
        work = self._reviews_work(subject_id, self._review_params(keyword, place_id, depth))
        return await self._run_tracked(JobFamily.REVIEWS, subject_id, work, cancel_event)

    def start_reviews(
        self,
        subject_id: str,
        *,
        keyword: str | None = None,
        place_id: str | None = None,
        depth: int | None = None,
    ) -> str:
        work = self._reviews_work(subject_id, self._review_params(keyword, place_id, depth))
        return self._spawn_tracked(JobFamily.REVIEWS, subject_id, work)

    # ------------------------------------------------------------------
    # scrape
    # ------------------------------------------------------------------
    async def _detect_menu(self, keyword: str) -> bool:
        if self._client is None:
            return False
        task = {"keyword": keyword, "location_name": self._settings.location_name}
        if self._settings.language_code:
            task["language_code"] = self._settings.language_code
        try:
            info = await self._client.post_live(BUSINESS_INFO_ENDPOINT, task)
        except (ProviderError, PermanentJobError) as exc:
            logger.info("Menu detection skipped for %s: %s", keyword, exc)
            return False
        return detect_menu(info)

    def _scrape_work(self, subject_id: str, place_id: str) -> Callable[[asyncio.Event | None], Awaitable[ScrapedData]]:
        if not place_id:
            raise ValidationError("place_id is required")
        updates = self._require(self._updates_adapter, "scrape")
        questions = self._require(self._questions_adapter, "scrape")
        profile = self._settings.profile_for("scrape")
        params = {"keyword": f"place_id:{place_id}"}

        async def work(cancel_event: asyncio.Event | None) -> ScrapedData:
            posts, qna, has_menu = await asyncio.gather(
                self._job_client.run_job(
                    self._spec(JobFamily.SCRAPE, subject_id, params, profile), updates, cancel_event=cancel_event
                ),
                self._job_client.run_job(
                    self._spec(JobFamily.SCRAPE, subject_id, params, profile), questions, cancel_event=cancel_event
                ),
                self._detect_menu(params["keyword"]),
                return_exceptions=True,
            )
            for outcome in (posts, qna, has_menu):
                if isinstance(outcome, BaseException) and not isinstance(outcome, JobError):
                    raise outcome
                if isinstance(outcome, JobCancelledError):
                    raise outcome

            if isinstance(posts, JobError) and isinstance(qna, JobError):
                error = classify_scrape_error(posts, {"place_id": place_id})
                self._scrape_errors[subject_id] = error
                logger.warning("Scrape failed for %s [%s]: %s", self._label(subject_id), error.error_type, error.original_error)
                raise posts

            for part, outcome in (("business updates", posts), ("Q&A", qna)):
                if isinstance(outcome, JobError):
                    logger.info("Scrape of %s for %s left empty: %s", part, self._label(subject_id), outcome)

            scraped = ScrapedData(
                posts=posts if isinstance(posts, PostsSummary) else PostsSummary(),
                qna=qna if isinstance(qna, QnASummary) else QnASummary(),
                has_menu=bool(has_menu),
                scraped_at=_utc_now(),
            )
            self._scrape_errors.pop(subject_id, None)
            self._cache.merge_patch(subject_id, {"scraped_data": scraped})
            return scraped

        return work

    async def fetch_scrape(
        self,
        subject_id: str,
        place_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ScrapedData:
        return await self._run_tracked(JobFamily.SCRAPE, subject_id, self._scrape_work(subject_id, place_id), cancel_event)

    def start_scrape(self, subject_id: str, place_id: str) -> str:
        return self._spawn_tracked(JobFamily.SCRAPE, subject_id, self._scrape_work(subject_id, place_id))

    # ------------------------------------------------------------------
    # rank checks
    # ------------------------------------------------------------------
    def _sampler(self) -> GridSampler:
        return GridSampler(
            self._job_client,
            self._require(self._rank_adapter, "rank_check"),
            profile=self._settings.profile_for("rank_check"),
            concurrency=self._settings.grid_concurrency,
        )

    def _target(self, subject_id: str, target_place_id: str, business_name: str | None) -> GridTarget:
        entry = self.get_audit(subject_id)
        business = entry.business if entry else None
        location = business.location if business else None
        return GridTarget(
            place_id=target_place_id,
            name=business_name or (business.name if business else None),
            lat=location.lat if location else None,
            lng=location.lng if location else None,
        )

    def _rank_single_work(
        self,
        subject_id: str,
        keyword: str,
        point: Coordinate,
        target: GridTarget,
    ) -> Callable[[asyncio.Event | None], Awaitable[RankCheckResult]]:
        if not keyword.strip():
            raise ValidationError("keyword is required")
        sampler = self._sampler()

        async def work(cancel_event: asyncio.Event | None) -> RankCheckResult:
            result = await sampler.check_point(point, keyword, subject_id, target, cancel_event=cancel_event)
            self._cache.merge_patch(subject_id, {"rank_results": [result], "rank_keyword": keyword})
            return result

        return work

    async def fetch_rank_single(
        self,
        subject_id: str,
        *,
        keyword: str,
        lat: float,
        lng: float,
        target_place_id: str,
        business_name: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RankCheckResult:
        work = self._rank_single_work(
            subject_id, keyword, Coordinate(lat=lat, lng=lng), self._target(subject_id, target_place_id, business_name)
        )
        return await self._run_tracked(JobFamily.RANK_CHECK, subject_id, work, cancel_event)

    def start_rank_single(
        self,
        subject_id: str,
        *,
        keyword: str,
        lat: float,
        lng: float,
        target_place_id: str,
        business_name: str | None = None,
    ) -> str:
        work = self._rank_single_work(
            subject_id, keyword, Coordinate(lat=lat, lng=lng), self._target(subject_id, target_place_id, business_name)
        )
        return self._spawn_tracked(JobFamily.RANK_CHECK, subject_id, work)

    def _rank_grid_work(self, subject_id: str, request: GridRequest) -> Callable[[asyncio.Event | None], Awaitable[GridRun]]:
        sampler = self._sampler()
        target = self._target(subject_id, request.target_place_id, request.business_name)
        center = Coordinate(lat=request.center_lat, lng=request.center_lng)

        async def work(cancel_event: asyncio.Event | None) -> GridRun:
            run = await sampler.run_grid(
                center,
                request.radius_miles,
                request.grid_size,
                request.keyword,
                subject_id,
                target,
                cancel_event=cancel_event,
            )
            self._cache.merge_patch(subject_id, {"rank_results": run.points, "rank_keyword": request.keyword})
            return run

        return work

    async def fetch_rank_grid(
        self,
        subject_id: str,
        request: GridRequest,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> GridRun:
        return await self._run_tracked(
            JobFamily.RANK_CHECK, subject_id, self._rank_grid_work(subject_id, request), cancel_event
        )

    def start_rank_grid(self, subject_id: str, request: GridRequest) -> str:
        return self._spawn_tracked(JobFamily.RANK_CHECK, subject_id, self._rank_grid_work(subject_id, request))

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def drain(self) -> None:
        await self._runner.drain()
        await self._cache.flush()
        if self._mirror is not None:
            await self._mirror.drain()

    async def shutdown(self) -> None:
        """Stop background jobs, flush pending mirror writes and close clients."""

        self._runner.reset()
        await self._cache.aclose()
        if self._mirror is not None:
            await self._mirror.aclose()
        if self._client is not None:
            await self._client.aclose()

    def reset(self) -> None:
        self._runner.reset()
        self._registry.reset()
        self._cache.reset()
        self._labels.clear()
        self._scrape_errors.clear()


def build_audit_service(settings: Settings | None = None) -> AuditService:
    """Wire an :class:`AuditService` from environment settings."""

    settings = settings or get_settings()
    store = HttpAuditRecordStore(settings.audit_store_url) if settings.audit_store_url else InMemoryAuditRecordStore()
    mirror = PersistenceMirror(store)
    client = DataForSEOClient(
        settings.dataforseo_login,
        settings.dataforseo_password,
        api_base=settings.dataforseo_api_base,
        timeout=settings.provider_timeout,
    )
    if not settings.has_provider_credentials:
        logger.warning("DATAFORSEO_LOGIN/DATAFORSEO_PASSWORD not set; provider jobs will be rejected")
    return AuditService(
        settings,
        cache=ResultCache(snapshot_store=JsonFileSnapshotStore(settings.snapshot_path), mirror=mirror),
        registry=TaskRegistry(prune_delay=settings.task_prune_delay_seconds),
        runner=BackgroundRunner(),
        client=client,
        mirror=mirror,
    )


_service: AuditService | None = None


def get_audit_service() -> AuditService:
    """Return the singleton audit service for the process."""

    global _service
    if _service is None:
        _service = build_audit_service()
    return _service


def configure_audit_service(service: AuditService | None) -> None:
    """Replace the process-wide service (used by tests and scripts)."""

    global _service
    _service = service


def reset_audit_state() -> None:
    """Reset the in-memory state of the current service (used in tests)."""

    if _service is not None:
        _service.reset()


__all__ = [
    "AuditService",
    "build_audit_service",
    "classify_scrape_error",
    "configure_audit_service",
    "get_audit_service",
    "reset_audit_state",
]
