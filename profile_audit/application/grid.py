"""Fan-out of rank-check jobs over a geospatial grid."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from profile_audit.application.job_client import JobAdapter, JobClient
from profile_audit.core.geo import build_grid
from profile_audit.core.logger import logger
from profile_audit.core.schema import Coordinate, GridSummary, RankCheckResult
from profile_audit.core.settings import JobProfile
from profile_audit.domain.errors import JobCancelledError, JobError
from profile_audit.domain.jobs import JobFamily, JobSpec


@dataclass(slots=True)
class GridTarget:
    """Business whose position is being measured at every grid point."""

    place_id: str
    name: str | None = None
    lat: float | None = None
    lng: float | None = None


@dataclass(slots=True)
class GridRun:
    points: list[RankCheckResult]
    summary: GridSummary


def summarize_grid(points: list[RankCheckResult]) -> GridSummary:
    """Aggregate ranks; unranked points count towards ``total_points`` only."""

    ranks = [point.rank for point in points if point.rank is not None]
    if not ranks:
        return GridSummary(total_points=len(points))
    return GridSummary(
        average_rank=round(sum(ranks) / len(ranks), 2),
        best_rank=min(ranks),
        worst_rank=max(ranks),
        ranked_points=len(ranks),
        total_points=len(points),
    )


class GridSampler:
    """Runs one rank-check job per grid point with bounded parallelism."""

    def __init__(
        self,
        job_client: JobClient,
        adapter: JobAdapter,
        *,
        profile: JobProfile,
        concurrency: int = 8,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._job_client = job_client
        self._adapter = adapter
        self._profile = profile
        self._concurrency = concurrency

    def _spec(self, subject_id: str, params: dict[str, Any]) -> JobSpec:
        return JobSpec(
            family=JobFamily.RANK_CHECK,
            subject_id=subject_id,
            params=params,
            max_wait_ms=self._profile.max_wait_ms,
            poll_interval_ms=self._profile.poll_interval_ms,
            max_retries=self._profile.max_retries,
            retry_delay_ms=self._profile.retry_delay_ms,
        )

    async def check_point(
        self,
        point: Coordinate,
        keyword: str,
        subject_id: str,
        target: GridTarget,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> RankCheckResult:
        """Rank check at a single coordinate; job errors propagate."""

        params = {
            "keyword": keyword,
            "lat": point.lat,
            "lng": point.lng,
            "target_place_id": target.place_id,
            "target_name": target.name,
            "target_lat": target.lat,
            "target_lng": target.lng,
        }
        return await self._job_client.run_job(self._spec(subject_id, params), self._adapter, cancel_event=cancel_event)

    async def run_grid(
        self,
        center: Coordinate,
        radius_miles: float,
        grid_size: int,
        keyword: str,
        subject_id: str,
        target: GridTarget,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> GridRun:
        points = build_grid(center, radius_miles, grid_size)
        semaphore = asyncio.Semaphore(self._concurrency)
        logger.info(
            "Rank grid for %s: %d point(s), radius %.2f mi, keyword %r",
            subject_id,
            len(points),
            radius_miles,
            keyword,
        )

        async def _one(point: Coordinate) -> RankCheckResult:
            async with semaphore:
                try:
                    return await self.check_point(point, keyword, subject_id, target, cancel_event=cancel_event)
                except JobCancelledError:
                    raise
                except JobError as exc:
                    logger.info("Rank check at %.5f,%.5f failed: %s", point.lat, point.lng, exc)
                except Exception:
                    logger.warning("Rank check at %.5f,%.5f crashed", point.lat, point.lng, exc_info=True)
                return RankCheckResult(lat=point.lat, lng=point.lng, rank=None)

        tasks = [asyncio.ensure_future(_one(point)) for point in points]
        try:
            results = list(await asyncio.gather(*tasks))
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        summary = summarize_grid(results)
        logger.info(
            "Rank grid for %s done: %d/%d ranked, average %s",
            subject_id,
            summary.ranked_points,
            summary.total_points,
            summary.average_rank,
        )
        return GridRun(points=results, summary=summary)


__all__ = ["GridRun", "GridSampler", "GridTarget", "summarize_grid"]
