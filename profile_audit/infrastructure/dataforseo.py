"""Integration with the DataForSEO v3 task API.

Every endpoint the dashboard uses follows the same ``task_post`` /
``task_get`` protocol. :class:`DataForSEOClient` speaks that protocol and the
adapter classes below bind it to one job family each, so the generic poll
loop in :mod:`profile_audit.application.job_client` never sees wire details.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Mapping
from urllib.parse import urlparse

import httpx

from profile_audit.core.classifier import STATUS_CREATED, STATUS_OK
from profile_audit.core.geo import haversine_meters
from profile_audit.core.logger import logger
from profile_audit.core.reviews import analyze_reviews, convert_review
from profile_audit.core.schema import (
    Competitor,
    PostsSummary,
    QnASummary,
    QuestionSummary,
    RankCheckResult,
    ReviewAudit,
)
from profile_audit.domain.errors import PermanentJobError, ProviderError
from profile_audit.domain.jobs import JobFamily, RemoteJobHandle, RemoteStatus

TARGET_MATCH_RADIUS_METERS = 500
MAX_COMPETITORS = 10


class DataForSEOClient:
    """Async client for the DataForSEO task endpoints."""

    def __init__(
        self,
        login: str,
        password: str,
        *,
        api_base: str = "https://api.dataforseo.com/v3",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        parsed = urlparse(api_base)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("api_base must include scheme and host")

        self._login = login
        self._password = password
        self._api_base = api_base.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _auth(self) -> httpx.BasicAuth:
        if not (self._login and self._password):
            raise PermanentJobError("DataForSEO credentials are not configured", kind="rejected")
        return httpx.BasicAuth(self._login, self._password)

    def _url(self, path: str) -> str:
        return f"{self._api_base}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, self._url(path), auth=self._auth(), **kwargs)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise ProviderError(f"{method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderError(f"{method} {path} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderError(f"{method} {path} returned an unexpected body")
        return payload

    @staticmethod
    def _first_task(payload: dict[str, Any]) -> dict[str, Any]:
        tasks = payload.get("tasks") or []
        if not tasks or not isinstance(tasks[0], dict):
            return {}
        return tasks[0]

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    async def post_task(self, endpoint: str, task: Mapping[str, Any]) -> str:
        """Submit a single task and return the provider-issued task id."""

        payload = await self._request("POST", f"{endpoint}/task_post", json=[dict(task)])
        if payload.get("status_code") != STATUS_OK:
            raise PermanentJobError(
                str(payload.get("status_message") or "task_post rejected"),
                status_code=payload.get("status_code"),
            )

        first = self._first_task(payload)
        task_status = first.get("status_code")
        if task_status and task_status not in (STATUS_OK, STATUS_CREATED):
            logger.error("Task creation error on %s: %s - %s", endpoint, task_status, first.get("status_message"))
            raise PermanentJobError(
                str(first.get("status_message") or "task creation failed"),
                status_code=task_status,
            )

        task_id = first.get("id")
        if not task_id:
            raise ProviderError(f"{endpoint}/task_post returned no task id")
        logger.debug("Created %s task %s", endpoint, task_id)
        return str(task_id)

    async def get_task(self, path: str, task_id: str) -> RemoteStatus:
        """Fetch the current state of a task as an unclassified status."""

        payload = await self._request("GET", f"{path}/{task_id}")
        if payload.get("status_code") != STATUS_OK:
            return RemoteStatus(
                status_code=int(payload.get("status_code") or 0),
                status_message=str(payload.get("status_message") or ""),
            )

        first = self._first_task(payload)
        results = first.get("result") or []
        return RemoteStatus(
            status_code=int(first.get("status_code") or 0),
            status_message=str(first.get("status_message") or ""),
            result=results[0] if results else None,
        )

    async def post_live(self, endpoint: str, task: Mapping[str, Any]) -> dict[str, Any] | None:
        """Call a synchronous ``live`` endpoint and return its first result."""

        payload = await self._request("POST", f"{endpoint}/live", json=[dict(task)])
        if payload.get("status_code") != STATUS_OK:
            raise ProviderError(str(payload.get("status_message") or "live request rejected"))
        first = self._first_task(payload)
        if first.get("status_code") != STATUS_OK:
            raise ProviderError(str(first.get("status_message") or "live task failed"))
        results = first.get("result") or []
        return results[0] if results else None

    async def aclose(self) -> None:  # pragma: no cover - best effort cleanup
        if self._owns_client:
            await self._client.aclose()


class _TaskAdapter:
    """Binds one ``task_post``/``task_get`` endpoint to a job family."""

    family: JobFamily
    endpoint: str
    get_path: str = "task_get"

    def __init__(self, client: DataForSEOClient, *, location_name: str = "South Korea", language_code: str = "ko") -> None:
        self._client = client
        self._location_name = location_name
        self._language_code = language_code

    def build_task(self, params: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    async def submit(self, params: Mapping[str, Any]) -> RemoteJobHandle:
        task_id = await self._client.post_task(self.endpoint, self.build_task(params))
        return RemoteJobHandle(task_id=task_id, family=self.family)

    async def fetch(self, handle: RemoteJobHandle) -> RemoteStatus:
        return await self._client.get_task(f"{self.endpoint}/{self.get_path}", handle.task_id)

    def _locale(self) -> dict[str, Any]:
        locale: dict[str, Any] = {"location_name": self._location_name}
        if self._language_code:
            locale["language_code"] = self._language_code
        return locale


class ReviewsJobAdapter(_TaskAdapter):
    family = JobFamily.REVIEWS
    endpoint = "business_data/google/reviews"

    def build_task(self, params: Mapping[str, Any]) -> dict[str, Any]:
        place_id = params.get("place_id")
        keyword = params.get("keyword")
        if not place_id and not keyword:
            raise PermanentJobError("place_id or keyword is required")
        task: dict[str, Any] = {"place_id": place_id} if place_id else {"keyword": keyword}
        task.update(self._locale())
        task["depth"] = int(params.get("depth") or 100)
        task["sort_by"] = params.get("sort_by") or "newest"
        return task

    def parse(self, result: Any, params: Mapping[str, Any]) -> ReviewAudit:
        result = result or {}
        reviews = [convert_review(item) for item in result.get("items") or [] if isinstance(item, dict)]
        return ReviewAudit(
            reviews=reviews,
            analysis=analyze_reviews(reviews),
            total_reviews=result.get("reviews_count"),
            place_id=result.get("place_id"),
        )


class BusinessUpdatesJobAdapter(_TaskAdapter):
    family = JobFamily.SCRAPE
    endpoint = "business_data/google/my_business_updates"

    def build_task(self, params: Mapping[str, Any]) -> dict[str, Any]:
        return {"keyword": params["keyword"], **self._locale(), "depth": int(params.get("depth") or 10)}

    def parse(self, result: Any, params: Mapping[str, Any]) -> PostsSummary:
        result = result or {}
        items = [item for item in result.get("items") or [] if isinstance(item, dict)]
        summary = PostsSummary(count=int(result.get("items_count") or len(items)))
        if items:
            latest = items[0]
            summary.last_post_date = _post_date(latest)
            text = latest.get("post_text")
            summary.last_post_text = str(text)[:100] if text else None
        return summary


class QuestionsJobAdapter(_TaskAdapter):
    family = JobFamily.SCRAPE
    endpoint = "business_data/google/questions_and_answers"

    def build_task(self, params: Mapping[str, Any]) -> dict[str, Any]:
        return {"keyword": params["keyword"], **self._locale(), "depth": int(params.get("depth") or 20)}

    def parse(self, result: Any, params: Mapping[str, Any]) -> QnASummary:
        result = result or {}
        answered = [item for item in result.get("items") or [] if isinstance(item, dict)]
        unanswered = [item for item in result.get("items_without_answers") or [] if isinstance(item, dict)]
        recent = [
            QuestionSummary(
                question=str(item.get("question_text") or item.get("original_question_text") or ""),
                has_answer=bool(item.get("items")),
                date=_iso_date(item.get("timestamp")),
            )
            for item in (answered + unanswered)[:5]
        ]
        return QnASummary(
            total_count=len(answered) + len(unanswered),
            answered_count=len(answered),
            unanswered_count=len(unanswered),
            recent_questions=recent,
        )


class RankCheckJobAdapter(_TaskAdapter):
    family = JobFamily.RANK_CHECK
    endpoint = "serp/google/organic"
    get_path = "task_get/advanced"

    def build_task(self, params: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "keyword": params["keyword"],
            **self._locale(),
            "location_coordinate": f"{params['lat']},{params['lng']},1000",
            "device": "desktop",
            "os": "windows",
        }

    def parse(self, result: Any, params: Mapping[str, Any]) -> RankCheckResult:
        items = (result or {}).get("items") or []
        local_pack = [item for item in items if isinstance(item, dict) and item.get("type") == "local_pack"]

        competitors = [
            Competitor(
                rank=index + 1,
                name=str(item.get("title") or ""),
                place_id=str(item.get("cid") or ""),
                rating=float((item.get("rating") or {}).get("value") or 0),
            )
            for index, item in enumerate(local_pack[:MAX_COMPETITORS])
        ]

        rank = find_target_rank(
            local_pack,
            target_place_id=str(params.get("target_place_id") or ""),
            target_name=params.get("target_name"),
            target_lat=params.get("target_lat"),
            target_lng=params.get("target_lng"),
        )
        return RankCheckResult(lat=float(params["lat"]), lng=float(params["lng"]), rank=rank, competitors=competitors)


def normalize_business_name(name: str) -> str:
    cleaned = re.sub(r"[^\w\s]", "", name.lower())
    return re.sub(r"\s+", " ", cleaned).strip()


def find_target_rank(
    local_pack: list[dict[str, Any]],
    *,
    target_place_id: str,
    target_name: str | None = None,
    target_lat: float | None = None,
    target_lng: float | None = None,
) -> int | None:
    """Return the 1-based position of the target business in a local pack."""

    for index, item in enumerate(local_pack):
        if target_place_id and item.get("cid") == target_place_id:
            return index + 1

    if not target_name:
        return None

    wanted = normalize_business_name(target_name)
    if not wanted:
        return None
    for index, item in enumerate(local_pack):
        candidate = normalize_business_name(str(item.get("title") or ""))
        if not candidate or (wanted not in candidate and candidate not in wanted):
            continue
        lat, lng = item.get("latitude"), item.get("longitude")
        if None not in (target_lat, target_lng, lat, lng):
            if haversine_meters(target_lat, target_lng, lat, lng) > TARGET_MATCH_RADIUS_METERS:
                continue
        return index + 1
    return None


def _iso_date(value: Any) -> str | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace(" +00:00", "+00:00")).date().isoformat()
    except ValueError:
        return None


def _post_date(item: dict[str, Any]) -> str | None:
    if item.get("timestamp"):
        return _iso_date(item["timestamp"])
    raw = item.get("post_date")
    if not raw:
        return None
    parts = str(raw).split(" ")[0].split("/")
    if len(parts) == 3:
        month, day, year = parts
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"
    return None


def detect_menu(business_info: Mapping[str, Any] | None) -> bool:
    links = (business_info or {}).get("local_business_links") or []
    for link in links:
        if not isinstance(link, dict):
            continue
        kind = str(link.get("type") or "").lower()
        title = str(link.get("title") or "")
        if "menu" in kind or "menu" in title.lower() or "메뉴" in title:
            return True
    return False


__all__ = [
    "BusinessUpdatesJobAdapter",
    "DataForSEOClient",
    "QuestionsJobAdapter",
    "RankCheckJobAdapter",
    "ReviewsJobAdapter",
    "detect_menu",
    "find_target_rank",
]
