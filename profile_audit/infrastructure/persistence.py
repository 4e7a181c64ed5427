"""Persistence side channels for audit results.

Two stores live here. The *audit record store* is the external system of
record that receives merge-patches whenever a job family finishes; it is
written on a best-effort basis through :class:`PersistenceMirror`. The
*snapshot store* keeps the local cache (active subject plus every cached
entry) so that a restarted process shows the last results immediately.
"""
from __future__ import annotations

import asyncio
import json
import os
import tempfile
from copy import deepcopy
from pathlib import Path
from typing import Any, Mapping, Protocol

import httpx
from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from profile_audit.core.logger import logger
from profile_audit.domain.errors import ProviderError

# Local field name -> top-level key understood by the audit record store.
MIRRORED_FIELDS: dict[str, str] = {
    "review_data": "reviewData",
    "rank_results": "teleportResults",
    "rank_keyword": "teleportKeyword",
    "scraped_data": "scrapedData",
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    return value


def to_store_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    """Translate a cache patch into the store's merge-patch document."""

    return {MIRRORED_FIELDS[key]: _jsonable(value) for key, value in patch.items() if key in MIRRORED_FIELDS}


class AuditRecordStore(Protocol):
    """Contract for the external per-subject audit document store."""

    async def merge_patch(self, subject_id: str, document: Mapping[str, Any]) -> None:
        """Insert ``document`` if absent, else shallow-merge it into the record."""

    async def aclose(self) -> None:
        """Release connections held by the store."""


class InMemoryAuditRecordStore:
    """Simple in-memory store for fast iteration and tests."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    async def merge_patch(self, subject_id: str, document: Mapping[str, Any]) -> None:
        existing = self._records.get(subject_id, {})
        self._records = {**self._records, subject_id: {**existing, **deepcopy(dict(document))}}

    def get(self, subject_id: str) -> dict[str, Any] | None:
        record = self._records.get(subject_id)
        return deepcopy(record) if record is not None else None

    async def aclose(self) -> None:
        return None

    def reset(self) -> None:
        self._records = {}


class HttpAuditRecordStore:
    """Forwards merge-patches to the dashboard's audit endpoint."""

    def __init__(self, base_url: str, *, timeout: float = 10.0, http_client: httpx.AsyncClient | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def merge_patch(self, subject_id: str, document: Mapping[str, Any]) -> None:
        url = f"{self._base_url}/api/businesses/{subject_id}/audit"
        try:
            response = await self._client.patch(url, json=dict(document))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProviderError(f"PATCH {url} failed: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class PersistenceMirror:
    """Fire-and-forget writer with its own retry budget.

    A failed write never affects the in-memory cache or the job that produced
    the patch; it is logged and dropped.
    """

    def __init__(
        self,
        store: AuditRecordStore,
        *,
        max_attempts: int = 3,
        initial_delay: float = 0.5,
        max_delay: float = 5.0,
        jitter: float = 0.25,
    ) -> None:
        self._store = store
        self._max_attempts = max(1, max_attempts)
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self._pending: set[asyncio.Task[bool]] = set()

    def submit(self, subject_id: str, patch: Mapping[str, Any]) -> asyncio.Task[bool] | None:
        document = to_store_patch(patch)
        if not document:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, audit patch for %s not mirrored", subject_id)
            return None
        task = loop.create_task(self._write(subject_id, document))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, subject_id: str, document: dict[str, Any]) -> bool:
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential_jitter(initial=self._initial_delay, max=self._max_delay, jitter=self._jitter),
            retry=retry_if_exception_type((ProviderError, OSError, TimeoutError)),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._store.merge_patch(subject_id, document)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to mirror audit patch for %s (%s): %s", subject_id, sorted(document), exc)
            return False
        logger.debug("Mirrored %s for %s", sorted(document), subject_id)
        return True

    async def drain(self) -> None:
        """Wait for every in-flight write; used on shutdown and in tests."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        """Flush in-flight writes, then close the store."""

        await self.drain()
        await self._store.aclose()


class SnapshotStore(Protocol):
    """Local persistence for the client-visible cache snapshot."""

    def load(self) -> dict[str, Any] | None: ...

    def save(self, snapshot: Mapping[str, Any]) -> None: ...


class InMemorySnapshotStore:
    def __init__(self) -> None:
        self._snapshot: dict[str, Any] | None = None
        self.writes = 0

    def load(self) -> dict[str, Any] | None:
        return deepcopy(self._snapshot)

    def save(self, snapshot: Mapping[str, Any]) -> None:
        self._snapshot = deepcopy(dict(snapshot))
        self.writes += 1


class JsonFileSnapshotStore:
    """Stores the snapshot as a JSON document, replaced atomically."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any] | None:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable snapshot %s: %s", self._path, exc)
            return None
        return data if isinstance(data, dict) else None

    def save(self, snapshot: Mapping[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=self._path.name, suffix=".tmp", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(_jsonable(dict(snapshot)), handle, ensure_ascii=False)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


__all__ = [
    "AuditRecordStore",
    "HttpAuditRecordStore",
    "InMemoryAuditRecordStore",
    "InMemorySnapshotStore",
    "JsonFileSnapshotStore",
    "MIRRORED_FIELDS",
    "PersistenceMirror",
    "SnapshotStore",
    "to_store_patch",
]
