"""Per-subject result cache with an explicitly switched active subject."""
from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from profile_audit.core.logger import logger
from profile_audit.core.schema import AuditWorkingState, CachedAudit
from profile_audit.infrastructure.persistence import PersistenceMirror, SnapshotStore

PATCHABLE_FIELDS = frozenset(AuditWorkingState.model_fields)
_EMPTY_STATE = AuditWorkingState().model_dump(exclude={"review_depth"})


def _is_empty(state: AuditWorkingState) -> bool:
    return state.model_dump(exclude={"review_depth"}) == _EMPTY_STATE


class ResultCache:
    """Holds the latest materialised result of every job family per subject.

    Exactly one subject is *active*; its working state is what the dashboard
    shows. Background jobs never write "into whatever is active": they call
    :meth:`merge_patch` with the subject id captured when they started, and
    the live state only follows along when that subject is still active.
    """

    def __init__(
        self,
        *,
        snapshot_store: SnapshotStore | None = None,
        mirror: PersistenceMirror | None = None,
    ) -> None:
        self._snapshot_store = snapshot_store
        self._mirror = mirror
        self._entries: dict[str, CachedAudit] = {}
        self._current_id: str | None = None
        self._live = AuditWorkingState()
        self._lock = threading.RLock()
        self._writer: ThreadPoolExecutor | None = None
        self._pending_writes: set[asyncio.Future[None]] = set()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _persist(self) -> None:
        """Write the snapshot; inside an event loop the write runs on a single writer thread."""

        if self._snapshot_store is None:
            return
        snapshot = {
            "current_subject_id": self._current_id,
            "live": self._live.model_dump(mode="json"),
            "entries": {key: entry.model_dump(mode="json") for key, entry in self._entries.items()},
        }
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_snapshot(snapshot)
            return
        if self._writer is None:
            self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-snapshot")
        future = loop.run_in_executor(self._writer, self._write_snapshot, snapshot)
        self._pending_writes.add(future)
        future.add_done_callback(self._pending_writes.discard)

    def _write_snapshot(self, snapshot: dict[str, Any]) -> None:
        try:
            self._snapshot_store.save(snapshot)
        except OSError as exc:
            logger.warning("Could not persist audit snapshot: %s", exc)

    def _save_current_locked(self) -> bool:
        if self._current_id is None or _is_empty(self._live):
            return False
        entry = CachedAudit.model_validate(
            {**self._live.model_dump(), "last_audit_at": datetime.now(timezone.utc).isoformat()}
        )
        self._entries = {**self._entries, self._current_id: entry}
        return True

    def _load_cached_locked(self, subject_id: str) -> bool:
        entry = self._entries.get(subject_id)
        if entry is None:
            return False
        self._live = AuditWorkingState.model_validate(entry.model_dump(exclude={"last_audit_at"}))
        return True

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    @property
    def current_subject_id(self) -> str | None:
        return self._current_id

    def live_state(self) -> AuditWorkingState:
        return self._live.model_copy(deep=True)

    def get_entry(self, subject_id: str) -> CachedAudit | None:
        entry = self._entries.get(subject_id)
        return entry.model_copy(deep=True) if entry is not None else None

    def subject_ids(self) -> list[str]:
        return sorted(self._entries)

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------
    def switch_subject(self, subject_id: str) -> bool:
        """Make ``subject_id`` active; returns ``False`` when it already was."""

        with self._lock:
            if subject_id == self._current_id:
                return False
            previous = self._current_id
            self._save_current_locked()
            self._current_id = subject_id
            self._live = AuditWorkingState()
            loaded = self._load_cached_locked(subject_id)
            self._persist()
        logger.info("Switched subject %s -> %s (cached=%s)", previous, subject_id, loaded)
        return True

    def save_current(self) -> bool:
        with self._lock:
            saved = self._save_current_locked()
            if saved:
                self._persist()
        return saved

    def load_cached(self, subject_id: str) -> bool:
        with self._lock:
            loaded = self._load_cached_locked(subject_id)
            if loaded:
                self._persist()
        return loaded

    def merge_patch(self, subject_id: str, partial: Mapping[str, Any]) -> CachedAudit:
        """Overwrite only the fields present in ``partial`` for ``subject_id``."""

        unknown = set(partial) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown audit fields: {sorted(unknown)}")
        patch = dict(partial)

        with self._lock:
            existing = self._entries.get(subject_id) or CachedAudit()
            merged = CachedAudit.model_validate({**existing.model_dump(), **patch})
            self._entries = {**self._entries, subject_id: merged}
            if subject_id == self._current_id:
                self._live = AuditWorkingState.model_validate({**self._live.model_dump(), **patch})
            self._persist()

        logger.debug("Merged %s into audit cache for %s", sorted(patch), subject_id)
        if self._mirror is not None:
            self._mirror.submit(subject_id, patch)
        return merged.model_copy(deep=True)

    def reset_current(self) -> None:
        """Clear the working state of the active subject without touching its cache entry."""

        with self._lock:
            self._live = AuditWorkingState()
            self._persist()

    def restore(self) -> bool:
        """Reload the active subject and cached entries from the snapshot store."""

        if self._snapshot_store is None:
            return False
        snapshot = self._snapshot_store.load()
        if not snapshot:
            return False
        try:
            entries = {
                str(key): CachedAudit.model_validate(value)
                for key, value in (snapshot.get("entries") or {}).items()
            }
            live = AuditWorkingState.model_validate(snapshot.get("live") or {})
        except PydanticValidationError as exc:
            logger.warning("Discarding incompatible audit snapshot: %s", exc)
            return False

        with self._lock:
            self._entries = entries
            self._current_id = snapshot.get("current_subject_id")
            self._live = live
        logger.info("Restored audit cache (%d subject(s), active=%s)", len(entries), self._current_id)
        return True

    async def flush(self) -> None:
        """Wait until every queued snapshot write has reached the store."""

        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def aclose(self) -> None:
        await self.flush()
        if self._writer is not None:
            self._writer.shutdown(wait=True)
            self._writer = None

    def reset(self) -> None:
        with self._lock:
            self._entries = {}
            self._current_id = None
            self._live = AuditWorkingState()


__all__ = ["PATCHABLE_FIELDS", "ResultCache"]
