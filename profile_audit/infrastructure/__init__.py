"""Infrastructure layer exports."""

from .dataforseo import (
    BusinessUpdatesJobAdapter,
    DataForSEOClient,
    QuestionsJobAdapter,
    RankCheckJobAdapter,
    ReviewsJobAdapter,
)
from .persistence import (
    AuditRecordStore,
    HttpAuditRecordStore,
    InMemoryAuditRecordStore,
    InMemorySnapshotStore,
    JsonFileSnapshotStore,
    PersistenceMirror,
    SnapshotStore,
)

__all__ = [
    "AuditRecordStore",
    "BusinessUpdatesJobAdapter",
    "DataForSEOClient",
    "HttpAuditRecordStore",
    "InMemoryAuditRecordStore",
    "InMemorySnapshotStore",
    "JsonFileSnapshotStore",
    "PersistenceMirror",
    "QuestionsJobAdapter",
    "RankCheckJobAdapter",
    "ReviewsJobAdapter",
    "SnapshotStore",
]
