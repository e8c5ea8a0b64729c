"""Storage backend contract.

A backend stores opaque records (encrypted envelopes plus a few clear-text
index fields) in five collections. It knows nothing about encryption or
record shapes; the ``ChatStore`` facade owns both.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from threadkeep.models import StoreStats


class Collection(str, Enum):
    """Record collections."""

    PROJECTS = "projects"
    THREADS = "threads"
    MESSAGES = "messages"
    SUMMARIES = "summaries"
    ARCHIVES = "archives"


@dataclass
class StoredRecord:
    """One stored record: clear-text keys for indexing, encrypted body."""

    id: str
    envelope: dict[str, Any]
    project_id: str | None = None
    thread_id: str | None = None
    created_at: datetime | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "threadId": self.thread_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            **self.envelope,
        }


@dataclass
class WriteOp:
    """A single put or delete, applied as part of an atomic batch."""

    collection: Collection
    record_id: str
    record: StoredRecord | None = None  # None means delete

    @classmethod
    def put(cls, collection: Collection, record: StoredRecord) -> "WriteOp":
        return cls(collection=collection, record_id=record.id, record=record)

    @classmethod
    def delete(cls, collection: Collection, record_id: str) -> "WriteOp":
        return cls(collection=collection, record_id=record_id)


@dataclass
class StatsAccumulator:
    """Helper for building ``StoreStats`` one record at a time."""

    stats: StoreStats = field(default_factory=StoreStats)

    def add(self, collection: Collection, record: StoredRecord) -> None:
        self.stats.bytes_used += estimate_record_size(record)
        counts = self.stats.counts
        setattr(counts, collection.value, getattr(counts, collection.value) + 1)


def estimate_record_size(record: StoredRecord | None) -> int:
    """Size in bytes of the record's JSON encoding."""
    if record is None:
        return 0
    return len(json.dumps(record.to_json(), ensure_ascii=False, separators=(",", ":")).encode("utf-8"))


class StorageBackend(Protocol):
    """Per-collection primitives every backend provides."""

    async def get(self, collection: Collection, record_id: str) -> StoredRecord | None: ...

    async def put(self, collection: Collection, record: StoredRecord) -> None: ...

    async def delete(self, collection: Collection, record_id: str) -> None: ...

    async def get_all(
        self,
        collection: Collection,
        *,
        project_id: str | None = None,
        thread_id: str | None = None,
    ) -> list[StoredRecord]:
        """All records in a collection, optionally filtered by an index.

        Records come back in insertion order; messages additionally in
        ``created_at`` order.
        """
        ...

    async def apply(self, ops: list[WriteOp]) -> None:
        """Apply puts and deletes as one atomic batch."""
        ...

    async def stats(self) -> StoreStats: ...
