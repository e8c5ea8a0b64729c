"""In-process storage backend, used for tests and ephemeral sessions."""

import asyncio
import logging

from threadkeep.db.base import (
    Collection,
    StatsAccumulator,
    StoredRecord,
    WriteOp,
)
from threadkeep.models import StoreStats

logger = logging.getLogger(__name__)


class MemoryBackend:
    """Dict-per-collection backend.

    Every mutation runs under one ``asyncio.Lock``. ``apply`` builds the
    next state of each touched collection on a copy and swaps the copies
    in together, so a reader never sees half of a batch.
    """

    def __init__(self):
        self._collections: dict[Collection, dict[str, StoredRecord]] = {
            collection: {} for collection in Collection
        }
        self._lock = asyncio.Lock()

    async def get(self, collection: Collection, record_id: str) -> StoredRecord | None:
        return self._collections[collection].get(record_id)

    async def put(self, collection: Collection, record: StoredRecord) -> None:
        async with self._lock:
            self._collections[collection][record.id] = record

    async def delete(self, collection: Collection, record_id: str) -> None:
        async with self._lock:
            self._collections[collection].pop(record_id, None)

    async def get_all(
        self,
        collection: Collection,
        *,
        project_id: str | None = None,
        thread_id: str | None = None,
    ) -> list[StoredRecord]:
        records = list(self._collections[collection].values())
        if project_id is not None:
            records = [r for r in records if r.project_id == project_id]
        if thread_id is not None:
            records = [r for r in records if r.thread_id == thread_id]
        return records

    async def apply(self, ops: list[WriteOp]) -> None:
        if not ops:
            return
        async with self._lock:
            staged: dict[Collection, dict[str, StoredRecord]] = {}
            for op in ops:
                if op.collection not in staged:
                    staged[op.collection] = dict(self._collections[op.collection])
                target = staged[op.collection]
                if op.record is None:
                    target.pop(op.record_id, None)
                else:
                    target[op.record_id] = op.record
            self._collections.update(staged)
        logger.debug(f"Applied batch of {len(ops)} ops")

    async def stats(self) -> StoreStats:
        acc = StatsAccumulator()
        for collection, records in self._collections.items():
            for record in records.values():
                acc.add(collection, record)
        return acc.stats
