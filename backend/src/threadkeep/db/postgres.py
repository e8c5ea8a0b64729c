"""PostgreSQL storage backend."""

import json
import logging
from contextlib import asynccontextmanager

import asyncpg

from threadkeep.config import Settings, settings as default_settings
from threadkeep.db.base import (
    Collection,
    StatsAccumulator,
    StoredRecord,
    WriteOp,
)
from threadkeep.errors import StorageError
from threadkeep.models import StoreStats

logger = logging.getLogger(__name__)


# One table for all collections; bodies are encrypted envelopes.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chat_records (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    project_id TEXT,
    thread_id TEXT,
    created_at TIMESTAMPTZ,
    seq BIGSERIAL,
    envelope JSONB NOT NULL,
    PRIMARY KEY (collection, id)
);
CREATE INDEX IF NOT EXISTS idx_chat_records_project ON chat_records(collection, project_id);
CREATE INDEX IF NOT EXISTS idx_chat_records_thread ON chat_records(collection, thread_id);
"""

UPSERT_SQL = """
INSERT INTO chat_records (collection, id, project_id, thread_id, created_at, envelope)
VALUES ($1, $2, $3, $4, $5, $6)
ON CONFLICT (collection, id) DO UPDATE SET
    project_id = EXCLUDED.project_id,
    thread_id = EXCLUDED.thread_id,
    created_at = EXCLUDED.created_at,
    envelope = EXCLUDED.envelope
"""

DELETE_SQL = "DELETE FROM chat_records WHERE collection = $1 AND id = $2"


class PostgresBackend:
    """Backend storing envelopes in PostgreSQL with per-record upserts."""

    def __init__(self, config: Settings | None = None, pool: asyncpg.Pool | None = None):
        self._config = config or default_settings
        self._pool = pool

    async def connect(self):
        """Create connection pool and ensure the schema exists."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._config.database_url,
                min_size=1,
                max_size=5,
            )
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool."""
        if not self._pool:
            raise StorageError("Database not connected")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(str(e)) from e

    # ============= Record Operations =============

    async def get(self, collection: Collection, record_id: str) -> StoredRecord | None:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM chat_records WHERE collection = $1 AND id = $2",
                collection.value,
                record_id,
            )
        if not row:
            return None
        return self._row_to_record(row)

    async def put(self, collection: Collection, record: StoredRecord) -> None:
        async with self.connection() as conn:
            await conn.execute(UPSERT_SQL, *self._record_args(collection, record))

    async def delete(self, collection: Collection, record_id: str) -> None:
        async with self.connection() as conn:
            await conn.execute(DELETE_SQL, collection.value, record_id)

    async def get_all(
        self,
        collection: Collection,
        *,
        project_id: str | None = None,
        thread_id: str | None = None,
    ) -> list[StoredRecord]:
        clauses = ["collection = $1"]
        args: list = [collection.value]
        if project_id is not None:
            args.append(project_id)
            clauses.append(f"project_id = ${len(args)}")
        if thread_id is not None:
            args.append(thread_id)
            clauses.append(f"thread_id = ${len(args)}")
        query = (
            f"SELECT * FROM chat_records WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at NULLS FIRST, seq"
        )
        async with self.connection() as conn:
            rows = await conn.fetch(query, *args)
        return [self._row_to_record(row) for row in rows]

    async def apply(self, ops: list[WriteOp]) -> None:
        if not ops:
            return
        async with self.connection() as conn:
            async with conn.transaction():
                for op in ops:
                    if op.record is None:
                        await conn.execute(DELETE_SQL, op.collection.value, op.record_id)
                    else:
                        await conn.execute(UPSERT_SQL, *self._record_args(op.collection, op.record))
        logger.debug(f"Applied batch of {len(ops)} ops")

    async def stats(self) -> StoreStats:
        acc = StatsAccumulator()
        async with self.connection() as conn:
            rows = await conn.fetch("SELECT * FROM chat_records")
        for row in rows:
            acc.add(Collection(row["collection"]), self._row_to_record(row))
        return acc.stats

    # ============= Row Mapping =============

    def _record_args(self, collection: Collection, record: StoredRecord) -> tuple:
        return (
            collection.value,
            record.id,
            record.project_id,
            record.thread_id,
            record.created_at,
            json.dumps(record.envelope),
        )

    def _row_to_record(self, row: asyncpg.Record) -> StoredRecord:
        envelope = row["envelope"]
        if isinstance(envelope, str):
            envelope = json.loads(envelope)
        return StoredRecord(
            id=row["id"],
            envelope=envelope,
            project_id=row["project_id"],
            thread_id=row["thread_id"],
            created_at=row["created_at"],
        )
