"""Storage backends."""

from threadkeep.config import Settings, settings as default_settings
from threadkeep.db.base import (
    Collection,
    StorageBackend,
    StoredRecord,
    WriteOp,
    estimate_record_size,
)
from threadkeep.db.memory import MemoryBackend


async def create_backend(config: Settings | None = None) -> StorageBackend:
    """Build and connect the backend selected by ``storage_backend``."""
    config = config or default_settings
    if config.storage_backend == "postgres":
        from threadkeep.db.postgres import PostgresBackend

        backend = PostgresBackend(config)
        await backend.connect()
        return backend
    return MemoryBackend()


__all__ = [
    "Collection",
    "MemoryBackend",
    "StorageBackend",
    "StoredRecord",
    "WriteOp",
    "create_backend",
    "estimate_record_size",
]
