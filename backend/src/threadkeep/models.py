"""Engine-level views and result models."""

from datetime import datetime

from pydantic import BaseModel, Field

from threadkeep_models import Message, Thread


class StoreCounts(BaseModel):
    """Record counts per collection."""

    projects: int = 0
    threads: int = 0
    messages: int = 0
    summaries: int = 0
    archives: int = 0


class StoreStats(BaseModel):
    """Aggregate size of everything in a backend."""

    bytes_used: int = Field(0, description="UTF-8 size of all stored JSON records")
    counts: StoreCounts = Field(default_factory=StoreCounts)


class StorageUsage(BaseModel):
    """Bytes used, optionally against a quota."""

    bytes_used: int = 0
    quota_bytes: int | None = None
    percent_used: float | None = None


class ThreadView(BaseModel):
    """A thread hydrated with its live messages, summary and archive."""

    thread: Thread
    messages: list[Message] = Field(default_factory=list)
    summary: str = ""
    summary_updated_at: datetime | None = None
    archived_messages: list[Message] = Field(default_factory=list)
    archived_updated_at: datetime | None = None

    @property
    def id(self) -> str:
        return self.thread.id

    @property
    def project_id(self) -> str | None:
        return self.thread.project_id


class MigrationResult(BaseModel):
    """Outcome of a legacy storage migration run."""

    migrated: bool = False
    projects: int = 0
    threads: int = 0
    messages: int = 0
    writes: int = 0
