"""Encrypted chat store facade.

The only thing higher layers talk to. Combines a ``StorageBackend`` with a
``RecordCipher``: every record is JSON-encoded and encrypted on the way
in and decrypted on the way out. A record that fails to decrypt or
validate reads as missing.

Thread records never carry their messages, summary or archive; those live
in their own collections keyed by thread ID.
"""

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from threadkeep_models import (
    DEFAULT_THREAD_TITLE,
    Archive,
    Message,
    MessageMeta,
    Project,
    Role,
    Summary,
    Thread,
    utcnow,
)
from threadkeep.crypto import RecordCipher
from threadkeep.db import Collection, StorageBackend, StoredRecord, WriteOp
from threadkeep.errors import NotFoundError
from threadkeep.models import StorageUsage, StoreStats, ThreadView

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

TITLE_MAX_LENGTH = 50


def generate_thread_title(first_message: str) -> str:
    """Title a thread from its first user message.

    Uses the first sentence if it is short enough, otherwise the first 50
    characters followed by an ellipsis.
    """
    first_sentence = re.split(r"[.!?]", first_message, maxsplit=1)[0]
    if len(first_sentence) <= TITLE_MAX_LENGTH:
        return first_sentence.strip()
    return first_message[:TITLE_MAX_LENGTH].strip() + "..."


class ChatStore:
    """CRUD over projects, threads, messages, summaries and archives."""

    def __init__(self, backend: StorageBackend, cipher: RecordCipher):
        self._backend = backend
        self._cipher = cipher
        # Serializes read-modify-write sequences (append, update, commit).
        self._lock = asyncio.Lock()

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    # ============= Encoding =============

    async def _seal(
        self,
        record_id: str,
        payload: dict[str, Any],
        project_id: str | None = None,
        thread_id: str | None = None,
        created_at: datetime | None = None,
    ) -> StoredRecord:
        envelope = await self._cipher.encrypt_json(payload)
        return StoredRecord(
            id=record_id,
            envelope=envelope,
            project_id=project_id,
            thread_id=thread_id,
            created_at=created_at,
        )

    async def _open(self, record: StoredRecord | None, model: type[ModelT]) -> ModelT | None:
        if record is None:
            return None
        data = await self._cipher.decrypt_json(record.envelope)
        if data is None:
            return None
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Dropping malformed {model.__name__} record {record.id}: {e}")
            return None

    async def _open_all(self, records: list[StoredRecord], model: type[ModelT]) -> list[ModelT]:
        result = []
        for record in records:
            item = await self._open(record, model)
            if item is not None:
                result.append(item)
        return result

    async def _project_record(self, project: Project) -> StoredRecord:
        return await self._seal(project.id, project.to_record(), created_at=project.created_at)

    async def _thread_record(self, thread: Thread) -> StoredRecord:
        return await self._seal(
            thread.id,
            thread.to_record(),
            project_id=thread.project_id,
            created_at=thread.created_at,
        )

    async def _message_record(self, message: Message) -> StoredRecord:
        return await self._seal(
            message.id,
            message.to_record(),
            thread_id=message.thread_id,
            created_at=message.created_at,
        )

    async def _summary_record(self, summary: Summary) -> StoredRecord:
        return await self._seal(summary.thread_id, summary.to_record(), thread_id=summary.thread_id)

    async def _archive_record(self, archive: Archive) -> StoredRecord:
        return await self._seal(archive.thread_id, archive.to_record(), thread_id=archive.thread_id)

    # ============= Projects =============

    async def put_project(self, project: Project) -> Project:
        await self._backend.put(Collection.PROJECTS, await self._project_record(project))
        return project

    async def get_project(self, project_id: str | None) -> Project | None:
        if not project_id:
            return None
        return await self._open(await self._backend.get(Collection.PROJECTS, project_id), Project)

    async def get_projects(self) -> list[Project]:
        return await self._open_all(await self._backend.get_all(Collection.PROJECTS), Project)

    async def delete_project(self, project_id: str) -> None:
        """Delete a project and every thread that belongs to it."""
        async with self._lock:
            ops = [WriteOp.delete(Collection.PROJECTS, project_id)]
            threads = await self._backend.get_all(Collection.THREADS, project_id=project_id)
            for thread in threads:
                ops.extend(await self._thread_delete_ops(thread.id))
            await self._backend.apply(ops)
        logger.info(f"Deleted project {project_id} and {len(threads)} threads")

    async def create_project(self, name: str, **fields: Any) -> Project:
        """Create a project with defaults for anything not supplied."""
        now = utcnow()
        project = Project.model_validate({**fields, "name": name, "created_at": now, "updated_at": now})
        return await self.put_project(project)

    async def update_project(self, project_id: str, **changes: Any) -> Project:
        async with self._lock:
            project = await self.get_project(project_id)
            if project is None:
                raise NotFoundError("project", project_id)
            updated = Project.model_validate(
                {**project.model_dump(), **changes, "id": project.id, "updated_at": utcnow()}
            )
            return await self.put_project(updated)

    # ============= Threads =============

    async def put_thread(self, thread: Thread) -> Thread:
        await self._backend.put(Collection.THREADS, await self._thread_record(thread))
        return thread

    async def get_thread(self, thread_id: str | None) -> Thread | None:
        if not thread_id:
            return None
        return await self._open(await self._backend.get(Collection.THREADS, thread_id), Thread)

    async def get_threads(self) -> list[Thread]:
        return await self._open_all(await self._backend.get_all(Collection.THREADS), Thread)

    async def get_threads_by_project(self, project_id: str | None) -> list[Thread]:
        if not project_id:
            return []
        records = await self._backend.get_all(Collection.THREADS, project_id=project_id)
        return await self._open_all(records, Thread)

    async def _thread_delete_ops(self, thread_id: str) -> list[WriteOp]:
        ops = [WriteOp.delete(Collection.THREADS, thread_id)]
        for message in await self._backend.get_all(Collection.MESSAGES, thread_id=thread_id):
            ops.append(WriteOp.delete(Collection.MESSAGES, message.id))
        ops.append(WriteOp.delete(Collection.SUMMARIES, thread_id))
        ops.append(WriteOp.delete(Collection.ARCHIVES, thread_id))
        return ops

    async def delete_thread(self, thread_id: str) -> None:
        """Delete a thread together with its messages, summary and archive."""
        async with self._lock:
            await self._backend.apply(await self._thread_delete_ops(thread_id))

    async def create_thread(self, project_id: str | None, title: str | None = None) -> Thread:
        now = utcnow()
        thread = Thread(
            project_id=project_id,
            title=title or DEFAULT_THREAD_TITLE,
            created_at=now,
            updated_at=now,
        )
        return await self.put_thread(thread)

    async def update_thread(self, thread_id: str, **changes: Any) -> Thread:
        async with self._lock:
            thread = await self.get_thread(thread_id)
            if thread is None:
                raise NotFoundError("thread", thread_id)
            updated = Thread.model_validate(
                {**thread.model_dump(), **changes, "id": thread.id, "updated_at": utcnow()}
            )
            return await self.put_thread(updated)

    async def get_thread_view(self, thread_id: str | None) -> ThreadView | None:
        """Hydrate a thread with its messages, summary and archive."""
        thread = await self.get_thread(thread_id)
        if thread is None:
            return None
        summary = await self.get_summary(thread.id)
        archive = await self.get_archived_messages(thread.id)
        return ThreadView(
            thread=thread,
            messages=await self.get_messages(thread.id),
            summary=summary.summary if summary else "",
            summary_updated_at=summary.summary_updated_at if summary else None,
            archived_messages=archive.archived_messages if archive else [],
            archived_updated_at=archive.archived_updated_at if archive else None,
        )

    # ============= Messages =============

    async def put_message(self, message: Message) -> Message:
        """Store a message. Re-putting the same ID replaces it in place."""
        await self._backend.put(Collection.MESSAGES, await self._message_record(message))
        return message

    async def get_messages(self, thread_id: str | None) -> list[Message]:
        """Live messages of a thread, oldest first."""
        if not thread_id:
            return []
        records = await self._backend.get_all(Collection.MESSAGES, thread_id=thread_id)
        messages = await self._open_all(records, Message)
        # Stable sort: equal timestamps keep insertion order.
        return sorted(messages, key=lambda m: m.created_at)

    async def add_message_to_thread(
        self,
        thread_id: str,
        role: Role,
        content: str,
        meta: MessageMeta | None = None,
    ) -> Message:
        """Append a message and touch the thread in one batch.

        The first user message of a thread still titled "New Thread"
        also retitles it.
        """
        async with self._lock:
            thread = await self.get_thread(thread_id)
            if thread is None:
                raise NotFoundError("thread", thread_id)

            now = utcnow()
            message = Message(thread_id=thread_id, role=role, content=content, meta=meta, created_at=now)

            changes: dict[str, Any] = {"updated_at": now}
            existing = await self._backend.get_all(Collection.MESSAGES, thread_id=thread_id)
            if not existing and role == "user" and thread.title == DEFAULT_THREAD_TITLE:
                changes["title"] = generate_thread_title(content) or DEFAULT_THREAD_TITLE
            updated_thread = thread.model_copy(update=changes)

            await self._backend.apply(
                [
                    WriteOp.put(Collection.MESSAGES, await self._message_record(message)),
                    WriteOp.put(Collection.THREADS, await self._thread_record(updated_thread)),
                ]
            )
        logger.debug(f"Appended {role} message {message.id} to thread {thread_id}")
        return message

    # ============= Summaries & Archives =============

    async def set_summary(
        self,
        thread_id: str,
        summary: str,
        summary_updated_at: datetime | None = None,
    ) -> Summary:
        record = Summary(thread_id=thread_id, summary=summary or "", summary_updated_at=summary_updated_at)
        await self._backend.put(Collection.SUMMARIES, await self._summary_record(record))
        return record

    async def get_summary(self, thread_id: str | None) -> Summary | None:
        if not thread_id:
            return None
        return await self._open(await self._backend.get(Collection.SUMMARIES, thread_id), Summary)

    async def set_archived_messages(
        self,
        thread_id: str,
        archived_messages: list[Message],
        archived_updated_at: datetime | None = None,
    ) -> Archive:
        record = Archive(
            thread_id=thread_id,
            archived_messages=list(archived_messages or []),
            archived_updated_at=archived_updated_at,
        )
        await self._backend.put(Collection.ARCHIVES, await self._archive_record(record))
        return record

    async def get_archived_messages(self, thread_id: str | None) -> Archive | None:
        if not thread_id:
            return None
        return await self._open(await self._backend.get(Collection.ARCHIVES, thread_id), Archive)

    async def commit_summarization(
        self,
        thread_id: str,
        summary: str,
        history: list[Message],
    ) -> ThreadView:
        """Summarize ``history`` away in one batch.

        Writes the summary, appends ``history`` to the stored archive and
        removes exactly those messages from the live collection. Messages
        stored after the caller read its view stay live.
        """
        async with self._lock:
            thread = await self.get_thread(thread_id)
            if thread is None:
                raise NotFoundError("thread", thread_id)

            previous = await self.get_archived_messages(thread_id)
            archived = list(previous.archived_messages) if previous else []
            already_archived = {m.id for m in archived}
            newly_archived = [m for m in history if m.id not in already_archived]
            archived.extend(newly_archived)

            now = utcnow()
            summary_record = Summary(thread_id=thread_id, summary=summary, summary_updated_at=now)
            archive_record = Archive(thread_id=thread_id, archived_messages=archived, archived_updated_at=now)
            ops = [
                WriteOp.put(Collection.SUMMARIES, await self._summary_record(summary_record)),
                WriteOp.put(Collection.ARCHIVES, await self._archive_record(archive_record)),
            ]
            ops.extend(WriteOp.delete(Collection.MESSAGES, m.id) for m in newly_archived)
            await self._backend.apply(ops)

            live = await self.get_messages(thread_id)

        logger.info(
            f"Committed summary for thread {thread_id}: "
            f"{len(newly_archived)} newly archived, {len(live)} live"
        )
        return ThreadView(
            thread=thread,
            messages=live,
            summary=summary,
            summary_updated_at=now,
            archived_messages=archived,
            archived_updated_at=now,
        )

    # ============= Stats =============

    async def stats(self) -> StoreStats:
        return await self._backend.stats()

    async def storage_usage(self, quota_bytes: int | None = None) -> StorageUsage:
        """Bytes used, with a percentage when a positive quota is given."""
        stats = await self.stats()
        if quota_bytes and quota_bytes > 0:
            return StorageUsage(
                bytes_used=stats.bytes_used,
                quota_bytes=quota_bytes,
                percent_used=stats.bytes_used / quota_bytes * 100,
            )
        return StorageUsage(bytes_used=stats.bytes_used)
