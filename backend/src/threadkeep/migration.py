"""One-shot migration of legacy flat-keyed storage into the chat store.

Older releases kept everything under a handful of flat keys, first named
after "spaces" and later after "projects"::

    or_spaces / or_projects                 list of project dicts
    or_threads / or_project_threads         list of thread dicts, or a map
                                            of project ID -> thread list

Threads carried their messages, summary and archive inline. The migration
splits them into chat store records, then removes the legacy keys, then
sets a flag. Every write is an upsert by ID, so a run interrupted between
writing and removing simply redoes the same writes next time.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from threadkeep_models import Message, Project, Thread
from threadkeep.config import Settings, settings as default_settings
from threadkeep.errors import StorageError
from threadkeep.models import MigrationResult
from threadkeep.store import ChatStore

logger = logging.getLogger(__name__)

MIGRATION_FLAG = "or_chat_idb_migration_v1"

SPACES_KEY = "or_spaces"
THREADS_KEY = "or_threads"
COLLAPSE_ON_SPACES_KEY = "or_collapse_on_spaces"

PROJECTS_KEY = "or_projects"
PROJECT_THREADS_KEY = "or_project_threads"
COLLAPSE_ON_PROJECTS_KEY = "or_collapse_on_projects"

LEGACY_CHAT_KEYS = [PROJECTS_KEY, PROJECT_THREADS_KEY, SPACES_KEY, THREADS_KEY]
LEGACY_SPACE_KEYS = [SPACES_KEY, THREADS_KEY, COLLAPSE_ON_SPACES_KEY]

# Thread fields that move into their own collections
_INLINE_THREAD_FIELDS = ("messages", "summary", "summaryUpdatedAt", "archivedMessages", "archivedUpdatedAt")


# ============= Legacy storage =============


class LegacyStorage(Protocol):
    """Flat key/value storage the old releases wrote to."""

    async def get(self, keys: list[str]) -> dict[str, Any]:
        """Return the subset of ``keys`` that are present."""
        ...

    async def set(self, values: dict[str, Any]) -> None: ...

    async def remove(self, keys: list[str]) -> None: ...


class MemoryLegacyStorage:
    """Dict-backed legacy storage, mostly for tests."""

    def __init__(self, data: dict[str, Any] | None = None):
        self.data: dict[str, Any] = dict(data or {})
        self.writes = 0

    async def get(self, keys: list[str]) -> dict[str, Any]:
        return {key: self.data[key] for key in keys if key in self.data}

    async def set(self, values: dict[str, Any]) -> None:
        self.writes += 1
        self.data.update(values)

    async def remove(self, keys: list[str]) -> None:
        self.writes += 1
        for key in keys:
            self.data.pop(key, None)


class JsonFileLegacyStorage:
    """Legacy storage exported to a single JSON object on disk."""

    def __init__(self, path: Path | None = None, config: Settings | None = None):
        self.path = Path(path or (config or default_settings).legacy_storage_path)

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read legacy storage {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Legacy storage {self.path} is not a JSON object")
        return data

    def _save(self, data: dict[str, Any]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise StorageError(f"Cannot write legacy storage {self.path}: {e}") from e

    async def get(self, keys: list[str]) -> dict[str, Any]:
        data = self._load()
        return {key: data[key] for key in keys if key in data}

    async def set(self, values: dict[str, Any]) -> None:
        data = self._load()
        data.update(values)
        self._save(data)

    async def remove(self, keys: list[str]) -> None:
        if not self.path.exists():
            return
        data = self._load()
        for key in keys:
            data.pop(key, None)
        self._save(data)


# ============= Normalization =============


def _project_id_of(thread: dict[str, Any], fallback: str | None = None) -> str | None:
    return thread.get("projectId") or thread.get("ProjectId") or thread.get("spaceId") or fallback


def normalize_threads(raw: Any) -> list[dict[str, Any]]:
    """Flatten a legacy thread collection into a list of thread dicts.

    Accepts a plain list or a map of project ID -> thread list. The old
    ``ProjectId`` / ``spaceId`` spellings become ``projectId``; for the map
    shape the map key is used when the thread names no project.
    """
    entries: list[tuple[Any, str | None]] = []
    if isinstance(raw, list):
        entries = [(thread, None) for thread in raw]
    elif isinstance(raw, dict):
        for key, threads in raw.items():
            if isinstance(threads, list):
                entries.extend((thread, key) for thread in threads)

    normalized = []
    for thread, fallback in entries:
        if not isinstance(thread, dict):
            continue
        item = {k: v for k, v in thread.items() if k not in ("ProjectId", "spaceId")}
        project_id = _project_id_of(thread, fallback)
        if project_id:
            item["projectId"] = project_id
        normalized.append(item)
    return normalized


def _merge_by_id(primary: list[Any], secondary: list[Any]) -> list[Any]:
    result = list(primary)
    seen = {item.get("id") for item in result if isinstance(item, dict) and item.get("id")}
    for item in secondary:
        item_id = item.get("id") if isinstance(item, dict) else None
        if item_id and item_id in seen:
            continue
        result.append(item)
        if item_id:
            seen.add(item_id)
    return result


def _epoch_ms(value: Any) -> int:
    if isinstance(value, bool):
        value = None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp() * 1000)
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def ensure_message_id(message: dict[str, Any], thread_id: str, index: int, base_time: int) -> dict[str, Any]:
    """Fill in the ID, thread ID and timestamp a legacy message may lack."""
    meta = message.get("meta") if isinstance(message.get("meta"), dict) else {}
    created_at = message.get("createdAt") or meta.get("createdAt")
    return {
        **message,
        "id": message.get("id") or f"{thread_id}_msg_{index}",
        "threadId": thread_id,
        "createdAt": _epoch_ms(created_at) if created_at else base_time + index,
    }


def _drop_nulls(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


# ============= Migrations =============


async def migrate_legacy_space_keys(legacy: LegacyStorage) -> bool:
    """Rename the old "spaces" keys to their "projects" equivalents.

    Legacy entries are merged into any existing new-key values by ID
    (existing entries win). Legacy keys are removed only after the merged
    values are written. Returns whether anything was present to migrate.
    """
    stored = await legacy.get(LEGACY_SPACE_KEYS + [PROJECTS_KEY, PROJECT_THREADS_KEY, COLLAPSE_ON_PROJECTS_KEY])
    if not any(key in stored for key in LEGACY_SPACE_KEYS):
        return False

    def projects_of(value: Any) -> list[Any]:
        return [p for p in value if p] if isinstance(value, list) else []

    payload: dict[str, Any] = {}

    existing_projects = projects_of(stored.get(PROJECTS_KEY))
    legacy_projects = projects_of(stored.get(SPACES_KEY))
    if legacy_projects:
        merged = _merge_by_id(existing_projects, legacy_projects)
        if len(merged) != len(existing_projects) or PROJECTS_KEY not in stored:
            payload[PROJECTS_KEY] = merged

    existing_threads = normalize_threads(stored.get(PROJECT_THREADS_KEY))
    legacy_threads = normalize_threads(stored.get(THREADS_KEY))
    if legacy_threads:
        merged = _merge_by_id(existing_threads, legacy_threads)
        if len(merged) != len(existing_threads) or PROJECT_THREADS_KEY not in stored:
            payload[PROJECT_THREADS_KEY] = merged

    if COLLAPSE_ON_SPACES_KEY in stored and COLLAPSE_ON_PROJECTS_KEY not in stored:
        payload[COLLAPSE_ON_PROJECTS_KEY] = stored[COLLAPSE_ON_SPACES_KEY]

    if payload:
        await legacy.set(payload)
    await legacy.remove(LEGACY_SPACE_KEYS)
    logger.info(f"Migrated legacy space keys: {sorted(payload)}")
    return True


async def migrate_legacy_chat(store: ChatStore, legacy: LegacyStorage) -> MigrationResult:
    """Move legacy flat-keyed chat data into the chat store.

    A no-op when the migration flag is set or there is nothing to migrate.
    Records that fail validation are skipped with a warning rather than
    aborting the run.
    """
    stored = await legacy.get([MIGRATION_FLAG] + LEGACY_CHAT_KEYS)
    if stored.get(MIGRATION_FLAG):
        return MigrationResult()

    raw_projects = stored.get(PROJECTS_KEY)
    if not isinstance(raw_projects, list):
        raw_projects = stored.get(SPACES_KEY)
    projects = raw_projects if isinstance(raw_projects, list) else []

    raw_threads = stored.get(PROJECT_THREADS_KEY)
    if raw_threads is None:
        raw_threads = stored.get(THREADS_KEY, [])
    threads = normalize_threads(raw_threads)

    if not projects and not threads:
        return MigrationResult()

    result = MigrationResult(migrated=True)

    for raw in projects:
        if not isinstance(raw, dict) or not raw.get("id"):
            continue
        try:
            project = Project.model_validate(_drop_nulls(raw))
        except ValidationError as e:
            logger.warning(f"Skipping legacy project {raw.get('id')!r}: {e}")
            continue
        await store.put_project(project)
        result.projects += 1
        result.writes += 1

    for raw in threads:
        thread_id = raw.get("id")
        if not thread_id:
            continue
        try:
            thread = Thread.model_validate(
                _drop_nulls({k: v for k, v in raw.items() if k not in _INLINE_THREAD_FIELDS})
            )
        except ValidationError as e:
            logger.warning(f"Skipping legacy thread {thread_id!r}: {e}")
            continue
        await store.put_thread(thread)
        result.threads += 1
        result.writes += 1

        base_time = _epoch_ms(raw.get("updatedAt") or raw.get("createdAt"))

        messages = raw.get("messages") if isinstance(raw.get("messages"), list) else []
        for index, message in enumerate(messages):
            if not isinstance(message, dict):
                continue
            try:
                record = Message.model_validate(_drop_nulls(ensure_message_id(message, thread_id, index, base_time)))
            except ValidationError as e:
                logger.warning(f"Skipping legacy message {index} of thread {thread_id!r}: {e}")
                continue
            await store.put_message(record)
            result.messages += 1
            result.writes += 1

        summary = raw.get("summary")
        if isinstance(summary, str) and summary:
            await store.set_summary(thread_id, summary, raw.get("summaryUpdatedAt"))
            result.writes += 1

        archived = raw.get("archivedMessages") if isinstance(raw.get("archivedMessages"), list) else []
        archived_records = []
        for index, message in enumerate(archived):
            if not isinstance(message, dict):
                continue
            try:
                archived_records.append(
                    Message.model_validate(_drop_nulls(ensure_message_id(message, thread_id, index, base_time)))
                )
            except ValidationError as e:
                logger.warning(f"Skipping legacy archived message {index} of thread {thread_id!r}: {e}")
        if archived_records:
            await store.set_archived_messages(thread_id, archived_records, raw.get("archivedUpdatedAt"))
            result.writes += 1

    # Remove only after everything is written; the flag goes last.
    await legacy.remove(LEGACY_CHAT_KEYS)
    await legacy.set({MIGRATION_FLAG: True})
    result.writes += 2

    logger.info(
        f"Migrated legacy chat data: {result.projects} projects, "
        f"{result.threads} threads, {result.messages} messages"
    )
    return result


async def run_legacy_migrations(store: ChatStore, legacy: LegacyStorage) -> MigrationResult:
    """Run the space-key rename and then the chat store migration."""
    await migrate_legacy_space_keys(legacy)
    return await migrate_legacy_chat(store, legacy)
