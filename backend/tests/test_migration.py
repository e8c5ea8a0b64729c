"""Tests for the legacy storage migrations."""

import json
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from threadkeep.migration import (
    MIGRATION_FLAG,
    JsonFileLegacyStorage,
    MemoryLegacyStorage,
    ensure_message_id,
    migrate_legacy_chat,
    migrate_legacy_space_keys,
    normalize_threads,
    run_legacy_migrations,
)

BASE_TIME = 1_700_000_000_000


def legacy_data():
    return {
        "or_projects": [
            {"id": "p1", "name": "Research", "icon": "🔬", "modelDisplayName": None},
            {"id": "p2", "name": "Cooking"},
        ],
        "or_project_threads": {
            "p1": [
                {
                    "id": "t1",
                    "title": "Tides",
                    "createdAt": BASE_TIME,
                    "updatedAt": BASE_TIME,
                    "messages": [
                        {"role": "user", "content": "How do tides work?"},
                        {"id": "keep-id", "role": "assistant", "content": "The moon.", "createdAt": BASE_TIME + 50},
                    ],
                    "summary": "Earlier: basics of gravity.",
                    "summaryUpdatedAt": BASE_TIME,
                    "archivedMessages": [{"role": "user", "content": "What is gravity?"}],
                    "archivedUpdatedAt": BASE_TIME,
                }
            ],
            "p2": [{"id": "t2", "ProjectId": "p2", "title": "Bread", "messages": []}],
        },
    }


async def snapshot(store):
    """Comparable view of everything in the store."""
    state = {}
    for thread in await store.get_threads():
        view = await store.get_thread_view(thread.id)
        state[thread.id] = (
            thread.project_id,
            thread.title,
            [(m.id, m.role, m.content) for m in view.messages],
            view.summary,
            [(m.id, m.content) for m in view.archived_messages],
        )
    state["projects"] = sorted(p.id for p in await store.get_projects())
    return state


class TestNormalization:
    """Test legacy record normalization."""

    def test_map_shaped_threads_take_key_as_project(self):
        """Test the map key becomes projectId and old spellings are dropped."""
        threads = normalize_threads({"p1": [{"id": "a"}, {"id": "b", "spaceId": "s9"}], "p2": "junk"})

        assert threads == [{"id": "a", "projectId": "p1"}, {"id": "b", "projectId": "s9"}]

    def test_list_shaped_threads(self):
        """Test ProjectId is renamed in list-shaped collections."""
        threads = normalize_threads([{"id": "a", "ProjectId": "p1"}, None, "x"])

        assert threads == [{"id": "a", "projectId": "p1"}]

    def test_ensure_message_id(self):
        """Test missing IDs and timestamps are derived from position."""
        message = ensure_message_id({"role": "user", "content": "hi"}, "t1", 3, BASE_TIME)

        assert message["id"] == "t1_msg_3"
        assert message["threadId"] == "t1"
        assert message["createdAt"] == BASE_TIME + 3

    def test_ensure_message_id_prefers_meta_timestamp(self):
        message = ensure_message_id({"id": "m", "meta": {"createdAt": 42}}, "t1", 0, BASE_TIME)

        assert message["id"] == "m"
        assert message["createdAt"] == 42

    def test_ensure_message_id_reads_naive_iso_as_utc(self):
        message = ensure_message_id({"createdAt": "2024-01-01T00:00:00"}, "t1", 0, BASE_TIME)

        assert message["createdAt"] == 1_704_067_200_000


class TestMigrateLegacyChat:
    """Test the flat-key to chat store migration."""

    @pytest.mark.asyncio
    async def test_naive_timestamps_mix_with_new_messages(self, store):
        """Test a thread with naive legacy timestamps can still be appended to and read."""
        legacy = MemoryLegacyStorage(
            {
                "or_projects": [{"id": "p1", "name": "Research"}],
                "or_project_threads": [
                    {
                        "id": "t1",
                        "projectId": "p1",
                        "createdAt": "2024-01-01T00:00:00",
                        "messages": [{"role": "user", "content": "old", "createdAt": "2024-01-01T00:00:00"}],
                    }
                ],
            }
        )
        await migrate_legacy_chat(store, legacy)

        await store.add_message_to_thread("t1", "assistant", "new")
        messages = await store.get_messages("t1")

        assert [m.content for m in messages] == ["old", "new"]
        assert messages[0].created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert (await store.get_thread("t1")).created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_migrates_everything(self, store):
        """Test projects, threads, messages, summary and archive are written."""
        legacy = MemoryLegacyStorage(legacy_data())

        result = await migrate_legacy_chat(store, legacy)

        assert result.migrated
        assert (result.projects, result.threads, result.messages) == (2, 2, 2)

        project = await store.get_project("p1")
        assert project.icon == "🔬"
        assert project.model_display_name == ""

        view = await store.get_thread_view("t1")
        assert view.project_id == "p1"
        assert [m.id for m in view.messages] == ["t1_msg_0", "keep-id"]
        assert view.summary == "Earlier: basics of gravity."
        assert [m.content for m in view.archived_messages] == ["What is gravity?"]
        assert (await store.get_thread("t2")).project_id == "p2"

    @pytest.mark.asyncio
    async def test_removes_legacy_keys_then_sets_flag(self, store):
        """Test legacy keys are gone and the flag is set afterwards."""
        legacy = MemoryLegacyStorage(legacy_data())

        await migrate_legacy_chat(store, legacy)

        assert legacy.data == {MIGRATION_FLAG: True}

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, store, backend):
        """Test re-running performs zero writes and changes nothing."""
        legacy = MemoryLegacyStorage(legacy_data())
        await migrate_legacy_chat(store, legacy)
        before = await snapshot(store)
        legacy_writes = legacy.writes
        stats = await store.stats()

        result = await migrate_legacy_chat(store, legacy)

        assert not result.migrated
        assert result.writes == 0
        assert legacy.writes == legacy_writes
        assert await snapshot(store) == before
        assert (await store.stats()).counts == stats.counts

    @pytest.mark.asyncio
    async def test_rerun_after_interrupted_delete_converges(self, store):
        """Test a crash between writing and cleanup converges on re-run."""
        legacy = MemoryLegacyStorage(legacy_data())
        await migrate_legacy_chat(store, legacy)
        once = await snapshot(store)

        # Simulate the legacy keys surviving an interrupted run.
        interrupted = MemoryLegacyStorage(legacy_data())
        await migrate_legacy_chat(store, interrupted)

        assert await snapshot(store) == once

    @pytest.mark.asyncio
    async def test_nothing_to_migrate(self, store):
        """Test empty legacy storage is left alone."""
        legacy = MemoryLegacyStorage({"unrelated": 1})

        result = await migrate_legacy_chat(store, legacy)

        assert not result.migrated
        assert legacy.writes == 0
        assert MIGRATION_FLAG not in legacy.data

    @pytest.mark.asyncio
    async def test_falls_back_to_space_keys(self, store):
        """Test or_spaces / or_threads are read when the new keys are absent."""
        legacy = MemoryLegacyStorage(
            {
                "or_spaces": [{"id": "s1", "name": "Old space"}],
                "or_threads": [{"id": "t9", "spaceId": "s1", "title": "Old thread"}],
            }
        )

        result = await migrate_legacy_chat(store, legacy)

        assert result.projects == 1
        assert (await store.get_thread("t9")).project_id == "s1"


class TestMigrateLegacySpaceKeys:
    """Test the spaces -> projects key rename."""

    @pytest.mark.asyncio
    async def test_merges_by_id(self):
        """Test legacy entries merge into existing ones without duplicates."""
        legacy = MemoryLegacyStorage(
            {
                "or_projects": [{"id": "p1", "name": "Existing"}],
                "or_spaces": [{"id": "p1", "name": "Stale"}, {"id": "s2", "name": "Space"}],
                "or_threads": {"s2": [{"id": "t1"}]},
                "or_collapse_on_spaces": True,
            }
        )

        assert await migrate_legacy_space_keys(legacy)

        assert legacy.data["or_projects"] == [{"id": "p1", "name": "Existing"}, {"id": "s2", "name": "Space"}]
        assert legacy.data["or_project_threads"] == [{"id": "t1", "projectId": "s2"}]
        assert legacy.data["or_collapse_on_projects"] is True
        assert not {"or_spaces", "or_threads", "or_collapse_on_spaces"} & set(legacy.data)

    @pytest.mark.asyncio
    async def test_no_legacy_keys(self):
        """Test nothing happens without legacy keys."""
        legacy = MemoryLegacyStorage({"or_projects": []})

        assert not await migrate_legacy_space_keys(legacy)
        assert legacy.writes == 0


class TestJsonFileLegacyStorage:
    """Test the JSON file legacy storage."""

    @pytest.mark.asyncio
    async def test_full_run_from_file(self, store):
        """Test both migrations run against a JSON export."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "legacy.json"
            path.write_text(json.dumps(legacy_data()))

            result = await run_legacy_migrations(store, JsonFileLegacyStorage(path))

            assert result.migrated
            assert json.loads(path.read_text()) == {MIGRATION_FLAG: True}

    @pytest.mark.asyncio
    async def test_missing_file_reads_empty(self):
        """Test a missing file behaves like empty storage."""
        with tempfile.TemporaryDirectory() as tmpdir:
            storage = JsonFileLegacyStorage(Path(tmpdir) / "absent.json")

            assert await storage.get(["or_projects"]) == {}
            await storage.remove(["or_projects"])
