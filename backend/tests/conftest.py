"""Shared fixtures and fakes for the engine tests."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from threadkeep_models import Message, Project, StreamContext, parse_server_event
from threadkeep.crypto import RecordCipher, generate_key
from threadkeep.db import MemoryBackend
from threadkeep.services.context import SummaryResult
from threadkeep.store import ChatStore


class ScriptedChannel:
    """Channel that replays a fixed list of server events.

    With ``hold_open`` the channel stays open after the last event until
    it is disconnected, like a stalled provider.
    """

    def __init__(self, events=None, hold_open=False, pause_after=None):
        self.events = [parse_server_event(e) if isinstance(e, dict) else e for e in (events or [])]
        self.hold_open = hold_open
        self.pause_after = pause_after
        self.paused = asyncio.Event()
        self._resume = asyncio.Event()
        self.requests = []
        self.disconnect_count = 0
        self.drained = asyncio.Event()
        self._closed = asyncio.Event()

    async def send(self, request):
        self.requests.append(request)

    async def __aiter__(self):
        for index, event in enumerate(self.events):
            if index == self.pause_after:
                self.paused.set()
                await self._resume.wait()
            if self._closed.is_set():
                return
            yield event
        self.drained.set()
        if self.hold_open:
            await self._closed.wait()

    def resume(self):
        self._resume.set()

    async def disconnect(self):
        self.disconnect_count += 1
        self._closed.set()
        self._resume.set()


class RecordingHooks:
    """Host hooks that remember every call."""

    def __init__(self):
        self.rendered = []
        self.usage_updates = []
        self.notifications = []
        self.content_renders = []
        self.reasoning = []
        self.errors = []
        self.finished = []

    def render_messages(self, messages, view):
        self.rendered.append(list(messages))

    def update_context_usage(self, view, project):
        self.usage_updates.append((view, project))

    def notify(self, message, level="info"):
        self.notifications.append((message, level))

    def render_assistant_content(self, content):
        self.content_renders.append(content)

    def append_reasoning(self, text):
        self.reasoning.append(text)

    def render_stream_error(self, message, context):
        self.errors.append((message, context))

    def stream_finished(self, message, sources, clean_text):
        self.finished.append((message, sources, clean_text))


class FakeSummarizer:
    """Summarizer returning a canned result, or raising ``error``."""

    def __init__(self, summary="", ok=True, error=None):
        self.result = SummaryResult(ok=ok, summary=summary)
        self.error = error
        self.calls = []

    async def summarize(self, prior_summary, history, project=None):
        self.calls.append((prior_summary, list(history)))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def key():
    return generate_key()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend, key):
    return ChatStore(backend, RecordCipher(key))


@pytest.fixture
def hooks():
    return RecordingHooks()


def make_messages(thread_id, count, start=None):
    """``count`` alternating user/assistant messages one second apart."""
    start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
    return [
        Message(
            id=f"{thread_id}_m{i}",
            thread_id=thread_id,
            role="user" if i % 2 == 0 else "assistant",
            content=f"message {i}",
            created_at=start + timedelta(seconds=i),
        )
        for i in range(count)
    ]


async def seed_thread(store, message_count=0, **project_fields):
    """Create a project with one thread holding ``message_count`` messages."""
    project = await store.create_project(project_fields.pop("name", "Research"), **project_fields)
    thread = await store.create_thread(project.id)
    messages = make_messages(thread.id, message_count)
    for message in messages:
        await store.put_message(message)
    return project, thread, messages


def make_context(project: Project, thread_id: str, prompt="Hello?", **overrides) -> StreamContext:
    fields = {
        "prompt": prompt,
        "thread_id": thread_id,
        "project_id": project.id,
        "model": project.model or None,
        "model_provider": project.model_provider or "openrouter",
        "model_display_name": project.model_display_name or None,
        "custom_instructions": project.custom_instructions,
        "web_search": project.web_search,
        "reasoning": project.reasoning,
    }
    fields.update(overrides)
    return StreamContext(**fields)
