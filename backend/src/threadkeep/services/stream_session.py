"""Stream session: one request/response cycle over a duplex channel.

States::

    IDLE -> OPEN -> STREAMING -> COMPLETE | ERRORED | CANCELLED -> CLOSED

A session persists at most one assistant message, and only on
``complete``. An ``error`` event persists nothing and raises
``StreamError``. A channel that closes without either (the user pressed
Stop, or the provider side went away) resolves as CANCELLED.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from threadkeep_models import (
    ChatTurn,
    CompleteEvent,
    ContentEvent,
    ErrorEvent,
    Message,
    MessageMeta,
    ReasoningEvent,
    StartStreamRequest,
    StreamContext,
    utcnow,
)
from threadkeep.channel import Channel
from threadkeep.errors import StreamError
from threadkeep.hooks import HostHooks, NullHooks
from threadkeep.services.reasoning import ReasoningParser
from threadkeep.services.sources import Source, extract_sources
from threadkeep.store import ChatStore

logger = logging.getLogger(__name__)

ONGOING_INSTRUCTIONS_PREFIX = (
    "[Ongoing conversation. Follow these standing instructions without re-introducing yourself:]\n"
)
SUMMARY_PREFIX = "Summary so far:\n"
DEFAULT_MODEL_LABEL = "default model"


class StreamState(str, Enum):
    IDLE = "idle"
    OPEN = "open"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERRORED = "errored"
    CANCELLED = "cancelled"
    CLOSED = "closed"


TERMINAL_STATES = {StreamState.COMPLETE, StreamState.ERRORED, StreamState.CANCELLED, StreamState.CLOSED}


@dataclass
class StreamOutcome:
    """How a session ended. ``message`` is set only for COMPLETE."""

    state: StreamState
    content: str = ""
    reasoning: str = ""
    message: Message | None = None
    sources: list[Source] = field(default_factory=list)


# ============= Request building =============


def project_tab_id(project_id: str | None) -> str:
    """Routing tag for a project's streams."""
    return f"Project_{project_id}"


def build_stream_messages(
    messages: list[Message],
    prompt: str,
    instructions: str | None = None,
    summary: str | None = None,
) -> list[ChatTurn]:
    """Assemble the history sent with a start request.

    Standing instructions and the running summary go first as system
    messages. A trailing user message equal to ``prompt`` is dropped since
    the provider side appends the prompt itself.
    """
    history = list(messages)
    if history and history[-1].role == "user" and history[-1].content == prompt:
        history.pop()

    turns = []
    if instructions:
        content = f"{ONGOING_INSTRUCTIONS_PREFIX}{instructions}" if history else instructions
        turns.append(ChatTurn(role="system", content=content))
    if summary:
        turns.append(ChatTurn(role="system", content=f"{SUMMARY_PREFIX}{summary}"))
    turns.extend(ChatTurn(role=m.role, content=m.content) for m in history)
    return turns


def build_start_request(
    context: StreamContext,
    messages: list[Message],
    retry: bool = False,
) -> StartStreamRequest:
    return StartStreamRequest(
        prompt=context.prompt,
        messages=build_stream_messages(messages, context.prompt, context.custom_instructions, context.summary),
        model=context.model,
        provider=context.model_provider or "openrouter",
        web_search=context.web_search,
        reasoning=context.reasoning,
        tab_id=project_tab_id(context.project_id),
        retry=retry,
    )


def model_display_name(
    display_name: str | None,
    model: str | None,
    reported_model: str | None = None,
) -> str:
    """Label for the model that produced an answer."""
    if display_name:
        return display_name
    if model:
        return model
    return reported_model or DEFAULT_MODEL_LABEL


def build_stream_meta(
    event: CompleteEvent,
    context: StreamContext,
    elapsed_sec: float | None,
) -> MessageMeta:
    return MessageMeta(
        model=model_display_name(context.model_display_name, context.model, event.model),
        tokens=event.tokens or None,
        response_time_sec=round(elapsed_sec, 2) if elapsed_sec is not None else None,
        context_size=event.context_size or 0,
        created_at=utcnow(),
    )


# ============= Session =============


class StreamSession:
    """Drives one channel from start request to a single persisted message."""

    def __init__(
        self,
        store: ChatStore,
        channel: Channel,
        context: StreamContext,
        messages: list[Message],
        hooks: HostHooks | None = None,
        retry: bool = False,
    ):
        self._store = store
        self._channel = channel
        self.context = context
        self._messages = list(messages)
        self._hooks = hooks or NullHooks()
        self.retry = retry

        self.state = StreamState.IDLE
        self.content = ""
        self.reasoning = ""
        self._parser = ReasoningParser()
        self._stop_requested = False
        self._disconnected = False

    @property
    def active(self) -> bool:
        return self.state in (StreamState.OPEN, StreamState.STREAMING)

    async def _disconnect(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        await self._channel.disconnect()

    def _append_reasoning(self, text: str) -> None:
        if text:
            self.reasoning += text
            self._hooks.append_reasoning(text)

    def _append_content(self, text: str) -> None:
        if text:
            self.content += text
            # Full replacement: partial markdown is never rendered incrementally.
            self._hooks.render_assistant_content(self.content)

    async def run(self) -> StreamOutcome:
        """Stream to completion.

        Returns the outcome for COMPLETE and CANCELLED, raises
        ``StreamError`` for ERRORED.
        """
        if self.state != StreamState.IDLE:
            raise RuntimeError(f"Stream session already ran (state={self.state.value})")

        request = build_start_request(self.context, self._messages, retry=self.retry)
        started = time.monotonic()
        outcome: StreamOutcome | None = None

        try:
            self.state = StreamState.OPEN
            await self._channel.send(request)
            logger.info(
                f"Stream opened for thread {self.context.thread_id} "
                f"(model={request.model}, retry={self.retry})"
            )

            async for event in self._channel:
                if self.state == StreamState.OPEN:
                    self.state = StreamState.STREAMING

                if isinstance(event, ContentEvent):
                    parsed = self._parser.feed(event.content)
                    self._append_reasoning(parsed.reasoning)
                    self._append_content(parsed.content)
                elif isinstance(event, ReasoningEvent):
                    self._append_reasoning(event.reasoning)
                elif isinstance(event, CompleteEvent):
                    outcome = await self._complete(event, time.monotonic() - started)
                    break
                elif isinstance(event, ErrorEvent):
                    self.state = StreamState.ERRORED
                    logger.warning(f"Stream error for thread {self.context.thread_id}: {event.error}")
                    self._hooks.render_stream_error(event.error, self.context)
                    raise StreamError(event.error)

            if outcome is None:
                # Closed without complete/error: stopped by the user, or the
                # provider side went away. Nothing is persisted either way.
                self.state = StreamState.CANCELLED
                if not self._stop_requested:
                    logger.warning(f"Stream for thread {self.context.thread_id} closed without completing")
                outcome = StreamOutcome(state=StreamState.CANCELLED, content=self.content, reasoning=self.reasoning)
            return outcome
        finally:
            await self._disconnect()
            self.state = StreamState.CLOSED

    async def _complete(self, event: CompleteEvent, elapsed_sec: float) -> StreamOutcome:
        tail = self._parser.flush()
        self._append_reasoning(tail.reasoning)
        self._append_content(tail.content)

        meta = build_stream_meta(event, self.context, elapsed_sec)
        message = await self._store.add_message_to_thread(
            self.context.thread_id,
            "assistant",
            self.content,
            meta,
        )
        self.state = StreamState.COMPLETE

        sources, clean_text = extract_sources(self.content)
        self._hooks.stream_finished(message, sources, clean_text)
        logger.info(
            f"Stream complete for thread {self.context.thread_id}: "
            f"{len(self.content)} chars, tokens={meta.tokens}, {meta.response_time_sec}s"
        )
        return StreamOutcome(
            state=StreamState.COMPLETE,
            content=self.content,
            reasoning=self.reasoning,
            message=message,
            sources=sources,
        )

    async def stop(self) -> None:
        """Cancel by closing the channel. Idempotent."""
        if self._stop_requested or self.state in TERMINAL_STATES:
            return
        self._stop_requested = True
        logger.info(f"Stopping stream for thread {self.context.thread_id}")
        await self._disconnect()
