"""Sliding-window context management.

Keeps the live part of a thread bounded. Once a thread outgrows its live
window, the oldest messages are summarized into a running summary and
moved to the archive. The archive keeps the full history for display and
export; it is never sent back to the model.

Summarization is best-effort: any failure leaves the thread untouched and
the turn proceeds with the full live history.
"""

import logging
import math
from dataclasses import dataclass
from typing import Protocol

from pydantic import BaseModel

from threadkeep_models import ChatTurn, Message, Project, StartStreamRequest
from threadkeep.config import Settings, settings as default_settings
from threadkeep.errors import SummarizationFailure
from threadkeep.hooks import HostHooks, NullHooks
from threadkeep.models import ThreadView
from threadkeep.services.provider import ProviderCaller
from threadkeep.services.reasoning import ReasoningParser
from threadkeep.store import ChatStore

logger = logging.getLogger(__name__)

# Window policy
LIVE_WINDOW_SIZE = 12  # Live messages kept before the first summary
SUMMARIZED_LIVE_WINDOW_SIZE = 8  # Live messages kept once a summary exists
SUMMARIZATION_SKIP_TOKENS = 2000  # Skip summarizing on turns with prompts larger than this
SUMMARY_MIN_LENGTH = 80
SUMMARY_MAX_LENGTH = 200
SUMMARY_CHARS_PER_MESSAGE = 20

SUMMARIZER_PROMPT = (
    "You are a concise summarizer. "
    "Capture user goals, decisions, constraints, key facts, and open questions. "
    "Avoid long quotes and verbosity; keep only durable context."
)

UPDATING_SUMMARY_NOTICE = "Updating summary..."
SUMMARY_FAILED_NOTICE = "Summary update failed; continuing without it"


# ============= Window policy =============


def live_window_size(
    summary: str | None,
    full: int = LIVE_WINDOW_SIZE,
    summarized: int = SUMMARIZED_LIVE_WINDOW_SIZE,
) -> int:
    return summarized if summary else full


@dataclass
class SummarySplit:
    history_to_summarize: list[Message]
    live_messages: list[Message]


def split_for_summary(messages: list[Message], window_size: int) -> SummarySplit:
    """Split off everything older than the last ``window_size`` messages."""
    messages = list(messages or [])
    if len(messages) <= window_size:
        return SummarySplit(history_to_summarize=[], live_messages=messages)
    cutoff = len(messages) - window_size
    return SummarySplit(history_to_summarize=messages[:cutoff], live_messages=messages[cutoff:])


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def should_skip_summarization(prompt: str | None, max_tokens: int = SUMMARIZATION_SKIP_TOKENS) -> bool:
    """Large prompts skip summarization for this turn."""
    if not isinstance(prompt, str):
        return False
    return estimate_tokens(prompt) > max_tokens


def min_acceptable_summary_length(
    history_count: int,
    lower: int = SUMMARY_MIN_LENGTH,
    upper: int = SUMMARY_MAX_LENGTH,
    per_message: int = SUMMARY_CHARS_PER_MESSAGE,
) -> int:
    """Shortest summary accepted for ``history_count`` summarized messages."""
    return max(lower, min(upper, (history_count or 0) * per_message))


def append_archived_messages(current: list[Message] | None, new: list[Message] | None) -> list[Message]:
    return [*(current or []), *(new or [])]


def build_summarizer_messages(prior_summary: str | None, history: list[Message]) -> list[ChatTurn]:
    turns = [ChatTurn(role="system", content=SUMMARIZER_PROMPT)]
    if prior_summary:
        turns.append(ChatTurn(role="system", content=f"Summary so far:\n{prior_summary}"))
    turns.extend(ChatTurn(role=m.role, content=m.content) for m in history)
    return turns


# ============= Usage =============


def context_usage_count(view: ThreadView | None, project: Project | None) -> int:
    """Number of messages the next request will carry."""
    if view is None:
        return 0
    count = len(view.messages)
    if view.summary:
        count += 1
    if project and project.custom_instructions and project.custom_instructions.strip():
        count += 1
    return count


def context_badge_label(context_size: int | None) -> str:
    if not context_size or context_size <= 2:
        return ""
    return f"{context_size // 2} Q&A"


def full_conversation(view: ThreadView) -> list[Message]:
    """Archived then live messages: the whole thread in order."""
    return append_archived_messages(view.archived_messages, view.messages)


# ============= Summarizers =============


class SummaryResult(BaseModel):
    ok: bool
    summary: str = ""
    error: str | None = None


class Summarizer(Protocol):
    async def summarize(
        self,
        prior_summary: str,
        history: list[Message],
        project: Project | None = None,
    ) -> SummaryResult: ...


class ProviderSummarizer:
    """Summarizes by streaming the summarizer prompt through a provider."""

    def __init__(self, caller: ProviderCaller, config: Settings | None = None):
        self._caller = caller
        self._config = config or default_settings

    async def summarize(
        self,
        prior_summary: str,
        history: list[Message],
        project: Project | None = None,
    ) -> SummaryResult:
        request = StartStreamRequest(
            messages=build_summarizer_messages(prior_summary, history),
            model=(project.model if project else None) or self._config.default_model or None,
            provider=(project.model_provider if project else None) or self._config.default_provider,
        )
        parser = ReasoningParser()
        collected: list[str] = []
        async for event in self._caller.stream(request):
            if event.type == "content":
                collected.append(parser.feed(event.content).content)
            elif event.type == "error":
                logger.error(f"Summarization error: {event.error}")
                return SummaryResult(ok=False, error=event.error)
            elif event.type == "complete":
                break
        collected.append(parser.flush().content)
        return SummaryResult(ok=True, summary="".join(collected))


# ============= Manager =============


class ContextManager:
    """Decides when to summarize and commits the result atomically."""

    def __init__(
        self,
        store: ChatStore,
        summarizer: Summarizer,
        hooks: HostHooks | None = None,
        config: Settings | None = None,
    ):
        self._store = store
        self._summarizer = summarizer
        self._hooks = hooks or NullHooks()
        self._config = config or default_settings

    def window_size(self, summary: str | None) -> int:
        return live_window_size(
            summary,
            full=self._config.live_window_size,
            summarized=self._config.summarized_live_window_size,
        )

    def min_summary_length(self, history_count: int) -> int:
        return min_acceptable_summary_length(
            history_count,
            lower=self._config.summary_min_length,
            upper=self._config.summary_max_length,
            per_message=self._config.summary_chars_per_message,
        )

    async def maybe_summarize(self, view: ThreadView, prompt: str, project: Project | None) -> ThreadView:
        """Run a summarization pass if the live window overflowed.

        Returns the updated view on success and ``view`` unchanged when
        nothing needed doing or summarization failed.
        """
        split = split_for_summary(view.messages, self.window_size(view.summary))
        if not split.history_to_summarize:
            return view
        if should_skip_summarization(prompt, self._config.summarization_skip_tokens):
            logger.info(f"Skipping summarization for thread {view.id}: prompt too large")
            return view

        history = split.history_to_summarize
        logger.info(f"Summarizing {len(history)} messages of thread {view.id}")
        self._hooks.notify(UPDATING_SUMMARY_NOTICE, "info")

        try:
            result = await self._summarizer.summarize(view.summary, history, project)
            summary = result.summary.strip() if result.ok else ""
            if not result.ok:
                raise SummarizationFailure(result.error or "summarizer reported failure")
            min_length = self.min_summary_length(len(history))
            if len(summary) < min_length:
                raise SummarizationFailure(f"summary too short ({len(summary)} < {min_length} chars)")

            return await self._store.commit_summarization(view.id, summary, history)
        except Exception as e:
            logger.warning(f"Summary update failed for thread {view.id}: {e}")
            self._hooks.notify(SUMMARY_FAILED_NOTICE, "error")
            return view
