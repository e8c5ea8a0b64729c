"""Model provider caller: OpenAI-compatible streaming chat completions."""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Protocol

import httpx

from threadkeep_models import (
    ChatTurn,
    CompleteEvent,
    ContentEvent,
    ErrorEvent,
    ReasoningEvent,
    ServerEvent,
    StartStreamRequest,
)
from threadkeep.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

NO_CONTENT_ERROR = (
    "No response content received from the model. The model may have only "
    "produced reasoning without a final answer. Please try again."
)
WEB_SEARCH_SUFFIX = ":online"


class ProviderCaller(Protocol):
    """Turns a start request into a stream of server events.

    Implementations report failures as an ``ErrorEvent`` rather than
    raising, and end every successful stream with a ``CompleteEvent``.
    """

    def stream(self, request: StartStreamRequest) -> AsyncIterator[ServerEvent]: ...


def build_provider_context(request: StartStreamRequest) -> list[ChatTurn]:
    """Messages sent to the provider: the request history plus the prompt.

    On retry the prompt is not appended again if it already closes the
    history. An empty prompt appends nothing.
    """
    context = list(request.messages)
    last = context[-1] if context else None
    already_there = last is not None and last.role == "user" and last.content == request.prompt
    if request.prompt and not (request.retry and already_there):
        context.append(ChatTurn(role="user", content=request.prompt))
    return context


def resolve_model_name(model: str | None, web_search: bool) -> str | None:
    if model and web_search and not model.endswith(WEB_SEARCH_SUFFIX):
        return f"{model}{WEB_SEARCH_SUFFIX}"
    return model


def reasoning_text(delta: dict[str, Any]) -> str:
    for key in ("reasoning", "reasoning_content"):
        value = delta.get(key)
        if isinstance(value, str):
            return value
    return ""


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        message = data["error"].get("message")
        if message:
            return str(message)
    return f"HTTP {response.status_code}"


class HttpProviderCaller:
    """Streams ``/chat/completions`` from an OpenAI-compatible endpoint.

    No request timeout is applied; a stalled stream stays open until the
    caller stops consuming it.
    """

    def __init__(
        self,
        config: Settings | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config or default_settings
        self.base_url = (base_url or self._config.provider_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else self._config.provider_api_key
        self._client = client

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[httpx.AsyncClient, None]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=None) as client:
            yield client

    def build_request_body(self, request: StartStreamRequest) -> dict[str, Any]:
        model = resolve_model_name(request.model or self._config.default_model, request.web_search)
        body: dict[str, Any] = {
            "model": model,
            "messages": [turn.model_dump() for turn in build_provider_context(request)],
            "stream": True,
        }
        if request.reasoning and request.provider == "openrouter":
            body["reasoning"] = {"enabled": True, "effort": "medium"}
        return body

    async def stream(self, request: StartStreamRequest) -> AsyncGenerator[ServerEvent, None]:
        body = self.build_request_body(request)
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        content_seen = False
        tokens: int | None = None

        logger.info(
            f"Starting provider stream: model={body['model']} messages={len(body['messages'])} "
            f"web_search={request.web_search} reasoning={request.reasoning} retry={request.retry}"
        )

        async with self._session() as client:
            try:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers=headers,
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        message = _error_message(response)
                        logger.error(f"Provider HTTP error: {message}")
                        yield ErrorEvent(error=message)
                        return

                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError:
                            logger.debug(f"Skipping unparsable SSE line: {data[:80]!r}")
                            continue
                        if not isinstance(chunk, dict):
                            continue

                        choices = chunk.get("choices") or [{}]
                        delta = choices[0].get("delta") or {}
                        if delta.get("content"):
                            content_seen = True
                            yield ContentEvent(content=delta["content"])
                        reasoning = reasoning_text(delta)
                        if reasoning:
                            yield ReasoningEvent(reasoning=reasoning)
                        usage = chunk.get("usage")
                        if isinstance(usage, dict) and usage.get("total_tokens") is not None:
                            tokens = usage["total_tokens"]
            except httpx.RequestError as e:
                logger.error(f"Provider request error: {e}")
                yield ErrorEvent(error=f"Request failed: {e}")
                return

        if not content_seen:
            logger.warning(f"Provider stream for {body['model']} ended without content")
            yield ErrorEvent(error=NO_CONTENT_ERROR)
            return

        yield CompleteEvent(model=request.model, tokens=tokens, context_size=len(body["messages"]))
