"""Tests for the HTTP provider caller."""

import json

import httpx
import pytest

from threadkeep_models import ChatTurn, StartStreamRequest
from threadkeep.config import Settings
from threadkeep.services.provider import (
    NO_CONTENT_ERROR,
    HttpProviderCaller,
    build_provider_context,
    resolve_model_name,
)


def sse(*chunks):
    lines = [f"data: {json.dumps(chunk)}" for chunk in chunks]
    lines.append("data: [DONE]")
    return "\n\n".join(lines) + "\n\n"


def delta(**fields):
    return {"choices": [{"delta": fields}]}


def caller_for(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    config = Settings(provider_base_url="https://llm.test/api/v1", provider_api_key="sk-test")
    return HttpProviderCaller(config, client=client)


async def collect(caller, request):
    return [event async for event in caller.stream(request)]


class TestRequestBuilding:
    """Test request body construction."""

    def test_prompt_is_appended(self):
        request = StartStreamRequest(prompt="Hi", messages=[ChatTurn(role="system", content="Be brief")])

        context = build_provider_context(request)

        assert [(t.role, t.content) for t in context] == [("system", "Be brief"), ("user", "Hi")]

    def test_retry_does_not_duplicate_prompt(self):
        request = StartStreamRequest(prompt="Hi", messages=[ChatTurn(role="user", content="Hi")], retry=True)

        assert len(build_provider_context(request)) == 1

    def test_web_search_suffix(self):
        assert resolve_model_name("openai/gpt-4o", True) == "openai/gpt-4o:online"
        assert resolve_model_name("openai/gpt-4o:online", True) == "openai/gpt-4o:online"
        assert resolve_model_name("openai/gpt-4o", False) == "openai/gpt-4o"

    def test_reasoning_flag(self):
        caller = HttpProviderCaller(Settings())
        body = caller.build_request_body(StartStreamRequest(prompt="Hi", model="m", reasoning=True))

        assert body["reasoning"] == {"enabled": True, "effort": "medium"}
        assert body["stream"] is True


class TestHttpProviderCaller:
    """Test streaming against a mocked endpoint."""

    @pytest.mark.asyncio
    async def test_streams_content_reasoning_and_complete(self):
        """Test deltas map to content/reasoning events and usage to tokens."""
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            body = sse(
                delta(reasoning="thinking"),
                delta(content="Hel"),
                delta(content="lo"),
                {"choices": [{"delta": {}}], "usage": {"total_tokens": 42}},
            )
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        request = StartStreamRequest(prompt="Hi", model="m", web_search=True)
        events = await collect(caller_for(handler), request)

        assert [e.type for e in events] == ["reasoning", "content", "content", "complete"]
        assert events[1].content + events[2].content == "Hello"
        assert events[-1].tokens == 42
        assert events[-1].context_size == 1
        assert seen["url"] == "https://llm.test/api/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "m:online"

    @pytest.mark.asyncio
    async def test_reasoning_only_answer_is_an_error(self):
        def handler(request):
            return httpx.Response(200, text=sse(delta(reasoning_content="only thoughts")))

        events = await collect(caller_for(handler), StartStreamRequest(prompt="Hi", model="m"))

        assert [e.type for e in events] == ["reasoning", "error"]
        assert events[-1].error == NO_CONTENT_ERROR

    @pytest.mark.asyncio
    async def test_http_error_message(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"message": "Rate limit exceeded"}})

        events = await collect(caller_for(handler), StartStreamRequest(prompt="Hi", model="m"))

        assert len(events) == 1
        assert events[0].type == "error"
        assert events[0].error == "Rate limit exceeded"

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        events = await collect(caller_for(handler), StartStreamRequest(prompt="Hi", model="m"))

        assert [e.type for e in events] == ["error"]
        assert "connection refused" in events[0].error

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self):
        def handler(request):
            body = ": keep-alive\n\ndata: {not json\n\n" + sse(delta(content="ok"))
            return httpx.Response(200, text=body)

        events = await collect(caller_for(handler), StartStreamRequest(prompt="Hi", model="m"))

        assert [e.type for e in events] == ["content", "complete"]
