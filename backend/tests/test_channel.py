"""Tests for the local duplex channel."""

import asyncio

import pytest

from threadkeep_models import CompleteEvent, ContentEvent, StartStreamRequest
from threadkeep.channel import LocalChannel


class ListCaller:
    def __init__(self, events):
        self.events = events

    async def stream(self, request):
        for event in self.events:
            yield event


class StalledCaller:
    """Emits one chunk and then never finishes."""

    def __init__(self):
        self.cancelled = False

    async def stream(self, request):
        yield ContentEvent(content="partial")
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class BrokenCaller:
    async def stream(self, request):
        yield ContentEvent(content="a")
        raise RuntimeError("socket closed")


class TestLocalChannel:
    """Test LocalChannel iteration and cancellation."""

    @pytest.mark.asyncio
    async def test_relays_events_until_caller_finishes(self):
        channel = LocalChannel(ListCaller([ContentEvent(content="a"), CompleteEvent()]))
        await channel.send(StartStreamRequest(prompt="x"))

        events = [event async for event in channel]

        assert [e.type for e in events] == ["content", "complete"]

    @pytest.mark.asyncio
    async def test_disconnect_cancels_caller_and_ends_iteration(self):
        """Test disconnect stops a stalled stream."""
        caller = StalledCaller()
        channel = LocalChannel(caller)
        await channel.send(StartStreamRequest(prompt="x"))
        received = []

        async for event in channel:
            received.append(event)
            await channel.disconnect()
            await channel.disconnect()

        await asyncio.sleep(0.01)
        assert [e.content for e in received] == ["partial"]
        assert channel.disconnected
        assert caller.cancelled

    @pytest.mark.asyncio
    async def test_caller_exception_becomes_error_event(self):
        channel = LocalChannel(BrokenCaller())
        await channel.send(StartStreamRequest(prompt="x"))

        events = [event async for event in channel]

        assert [e.type for e in events] == ["content", "error"]
        assert events[-1].error == "socket closed"

    @pytest.mark.asyncio
    async def test_send_after_disconnect_fails(self):
        channel = LocalChannel(ListCaller([]))
        await channel.disconnect()

        with pytest.raises(RuntimeError):
            await channel.send(StartStreamRequest(prompt="x"))
