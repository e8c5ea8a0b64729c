"""Duplex channel between a stream session and a provider caller.

The client sends one ``StartStreamRequest`` and then iterates server
events until the channel closes. Closing from the client side
(``disconnect``) is the only way to cancel a stream.
"""

import asyncio
import logging
from typing import AsyncIterator, Protocol

from threadkeep_models import ErrorEvent, ServerEvent, StartStreamRequest
from threadkeep.services.provider import ProviderCaller

logger = logging.getLogger(__name__)

_CLOSED = object()


class Channel(Protocol):
    async def send(self, request: StartStreamRequest) -> None: ...

    def __aiter__(self) -> AsyncIterator[ServerEvent]: ...

    async def disconnect(self) -> None:
        """Close the channel. Safe to call more than once."""
        ...


class LocalChannel:
    """Runs a provider caller in a background task on the current loop.

    Events are handed over through an ``asyncio.Queue``; iteration ends
    when the caller finishes or the channel is disconnected.
    """

    def __init__(self, caller: ProviderCaller):
        self._caller = caller
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._disconnected = False

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    async def send(self, request: StartStreamRequest) -> None:
        if self._disconnected:
            raise RuntimeError("Channel is disconnected")
        if self._task is not None:
            raise RuntimeError("Channel already started a stream")
        self._task = asyncio.create_task(self._pump(request))

    async def _pump(self, request: StartStreamRequest) -> None:
        try:
            async for event in self._caller.stream(request):
                await self._queue.put(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Provider caller failed: {e}")
            await self._queue.put(ErrorEvent(error=str(e) or type(e).__name__))
        finally:
            self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[ServerEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED or self._disconnected:
                return
            yield item

    async def disconnect(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        # Wake a reader blocked on the queue.
        self._queue.put_nowait(_CLOSED)
        logger.debug("Channel disconnected")
