"""
Transport implementations for the two subscriber surfaces.

- `StreamTransport`: pull-style server-sent events, one bounded queue per request
- `SocketTransport`: push-style, writes straight onto a connected WebSocket
- `periodic_frames`: fixed-interval SSE frames that bypass the subscription registry
"""

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable

import structlog

from adapters.web.rooms import SocketConnection

logger = structlog.get_logger(__name__)

STREAM_QUEUE_SIZE = 32
DISCONNECT_POLL_SECONDS = 1.0


def format_sse(message: str) -> str:
    """`event: <type>` line from the message's type field, then the JSON as data."""
    event_type = json.loads(message).get("type", "message")
    return f"event: {event_type}\ndata: {message}\n\n"


class StreamTransport:
    """
    Queue between the dispatcher and a streaming HTTP response.

    A consumer that falls `STREAM_QUEUE_SIZE` frames behind is treated as gone:
    `send` returns False and the dispatcher unsubscribes it.
    """

    def __init__(self, name: str = "sse", maxsize: int = STREAM_QUEUE_SIZE) -> None:
        self.name = name
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def send(self, message: str) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(format_sse(message))
        except asyncio.QueueFull:
            logger.warning("stream_consumer_too_slow", transport=self.name)
            self._closed = True
            return False
        return True

    async def frames(
        self,
        is_disconnected: Callable[[], Awaitable[bool]],
        poll_seconds: float = DISCONNECT_POLL_SECONDS,
    ) -> AsyncIterator[str]:
        """Yield queued frames until the client goes away or the transport closes."""
        while not self._closed:
            try:
                frame = await asyncio.wait_for(self._queue.get(), timeout=poll_seconds)
            except TimeoutError:
                if await is_disconnected():
                    break
                continue
            yield frame
        self._closed = True


async def periodic_frames(
    produce: Callable[[], Awaitable[str | None]],
    is_disconnected: Callable[[], Awaitable[bool]],
    interval_seconds: float,
) -> AsyncIterator[str]:
    """
    Poll `produce` every `interval_seconds` and frame what it returns.

    The first frame goes out immediately. A `None` from `produce` skips that round.
    """
    while not await is_disconnected():
        message = await produce()
        if message is not None:
            yield format_sse(message)
        await asyncio.sleep(interval_seconds)


class SocketTransport:
    """Tick delivery onto one WebSocket connection."""

    def __init__(self, connection: SocketConnection) -> None:
        self.connection = connection
        self.name = f"websocket:{connection.id}"

    @property
    def closed(self) -> bool:
        return self.connection.closed

    async def send(self, message: str) -> bool:
        return await self.connection.send_text(message)
