"""Ordered event channel and the SSE emitter that drains it."""

import asyncio
from collections.abc import AsyncIterator

from pydantic import TypeAdapter

from toolgate.models.events import StreamEvent
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)

_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)

_CLOSED = object()


class ChannelClosedError(RuntimeError):
    """Raised when sending on a closed channel."""


class EventChannel:
    """Single-producer / single-consumer channel of stream events.

    Events come out in exactly the order they were sent. The consumer's
    iteration ends once the producer closes the channel.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: StreamEvent) -> None:
        """Queue an event for the consumer."""
        if self._closed:
            raise ChannelClosedError("Cannot send on a closed event channel")
        await self._queue.put(event)

    def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]


def format_sse_event(event: StreamEvent) -> str:
    """Format one event as a Server-Sent Events frame.

    The event type becomes the SSE event name and the JSON payload is sent
    on a single data line.
    """
    data_json = _event_adapter.dump_json(event).decode("utf-8")
    return f"event: {event.type}\ndata: {data_json}\n\n"


def parse_sse_frames(raw: str) -> list[StreamEvent]:
    """Parse concatenated SSE frames back into events (used by clients and tests)."""
    events: list[StreamEvent] = []
    for frame in raw.split("\n\n"):
        data_lines = [line[len("data: ") :] for line in frame.splitlines() if line.startswith("data: ")]
        if data_lines:
            events.append(_event_adapter.validate_json("\n".join(data_lines)))
    return events


class StreamingEmitter:
    """Drains an event channel into SSE bytes, strictly in order."""

    def __init__(self, channel: EventChannel):
        self.channel = channel

    async def stream(self) -> AsyncIterator[bytes]:
        """Yield encoded SSE frames until the channel closes."""
        async for event in self.channel:
            logger.debug(f"Emitting {event.type} event")
            yield format_sse_event(event).encode("utf-8")
