"""
Listener Registry — fan-out of job events to everyone watching a conversation.

Each conversation holds a set of live channels. Publishing serialises the
payload once and delivers it to a snapshot of the set, so a subscriber
joining or leaving mid-publish never disturbs the loop. A channel that
fails is removed; the others still receive the event.

Channels:
  - QueueChannel:     bounded asyncio queue drained by an SSE response
  - WebSocketChannel: JSON text frames {"event": ..., "data": ...}
"""
from __future__ import annotations

import asyncio
import json
import structlog
from typing import Any, Callable, Optional

from channels.base import ChannelClosedError, ChannelError, ListenerChannel

logger = structlog.get_logger()


class ListenerRegistry:

    def __init__(self):
        self._listeners: dict[str, set[ListenerChannel]] = {}
        self._published = 0
        self._dropped = 0

    def subscribe(self, conversation_id: str, channel: ListenerChannel) -> Callable[[], None]:
        """Register a channel. Returns an idempotent unsubscribe function."""
        self._listeners.setdefault(conversation_id, set()).add(channel)
        logger.debug("listener_subscribed", conversation_id=conversation_id, kind=channel.kind)

        def unsubscribe() -> None:
            self._remove(conversation_id, channel)

        return unsubscribe

    def _remove(self, conversation_id: str, channel: ListenerChannel) -> bool:
        subscribers = self._listeners.get(conversation_id)
        if not subscribers or channel not in subscribers:
            return False
        subscribers.discard(channel)
        if not subscribers:
            del self._listeners[conversation_id]
        return True

    async def publish(self, conversation_id: str, event: str, payload: Any = None) -> int:
        """
        Deliver `event` to every current subscriber of the conversation.
        Returns the number of successful deliveries.
        """
        subscribers = self._listeners.get(conversation_id)
        if not subscribers:
            return 0

        data = json.dumps(payload if payload is not None else {})
        self._published += 1
        delivered = 0
        for channel in list(subscribers):
            try:
                await channel.send(event, data)
                delivered += 1
            except Exception as e:
                # a broken viewer must not affect the others
                if self._remove(conversation_id, channel):
                    self._dropped += 1
                logger.info(
                    "listener_dropped", conversation_id=conversation_id,
                    kind=channel.kind, event_name=event, error=str(e) or type(e).__name__,
                )
        return delivered

    def subscriber_count(self, conversation_id: Optional[str] = None) -> int:
        if conversation_id is not None:
            return len(self._listeners.get(conversation_id, ()))
        return sum(len(s) for s in self._listeners.values())

    def stats(self) -> dict[str, int]:
        return {
            "conversations": len(self._listeners),
            "subscribers": self.subscriber_count(),
            "published": self._published,
            "dropped": self._dropped,
        }


# ══════════════════════════════════════════════════════════════
#  CHANNELS
# ══════════════════════════════════════════════════════════════

class QueueChannel(ListenerChannel):
    """
    Buffers events for a streaming HTTP response.

    The response generator drains `get()`. A slow reader whose queue is full
    gets dropped rather than stalling the publisher; the channel is then
    closed, and `get()` raises ChannelClosedError once the backlog is drained
    so the stream can end.
    """

    kind = "sse"

    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._closed_event = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: str, data: str) -> None:
        if self._closed:
            raise ChannelClosedError(self.kind)
        try:
            self._queue.put_nowait((event, data))
        except asyncio.QueueFull as e:
            self.close()
            raise ChannelError("Listener queue full", self.kind, retryable=False) from e

    async def get(self) -> tuple[str, str]:
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self._closed:
            raise ChannelClosedError(self.kind)
        get = asyncio.ensure_future(self._queue.get())
        closing = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({get, closing}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closing.cancel()
            if not get.done():
                get.cancel()
        if get.done() and not get.cancelled():
            return get.result()
        raise ChannelClosedError(self.kind)

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._closed = True
        self._closed_event.set()


class WebSocketChannel(ListenerChannel):
    """Wraps a FastAPI/Starlette WebSocket."""

    kind = "websocket"

    def __init__(self, ws):
        self.ws = ws
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: str, data: str) -> None:
        if self._closed:
            raise ChannelClosedError(self.kind)
        try:
            await self.ws.send_text(json.dumps({"event": event, "data": json.loads(data)}))
        except Exception as e:
            self._closed = True
            raise ChannelError(f"WebSocket send failed: {e}", self.kind) from e

    def close(self) -> None:
        self._closed = True
