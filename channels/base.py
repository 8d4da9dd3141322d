"""
Listener channels — the output side of a live conversation viewer.

Provides:
- ChannelError / ChannelClosedError: structured error hierarchy
- ListenerChannel: abstract base every live viewer implements
"""
from __future__ import annotations

import abc


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class ChannelClosedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Channel closed: {channel}", channel)


# ══════════════════════════════════════════════════════════════
#  CHANNEL
# ══════════════════════════════════════════════════════════════

class ListenerChannel(abc.ABC):
    """
    One live viewer of a conversation (an SSE stream, a WebSocket).

    `send` receives the event name and its already-serialised JSON payload.
    A channel that can no longer deliver raises ChannelError; the registry
    then drops it.
    """

    kind: str = "channel"

    @abc.abstractmethod
    async def send(self, event: str, data: str) -> None:
        ...

    @property
    def closed(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} closed={self.closed}>"
