"""Live listener channels and the per-conversation registry."""
from channels.base import ChannelError, ChannelClosedError, ListenerChannel
from channels.listeners import ListenerRegistry, QueueChannel, WebSocketChannel

__all__ = [
    "ChannelError", "ChannelClosedError", "ListenerChannel",
    "ListenerRegistry", "QueueChannel", "WebSocketChannel",
]
