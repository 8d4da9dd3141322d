"""
Abstract Message Store — Interface for all storage backends.

Implementations:
  - SqlMessageStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryMessageStore (dict-based, single-process, no persistence)

Conversations and messages are returned as plain dicts with snake_case
keys so callers never hold ORM rows outside a session.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class BaseMessageStore(ABC):
    """Interface that all message store backends must implement."""

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def create_conversation(
        self, visitor_name: Optional[str] = None, visitor_email: Optional[str] = None,
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def list_conversations(
        self, include_spam: bool = False, unseen_only: bool = False,
        limit: int = 50, offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Pinned conversations first, then most recently updated."""
        ...

    @abstractmethod
    async def update_conversation(self, conversation_id: str, **kwargs) -> None:
        """Apply field updates and touch updated_at."""
        ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def add_message(
        self, conversation_id: str, role: str, content: str, metadata: dict = None,
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def add_pending_message(self, conversation_id: str, role: str) -> Optional[dict[str, Any]]:
        """
        Insert an empty placeholder with status=pending.
        Returns None if the conversation already holds a pending message.
        """
        ...

    @abstractmethod
    async def get_pending_message(self, conversation_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def get_messages(self, conversation_id: str, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent `limit` messages in chronological order."""
        ...

    @abstractmethod
    async def get_messages_since(
        self, conversation_id: str, after: str, limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Messages created or resolved after the ISO timestamp `after`."""
        ...

    @abstractmethod
    async def get_unresponded_visitor_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        """
        Visitor messages not yet consumed by a responder message, in arrival
        order. Equal timestamps fall back to the backend's native order.
        """
        ...

    @abstractmethod
    async def mark_responded(self, message_ids: list[str], responder_message_id: str) -> None:
        ...

    @abstractmethod
    async def resolve_pending_message(
        self, message_id: str, content: str, status: str = "received",
        metadata: dict = None, responded_ids: list[str] = None,
    ) -> str:
        """
        Settle a pending placeholder and return the resolution timestamp
        (ISO 8601). `responded_ids` are marked as answered by it.
        """
        ...

    @abstractmethod
    async def fail_orphaned_pending(self, reason: str = "interrupted") -> int:
        """Resolve every leftover pending message as error. Returns the count."""
        ...

    # ── Admin ─────────────────────────────────────────────────

    @abstractmethod
    async def record_admin_visit(self) -> str:
        ...

    @abstractmethod
    async def get_last_admin_visit(self) -> Optional[str]:
        ...
