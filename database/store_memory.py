"""
InMemoryMessageStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlMessageStore
  - No awaits inside a method, so every call is atomic on the event loop
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import uuid
import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseMessageStore

logger = structlog.get_logger()

_CONVERSATION_FIELDS = {
    "visitor_name", "visitor_email", "summary", "tags", "spam", "seen", "pinned",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class InMemoryMessageStore(BaseMessageStore):
    """
    Full-featured in-memory store with the same interface as SqlMessageStore.
    Messages are kept per conversation in insertion (arrival) order.
    """

    def __init__(self):
        self._conversations: dict[str, dict] = {}                   # id → conversation dict
        self._messages: dict[str, list[dict]] = defaultdict(list)   # conv_id → [msg dicts]
        self._message_index: dict[str, dict] = {}                   # msg_id → msg dict
        self._admin_visits: list[tuple[str, str]] = []                 # (id, visited_at)
        logger.info("inmemory_store_initialized")

    # ── Conversations ─────────────────────────────────────

    async def create_conversation(
        self, visitor_name: Optional[str] = None, visitor_email: Optional[str] = None,
    ) -> dict[str, Any]:
        now = _utcnow().isoformat()
        conv = {
            "id": _new_id(),
            "visitor_name": visitor_name, "visitor_email": visitor_email,
            "summary": None, "tags": [],
            "spam": False, "seen": False, "pinned": False,
            "created_at": now, "updated_at": now,
        }
        self._conversations[conv["id"]] = conv
        return dict(conv)

    async def get_conversation(self, conversation_id: str) -> Optional[dict[str, Any]]:
        conv = self._conversations.get(conversation_id)
        return dict(conv) if conv else None

    async def list_conversations(
        self, include_spam: bool = False, unseen_only: bool = False,
        limit: int = 50, offset: int = 0,
    ) -> list[dict[str, Any]]:
        convs = [
            c for c in self._conversations.values()
            if (include_spam or not c["spam"]) and (not unseen_only or not c["seen"])
        ]
        convs.sort(key=lambda c: (c["pinned"], c["updated_at"]), reverse=True)
        return [dict(c) for c in convs[offset:offset + limit]]

    async def update_conversation(self, conversation_id: str, **kwargs) -> None:
        conv = self._conversations.get(conversation_id)
        if not conv:
            return
        updates = {k: v for k, v in kwargs.items() if k in _CONVERSATION_FIELDS}
        if not updates:
            return
        conv.update(updates)
        conv["updated_at"] = _utcnow().isoformat()

    async def delete_conversation(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        for msg in self._messages.pop(conversation_id, []):
            self._message_index.pop(msg["id"], None)

    # ── Messages ──────────────────────────────────────────

    def _insert(self, conversation_id: str, role: str, content: str,
                status: str, metadata: dict = None) -> dict[str, Any]:
        now = _utcnow()
        msg = {
            "id": _new_id(), "conversation_id": conversation_id,
            "role": role, "content": content, "status": status,
            "metadata": metadata or {},
            "responded_by": None,
            "created_at": now.isoformat(),
            "resolved_at": None,
        }
        self._messages[conversation_id].append(msg)
        self._message_index[msg["id"]] = msg
        # Touch conversation
        conv = self._conversations.get(conversation_id)
        if conv:
            conv["updated_at"] = now.isoformat()
        return msg

    async def add_message(
        self, conversation_id: str, role: str, content: str, metadata: dict = None,
    ) -> dict[str, Any]:
        return dict(self._insert(conversation_id, role, content, "received", metadata))

    async def add_pending_message(self, conversation_id: str, role: str) -> Optional[dict[str, Any]]:
        if self._find_pending(conversation_id):
            return None
        return dict(self._insert(conversation_id, role, "", "pending"))

    def _find_pending(self, conversation_id: str) -> Optional[dict]:
        for msg in self._messages.get(conversation_id, []):
            if msg["status"] == "pending":
                return msg
        return None

    async def get_pending_message(self, conversation_id: str) -> Optional[dict[str, Any]]:
        msg = self._find_pending(conversation_id)
        return dict(msg) if msg else None

    async def get_messages(self, conversation_id: str, limit: int = 100) -> list[dict[str, Any]]:
        msgs = self._messages.get(conversation_id, [])
        # Return last N messages in chronological order
        return [dict(m) for m in msgs[-limit:]] if limit > 0 else []

    async def get_messages_since(
        self, conversation_id: str, after: str, limit: int = 50,
    ) -> list[dict[str, Any]]:
        cutoff = _parse_ts(after)
        result = []
        for msg in self._messages.get(conversation_id, []):
            created = _parse_ts(msg["created_at"])
            resolved = _parse_ts(msg["resolved_at"])
            if created > cutoff or (resolved is not None and resolved > cutoff):
                result.append(dict(msg))
        return result[:limit]

    async def get_unresponded_visitor_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        return [
            dict(m) for m in self._messages.get(conversation_id, [])
            if m["role"] == "visitor" and m["responded_by"] is None
        ]

    async def mark_responded(self, message_ids: list[str], responder_message_id: str) -> None:
        for mid in message_ids:
            msg = self._message_index.get(mid)
            if msg and msg["responded_by"] is None:
                msg["responded_by"] = responder_message_id

    async def resolve_pending_message(
        self, message_id: str, content: str, status: str = "received",
        metadata: dict = None, responded_ids: list[str] = None,
    ) -> str:
        now = _utcnow().isoformat()
        msg = self._message_index.get(message_id)
        if msg is None:
            logger.warning("resolve_unknown_message", message_id=message_id)
            return now
        if msg["status"] != "pending":
            logger.warning("resolve_not_pending", message_id=message_id, status=msg["status"])
            return msg["resolved_at"] or now
        msg.update(content=content, status=status, metadata=metadata or {}, resolved_at=now)
        if responded_ids:
            await self.mark_responded(responded_ids, message_id)
        return now

    async def fail_orphaned_pending(self, reason: str = "interrupted") -> int:
        count = 0
        for msg in self._message_index.values():
            if msg["status"] == "pending":
                msg.update(status="error", metadata={"error": reason, "type": "error"},
                           resolved_at=_utcnow().isoformat())
                count += 1
        return count

    # ── Admin ─────────────────────────────────────────────

    async def record_admin_visit(self) -> str:
        visit_id = _new_id()
        self._admin_visits.append((visit_id, _utcnow().isoformat()))
        return visit_id

    async def get_last_admin_visit(self) -> Optional[str]:
        return self._admin_visits[-1][1] if self._admin_visits else None

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "conversations": len(self._conversations),
            "messages": len(self._message_index),
            "pending": sum(1 for m in self._message_index.values() if m["status"] == "pending"),
        }
