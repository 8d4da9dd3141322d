"""
SqlMessageStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every method runs in its own transactional session, so each call is a
single atomic unit. At most one pending placeholder per conversation is
enforced by the unique `pending_slot` column; a losing concurrent insert
surfaces as IntegrityError and is reported as "already pending".
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, delete, and_, or_
from sqlalchemy.exc import IntegrityError

from database.models import ConversationRow, MessageRow, AdminSessionRow
from database.session import get_session
from database.store_base import BaseMessageStore

logger = structlog.get_logger()

_CONVERSATION_FIELDS = {
    "visitor_name", "visitor_email", "summary", "tags", "spam", "seen", "pinned",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    # SQLite stores naive UTC text, so compare in UTC
    return ts.astimezone(timezone.utc)


class SqlMessageStore(BaseMessageStore):
    """
    Persistent message store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Conversation operations ────────────────────────────

    async def create_conversation(
        self, visitor_name: Optional[str] = None, visitor_email: Optional[str] = None,
    ) -> dict[str, Any]:
        async with get_session() as db:
            row = ConversationRow(visitor_name=visitor_name, visitor_email=visitor_email)
            db.add(row)
            await db.flush()
            return row.to_dict()

    async def get_conversation(self, conversation_id: str) -> Optional[dict[str, Any]]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return row.to_dict() if row else None

    async def list_conversations(
        self, include_spam: bool = False, unseen_only: bool = False,
        limit: int = 50, offset: int = 0,
    ) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = select(ConversationRow)
            if not include_spam:
                stmt = stmt.where(ConversationRow.spam.is_(False))
            if unseen_only:
                stmt = stmt.where(ConversationRow.seen.is_(False))
            stmt = (
                stmt.order_by(ConversationRow.pinned.desc(), ConversationRow.updated_at.desc())
                .limit(limit)
                .offset(offset)
            )
            result = await db.execute(stmt)
            return [r.to_dict() for r in result.scalars().all()]

    async def update_conversation(self, conversation_id: str, **kwargs) -> None:
        updates = {k: v for k, v in kwargs.items() if k in _CONVERSATION_FIELDS}
        if not updates:
            return
        async with get_session() as db:
            stmt = (
                update(ConversationRow)
                .where(ConversationRow.id == conversation_id)
                .values(**updates, updated_at=_utcnow())
            )
            await db.execute(stmt)

    async def delete_conversation(self, conversation_id: str) -> None:
        async with get_session() as db:
            await db.execute(delete(MessageRow).where(MessageRow.conversation_id == conversation_id))
            await db.execute(delete(ConversationRow).where(ConversationRow.id == conversation_id))

    # ── Message operations ─────────────────────────────────

    async def _touch(self, db, conversation_id: str) -> None:
        await db.execute(
            update(ConversationRow)
            .where(ConversationRow.id == conversation_id)
            .values(updated_at=_utcnow())
        )

    async def add_message(
        self, conversation_id: str, role: str, content: str, metadata: dict = None,
    ) -> dict[str, Any]:
        async with get_session() as db:
            row = MessageRow(
                conversation_id=conversation_id,
                role=role,
                content=content,
                status="received",
                metadata_=metadata or {},
            )
            db.add(row)
            await db.flush()
            await self._touch(db, conversation_id)
            return row.to_dict()

    async def add_pending_message(self, conversation_id: str, role: str) -> Optional[dict[str, Any]]:
        try:
            async with get_session() as db:
                existing = await db.execute(
                    select(MessageRow.id)
                    .where(MessageRow.pending_slot == conversation_id)
                    .limit(1)
                )
                if existing.scalar_one_or_none() is not None:
                    return None

                row = MessageRow(
                    conversation_id=conversation_id,
                    role=role,
                    content="",
                    status="pending",
                    metadata_={},
                    pending_slot=conversation_id,
                )
                db.add(row)
                await db.flush()
                await self._touch(db, conversation_id)
                return row.to_dict()
        except IntegrityError:
            # a concurrent caller took the slot between our check and insert
            logger.info("pending_insert_conflict", conversation_id=conversation_id)
            return None

    async def get_pending_message(self, conversation_id: str) -> Optional[dict[str, Any]]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.conversation_id == conversation_id,
                    MessageRow.status == "pending",
                ))
                .order_by(MessageRow.created_at)
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return row.to_dict() if row else None

    async def get_messages(self, conversation_id: str, limit: int = 100) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.desc(), MessageRow.id.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = result.scalars().all()
            return [r.to_dict() for r in reversed(rows)]

    async def get_messages_since(
        self, conversation_id: str, after: str, limit: int = 50,
    ) -> list[dict[str, Any]]:
        cutoff = _parse_ts(after)
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.conversation_id == conversation_id,
                    or_(MessageRow.created_at > cutoff, MessageRow.resolved_at > cutoff),
                ))
                .order_by(MessageRow.created_at, MessageRow.id)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [r.to_dict() for r in result.scalars().all()]

    async def get_unresponded_visitor_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.conversation_id == conversation_id,
                    MessageRow.role == "visitor",
                    MessageRow.responded_by.is_(None),
                ))
                # equal timestamps: primary key order decides
                .order_by(MessageRow.created_at, MessageRow.id)
            )
            result = await db.execute(stmt)
            return [r.to_dict() for r in result.scalars().all()]

    async def mark_responded(self, message_ids: list[str], responder_message_id: str) -> None:
        if not message_ids:
            return
        async with get_session() as db:
            await db.execute(
                update(MessageRow)
                .where(and_(
                    MessageRow.id.in_(message_ids),
                    MessageRow.responded_by.is_(None),
                ))
                .values(responded_by=responder_message_id)
            )

    async def resolve_pending_message(
        self, message_id: str, content: str, status: str = "received",
        metadata: dict = None, responded_ids: list[str] = None,
    ) -> str:
        resolved_at = _utcnow()
        async with get_session() as db:
            result = await db.execute(
                update(MessageRow)
                .where(and_(MessageRow.id == message_id, MessageRow.status == "pending"))
                .values({
                    MessageRow.content: content,
                    MessageRow.status: status,
                    MessageRow.metadata_: metadata or {},
                    MessageRow.resolved_at: resolved_at,
                    MessageRow.pending_slot: None,
                })
            )
            if result.rowcount == 0:
                logger.warning("resolve_not_pending", message_id=message_id)
            if responded_ids:
                await db.execute(
                    update(MessageRow)
                    .where(and_(
                        MessageRow.id.in_(responded_ids),
                        MessageRow.responded_by.is_(None),
                    ))
                    .values(responded_by=message_id)
                )
        return resolved_at.isoformat()

    async def fail_orphaned_pending(self, reason: str = "interrupted") -> int:
        async with get_session() as db:
            result = await db.execute(
                update(MessageRow)
                .where(MessageRow.status == "pending")
                .values({
                    MessageRow.status: "error",
                    MessageRow.metadata_: {"error": reason, "type": "error"},
                    MessageRow.resolved_at: _utcnow(),
                    MessageRow.pending_slot: None,
                })
            )
            return result.rowcount or 0

    # ── Admin ──────────────────────────────────────────────

    async def record_admin_visit(self) -> str:
        async with get_session() as db:
            row = AdminSessionRow(visited_at=_utcnow())
            db.add(row)
            await db.flush()
            return row.id

    async def get_last_admin_visit(self) -> Optional[str]:
        async with get_session() as db:
            stmt = (
                select(AdminSessionRow)
                .order_by(AdminSessionRow.visited_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            if not row:
                return None
            visited = row.visited_at
            if visited.tzinfo is None:
                visited = visited.replace(tzinfo=timezone.utc)
            return visited.isoformat()
