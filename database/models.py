"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - String primary keys (uuid hex) — no database-specific sequences.
  - Message status is a plain string column; the allowed values live in
    models.schemas.MessageStatus.
  - One pending message per conversation is enforced by a unique, nullable
    `pending_slot` column rather than a partial index, which MySQL lacks.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Boolean, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    visitor_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    visitor_email: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[Any] = mapped_column(JSON, default=list)

    spam: Mapped[bool] = mapped_column(Boolean, default=False)
    seen: Mapped[bool] = mapped_column(Boolean, default=False)
    pinned: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    messages: Mapped[list["MessageRow"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="MessageRow.created_at",
    )

    __table_args__ = (
        Index("ix_conversations_unseen", "seen", "updated_at"),
        Index("ix_conversations_spam", "spam"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "visitor_name": self.visitor_name,
            "visitor_email": self.visitor_email,
            "summary": self.summary,
            "tags": self.tags or [],
            "spam": bool(self.spam),
            "seen": bool(self.seen),
            "pinned": bool(self.pinned),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False,
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(16), default="received")

    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    # visitor messages: the responder message that consumed them
    responded_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # conversation id while pending, NULL otherwise; the unique constraint
    # allows one pending row per conversation on every backend
    pending_slot: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    conversation: Mapped["ConversationRow"] = relationship(back_populates="messages")

    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_conversation_status", "conversation_id", "status"),
        UniqueConstraint("pending_slot", name="uq_messages_pending_slot"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "status": self.status,
            "metadata": self.metadata_ or {},
            "responded_by": self.responded_by,
            "created_at": _iso(self.created_at),
            "resolved_at": _iso(self.resolved_at) if self.resolved_at else None,
        }


# ──────────────────────────────────────────────────────────────
#  Admin visits (digest bookkeeping)
# ──────────────────────────────────────────────────────────────

class AdminSessionRow(Base):
    __tablename__ = "admin_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    visited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_admin_sessions_visited", "visited_at"),
    )


def _iso(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
