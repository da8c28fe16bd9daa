"""
ORM tables for conversations and the message log.

Both tables use portable column types (JSON, String, timezone-aware
DateTime) so the same schema runs on PostgreSQL, MySQL 8+ and SQLite.
The unique constraints below are the idempotency gates the SQL
repositories rely on:

  conversations  (tenant_id, channel_address)
  messages       (tenant_id, direction, message_id)
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, DateTime, Text, ForeignKey, Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
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
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel_address: Mapped[str] = mapped_column(String(64), nullable=False)
    sender_role_last_seen: Mapped[str] = mapped_column(String(16), default="anonymous")

    context: Mapped[Any] = mapped_column(JSON, default=dict)

    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_message_direction: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    last_message_preview: Mapped[str] = mapped_column(String(100), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    messages: Mapped[list["MessageRow"]] = relationship(
        back_populates="conversation", lazy="noload", order_by="MessageRow.created_at",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "channel_address", name="uq_conversations_tenant_address"),
    )


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[str] = mapped_column(String(256), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    delivery_status: Mapped[str] = mapped_column(String(16), default="received")
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    preview: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    conversation: Mapped["ConversationRow"] = relationship(back_populates="messages")

    __table_args__ = (
        UniqueConstraint("tenant_id", "direction", "message_id", name="uq_messages_tenant_direction_msg"),
        Index("ix_messages_conversation_ts", "conversation_id", "created_at"),
    )
