"""
SQL repositories — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Creation races and redelivered messages are resolved by the unique
constraints in database/models.py: an insert that loses the race raises
IntegrityError, and the repository re-reads the winning row (conversations)
or reports a duplicate (messages).
"""
from __future__ import annotations

import structlog
from typing import Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database.models import ConversationRow, MessageRow
from database.session import get_session
from database.store_base import ConversationRepo, MessageRepo, PersistenceFailure
from database.store_memory import status_advances
from models.schemas import (
    Conversation, ConversationContext, DeliveryStatus, Message, MessageDirection,
    SenderRole, WriteResult,
)

logger = structlog.get_logger()


class SqlConversationRepo(ConversationRepo):
    """Conversation store backed by any SQLAlchemy-supported database."""

    async def get_or_create(self, tenant_id: str, channel_address: str, role: SenderRole) -> Conversation:
        existing = await self.find(tenant_id, channel_address)
        if existing:
            return existing

        conv = Conversation(tenant_id=tenant_id, channel_address=channel_address,
                            sender_role_last_seen=role)
        try:
            async with get_session() as db:
                db.add(ConversationRow(
                    id=conv.id,
                    tenant_id=tenant_id,
                    channel_address=channel_address,
                    sender_role_last_seen=role.value,
                    context=conv.context.model_dump(mode="json"),
                    created_at=conv.created_at,
                    updated_at=conv.updated_at,
                ))
                await db.flush()
            logger.info("conversation_created", conversation_id=conv.id, tenant_id=tenant_id)
            return conv
        except IntegrityError:
            # Lost the creation race; the other writer's row is canonical
            logger.info("conversation_create_race_lost", tenant_id=tenant_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e), "conversation_create") from e

        winner = await self.find(tenant_id, channel_address)
        if winner is None:
            raise PersistenceFailure("conversation vanished after conflict", "conversation_create")
        return winner

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        try:
            async with get_session() as db:
                row = await db.get(ConversationRow, conversation_id)
                return self._row_to_conversation(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e), "conversation_get") from e

    async def find(self, tenant_id: str, channel_address: str) -> Optional[Conversation]:
        try:
            async with get_session() as db:
                stmt = select(ConversationRow).where(and_(
                    ConversationRow.tenant_id == tenant_id,
                    ConversationRow.channel_address == channel_address,
                ))
                row = (await db.execute(stmt)).scalar_one_or_none()
                return self._row_to_conversation(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e), "conversation_find") from e

    async def save(self, conversation: Conversation) -> None:
        try:
            async with get_session() as db:
                row = await db.get(ConversationRow, conversation.id)
                if row is None:
                    raise PersistenceFailure(f"conversation {conversation.id} not found", "conversation_save")
                row.sender_role_last_seen = conversation.sender_role_last_seen.value
                row.context = conversation.context.model_dump(mode="json")
                row.last_message_at = conversation.last_message_at
                row.last_message_direction = (
                    conversation.last_message_direction.value
                    if conversation.last_message_direction else None
                )
                row.last_message_preview = conversation.last_message_preview
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e), "conversation_save") from e

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id,
            tenant_id=row.tenant_id,
            channel_address=row.channel_address,
            sender_role_last_seen=SenderRole(row.sender_role_last_seen),
            context=ConversationContext.model_validate(row.context or {}),
            last_message_at=row.last_message_at,
            last_message_direction=(
                MessageDirection(row.last_message_direction) if row.last_message_direction else None
            ),
            last_message_preview=row.last_message_preview or "",
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class SqlMessageRepo(MessageRepo):
    """Append-only message log; the unique constraint is the dedup gate."""

    async def append(self, message: Message) -> WriteResult:
        try:
            async with get_session() as db:
                db.add(MessageRow(
                    tenant_id=message.tenant_id,
                    message_id=message.message_id,
                    conversation_id=message.conversation_id,
                    direction=message.direction.value,
                    payload=message.payload,
                    delivery_status=message.delivery_status.value,
                    metadata_=message.metadata,
                    preview=message.preview,
                    created_at=message.created_at,
                ))
                await db.flush()
            return WriteResult.WRITTEN
        except IntegrityError:
            return WriteResult.DUPLICATE
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e), "message_append") from e

    async def exists(self, tenant_id: str, direction: MessageDirection, message_id: str) -> bool:
        try:
            async with get_session() as db:
                row = (await db.execute(self._key_query(tenant_id, direction, message_id))).scalar_one_or_none()
                return row is not None
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e), "message_exists") from e

    async def list_for_conversation(self, conversation_id: str, limit: int = 50) -> list[Message]:
        try:
            async with get_session() as db:
                stmt = (
                    select(MessageRow)
                    .where(MessageRow.conversation_id == conversation_id)
                    .order_by(MessageRow.created_at.desc())
                    .limit(limit)
                )
                rows = list((await db.execute(stmt)).scalars())
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e), "message_list") from e
        return [self._row_to_message(r) for r in reversed(rows)]

    async def update_delivery_status(
        self, tenant_id: str, message_id: str, status: DeliveryStatus,
    ) -> bool:
        try:
            async with get_session() as db:
                stmt = self._key_query(tenant_id, MessageDirection.OUTBOUND, message_id)
                row = (await db.execute(stmt)).scalar_one_or_none()
                if row is None:
                    return False
                if status_advances(DeliveryStatus(row.delivery_status), status):
                    row.delivery_status = status.value
                return True
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e), "message_status_update") from e

    @staticmethod
    def _key_query(tenant_id: str, direction: MessageDirection, message_id: str):
        return select(MessageRow).where(and_(
            MessageRow.tenant_id == tenant_id,
            MessageRow.direction == direction.value,
            MessageRow.message_id == message_id,
        ))

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            message_id=row.message_id,
            tenant_id=row.tenant_id,
            conversation_id=row.conversation_id,
            direction=MessageDirection(row.direction),
            payload=row.payload or {},
            delivery_status=DeliveryStatus(row.delivery_status),
            metadata=row.metadata_ or {},
            created_at=row.created_at,
        )
