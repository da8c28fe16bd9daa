"""
In-memory repositories — Dict-backed stores for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Same interface and uniqueness semantics as the SQL repositories
  - get_or_create and append are atomic under an asyncio lock
  - All data lost on process restart
"""
from __future__ import annotations

import asyncio
import structlog
from collections import defaultdict
from typing import Optional

from database.store_base import ConversationRepo, MessageRepo
from models.schemas import (
    Conversation, DeliveryStatus, Message, MessageDirection, SenderRole, WriteResult, utcnow,
)

logger = structlog.get_logger()

# Delivery statuses only move forward; late "sent" receipts never downgrade "read"
_STATUS_RANK = {
    DeliveryStatus.RECEIVED: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
    DeliveryStatus.FAILED: 4,
}


def status_advances(current: DeliveryStatus, new: DeliveryStatus) -> bool:
    return _STATUS_RANK[new] > _STATUS_RANK[current]


class InMemoryConversationRepo(ConversationRepo):

    def __init__(self):
        self._conversations: dict[str, Conversation] = {}      # id → conversation
        self._address_index: dict[tuple[str, str], str] = {}   # (tenant, address) → id
        self._lock = asyncio.Lock()
        logger.info("inmemory_conversation_repo_initialized")

    async def get_or_create(self, tenant_id: str, channel_address: str, role: SenderRole) -> Conversation:
        async with self._lock:
            key = (tenant_id, channel_address)
            conv_id = self._address_index.get(key)
            if conv_id:
                return self._conversations[conv_id].model_copy(deep=True)
            conv = Conversation(
                tenant_id=tenant_id,
                channel_address=channel_address,
                sender_role_last_seen=role,
            )
            self._conversations[conv.id] = conv
            self._address_index[key] = conv.id
            logger.info("conversation_created",
                        conversation_id=conv.id, tenant_id=tenant_id)
            return conv.model_copy(deep=True)

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        return conv.model_copy(deep=True) if conv else None

    async def find(self, tenant_id: str, channel_address: str) -> Optional[Conversation]:
        conv_id = self._address_index.get((tenant_id, channel_address))
        return await self.get(conv_id) if conv_id else None

    async def save(self, conversation: Conversation) -> None:
        conversation.updated_at = utcnow()
        self._conversations[conversation.id] = conversation.model_copy(deep=True)

    def count(self) -> int:
        return len(self._conversations)


class InMemoryMessageRepo(MessageRepo):

    def __init__(self):
        self._messages: dict[str, list[Message]] = defaultdict(list)     # conv_id → messages
        self._keys: dict[tuple[str, str, str], Message] = {}             # (tenant, direction, msg_id)
        self._lock = asyncio.Lock()

    async def append(self, message: Message) -> WriteResult:
        key = (message.tenant_id, message.direction.value, message.message_id)
        async with self._lock:
            if key in self._keys:
                return WriteResult.DUPLICATE
            self._keys[key] = message
            self._messages[message.conversation_id].append(message)
        return WriteResult.WRITTEN

    async def exists(self, tenant_id: str, direction: MessageDirection, message_id: str) -> bool:
        return (tenant_id, direction.value, message_id) in self._keys

    async def list_for_conversation(self, conversation_id: str, limit: int = 50) -> list[Message]:
        msgs = sorted(self._messages.get(conversation_id, []), key=lambda m: m.created_at)
        return msgs[-limit:]

    async def update_delivery_status(
        self, tenant_id: str, message_id: str, status: DeliveryStatus,
    ) -> bool:
        key = (tenant_id, MessageDirection.OUTBOUND.value, message_id)
        async with self._lock:
            existing = self._keys.get(key)
            if existing is None:
                return False
            if not status_advances(existing.delivery_status, status):
                return True
            updated = existing.model_copy(update={"delivery_status": status})
            self._keys[key] = updated
            msgs = self._messages[existing.conversation_id]
            msgs[msgs.index(existing)] = updated
        return True

    def count(self) -> int:
        return len(self._keys)
