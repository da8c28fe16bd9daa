"""
Message Log Writer — Append-only transcript with delivery metadata.

Inbound and outbound messages both go through append(). The repository
enforces uniqueness on (tenant_id, direction, message_id), so a redelivered
webhook comes back as WriteResult.DUPLICATE instead of a second row.
Every written message also refreshes the conversation's thread metadata
(last_message_at / direction / preview) on the caller's in-memory copy,
which is persisted with the rest of the turn's context.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

from database.store_base import MessageRepo
from models.schemas import (
    Conversation, DeliveryReceipt, DeliveryStatus, InboundEvent, Message,
    MessageDirection, Reply, Sender, WriteResult,
)

logger = structlog.get_logger()


class MessageLogWriter:

    def __init__(self, repo: MessageRepo):
        self.repo = repo

    async def append(self, message: Message, conversation: Optional[Conversation] = None) -> WriteResult:
        result = await self.repo.append(message)
        if result == WriteResult.DUPLICATE:
            logger.info("message_duplicate",
                        message_id=message.message_id,
                        direction=message.direction.value,
                        conversation_id=message.conversation_id)
            return result

        if conversation is not None:
            conversation.last_message_at = message.created_at
            conversation.last_message_direction = message.direction
            conversation.last_message_preview = message.preview
        logger.debug("message_logged",
                     message_id=message.message_id,
                     direction=message.direction.value,
                     conversation_id=message.conversation_id)
        return result

    async def log_inbound(
        self, conversation: Conversation, event: InboundEvent, sender: Sender,
    ) -> WriteResult:
        message = Message(
            message_id=event.message_id,
            tenant_id=conversation.tenant_id,
            conversation_id=conversation.id,
            direction=MessageDirection.INBOUND,
            payload=event.to_payload(),
            delivery_status=DeliveryStatus.RECEIVED,
            metadata={
                "sender_role": sender.role.value,
                "sender_name": event.sender_name or sender.display_name,
                "provider_timestamp": event.timestamp,
            },
        )
        return await self.append(message, conversation)

    async def log_outbound(
        self,
        conversation: Conversation,
        reply: Reply,
        provider_message_id: str = "",
        sent: bool = True,
        error: str = "",
        in_reply_to: str = "",
    ) -> Message:
        """Record an outbound reply. Unsent replies get a local id and status FAILED."""
        metadata: dict[str, Any] = {"in_reply_to": in_reply_to}
        if error:
            metadata["error"] = error
        message = Message(
            message_id=provider_message_id or f"local-{uuid.uuid4().hex}",
            tenant_id=conversation.tenant_id,
            conversation_id=conversation.id,
            direction=MessageDirection.OUTBOUND,
            payload=reply.to_log_payload(),
            delivery_status=DeliveryStatus.SENT if sent else DeliveryStatus.FAILED,
            metadata=metadata,
        )
        await self.append(message, conversation)
        return message

    async def is_logged(self, tenant_id: str, direction: MessageDirection, message_id: str) -> bool:
        return await self.repo.exists(tenant_id, direction, message_id)

    async def apply_receipt(self, receipt: DeliveryReceipt) -> bool:
        """Advance an outbound message's delivery status. Unknown ids are ignored."""
        updated = await self.repo.update_delivery_status(
            receipt.tenant_id, receipt.message_id, receipt.status,
        )
        if not updated:
            logger.debug("receipt_for_unknown_message",
                         message_id=receipt.message_id, status=receipt.status.value)
            return False
        logger.info("delivery_status_updated",
                    message_id=receipt.message_id, status=receipt.status.value)
        return True

    async def transcript(self, conversation_id: str, limit: int = 50) -> list[Message]:
        return await self.repo.list_for_conversation(conversation_id, limit=limit)
