"""
Conversation Store Adapter — get-or-create and persist Conversation records.

The orchestrator only ever holds a transient copy of a conversation for the
duration of one turn; this adapter is the single owner of the durable row.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from database.store_base import ConversationRepo
from models.schemas import Conversation, PendingFlow, Sender, utcnow

logger = structlog.get_logger()


class ConversationStoreAdapter:

    def __init__(self, repo: ConversationRepo):
        self.repo = repo

    async def get_or_create(
        self, tenant_id: str, channel_address: str, sender: Sender, record_role: bool = True,
    ) -> Conversation:
        """
        Load the conversation for (tenant_id, channel_address), creating it on
        first contact. Racing creators all get the same canonical record.
        With record_role=False an existing conversation keeps its last known role.
        """
        conversation = await self.repo.get_or_create(tenant_id, channel_address, sender.role)
        if record_role and conversation.sender_role_last_seen != sender.role:
            logger.info("conversation_role_changed",
                        conversation_id=conversation.id,
                        previous=conversation.sender_role_last_seen.value,
                        current=sender.role.value)
            conversation.sender_role_last_seen = sender.role
        return conversation

    async def save(self, conversation: Conversation, now: Optional[datetime] = None) -> None:
        conversation.context.last_updated_at = now or utcnow()
        await self.repo.save(conversation)

    async def find(self, tenant_id: str, channel_address: str) -> Optional[Conversation]:
        return await self.repo.find(tenant_id, channel_address)

    @staticmethod
    def active_pending_flow(conversation: Conversation, now: datetime) -> Optional[PendingFlow]:
        """Return the pending flow if still live; an expired flow is discarded in place."""
        flow = conversation.context.pending_flow
        if flow is None:
            return None
        if flow.is_expired(now):
            logger.info("pending_flow_expired",
                        conversation_id=conversation.id,
                        flow=flow.name.value,
                        expired_at=flow.expires_at.isoformat())
            conversation.context.clear_flow()
            return None
        return flow
