"""
Abstract repositories — Interface for all storage backends.

Implementations:
  - SqlConversationRepo / SqlMessageRepo            (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryConversationRepo / InMemoryMessageRepo  (dict-based, single-process, no persistence)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import (
    Conversation, DeliveryStatus, Message, MessageDirection, SenderRole, WriteResult,
)


class PersistenceFailure(Exception):
    """The store could not complete a read or write. Fatal for the current turn."""

    def __init__(self, message: str, operation: str = ""):
        self.operation = operation
        super().__init__(message)


class ConversationRepo(ABC):
    """Conversations keyed by (tenant_id, channel_address)."""

    @abstractmethod
    async def get_or_create(self, tenant_id: str, channel_address: str, role: SenderRole) -> Conversation:
        """
        Return the conversation for this address, creating it if needed.
        Concurrent callers racing on creation must all receive the same row.
        """
        ...

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def find(self, tenant_id: str, channel_address: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def save(self, conversation: Conversation) -> None:
        ...


class MessageRepo(ABC):
    """Append-only message log, idempotent on (tenant_id, direction, message_id)."""

    @abstractmethod
    async def append(self, message: Message) -> WriteResult:
        ...

    @abstractmethod
    async def exists(self, tenant_id: str, direction: MessageDirection, message_id: str) -> bool:
        ...

    @abstractmethod
    async def list_for_conversation(self, conversation_id: str, limit: int = 50) -> list[Message]:
        """Last `limit` messages in created_at order."""
        ...

    @abstractmethod
    async def update_delivery_status(
        self, tenant_id: str, message_id: str, status: DeliveryStatus,
    ) -> bool:
        """Update an outbound message's delivery status. False when the id is unknown."""
        ...
