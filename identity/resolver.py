"""
Identity Resolver — Maps a channel address to a Sender.

Lookup order: staff directory, then customer directory, else an
anonymous sender that carries only the address. The resolver is a pure
read. A directory outage raises DirectoryUnavailable instead of guessing
a role, because the role decides which actions a sender may run.
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

from backend.connector import BackendConnector, BackendUnavailable
from models.schemas import Sender, SenderRole

logger = structlog.get_logger()


class DirectoryUnavailable(Exception):
    """The staff/customer directory could not be queried."""

    def __init__(self, message: str, address: str = ""):
        self.address = address
        super().__init__(message)


def normalize_address(address: str) -> str:
    """Normalize a phone-style address to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", address or "")


class IdentityResolver:

    def __init__(self, directory: BackendConnector):
        self.directory = directory

    async def resolve(self, tenant_id: str, channel_address: str) -> Sender:
        address = normalize_address(channel_address) or channel_address
        try:
            staff = await self.directory.find_staff(tenant_id, address)
            if staff:
                return self._to_sender(SenderRole.STAFF, address, staff)

            customer = await self.directory.find_customer(tenant_id, address)
            if customer:
                return self._to_sender(SenderRole.CUSTOMER, address, customer)
        except BackendUnavailable as e:
            logger.warning("directory_unavailable", tenant_id=tenant_id, error=str(e))
            raise DirectoryUnavailable(str(e), address) from e

        return Sender(role=SenderRole.ANONYMOUS, channel_address=address)

    @staticmethod
    def _to_sender(role: SenderRole, address: str, record: dict[str, Any]) -> Sender:
        directory_id: Optional[Any] = record.get("id", record.get("external_id"))
        return Sender(
            role=role,
            channel_address=address,
            directory_id=str(directory_id) if directory_id is not None else None,
            display_name=record.get("name", record.get("full_name", "")),
        )
