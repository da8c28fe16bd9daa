"""
Quick-reply decoding.

Menu rows and buttons carry string ids on the wire (``book_42``,
``service_haircut``, ``cancel_a1``, ``menu_view_services``). They are decoded
into a typed QuickReply as soon as an inbound message arrives, so nothing
downstream inspects id prefixes.
"""
from __future__ import annotations

from typing import Any, Optional

from models.schemas import (
    BookingQuickReply, CancelQuickReply, IntentAction, MenuQuickReply,
    QuickReply, ServiceQuickReply,
)

BOOK_PREFIX = "book_"
SERVICE_PREFIX = "service_"
CANCEL_PREFIX = "cancel_"
MENU_PREFIX = "menu_"


def decode_quick_reply(reply_id: str) -> Optional[QuickReply]:
    """Decode a menu selection id. Returns None for ids no flow understands."""
    if not reply_id:
        return None
    if reply_id.startswith(BOOK_PREFIX) and len(reply_id) > len(BOOK_PREFIX):
        return BookingQuickReply(slot_id=reply_id[len(BOOK_PREFIX):])
    if reply_id.startswith(SERVICE_PREFIX) and len(reply_id) > len(SERVICE_PREFIX):
        return ServiceQuickReply(service_id=reply_id[len(SERVICE_PREFIX):])
    if reply_id.startswith(CANCEL_PREFIX) and len(reply_id) > len(CANCEL_PREFIX):
        return CancelQuickReply(appointment_id=reply_id[len(CANCEL_PREFIX):])
    if reply_id.startswith(MENU_PREFIX):
        try:
            return MenuQuickReply(action=IntentAction(reply_id[len(MENU_PREFIX):]))
        except ValueError:
            return None
    return None


def extract_reply_id(interactive: Optional[dict[str, Any]]) -> str:
    """Pull the selected id out of a WhatsApp-style interactive payload."""
    if not interactive:
        return ""
    for key in ("button_reply", "list_reply"):
        selected = interactive.get(key)
        if isinstance(selected, dict) and selected.get("id"):
            return str(selected["id"])
    return str(interactive.get("id", ""))


def encode_booking(slot_id: str) -> str:
    return f"{BOOK_PREFIX}{slot_id}"


def encode_service(service_id: str) -> str:
    return f"{SERVICE_PREFIX}{service_id}"


def encode_cancel(appointment_id: str) -> str:
    return f"{CANCEL_PREFIX}{appointment_id}"


def encode_menu(action: IntentAction) -> str:
    return f"{MENU_PREFIX}{action.value}"
