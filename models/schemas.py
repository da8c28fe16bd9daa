"""
Core data models for the conversational engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class SenderRole(str, Enum):
    STAFF = "staff"
    CUSTOMER = "customer"
    ANONYMOUS = "anonymous"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DeliveryStatus(str, Enum):
    RECEIVED = "received"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class WriteResult(str, Enum):
    WRITTEN = "written"
    DUPLICATE = "duplicate"


class IntentAction(str, Enum):
    GREETING = "greeting"
    BOOK_APPOINTMENT = "book_appointment"
    CONFIRM_BOOKING = "confirm_booking"
    CANCEL_APPOINTMENT = "cancel_appointment"
    CONFIRM_CANCELLATION = "confirm_cancellation"
    RESCHEDULE_APPOINTMENT = "reschedule_appointment"
    VIEW_SERVICES = "view_services"
    CHECK_LOYALTY = "check_loyalty"
    STAFF_SCHEDULE = "staff_schedule"
    STAFF_CHECKIN = "staff_checkin"
    COMPLETE_SERVICE = "complete_service"
    STAFF_BREAK = "staff_break"


STAFF_ONLY_ACTIONS = frozenset({
    IntentAction.STAFF_SCHEDULE,
    IntentAction.STAFF_CHECKIN,
    IntentAction.STAFF_BREAK,
    IntentAction.COMPLETE_SERVICE,
})


class FlowName(str, Enum):
    AWAITING_DATE_FOR_BOOKING = "awaiting_date_for_booking"
    AWAITING_SLOT_SELECTION = "awaiting_slot_selection"
    AWAITING_SERVICE_SELECTION = "awaiting_service_selection"
    AWAITING_CANCEL_SELECTION = "awaiting_cancel_selection"


class ActionOutcome(str, Enum):
    OK = "ok"
    BUSINESS_ERROR = "business_error"
    NEEDS_MORE_INFO = "needs_more_info"


class ReplyKind(str, Enum):
    TEXT = "text"
    BUTTON_MENU = "button_menu"
    LIST_MENU = "list_menu"


class TurnState(str, Enum):
    RESOLVING_SENDER = "resolving_sender"
    LOADING_CONVERSATION = "loading_conversation"
    CHECKING_DUPLICATE = "checking_duplicate"
    LOGGING_INBOUND = "logging_inbound"
    CLASSIFYING = "classifying"
    DISPATCHING = "dispatching"
    COMPOSING = "composing"
    SENDING = "sending"
    LOGGING_OUTBOUND = "logging_outbound"
    UPDATING_CONTEXT = "updating_context"
    DONE = "done"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Sender: resolved fresh for every inbound message
# ──────────────────────────────────────────────────────────────

class Sender(BaseModel):
    model_config = {"frozen": True}

    role: SenderRole
    channel_address: str
    directory_id: Optional[str] = None
    display_name: str = ""

    @property
    def is_staff(self) -> bool:
        return self.role == SenderRole.STAFF


# ──────────────────────────────────────────────────────────────
#  Conversation + context
# ──────────────────────────────────────────────────────────────

class PendingFlow(BaseModel):
    """The single in-progress multi-turn interaction of a conversation."""
    name: FlowName
    entities: dict[str, Any] = {}
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ConversationContext(BaseModel):
    last_intent: str = ""
    pending_flow: Optional[PendingFlow] = None
    last_updated_at: Optional[datetime] = None

    def active_flow(self, now: datetime) -> Optional[PendingFlow]:
        if self.pending_flow and not self.pending_flow.is_expired(now):
            return self.pending_flow
        return None

    def start_flow(self, name: FlowName, entities: dict[str, Any], now: datetime, ttl: timedelta):
        # Starting a flow always replaces whatever was pending
        self.pending_flow = PendingFlow(name=name, entities=entities, expires_at=now + ttl)

    def clear_flow(self):
        self.pending_flow = None


class Conversation(BaseModel):
    """
    The durable per-sender dialogue record, unique on (tenant_id, channel_address).
    Thread metadata (last_message_*) is maintained by the message log.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str
    channel_address: str
    sender_role_last_seen: SenderRole = SenderRole.ANONYMOUS
    context: ConversationContext = Field(default_factory=ConversationContext)
    last_message_at: Optional[datetime] = None
    last_message_direction: Optional[MessageDirection] = None
    last_message_preview: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Message: append-only transcript record
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    model_config = {"frozen": True}

    message_id: str                           # provider-assigned, dedup key
    tenant_id: str
    conversation_id: str
    direction: MessageDirection
    payload: dict[str, Any] = {}              # raw text or interactive payload
    delivery_status: DeliveryStatus = DeliveryStatus.RECEIVED
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def preview(self) -> str:
        text = self.payload.get("text") or self.payload.get("body") or ""
        return str(text)[:100]


# ──────────────────────────────────────────────────────────────
#  Inbound events (webhook deliveries)
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    """A single inbound webhook message, already unwrapped from the provider envelope."""
    tenant_id: str
    message_id: str
    channel_address: str = Field(alias="from")
    type: str = "text"                        # text | interactive | image | document | ...
    text: str = ""
    interactive: Optional[dict[str, Any]] = None
    timestamp: str = ""
    sender_name: str = ""

    model_config = {"populate_by_name": True}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "text": self.text}
        if self.interactive:
            payload["interactive"] = self.interactive
        return payload


class DeliveryReceipt(BaseModel):
    tenant_id: str
    message_id: str
    status: DeliveryStatus
    recipient: str = ""
    timestamp: str = ""


# ──────────────────────────────────────────────────────────────
#  Quick replies — decoded menu selections
# ──────────────────────────────────────────────────────────────

class BookingQuickReply(BaseModel):
    kind: Literal["booking"] = "booking"
    slot_id: str


class ServiceQuickReply(BaseModel):
    kind: Literal["service"] = "service"
    service_id: str


class CancelQuickReply(BaseModel):
    kind: Literal["cancel"] = "cancel"
    appointment_id: str


class MenuQuickReply(BaseModel):
    kind: Literal["menu"] = "menu"
    action: IntentAction


QuickReply = Union[BookingQuickReply, ServiceQuickReply, CancelQuickReply, MenuQuickReply]


# ──────────────────────────────────────────────────────────────
#  Intent / ActionResult
# ──────────────────────────────────────────────────────────────

class Intent(BaseModel):
    action: IntentAction
    entities: dict[str, Any] = {}
    confidence: float = 1.0


class ActionResult(BaseModel):
    outcome: ActionOutcome
    payload: dict[str, Any] = {}
    error_code: Optional[str] = None
    message: str = ""

    @classmethod
    def ok(cls, **payload) -> ActionResult:
        return cls(outcome=ActionOutcome.OK, payload=payload)

    @classmethod
    def business_error(cls, code: str, message: str = "") -> ActionResult:
        return cls(outcome=ActionOutcome.BUSINESS_ERROR, error_code=code, message=message)

    @classmethod
    def needs_more_info(cls, prompt: str, **payload) -> ActionResult:
        return cls(outcome=ActionOutcome.NEEDS_MORE_INFO, message=prompt, payload=payload)


# ──────────────────────────────────────────────────────────────
#  Reply — channel-neutral outbound payload
# ──────────────────────────────────────────────────────────────

class MenuOption(BaseModel):
    id: str
    title: str
    description: str = ""


class MenuSection(BaseModel):
    title: str = ""
    options: list[MenuOption] = []


class Reply(BaseModel):
    kind: ReplyKind
    body: str
    header: str = ""
    button_label: str = "Choose"              # list menus only
    sections: list[MenuSection] = []

    @classmethod
    def text(cls, body: str) -> Reply:
        return cls(kind=ReplyKind.TEXT, body=body)

    @property
    def options(self) -> list[MenuOption]:
        return [opt for section in self.sections for opt in section.options]

    def to_log_payload(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "body": self.body,
                "options": [o.id for o in self.options]}


# ──────────────────────────────────────────────────────────────
#  Collaborator records (owned by external business services)
# ──────────────────────────────────────────────────────────────

class Slot(BaseModel):
    slot_id: str
    start: datetime
    staff_name: str = ""
    service: str = ""


class BookingRecord(BaseModel):
    booking_id: str
    slot_id: str
    start: datetime
    customer_id: Optional[str] = None
    staff_name: str = ""
    service: str = ""


class LoyaltyBalance(BaseModel):
    points: int
    tier: str


class Appointment(BaseModel):
    appointment_id: str
    start: datetime
    client_name: str = ""
    service: str = ""
    staff_name: str = ""


class ServiceItem(BaseModel):
    service_id: str
    name: str
    category: str = "General"
    price: float = 0.0
    duration_minutes: int = 0


# ──────────────────────────────────────────────────────────────
#  Turn outcome — what the orchestrator reports to its caller
# ──────────────────────────────────────────────────────────────

class TurnOutcome(BaseModel):
    state: TurnState
    conversation_id: Optional[str] = None
    message_id: str = ""
    duplicate: bool = False
    intent: Optional[Intent] = None
    result: Optional[ActionResult] = None
    reply: Optional[Reply] = None
    sent: bool = False
    error: str = ""
    history: list[TurnState] = []
