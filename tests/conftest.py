"""Shared test fixtures for the chat engine."""
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from backend.memory import InMemoryBackend
from channels.base import ChannelAdapter, ChannelError
from context.conversations import ConversationStoreAdapter
from context.locks import InMemoryLockManager
from context.message_log import MessageLogWriter
from core.composer import ResponseComposer
from core.dispatcher import ActionDispatcher
from core.orchestrator import ConversationOrchestrator
from config.settings import DEFAULT_SERVICES, DEFAULT_STAFF_NAMES
from database.store_memory import InMemoryConversationRepo, InMemoryMessageRepo
from identity.resolver import IdentityResolver
from intents.classifier import IntentClassifier
from models.schemas import (
    Appointment, InboundEvent, Sender, SenderRole, ServiceItem, Slot,
)

TENANT = "salon-1"
STAFF_ADDRESS = "15550001111"
CUSTOMER_ADDRESS = "15550002222"
NEW_CUSTOMER_ADDRESS = "15550003333"
STRANGER_ADDRESS = "15559999999"

# Monday 09:00 UTC
FIXED_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
TOMORROW = FIXED_NOW + timedelta(days=1)


def at(day: datetime, hour: int, minute: int = 0) -> datetime:
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


class Clock:
    """Settable clock for flow-expiry tests."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingChannel(ChannelAdapter):
    """Captures every reply; can be told to fail the next N sends."""

    name = "recording"

    def __init__(self, max_attempts: int = 3):
        super().__init__(max_attempts=max_attempts, backoff_base=0)
        self.sent: list[tuple[str, object]] = []
        self.fail_next = 0
        self.fail_always = False
        self.calls = 0

    async def _do_send(self, to, reply):
        self.calls += 1
        if self.fail_always or self.fail_next > 0:
            self.fail_next = max(0, self.fail_next - 1)
            raise ChannelError("provider down", self.name, retryable=True, status_code=503)
        self.sent.append((to, reply))
        return f"wamid.{uuid.uuid4().hex[:10]}"


# ──────────────────────────────────────────────────────────────
#  Business backend
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def backend() -> InMemoryBackend:
    """A small salon: one stylist, two customers, a day of open slots."""
    b = InMemoryBackend()
    b.add_staff(STAFF_ADDRESS, "st-1", "Emma")
    b.add_customer(CUSTOMER_ADDRESS, "cu-1", "Alex")
    b.add_customer(NEW_CUSTOMER_ADDRESS, "cu-2", "Jordan")

    b.add_slot(Slot(slot_id="s-10", start=at(TOMORROW, 10), staff_name="Emma", service="haircut"))
    b.add_slot(Slot(slot_id="s-14", start=at(TOMORROW, 14), staff_name="Emma", service="haircut"))
    b.add_slot(Slot(slot_id="s-16", start=at(TOMORROW, 16, 30), staff_name="Lisa", service="massage"))
    b.add_slot(Slot(slot_id="s-thu-10", start=at(FIXED_NOW + timedelta(days=3), 10),
                    staff_name="Lisa", service="haircut"))

    b.add_service(ServiceItem(service_id="haircut", name="Haircut", category="Hair",
                              price=45, duration_minutes=45))
    b.add_service(ServiceItem(service_id="color", name="Hair Color", category="Hair",
                              price=120, duration_minutes=90))
    b.add_service(ServiceItem(service_id="massage", name="Massage", category="Spa",
                              price=80, duration_minutes=60))

    b.set_loyalty("cu-1", 120, "Gold")

    b.add_staff_appointment("st-1", Appointment(
        appointment_id="a-1", start=at(FIXED_NOW, 11), client_name="Sarah Johnson",
        service="haircut", staff_name="Emma",
    ))
    b.add_staff_appointment("st-1", Appointment(
        appointment_id="a-2", start=at(FIXED_NOW, 15), client_name="Tom Lee",
        service="beard trim", staff_name="Emma",
    ))
    b.add_customer_appointment("cu-1", Appointment(
        appointment_id="ca-1", start=at(FIXED_NOW + timedelta(days=3), 10),
        service="haircut", staff_name="Emma",
    ))
    b.add_customer_appointment("cu-1", Appointment(
        appointment_id="ca-old", start=at(FIXED_NOW - timedelta(days=7), 10),
        service="haircut", staff_name="Emma",
    ))
    return b


# ──────────────────────────────────────────────────────────────
#  Senders
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def staff_sender() -> Sender:
    return Sender(role=SenderRole.STAFF, channel_address=STAFF_ADDRESS,
                  directory_id="st-1", display_name="Emma")


@pytest.fixture
def customer_sender() -> Sender:
    return Sender(role=SenderRole.CUSTOMER, channel_address=CUSTOMER_ADDRESS,
                  directory_id="cu-1", display_name="Alex")


@pytest.fixture
def anonymous_sender() -> Sender:
    return Sender(role=SenderRole.ANONYMOUS, channel_address=STRANGER_ADDRESS)


# ──────────────────────────────────────────────────────────────
#  Engine components
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def classifier() -> IntentClassifier:
    return IntentClassifier(DEFAULT_SERVICES, DEFAULT_STAFF_NAMES)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def make_event():
    """Build inbound events; each call gets a fresh provider message id unless given one."""
    def _make(text: str = "", address: str = CUSTOMER_ADDRESS, message_id: str = None,
              reply_id: str = None, type: str = None, tenant_id: str = TENANT) -> InboundEvent:
        interactive = None
        if reply_id is not None:
            interactive = {"type": "list_reply", "list_reply": {"id": reply_id, "title": text}}
        return InboundEvent(
            tenant_id=tenant_id,
            message_id=message_id or f"wamid.in.{uuid.uuid4().hex[:10]}",
            channel_address=address,
            type=type or ("interactive" if interactive else "text"),
            text=text,
            interactive=interactive,
        )
    return _make


def build_harness(backend, channel, clock, turn_timeout=15.0, lock_timeout=5.0):
    conversation_repo = InMemoryConversationRepo()
    message_repo = InMemoryMessageRepo()
    locks = InMemoryLockManager(ttl_seconds=30.0, timeout_seconds=lock_timeout, poll_interval=0.005)
    orchestrator = ConversationOrchestrator(
        resolver=IdentityResolver(backend),
        conversations=ConversationStoreAdapter(conversation_repo),
        message_log=MessageLogWriter(message_repo),
        classifier=IntentClassifier(DEFAULT_SERVICES, DEFAULT_STAFF_NAMES),
        dispatcher=ActionDispatcher(backend),
        composer=ResponseComposer(),
        channel=channel,
        locks=locks,
        turn_timeout=turn_timeout,
        directory_retry_attempts=1,
        directory_retry_delay=0,
        clock=clock,
    )
    return SimpleNamespace(
        backend=backend,
        channel=channel,
        clock=clock,
        conversations=conversation_repo,
        messages=message_repo,
        locks=locks,
        orchestrator=orchestrator,
    )


@pytest.fixture
def harness(backend, channel, clock):
    return build_harness(backend, channel, clock)
