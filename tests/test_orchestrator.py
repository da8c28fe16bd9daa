"""
End-to-end turn tests for ConversationOrchestrator.

Covers:
  - Role-aware greetings and staff flows
  - Idempotency: a redelivered inbound gets at most one reply
  - One conversation per (tenant, address), serialized turns
  - Multi-turn booking through pending flows, flow expiry
  - Failure handling: apology + context rollback, turn timeout,
    directory outage, persistence failure, channel failure
  - Delivery receipts and transcripts
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from backend.connector import BackendUnavailable
from core.composer import APOLOGY, ERROR_MESSAGES
from database.store_base import PersistenceFailure
from models.schemas import (
    DeliveryReceipt, DeliveryStatus, FlowName, MessageDirection, ReplyKind, SenderRole,
    TurnState,
)

from conftest import (
    CUSTOMER_ADDRESS, STAFF_ADDRESS, STRANGER_ADDRESS, TENANT, build_harness,
)


async def conversation_of(h, address=CUSTOMER_ADDRESS):
    return await h.conversations.find(TENANT, address)


async def transcript_of(h, address=CUSTOMER_ADDRESS):
    conv = await conversation_of(h, address)
    return await h.messages.list_for_conversation(conv.id)


# ══════════════════════════════════════════════════════════════
#  Basic turns
# ══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestBasicTurns:
    async def test_customer_greeting(self, harness, make_event):
        outcome = await harness.orchestrator.handle_inbound(make_event("hello there"))
        assert outcome.state == TurnState.DONE
        assert outcome.sent
        assert outcome.history[0] == TurnState.RESOLVING_SENDER
        assert outcome.history[-1] == TurnState.DONE

        [(to, reply)] = harness.channel.sent
        assert to == CUSTOMER_ADDRESS
        assert reply.kind == ReplyKind.BUTTON_MENU
        assert reply.options[0].id == "menu_book_appointment"

    async def test_staff_greeting(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("hi", address=STAFF_ADDRESS))
        [(_, reply)] = harness.channel.sent
        assert reply.options[0].id == "menu_staff_schedule"
        assert "Emma" in reply.body

    async def test_staff_schedule(self, harness, make_event):
        outcome = await harness.orchestrator.handle_inbound(make_event("my schedule", address=STAFF_ADDRESS))
        assert outcome.intent.action.value == "staff_schedule"
        [(_, reply)] = harness.channel.sent
        assert "Sarah Johnson" in reply.body
        assert "Tom Lee" in reply.body

    async def test_customer_cannot_reach_staff_actions(self, harness, make_event):
        outcome = await harness.orchestrator.handle_inbound(make_event("my schedule please"))
        assert outcome.intent.action.value == "greeting"
        [(_, reply)] = harness.channel.sent
        assert "Sarah" not in reply.body

    async def test_inbound_and_outbound_are_logged(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("hello", message_id="wamid.in.1"))
        inbound, outbound = await transcript_of(harness)
        assert inbound.direction == MessageDirection.INBOUND
        assert inbound.message_id == "wamid.in.1"
        assert outbound.direction == MessageDirection.OUTBOUND
        assert outbound.delivery_status == DeliveryStatus.SENT
        assert outbound.metadata["in_reply_to"] == "wamid.in.1"

        conv = await conversation_of(harness)
        assert conv.last_message_direction == MessageDirection.OUTBOUND
        assert conv.context.last_intent == "greeting"

    async def test_address_is_normalized(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("hi", address="+1 555-000-2222"))
        assert await conversation_of(harness, CUSTOMER_ADDRESS) is not None


# ══════════════════════════════════════════════════════════════
#  Idempotency and concurrency
# ══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestIdempotency:
    async def test_redelivery_is_skipped(self, harness, make_event):
        event = make_event("hello", message_id="wamid.dup")
        first = await harness.orchestrator.handle_inbound(event)
        second = await harness.orchestrator.handle_inbound(event)

        assert not first.duplicate
        assert second.duplicate
        assert second.state == TurnState.DONE
        assert second.intent is None
        assert len(harness.channel.sent) == 1
        assert len(await transcript_of(harness)) == 2

    async def test_concurrent_redelivery_sends_one_reply(self, harness, make_event):
        event = make_event("hello", message_id="wamid.race")
        outcomes = await asyncio.gather(*[harness.orchestrator.handle_inbound(event) for _ in range(4)])
        assert sum(1 for o in outcomes if not o.duplicate) == 1
        assert len(harness.channel.sent) == 1

    async def test_conversation_id_is_stable(self, harness, make_event):
        first = await harness.orchestrator.handle_inbound(make_event("hi"))
        second = await harness.orchestrator.handle_inbound(make_event("services"))
        assert first.conversation_id == second.conversation_id
        assert harness.conversations.count() == 1

    async def test_concurrent_messages_share_one_conversation(self, harness, make_event):
        texts = ["book a haircut", "what services", "points", "hello", "book tomorrow"]
        outcomes = await asyncio.gather(*[
            harness.orchestrator.handle_inbound(make_event(t)) for t in texts
        ])
        assert all(o.state == TurnState.DONE for o in outcomes)
        assert len({o.conversation_id for o in outcomes}) == 1
        assert harness.conversations.count() == 1
        assert len(harness.channel.sent) == 5
        # 5 inbound + 5 outbound, nothing lost to interleaved writes
        assert len(await transcript_of(harness)) == 10

    async def test_lock_released_after_turn(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("hi"))
        assert not harness.locks.is_locked(f"{TENANT}:{CUSTOMER_ADDRESS}")


# ══════════════════════════════════════════════════════════════
#  Multi-turn flows
# ══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestBookingFlow:
    async def test_book_then_pick_time_by_text(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("book a haircut tomorrow"))
        reply = harness.channel.sent[-1][1]
        assert reply.kind == ReplyKind.LIST_MENU
        assert [o.id for o in reply.options] == ["book_s-10", "book_s-14"]

        conv = await conversation_of(harness)
        assert conv.context.pending_flow.name == FlowName.AWAITING_SLOT_SELECTION

        outcome = await harness.orchestrator.handle_inbound(make_event("2pm"))
        assert outcome.intent.action.value == "confirm_booking"
        assert outcome.intent.entities == {"slot_id": "s-14"}
        assert "You're booked!" in harness.channel.sent[-1][1].body

        conv = await conversation_of(harness)
        assert conv.context.pending_flow is None

    async def test_book_by_quick_reply(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("book tomorrow"))
        outcome = await harness.orchestrator.handle_inbound(make_event("10am", reply_id="book_s-10"))
        assert outcome.result.payload["booking"]["slot_id"] == "s-10"

    async def test_date_follow_up(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("I'd like to book a massage"))
        assert "Which day" in harness.channel.sent[-1][1].body

        outcome = await harness.orchestrator.handle_inbound(make_event("tomorrow"))
        assert outcome.intent.entities == {"service": "massage", "date": "2026-03-03"}
        assert [o.id for o in harness.channel.sent[-1][1].options] == ["book_s-16"]

    async def test_offered_time_on_another_day_is_not_booked(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("book a haircut tomorrow"))

        outcome = await harness.orchestrator.handle_inbound(make_event("actually thursday at 10am please"))
        assert outcome.intent.action.value == "book_appointment"
        assert outcome.intent.entities["date"] == "2026-03-05"
        reply = harness.channel.sent[-1][1]
        assert "You're booked!" not in reply.body
        assert [o.id for o in reply.options] == ["book_s-thu-10"]

    async def test_slot_taken_in_between(self, harness, make_event, backend, anonymous_sender):
        await harness.orchestrator.handle_inbound(make_event("book a haircut tomorrow"))
        await backend.confirm_booking(TENANT, "s-14", anonymous_sender)

        outcome = await harness.orchestrator.handle_inbound(make_event("2pm"))
        assert outcome.result.error_code == "slot_unavailable"
        assert "just taken" in harness.channel.sent[-1][1].body

    async def test_expired_flow_is_not_continued(self, harness, make_event, clock):
        await harness.orchestrator.handle_inbound(make_event("book a haircut tomorrow"))
        clock.advance(minutes=11)

        outcome = await harness.orchestrator.handle_inbound(make_event("2pm"))
        assert outcome.intent.action.value == "greeting"
        conv = await conversation_of(harness)
        assert conv.context.pending_flow is None

    async def test_flow_is_replaced_by_new_intent(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("book a haircut tomorrow"))
        await harness.orchestrator.handle_inbound(make_event("cancel"))
        conv = await conversation_of(harness)
        assert conv.context.pending_flow.name == FlowName.AWAITING_CANCEL_SELECTION

    async def test_cancel_by_quick_reply(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("cancel my appointment"))
        outcome = await harness.orchestrator.handle_inbound(make_event("Thu", reply_id="cancel_ca-1"))
        assert outcome.result.outcome.value == "ok"
        assert "cancelled" in harness.channel.sent[-1][1].body


# ══════════════════════════════════════════════════════════════
#  Failures
# ══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestFailures:
    async def test_handler_error_sends_apology_and_rolls_back(self, harness, make_event, backend):
        await harness.orchestrator.handle_inbound(make_event("what services"))
        backend.list_slots = AsyncMock(side_effect=RuntimeError("calendar exploded"))

        outcome = await harness.orchestrator.handle_inbound(make_event("book tomorrow"))
        assert outcome.state == TurnState.FAILED
        assert "calendar exploded" in outcome.error
        assert harness.channel.sent[-1][1].body == APOLOGY

        conv = await conversation_of(harness)
        assert conv.context.pending_flow.name == FlowName.AWAITING_SERVICE_SELECTION
        assert conv.context.last_intent == "view_services"
        outbound = [m for m in await transcript_of(harness) if m.direction == MessageDirection.OUTBOUND]
        assert outbound[-1].payload["body"] == APOLOGY

    async def test_turn_timeout(self, backend, channel, clock, make_event):
        harness = build_harness(backend, channel, clock, turn_timeout=0.05)

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return []

        backend.list_slots = slow
        outcome = await harness.orchestrator.handle_inbound(make_event("book tomorrow"))
        assert outcome.state == TurnState.FAILED
        assert "turn exceeded" in outcome.error
        assert harness.channel.sent[-1][1].body == APOLOGY
        assert not harness.locks.is_locked(f"{TENANT}:{CUSTOMER_ADDRESS}")

    async def test_directory_outage_falls_back_to_anonymous(self, harness, make_event, backend):
        backend.find_staff = AsyncMock(side_effect=BackendUnavailable("directory down"))

        outcome = await harness.orchestrator.handle_inbound(make_event("my schedule", address=STAFF_ADDRESS))
        assert outcome.state == TurnState.DONE
        assert outcome.intent.action.value == "greeting"
        [(_, reply)] = harness.channel.sent
        assert reply.options[0].id == "menu_book_appointment"
        assert "Sarah" not in reply.body
        # initial attempt + one retry
        assert backend.find_staff.await_count == 2

    async def test_directory_fallback_keeps_context(self, harness, make_event, backend):
        await harness.orchestrator.handle_inbound(make_event("book a haircut tomorrow"))
        backend.find_staff = AsyncMock(side_effect=BackendUnavailable("directory down"))

        await harness.orchestrator.handle_inbound(make_event("2pm"))
        conv = await conversation_of(harness)
        assert conv.context.pending_flow.name == FlowName.AWAITING_SLOT_SELECTION

    async def test_directory_fallback_keeps_last_known_role(self, harness, make_event, backend):
        await harness.orchestrator.handle_inbound(make_event("hi", address=STAFF_ADDRESS))
        backend.find_staff = AsyncMock(side_effect=BackendUnavailable("directory down"))

        await harness.orchestrator.handle_inbound(make_event("hi", address=STAFF_ADDRESS))
        conv = await conversation_of(harness, STAFF_ADDRESS)
        assert conv.sender_role_last_seen == SenderRole.STAFF

    async def test_resolver_error_sends_apology(self, harness, make_event, backend):
        backend.find_staff = AsyncMock(side_effect=RuntimeError("directory bug"))

        outcome = await harness.orchestrator.handle_inbound(make_event("hello"))
        assert outcome.state == TurnState.FAILED
        assert outcome.conversation_id is None
        assert "directory bug" in outcome.error
        [(to, reply)] = harness.channel.sent
        assert to == CUSTOMER_ADDRESS
        assert reply.body == APOLOGY
        assert await conversation_of(harness) is None

    async def test_backend_outage_mid_turn_is_answered(self, harness, make_event, backend):
        backend.list_slots = AsyncMock(side_effect=BackendUnavailable("timeout", "list_slots"))

        outcome = await harness.orchestrator.handle_inbound(make_event("book a haircut tomorrow"))
        assert outcome.state == TurnState.DONE
        assert outcome.result.error_code == "service_unavailable"
        assert harness.channel.sent[-1][1].body == ERROR_MESSAGES["service_unavailable"]

    async def test_persistence_failure_propagates(self, harness, make_event):
        harness.orchestrator.message_log.repo.append = AsyncMock(
            side_effect=PersistenceFailure("disk full", "message_append"))

        with pytest.raises(PersistenceFailure):
            await harness.orchestrator.handle_inbound(make_event("hello"))
        assert harness.channel.sent == []
        assert not harness.locks.is_locked(f"{TENANT}:{CUSTOMER_ADDRESS}")

    async def test_channel_failure_logs_failed_outbound(self, harness, make_event):
        harness.channel.fail_always = True
        outcome = await harness.orchestrator.handle_inbound(make_event("hello"))

        assert outcome.state == TurnState.FAILED
        assert not outcome.sent
        outbound = [m for m in await transcript_of(harness) if m.direction == MessageDirection.OUTBOUND]
        assert [m.delivery_status for m in outbound] == [DeliveryStatus.FAILED]
        assert outbound[0].message_id.startswith("local-")

    async def test_transient_channel_failure_is_retried(self, harness, make_event):
        harness.channel.fail_next = 2
        outcome = await harness.orchestrator.handle_inbound(make_event("hello"))
        assert outcome.state == TurnState.DONE
        assert harness.channel.calls == 3
        assert len(harness.channel.sent) == 1

    async def test_redelivery_after_failure_is_still_deduplicated(self, harness, make_event, backend):
        backend.list_services = AsyncMock(side_effect=RuntimeError("boom"))
        event = make_event("what services", message_id="wamid.once")
        await harness.orchestrator.handle_inbound(event)
        again = await harness.orchestrator.handle_inbound(event)
        assert again.duplicate
        assert len(harness.channel.sent) == 1


# ══════════════════════════════════════════════════════════════
#  Receipts and transcripts
# ══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestReceiptsAndTranscripts:
    async def test_receipt_updates_outbound(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("hello"))
        outbound = (await transcript_of(harness))[-1]

        applied = await harness.orchestrator.handle_receipt(DeliveryReceipt(
            tenant_id=TENANT, message_id=outbound.message_id, status=DeliveryStatus.READ,
        ))
        assert applied
        assert (await transcript_of(harness))[-1].delivery_status == DeliveryStatus.READ

    async def test_transcript(self, harness, make_event):
        await harness.orchestrator.handle_inbound(make_event("hello"))
        conv, messages = await harness.orchestrator.transcript(TENANT, "+15550002222", limit=1)
        assert conv.channel_address == CUSTOMER_ADDRESS
        assert len(messages) == 1
        assert messages[0].direction == MessageDirection.OUTBOUND

    async def test_transcript_unknown(self, harness):
        conv, messages = await harness.orchestrator.transcript(TENANT, STRANGER_ADDRESS)
        assert conv is None and messages == []
