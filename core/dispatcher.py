"""
Action Dispatcher — Runs one classified intent against the business backend.

Handlers are registered per (role, action). Customer-facing actions are
available to every role; staff actions only to staff. A lookup miss for a
staff-only action is a permission denial, re-checked here even though the
classifier never produces staff intents for other roles.

Every inbound turn either continues the pending flow (the classifier
already turned the continuation into an intent) or replaces it, so the
dispatcher clears the flow before running a handler and the handler
starts a new one where the conversation needs another answer.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from backend.connector import BackendConnector, BackendUnavailable, BookingConflict
from intents.classifier import time_label
from models.schemas import (
    ActionResult, Appointment, Conversation, FlowName, Intent, IntentAction,
    STAFF_ONLY_ACTIONS, Sender, SenderRole, Slot, utcnow,
)

logger = structlog.get_logger()

Handler = Callable[[Intent, Sender, Conversation, datetime], Awaitable[ActionResult]]

MAX_SLOT_OPTIONS = 10


def _slot_payload(slot: Slot) -> dict[str, Any]:
    return {
        "slot_id": slot.slot_id,
        "start": slot.start.isoformat(),
        "time": time_label(slot.start.hour, slot.start.minute),
        "staff_name": slot.staff_name,
        "service": slot.service,
    }


def _appointment_payload(appt: Appointment) -> dict[str, Any]:
    data = appt.model_dump(mode="json")
    data["time"] = time_label(appt.start.hour, appt.start.minute)
    return data


class ActionDispatcher:

    def __init__(self, backend: BackendConnector, flow_ttl: timedelta = timedelta(minutes=10)):
        self.backend = backend
        self.flow_ttl = flow_ttl
        self._handlers: dict[tuple[SenderRole, IntentAction], Handler] = {}

        shared = {
            IntentAction.GREETING: self._greeting,
            IntentAction.BOOK_APPOINTMENT: self._book_appointment,
            IntentAction.CONFIRM_BOOKING: self._confirm_booking,
            IntentAction.CANCEL_APPOINTMENT: self._cancel_appointment,
            IntentAction.CONFIRM_CANCELLATION: self._confirm_cancellation,
            IntentAction.RESCHEDULE_APPOINTMENT: self._reschedule_appointment,
            IntentAction.VIEW_SERVICES: self._view_services,
            IntentAction.CHECK_LOYALTY: self._check_loyalty,
        }
        staff = {
            IntentAction.STAFF_SCHEDULE: self._staff_schedule,
            IntentAction.STAFF_CHECKIN: self._staff_checkin,
            IntentAction.COMPLETE_SERVICE: self._complete_service,
            IntentAction.STAFF_BREAK: self._staff_break,
        }
        for role in SenderRole:
            for action, handler in shared.items():
                self.register(role, action, handler)
        for action, handler in staff.items():
            self.register(SenderRole.STAFF, action, handler)

    def register(self, role: SenderRole, action: IntentAction, handler: Handler) -> None:
        self._handlers[(role, action)] = handler

    def is_permitted(self, role: SenderRole, action: IntentAction) -> bool:
        return (role, action) in self._handlers

    async def dispatch(
        self, intent: Intent, sender: Sender, conversation: Conversation,
        now: Optional[datetime] = None,
    ) -> ActionResult:
        now = now or utcnow()
        handler = self._handlers.get((sender.role, intent.action))
        if handler is None:
            logger.warning("role_permission_denied",
                           action=intent.action.value,
                           role=sender.role.value,
                           channel_address=sender.channel_address,
                           conversation_id=conversation.id,
                           staff_only=intent.action in STAFF_ONLY_ACTIONS)
            return ActionResult.business_error(
                "role_not_permitted", f"{intent.action.value} is not available for {sender.role.value}",
            )

        previous_flow = conversation.context.pending_flow
        conversation.context.clear_flow()
        conversation.context.last_intent = intent.action.value
        try:
            result = await handler(intent, sender, conversation, now)
        except BackendUnavailable as e:
            # The customer can answer the same question again once the backend is back
            logger.warning("backend_unavailable_during_dispatch",
                           action=intent.action.value,
                           endpoint=e.endpoint,
                           error=str(e),
                           conversation_id=conversation.id)
            conversation.context.pending_flow = previous_flow
            result = ActionResult.business_error("service_unavailable")
        logger.info("action_dispatched",
                    action=intent.action.value,
                    outcome=result.outcome.value,
                    error_code=result.error_code,
                    conversation_id=conversation.id)
        return result

    def _start_flow(self, conversation: Conversation, name: FlowName,
                    entities: dict[str, Any], now: datetime) -> None:
        conversation.context.start_flow(name, entities, now, self.flow_ttl)

    # ══════════════════════════════════════════════════════════
    #  Shared actions
    # ══════════════════════════════════════════════════════════

    async def _greeting(self, intent, sender, conversation, now) -> ActionResult:
        return ActionResult.ok(role=sender.role.value, name=sender.display_name)

    async def _book_appointment(self, intent, sender, conversation, now) -> ActionResult:
        entities = dict(intent.entities)
        tenant_id = conversation.tenant_id

        if entities.get("service_id") and not entities.get("service"):
            services = await self.backend.list_services(tenant_id)
            match = next((s for s in services if s.service_id == entities["service_id"]), None)
            if match is None:
                return ActionResult.business_error("service_unavailable")
            entities["service"] = match.name

        carried = {k: entities[k] for k in ("service", "preferred_staff", "time") if k in entities}
        if entities.get("reschedule"):
            carried["reschedule"] = True

        if "date" not in entities:
            self._start_flow(conversation, FlowName.AWAITING_DATE_FOR_BOOKING, carried, now)
            prompt = ("Which day would you like to move your appointment to?"
                      if entities.get("reschedule") else "Which day would you like to come in?")
            return ActionResult.needs_more_info(prompt, **carried)

        day = date.fromisoformat(entities["date"])
        slots = await self.backend.list_slots(
            tenant_id, day=day,
            service=entities.get("service", ""),
            staff_name=entities.get("preferred_staff", ""),
        )
        if not slots:
            self._start_flow(conversation, FlowName.AWAITING_DATE_FOR_BOOKING, carried, now)
            return ActionResult.needs_more_info(
                f"Sorry, there are no open slots on {day.strftime('%A, %d %B')}. "
                "Which other day works for you?",
                date=day.isoformat(), **carried,
            )

        offered = [_slot_payload(s) for s in slots[:MAX_SLOT_OPTIONS]]
        self._start_flow(conversation, FlowName.AWAITING_SLOT_SELECTION, {
            **carried,
            "date": day.isoformat(),
            "offered": [{"slot_id": s["slot_id"], "time": s["time"]} for s in offered],
        }, now)
        return ActionResult.ok(
            date=day.isoformat(),
            service=entities.get("service", ""),
            preferred_staff=entities.get("preferred_staff", ""),
            requested_time=entities.get("time", ""),
            slots=offered,
        )

    async def _confirm_booking(self, intent, sender, conversation, now) -> ActionResult:
        slot_id = intent.entities.get("slot_id")
        if not slot_id:
            return ActionResult.needs_more_info("Which time would you like? Please pick one from the list.")

        # Live availability check; cached slot lists in the flow are never trusted
        try:
            record = await self.backend.confirm_booking(conversation.tenant_id, slot_id, sender)
        except BookingConflict:
            return ActionResult.business_error("booking_conflict")
        if record is None:
            logger.info("slot_unavailable", slot_id=slot_id, conversation_id=conversation.id)
            return ActionResult.business_error("slot_unavailable")

        return ActionResult.ok(booking={
            **record.model_dump(mode="json"),
            "time": time_label(record.start.hour, record.start.minute),
        })

    async def _cancel_appointment(self, intent, sender, conversation, now) -> ActionResult:
        if sender.role == SenderRole.ANONYMOUS or not sender.directory_id:
            return ActionResult.business_error("not_registered")

        upcoming = [
            a for a in await self.backend.customer_appointments(conversation.tenant_id, sender.directory_id)
            if a.start >= now
        ]
        if not upcoming:
            return ActionResult.business_error("no_upcoming_appointments")

        appointments = [_appointment_payload(a) for a in upcoming[:MAX_SLOT_OPTIONS]]
        self._start_flow(conversation, FlowName.AWAITING_CANCEL_SELECTION, {
            "appointment_ids": [a["appointment_id"] for a in appointments],
        }, now)
        return ActionResult.ok(appointments=appointments)

    async def _confirm_cancellation(self, intent, sender, conversation, now) -> ActionResult:
        if sender.role == SenderRole.ANONYMOUS or not sender.directory_id:
            return ActionResult.business_error("not_registered")

        appointment_id = intent.entities.get("appointment_id", "")
        cancelled = await self.backend.cancel_appointment(
            conversation.tenant_id, sender.directory_id, appointment_id,
        )
        if not cancelled:
            return ActionResult.business_error("appointment_not_found")
        logger.info("appointment_cancelled", appointment_id=appointment_id, conversation_id=conversation.id)
        return ActionResult.ok(appointment_id=appointment_id)

    async def _reschedule_appointment(self, intent, sender, conversation, now) -> ActionResult:
        if sender.role == SenderRole.ANONYMOUS or not sender.directory_id:
            return ActionResult.business_error("not_registered")
        rebooking = intent.model_copy(update={"entities": {**intent.entities, "reschedule": True}})
        return await self._book_appointment(rebooking, sender, conversation, now)

    async def _view_services(self, intent, sender, conversation, now) -> ActionResult:
        services = await self.backend.list_services(conversation.tenant_id)
        if not services:
            return ActionResult.business_error("service_unavailable")
        self._start_flow(conversation, FlowName.AWAITING_SERVICE_SELECTION, {}, now)
        return ActionResult.ok(services=[s.model_dump(mode="json") for s in services])

    async def _check_loyalty(self, intent, sender, conversation, now) -> ActionResult:
        if sender.role == SenderRole.ANONYMOUS or not sender.directory_id:
            return ActionResult.business_error("not_registered")
        balance = await self.backend.get_loyalty_balance(conversation.tenant_id, sender.directory_id)
        if balance is None:
            return ActionResult.ok(points=0, tier="Member", name=sender.display_name)
        return ActionResult.ok(points=balance.points, tier=balance.tier, name=sender.display_name)

    # ══════════════════════════════════════════════════════════
    #  Staff actions
    # ══════════════════════════════════════════════════════════

    async def _staff_schedule(self, intent, sender, conversation, now) -> ActionResult:
        day = date.fromisoformat(intent.entities["date"]) if intent.entities.get("date") else now.date()
        appointments = await self.backend.staff_schedule(conversation.tenant_id, sender.directory_id, day)
        return ActionResult.ok(
            date=day.isoformat(),
            name=sender.display_name,
            appointments=[_appointment_payload(a) for a in appointments],
        )

    async def _staff_checkin(self, intent, sender, conversation, now) -> ActionResult:
        client_name = intent.entities.get("client_name", "").strip()
        if not client_name:
            return ActionResult.needs_more_info(
                "Who would you like to check in? For example: check in Sarah Johnson",
            )
        appointment = await self.backend.check_in(conversation.tenant_id, sender.directory_id, client_name)
        if appointment is None:
            return ActionResult.business_error("client_not_found", client_name)
        return ActionResult.ok(appointment=_appointment_payload(appointment))

    async def _complete_service(self, intent, sender, conversation, now) -> ActionResult:
        appointment = await self.backend.complete_service(conversation.tenant_id, sender.directory_id)
        if appointment is None:
            return ActionResult.business_error("appointment_not_found")
        return ActionResult.ok(appointment=_appointment_payload(appointment))

    async def _staff_break(self, intent, sender, conversation, now) -> ActionResult:
        result = await self.backend.start_break(conversation.tenant_id, sender.directory_id)
        return ActionResult.ok(**result)
