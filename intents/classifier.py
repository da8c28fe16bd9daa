"""
Intent Classifier — Deterministic, role-aware rule matcher.

Classification order for one inbound message:
  1. Quick replies (menu selections) decode straight to an intent.
     A ``book_<slot>`` selection always wins.
  2. An active pending flow gets the first chance to consume the input
     (a date while waiting for a date, a time matching an offered slot...).
  3. Keyword rules, staff rules first for staff senders, then the
     customer rules shared by every role.
  4. Nothing matched: greeting.

The classifier never fails. Unsupported message types and unmatched text
both become a greeting.
"""
from __future__ import annotations

import re
import structlog
from datetime import date, datetime, timedelta
from typing import Any, Optional, Union

from intents.quick_replies import decode_quick_reply, extract_reply_id
from models.schemas import (
    BookingQuickReply, CancelQuickReply, FlowName, InboundEvent, Intent,
    IntentAction, MenuQuickReply, PendingFlow, SenderRole, ServiceQuickReply, utcnow,
)

logger = structlog.get_logger()


# (keywords, action); first rule with a keyword starting a word wins,
# so "services" matches "service" but "reschedule" does not match "schedule".
# cancel / reschedule sit before book so "cancel my appointment" is a cancel.
CUSTOMER_RULES: list[tuple[tuple[str, ...], IntentAction]] = [
    (("cancel",), IntentAction.CANCEL_APPOINTMENT),
    (("reschedule",), IntentAction.RESCHEDULE_APPOINTMENT),
    (("book", "appointment"), IntentAction.BOOK_APPOINTMENT),
    (("service", "price"), IntentAction.VIEW_SERVICES),
    (("points", "loyalty"), IntentAction.CHECK_LOYALTY),
]

STAFF_RULES: list[tuple[tuple[str, ...], IntentAction]] = [
    (("schedule", "appointments"), IntentAction.STAFF_SCHEDULE),
    (("check in", "check-in", "checkin"), IntentAction.STAFF_CHECKIN),
    (("complete",), IntentAction.COMPLETE_SERVICE),
    (("break", "unavailable"), IntentAction.STAFF_BREAK),
]

# Actions whose text carries booking entities
_BOOKING_ACTIONS = {IntentAction.BOOK_APPOINTMENT, IntentAction.RESCHEDULE_APPOINTMENT}

# Booking details a flow carries forward into the next turn
_CARRIED_ENTITIES = ("service", "service_id", "preferred_staff", "time", "reschedule")

_TIME_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", re.IGNORECASE)
_ISO_DATE_RE = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
_CHECKIN_RE = re.compile(r"check[\s-]?in\b(.*)$", re.IGNORECASE | re.DOTALL)
_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def _keyword_pattern(keywords: tuple[str, ...]) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + ")")


def time_label(hour: int, minute: int = 0) -> str:
    """Canonical time text: 14:00 → '2pm', 9:30 → '9:30am'."""
    suffix = "am" if hour < 12 else "pm"
    h12 = hour % 12 or 12
    return f"{h12}{suffix}" if minute == 0 else f"{h12}:{minute:02d}{suffix}"


def extract_time(text: str) -> Optional[str]:
    match = _TIME_RE.search(text)
    if not match:
        return None
    hour, minute, suffix = match.group(1), match.group(2), match.group(3).lower()
    if minute and minute != "00":
        return f"{int(hour)}:{minute}{suffix}"
    return f"{int(hour)}{suffix}"


def extract_date(text: str, today: date) -> Optional[date]:
    lowered = text.lower()
    if "today" in lowered:
        return today
    if "tomorrow" in lowered:
        return today + timedelta(days=1)
    iso = _ISO_DATE_RE.search(lowered)
    if iso:
        try:
            return date.fromisoformat(iso.group(1))
        except ValueError:
            return None
    for index, name in enumerate(_WEEKDAYS):
        if re.search(rf"\b{name}\b", lowered):
            return today + timedelta(days=(index - today.weekday()) % 7)
    return None


class IntentClassifier:

    def __init__(self, services: list[str], staff_names: list[str]):
        # Longest names first so "hair color" is preferred over a shorter overlap
        self.services = sorted((s.lower() for s in services), key=len, reverse=True)
        self.staff_names = [n.lower() for n in staff_names]

    def classify(
        self,
        message: Union[InboundEvent, str],
        sender_role: SenderRole,
        pending_flow: Optional[PendingFlow] = None,
        now: Optional[datetime] = None,
    ) -> Intent:
        now = now or utcnow()
        if isinstance(message, InboundEvent):
            if message.type == "interactive":
                intent = self._from_quick_reply(extract_reply_id(message.interactive))
                if intent:
                    return intent
                text = self._interactive_title(message.interactive) or message.text
            elif message.type == "text":
                text = message.text
            else:
                logger.debug("unclassifiable_message_type", type=message.type)
                return Intent(action=IntentAction.GREETING, confidence=0.0)
        else:
            text = message or ""

        if pending_flow is not None and not pending_flow.is_expired(now):
            intent = self._continue_flow(pending_flow, text, now)
            if intent:
                logger.debug("flow_continued", flow=pending_flow.name.value, action=intent.action.value)
                return intent

        return self._match_rules(text, sender_role, now)

    # ── Quick replies ─────────────────────────────────────

    @staticmethod
    def _from_quick_reply(reply_id: str) -> Optional[Intent]:
        reply = decode_quick_reply(reply_id)
        if isinstance(reply, BookingQuickReply):
            return Intent(action=IntentAction.CONFIRM_BOOKING, entities={"slot_id": reply.slot_id})
        if isinstance(reply, ServiceQuickReply):
            return Intent(action=IntentAction.BOOK_APPOINTMENT, entities={"service_id": reply.service_id})
        if isinstance(reply, CancelQuickReply):
            return Intent(action=IntentAction.CONFIRM_CANCELLATION,
                          entities={"appointment_id": reply.appointment_id})
        if isinstance(reply, MenuQuickReply):
            return Intent(action=reply.action)
        return None

    @staticmethod
    def _interactive_title(interactive: Optional[dict[str, Any]]) -> str:
        for key in ("button_reply", "list_reply"):
            selected = (interactive or {}).get(key)
            if isinstance(selected, dict) and selected.get("title"):
                return str(selected["title"])
        return ""

    # ── Pending flows ─────────────────────────────────────

    def _continue_flow(self, flow: PendingFlow, text: str, now: datetime) -> Optional[Intent]:
        if flow.name == FlowName.AWAITING_DATE_FOR_BOOKING:
            day = extract_date(text, now.date())
            if day is None:
                return None
            entities = {k: v for k, v in flow.entities.items() if k in _CARRIED_ENTITIES}
            entities.update(self._booking_entities(text, now))
            return Intent(action=IntentAction.BOOK_APPOINTMENT, entities=entities)

        if flow.name == FlowName.AWAITING_SLOT_SELECTION:
            # Offered times belong to the flow's day; another day means a new search
            day = extract_date(text, now.date())
            same_day = day is None or day.isoformat() == flow.entities.get("date")
            wanted = extract_time(text)
            if wanted and same_day:
                for offered in flow.entities.get("offered", []):
                    if offered.get("time") == wanted:
                        return Intent(action=IntentAction.CONFIRM_BOOKING,
                                      entities={"slot_id": offered["slot_id"]})
            if day is not None:
                entities = {k: v for k, v in flow.entities.items() if k in _CARRIED_ENTITIES}
                entities.update(self._booking_entities(text, now))
                return Intent(action=IntentAction.BOOK_APPOINTMENT, entities=entities)
            return None

        if flow.name == FlowName.AWAITING_SERVICE_SELECTION:
            if self._find_service(text.lower()) is None:
                return None
            return Intent(action=IntentAction.BOOK_APPOINTMENT,
                          entities=self._booking_entities(text, now))

        if flow.name == FlowName.AWAITING_CANCEL_SELECTION:
            lowered = text.strip().lower()
            if lowered in ("no", "keep", "never mind", "nevermind"):
                return Intent(action=IntentAction.GREETING)
            return None

        return None

    # ── Keyword rules ─────────────────────────────────────

    def _match_rules(self, text: str, sender_role: SenderRole, now: datetime) -> Intent:
        lowered = text.lower()
        rule_sets = [CUSTOMER_RULES]
        if sender_role == SenderRole.STAFF:
            rule_sets.insert(0, STAFF_RULES)

        for rules in rule_sets:
            for keywords, action in rules:
                if _keyword_pattern(keywords).search(lowered):
                    return Intent(action=action, entities=self._entities_for(action, text, now))

        return Intent(action=IntentAction.GREETING, confidence=0.0)

    def _entities_for(self, action: IntentAction, text: str, now: datetime) -> dict[str, Any]:
        if action in _BOOKING_ACTIONS:
            return self._booking_entities(text, now)
        if action == IntentAction.STAFF_CHECKIN:
            match = _CHECKIN_RE.search(text)
            client_name = match.group(1).strip(" \t\n:,-") if match else ""
            return {"client_name": client_name} if client_name else {}
        if action == IntentAction.STAFF_SCHEDULE:
            day = extract_date(text, now.date())
            return {"date": day.isoformat()} if day else {}
        return {}

    def _booking_entities(self, text: str, now: datetime) -> dict[str, Any]:
        """Best-effort extraction; missing fields are simply absent."""
        lowered = text.lower()
        entities: dict[str, Any] = {}
        day = extract_date(lowered, now.date())
        if day:
            entities["date"] = day.isoformat()
        time_text = extract_time(lowered)
        if time_text:
            entities["time"] = time_text
        service = self._find_service(lowered)
        if service:
            entities["service"] = service
        for name in self.staff_names:
            if re.search(rf"\b{re.escape(name)}\b", lowered):
                entities["preferred_staff"] = name
                break
        return entities

    def _find_service(self, lowered: str) -> Optional[str]:
        found = [(lowered.find(s), s) for s in self.services if s in lowered]
        if not found:
            return None
        # Earliest mention wins; sort is stable so longer names win ties
        return min(found, key=lambda item: item[0])[1]
