"""
Response Composer — ActionResult → channel-neutral Reply.

Pure mapping, no I/O. Provider limits (button counts, title lengths) are
applied later by the channel adapter.
"""
from __future__ import annotations

from collections import OrderedDict
from datetime import date, datetime
from typing import Any

from intents.quick_replies import encode_booking, encode_cancel, encode_menu, encode_service
from models.schemas import (
    ActionOutcome, ActionResult, IntentAction, MenuOption, MenuSection, Reply, ReplyKind,
)

APOLOGY = "Sorry, something went wrong on our side. Please try again in a moment."

ERROR_MESSAGES: dict[str, str] = {
    "role_not_permitted": "Sorry, that option isn't available for your account.",
    "slot_unavailable": "Sorry, that time was just taken. Send \"book\" to see the latest open slots.",
    "booking_conflict": "You already have an appointment at that time. Pick a different slot, or send \"reschedule\".",
    "not_registered": "We couldn't find a customer profile for this number. Send \"book\" to make your first appointment.",
    "client_not_found": "I couldn't find an appointment for that client today. Please check the name and try again.",
    "no_upcoming_appointments": "You don't have any upcoming appointments.",
    "appointment_not_found": "I couldn't find that appointment. It may already have been changed.",
    "service_unavailable": "Sorry, that service isn't available right now.",
}

GREETING_MENUS: dict[str, list[tuple[IntentAction, str]]] = {
    "staff": [
        (IntentAction.STAFF_SCHEDULE, "My Schedule"),
        (IntentAction.STAFF_CHECKIN, "Check In Client"),
        (IntentAction.STAFF_BREAK, "Start Break"),
    ],
    "customer": [
        (IntentAction.BOOK_APPOINTMENT, "Book Appointment"),
        (IntentAction.VIEW_SERVICES, "Our Services"),
        (IntentAction.CHECK_LOYALTY, "My Points"),
    ],
    # Unknown senders only get actions that work without a directory record
    "anonymous": [
        (IntentAction.BOOK_APPOINTMENT, "Book Appointment"),
        (IntentAction.VIEW_SERVICES, "Our Services"),
    ],
}


def apology() -> Reply:
    return Reply.text(APOLOGY)


def _day_text(iso: str) -> str:
    try:
        return date.fromisoformat(iso[:10]).strftime("%A, %d %B")
    except (TypeError, ValueError):
        return iso or "that day"


def _short_day(iso: str) -> str:
    try:
        return date.fromisoformat(iso[:10]).strftime("%a %d %b")
    except (TypeError, ValueError):
        return ""


def _appointment_line(appt: dict[str, Any]) -> str:
    parts = [appt.get("time", "")]
    if appt.get("client_name"):
        parts.append(appt["client_name"])
    if appt.get("service"):
        parts.append(appt["service"])
    return " · ".join(p for p in parts if p)


class ResponseComposer:

    def compose(self, action: IntentAction, result: ActionResult) -> Reply:
        if result.outcome == ActionOutcome.BUSINESS_ERROR:
            return Reply.text(ERROR_MESSAGES.get(result.error_code or "", APOLOGY))
        if result.outcome == ActionOutcome.NEEDS_MORE_INFO:
            return Reply.text(result.message or APOLOGY)

        builder = getattr(self, f"_{action.value}", None)
        if builder is None:
            return apology()
        return builder(result.payload)

    # ── Shared ────────────────────────────────────────────

    def _greeting(self, payload: dict[str, Any]) -> Reply:
        role = payload.get("role", "anonymous")
        name = payload.get("name", "")
        menu = GREETING_MENUS.get(role, GREETING_MENUS["anonymous"])
        hello = f"Hi {name}!" if name else "Hi there!"
        body = (f"{hello} What would you like to do?" if role == "staff"
                else f"{hello} Welcome. How can we help you today?")
        return Reply(
            kind=ReplyKind.BUTTON_MENU,
            body=body,
            sections=[MenuSection(options=[
                MenuOption(id=encode_menu(action), title=title) for action, title in menu
            ])],
        )

    def _book_appointment(self, payload: dict[str, Any]) -> Reply:
        groups: OrderedDict[str, list[MenuOption]] = OrderedDict(
            [("Morning", []), ("Afternoon", [])]
        )
        for slot in payload.get("slots", []):
            start = datetime.fromisoformat(slot["start"])
            bucket = "Morning" if start.hour < 12 else "Afternoon"
            description = " · ".join(p for p in (slot.get("staff_name"), slot.get("service")) if p)
            groups[bucket].append(MenuOption(
                id=encode_booking(slot["slot_id"]),
                title=slot.get("time", start.strftime("%H:%M")),
                description=f"with {description}" if slot.get("staff_name") else description,
            ))

        service = payload.get("service")
        body = f"Here are the open times on {_day_text(payload.get('date', ''))}"
        body += f" for {service}." if service else "."
        return Reply(
            kind=ReplyKind.LIST_MENU,
            header="Available times",
            body=body + " Pick one to book it.",
            button_label="View times",
            sections=[MenuSection(title=title, options=opts) for title, opts in groups.items() if opts],
        )

    _reschedule_appointment = _book_appointment

    def _confirm_booking(self, payload: dict[str, Any]) -> Reply:
        booking = payload.get("booking", {})
        what = booking.get("service") or "appointment"
        body = f"You're booked! Your {what} is on {_day_text(booking.get('start', ''))} at {booking.get('time', '')}"
        if booking.get("staff_name"):
            body += f" with {booking['staff_name']}"
        body += f". Reference: {booking.get('booking_id', '')}"
        return Reply.text(body)

    def _cancel_appointment(self, payload: dict[str, Any]) -> Reply:
        options = [
            MenuOption(
                id=encode_cancel(appt["appointment_id"]),
                title=f"{_short_day(appt.get('start', ''))} {appt.get('time', '')}".strip(),
                description=" · ".join(p for p in (appt.get("service"), appt.get("staff_name")) if p),
            )
            for appt in payload.get("appointments", [])
        ]
        return Reply(
            kind=ReplyKind.LIST_MENU,
            header="Your appointments",
            body="Which appointment would you like to cancel?",
            button_label="Choose",
            sections=[MenuSection(title="Upcoming", options=options)],
        )

    def _confirm_cancellation(self, payload: dict[str, Any]) -> Reply:
        return Reply.text("Your appointment has been cancelled. Send \"book\" any time to make a new one.")

    def _view_services(self, payload: dict[str, Any]) -> Reply:
        groups: OrderedDict[str, list[MenuOption]] = OrderedDict()
        for service in payload.get("services", []):
            details = []
            if service.get("price"):
                details.append(f"${service['price']:g}")
            if service.get("duration_minutes"):
                details.append(f"{service['duration_minutes']} min")
            groups.setdefault(service.get("category") or "General", []).append(MenuOption(
                id=encode_service(service["service_id"]),
                title=service["name"],
                description=" · ".join(details),
            ))
        return Reply(
            kind=ReplyKind.LIST_MENU,
            header="Our services",
            body="Here's what we offer. Pick a service to see open times.",
            button_label="View services",
            sections=[MenuSection(title=title, options=opts) for title, opts in groups.items()],
        )

    def _check_loyalty(self, payload: dict[str, Any]) -> Reply:
        name = payload.get("name")
        lead = f"{name}, you" if name else "You"
        return Reply.text(
            f"{lead} have {payload.get('points', 0)} loyalty points. Tier: {payload.get('tier', 'Member')}."
        )

    # ── Staff ─────────────────────────────────────────────

    def _staff_schedule(self, payload: dict[str, Any]) -> Reply:
        appointments = payload.get("appointments", [])
        day = _day_text(payload.get("date", ""))
        if not appointments:
            return Reply.text(f"You have no appointments on {day}.")
        lines = [f"Your schedule for {day}:"]
        lines.extend(f"• {_appointment_line(a)}" for a in appointments)
        return Reply.text("\n".join(lines))

    def _staff_checkin(self, payload: dict[str, Any]) -> Reply:
        appt = payload.get("appointment", {})
        body = f"Checked in {appt.get('client_name', 'the client')}"
        if appt.get("service"):
            body += f" for {appt['service']}"
        if appt.get("time"):
            body += f" ({appt['time']})"
        return Reply.text(body + ".")

    def _complete_service(self, payload: dict[str, Any]) -> Reply:
        appt = payload.get("appointment", {})
        return Reply.text(f"Marked {appt.get('service') or 'the service'} for "
                          f"{appt.get('client_name', 'the client')} as complete.")

    def _staff_break(self, payload: dict[str, Any]) -> Reply:
        return Reply.text("Your break has started. You're marked unavailable for new bookings.")
