"""Tests for ResponseComposer — ActionResult → Reply."""
import pytest

from core.composer import APOLOGY, ERROR_MESSAGES, ResponseComposer, apology
from models.schemas import ActionResult, IntentAction, ReplyKind


@pytest.fixture
def composer():
    return ResponseComposer()


class TestGreeting:
    def test_staff_menu(self, composer):
        reply = composer.compose(IntentAction.GREETING, ActionResult.ok(role="staff", name="Emma"))
        assert reply.kind == ReplyKind.BUTTON_MENU
        assert reply.body.startswith("Hi Emma!")
        assert [o.id for o in reply.options] == [
            "menu_staff_schedule", "menu_staff_checkin", "menu_staff_break",
        ]

    @pytest.mark.parametrize("role, expected", [
        ("customer", ["menu_book_appointment", "menu_view_services", "menu_check_loyalty"]),
        ("anonymous", ["menu_book_appointment", "menu_view_services"]),
    ])
    def test_customer_menu(self, composer, role, expected):
        reply = composer.compose(IntentAction.GREETING, ActionResult.ok(role=role, name=""))
        assert reply.body.startswith("Hi there!")
        assert [o.id for o in reply.options] == expected
        assert all(len(o.title) <= 20 for o in reply.options)

    def test_unknown_sender_is_not_offered_points(self, composer):
        # Points need a customer record; an unknown number would only get not_registered
        reply = composer.compose(IntentAction.GREETING, ActionResult.ok(role="anonymous"))
        assert "menu_check_loyalty" not in [o.id for o in reply.options]


class TestErrorsAndPrompts:
    @pytest.mark.parametrize("code", sorted(ERROR_MESSAGES))
    def test_every_error_code_has_text(self, composer, code):
        reply = composer.compose(IntentAction.CONFIRM_BOOKING, ActionResult.business_error(code))
        assert reply.kind == ReplyKind.TEXT
        assert reply.body == ERROR_MESSAGES[code]

    def test_unknown_error_code_apologises(self, composer):
        reply = composer.compose(IntentAction.CONFIRM_BOOKING, ActionResult.business_error("weird"))
        assert reply.body == APOLOGY

    def test_needs_more_info_uses_prompt(self, composer):
        reply = composer.compose(IntentAction.BOOK_APPOINTMENT,
                                 ActionResult.needs_more_info("Which day would you like to come in?"))
        assert reply.kind == ReplyKind.TEXT
        assert reply.body == "Which day would you like to come in?"

    def test_apology_is_text(self):
        assert apology().kind == ReplyKind.TEXT
        assert apology().body == APOLOGY


class TestBookingReplies:
    def test_slot_list_grouped_by_time_of_day(self, composer):
        result = ActionResult.ok(date="2026-03-03", service="haircut", slots=[
            {"slot_id": "s-10", "start": "2026-03-03T10:00:00+00:00", "time": "10am",
             "staff_name": "Emma", "service": "haircut"},
            {"slot_id": "s-14", "start": "2026-03-03T14:00:00+00:00", "time": "2pm",
             "staff_name": "Emma", "service": "haircut"},
        ])
        reply = composer.compose(IntentAction.BOOK_APPOINTMENT, result)
        assert reply.kind == ReplyKind.LIST_MENU
        assert [s.title for s in reply.sections] == ["Morning", "Afternoon"]
        assert [o.id for o in reply.options] == ["book_s-10", "book_s-14"]
        assert reply.options[0].description == "with Emma · haircut"
        assert "Tuesday, 03 March" in reply.body
        assert "haircut" in reply.body

    def test_morning_only_has_one_section(self, composer):
        result = ActionResult.ok(date="2026-03-03", slots=[
            {"slot_id": "s-9", "start": "2026-03-03T09:00:00+00:00", "time": "9am"},
        ])
        reply = composer.compose(IntentAction.RESCHEDULE_APPOINTMENT, result)
        assert [s.title for s in reply.sections] == ["Morning"]

    def test_booking_confirmation(self, composer):
        result = ActionResult.ok(booking={
            "booking_id": "bk-1", "slot_id": "s-14", "start": "2026-03-03T14:00:00+00:00",
            "time": "2pm", "staff_name": "Emma", "service": "haircut",
        })
        reply = composer.compose(IntentAction.CONFIRM_BOOKING, result)
        assert reply.kind == ReplyKind.TEXT
        assert "haircut" in reply.body
        assert "2pm" in reply.body
        assert "with Emma" in reply.body
        assert "bk-1" in reply.body

    def test_cancel_menu(self, composer):
        result = ActionResult.ok(appointments=[{
            "appointment_id": "ca-1", "start": "2026-03-05T10:00:00+00:00", "time": "10am",
            "service": "haircut", "staff_name": "Emma",
        }])
        reply = composer.compose(IntentAction.CANCEL_APPOINTMENT, result)
        assert reply.options[0].id == "cancel_ca-1"
        assert reply.options[0].title == "Thu 05 Mar 10am"

    def test_services_grouped_by_category(self, composer):
        result = ActionResult.ok(services=[
            {"service_id": "haircut", "name": "Haircut", "category": "Hair", "price": 45, "duration_minutes": 45},
            {"service_id": "massage", "name": "Massage", "category": "Spa", "price": 80, "duration_minutes": 60},
            {"service_id": "color", "name": "Hair Color", "category": "Hair", "price": 120.5, "duration_minutes": 0},
        ])
        reply = composer.compose(IntentAction.VIEW_SERVICES, result)
        assert [s.title for s in reply.sections] == ["Hair", "Spa"]
        assert [o.id for o in reply.sections[0].options] == ["service_haircut", "service_color"]
        assert reply.sections[0].options[0].description == "$45 · 45 min"
        assert reply.sections[0].options[1].description == "$120.5"


class TestTextReplies:
    def test_loyalty(self, composer):
        reply = composer.compose(IntentAction.CHECK_LOYALTY,
                                 ActionResult.ok(points=120, tier="Gold", name="Alex"))
        assert reply.body == "Alex, you have 120 loyalty points. Tier: Gold."

    def test_schedule(self, composer):
        reply = composer.compose(IntentAction.STAFF_SCHEDULE, ActionResult.ok(date="2026-03-02", appointments=[
            {"time": "11am", "client_name": "Sarah Johnson", "service": "haircut"},
        ]))
        assert reply.body.splitlines() == [
            "Your schedule for Monday, 02 March:",
            "• 11am · Sarah Johnson · haircut",
        ]

    def test_empty_schedule(self, composer):
        reply = composer.compose(IntentAction.STAFF_SCHEDULE, ActionResult.ok(date="2026-03-03", appointments=[]))
        assert reply.body == "You have no appointments on Tuesday, 03 March."

    def test_checkin_and_complete(self, composer):
        appt = {"client_name": "Sarah Johnson", "service": "haircut", "time": "11am"}
        checkin = composer.compose(IntentAction.STAFF_CHECKIN, ActionResult.ok(appointment=appt))
        assert checkin.body == "Checked in Sarah Johnson for haircut (11am)."
        done = composer.compose(IntentAction.COMPLETE_SERVICE, ActionResult.ok(appointment=appt))
        assert done.body == "Marked haircut for Sarah Johnson as complete."

    def test_break(self, composer):
        reply = composer.compose(IntentAction.STAFF_BREAK, ActionResult.ok(staff_id="st-1"))
        assert "break" in reply.body
