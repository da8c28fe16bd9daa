"""
InMemoryBackend — Dict-backed business services for development and testing.

Features:
  - Zero dependencies (no HTTP, no database)
  - Same interface as RESTBackendConnector
  - Slot booking is atomic under an asyncio lock, so concurrent
    confirmations of one slot yield exactly one booking
  - All data lost on process restart
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from datetime import date, datetime, timezone
from typing import Any, Optional

from backend.connector import BackendConnector, BookingConflict
from models.schemas import (
    Appointment, BookingRecord, LoyaltyBalance, Sender, ServiceItem, Slot,
)

logger = structlog.get_logger()


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class InMemoryBackend(BackendConnector):

    def __init__(self):
        self._staff: dict[str, dict[str, Any]] = {}         # address → staff record
        self._customers: dict[str, dict[str, Any]] = {}     # address → customer record
        self._slots: dict[str, Slot] = {}                   # slot_id → slot
        self._taken: set[str] = set()
        self._services: list[ServiceItem] = []
        self._loyalty: dict[str, LoyaltyBalance] = {}       # customer_id → balance
        self._appointments: dict[str, list[Appointment]] = {}   # staff_id → appointments
        self._customer_appointments: dict[str, list[Appointment]] = {}
        self._checked_in: list[tuple[str, str]] = []
        self._breaks: list[str] = []
        self._bookings: list[BookingRecord] = []
        self._lock = asyncio.Lock()

    # ── Seeding ───────────────────────────────────────────

    def add_staff(self, address: str, staff_id: str, name: str) -> None:
        self._staff[address] = {"id": staff_id, "name": name}

    def add_customer(self, address: str, customer_id: str, name: str) -> None:
        self._customers[address] = {"id": customer_id, "name": name}

    def add_slot(self, slot: Slot) -> None:
        self._slots[slot.slot_id] = slot

    def add_service(self, service: ServiceItem) -> None:
        self._services.append(service)

    def set_loyalty(self, customer_id: str, points: int, tier: str) -> None:
        self._loyalty[customer_id] = LoyaltyBalance(points=points, tier=tier)

    def add_staff_appointment(self, staff_id: str, appointment: Appointment) -> None:
        self._appointments.setdefault(staff_id, []).append(appointment)

    def add_customer_appointment(self, customer_id: str, appointment: Appointment) -> None:
        self._customer_appointments.setdefault(customer_id, []).append(appointment)

    # ── Directory ─────────────────────────────────────────

    async def find_staff(self, tenant_id: str, address: str) -> Optional[dict[str, Any]]:
        return self._staff.get(address)

    async def find_customer(self, tenant_id: str, address: str) -> Optional[dict[str, Any]]:
        return self._customers.get(address)

    # ── Availability / booking ────────────────────────────

    async def list_slots(
        self, tenant_id: str, day: Optional[date] = None,
        service: str = "", staff_name: str = "",
    ) -> list[Slot]:
        slots = [s for sid, s in self._slots.items() if sid not in self._taken]
        if day:
            slots = [s for s in slots if s.start.date() == day]
        if service:
            slots = [s for s in slots if not s.service or s.service.lower() == service.lower()]
        if staff_name:
            slots = [s for s in slots if s.staff_name.lower() == staff_name.lower()]
        return sorted(slots, key=lambda s: s.start)

    async def confirm_booking(self, tenant_id: str, slot_id: str, customer: Sender) -> Optional[BookingRecord]:
        async with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None or slot_id in self._taken:
                return None
            if customer.directory_id and self._has_booking_at(customer.directory_id, slot.start):
                raise BookingConflict(slot_id)
            self._taken.add(slot_id)
            record = BookingRecord(
                booking_id=_new_id(), slot_id=slot_id, start=slot.start,
                customer_id=customer.directory_id,
                staff_name=slot.staff_name, service=slot.service,
            )
            self._bookings.append(record)
        logger.info("memory_booking_confirmed", slot_id=slot_id, booking_id=record.booking_id)
        return record

    def _has_booking_at(self, customer_id: str, start: datetime) -> bool:
        if any(b.customer_id == customer_id and b.start == start for b in self._bookings):
            return True
        return any(a.start == start for a in self._customer_appointments.get(customer_id, []))

    async def list_services(self, tenant_id: str) -> list[ServiceItem]:
        return list(self._services)

    async def customer_appointments(self, tenant_id: str, customer_id: str) -> list[Appointment]:
        return list(self._customer_appointments.get(customer_id, []))

    async def cancel_appointment(self, tenant_id: str, customer_id: str, appointment_id: str) -> bool:
        appointments = self._customer_appointments.get(customer_id, [])
        for appt in appointments:
            if appt.appointment_id == appointment_id:
                appointments.remove(appt)
                return True
        return False

    # ── Loyalty ───────────────────────────────────────────

    async def get_loyalty_balance(self, tenant_id: str, customer_id: str) -> Optional[LoyaltyBalance]:
        return self._loyalty.get(customer_id)

    # ── Staff ─────────────────────────────────────────────

    async def staff_schedule(self, tenant_id: str, staff_id: str, day: date) -> list[Appointment]:
        return sorted(
            (a for a in self._appointments.get(staff_id, []) if a.start.date() == day),
            key=lambda a: a.start,
        )

    async def check_in(self, tenant_id: str, staff_id: str, client_name: str) -> Optional[Appointment]:
        wanted = client_name.strip().lower()
        for appt in self._appointments.get(staff_id, []):
            if appt.client_name.lower() == wanted:
                self._checked_in.append((staff_id, appt.appointment_id))
                return appt
        return None

    async def start_break(self, tenant_id: str, staff_id: str) -> dict[str, Any]:
        self._breaks.append(staff_id)
        return {"staff_id": staff_id, "started_at": datetime.now(timezone.utc).isoformat()}

    async def complete_service(self, tenant_id: str, staff_id: str) -> Optional[Appointment]:
        checked = [aid for sid, aid in self._checked_in if sid == staff_id]
        if not checked:
            return None
        appointment_id = checked[-1]
        self._checked_in.remove((staff_id, appointment_id))
        return next(
            (a for a in self._appointments.get(staff_id, []) if a.appointment_id == appointment_id),
            None,
        )

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "staff": len(self._staff),
            "customers": len(self._customers),
            "slots": len(self._slots),
            "bookings": len(self._bookings),
            "checked_in": len(self._checked_in),
        }
