"""
Backend Connector — Interface to the business services the engine drives.

The engine never owns appointment slots, loyalty balances or staff
schedules. It reaches them through this connector, which wraps the
directory, availability, booking, loyalty, schedule and check-in services
behind one async interface.

Implementations:
  - RESTBackendConnector  (httpx against configured endpoints)
  - InMemoryBackend       (backend/memory.py, development and tests)
"""
from __future__ import annotations

import abc
import structlog
from datetime import date
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import BackendConfig, get_settings
from models.schemas import (
    Appointment, BookingRecord, LoyaltyBalance, Sender, ServiceItem, Slot,
)

logger = structlog.get_logger()


class BackendUnavailable(Exception):
    """A business service could not be reached or answered with a server error."""

    def __init__(self, message: str, endpoint: str = ""):
        self.endpoint = endpoint
        super().__init__(message)


class BackendRejected(BackendUnavailable):
    """The service refused the request (auth, validation); retrying will not help."""

    def __init__(self, message: str, endpoint: str = "", status_code: int = 0):
        self.status_code = status_code
        super().__init__(message, endpoint)


class BookingConflict(Exception):
    """The customer already holds an appointment at the requested time."""

    def __init__(self, slot_id: str):
        self.slot_id = slot_id
        super().__init__(f"booking conflict for slot {slot_id}")


class BackendConnector(abc.ABC):
    """Abstract base for all business backends."""

    # ── Directory ─────────────────────────────────────────────

    @abc.abstractmethod
    async def find_staff(self, tenant_id: str, address: str) -> Optional[dict[str, Any]]:
        """Return the staff directory record for a channel address, if any."""
        ...

    @abc.abstractmethod
    async def find_customer(self, tenant_id: str, address: str) -> Optional[dict[str, Any]]:
        """Return the customer directory record for a channel address, if any."""
        ...

    # ── Availability / booking ────────────────────────────────

    @abc.abstractmethod
    async def list_slots(
        self, tenant_id: str, day: Optional[date] = None,
        service: str = "", staff_name: str = "",
    ) -> list[Slot]:
        ...

    @abc.abstractmethod
    async def confirm_booking(self, tenant_id: str, slot_id: str, customer: Sender) -> Optional[BookingRecord]:
        """
        Book a slot. Returns None when the slot is unknown or already taken;
        raises BookingConflict when the customer is already booked at that time.
        """
        ...

    @abc.abstractmethod
    async def list_services(self, tenant_id: str) -> list[ServiceItem]:
        ...

    @abc.abstractmethod
    async def customer_appointments(self, tenant_id: str, customer_id: str) -> list[Appointment]:
        ...

    @abc.abstractmethod
    async def cancel_appointment(self, tenant_id: str, customer_id: str, appointment_id: str) -> bool:
        ...

    # ── Loyalty ───────────────────────────────────────────────

    @abc.abstractmethod
    async def get_loyalty_balance(self, tenant_id: str, customer_id: str) -> Optional[LoyaltyBalance]:
        ...

    # ── Staff ─────────────────────────────────────────────────

    @abc.abstractmethod
    async def staff_schedule(self, tenant_id: str, staff_id: str, day: date) -> list[Appointment]:
        ...

    @abc.abstractmethod
    async def check_in(self, tenant_id: str, staff_id: str, client_name: str) -> Optional[Appointment]:
        """Mark a client as arrived. Returns None when no matching appointment exists."""
        ...

    @abc.abstractmethod
    async def start_break(self, tenant_id: str, staff_id: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def complete_service(self, tenant_id: str, staff_id: str) -> Optional[Appointment]:
        """Complete the staff member's in-progress appointment, if there is one."""
        ...


class RESTBackendConnector(BackendConnector):
    """
    REST API backend connector.
    Calls configured endpoints to fetch/update business data.
    """

    def __init__(self, config: BackendConfig = None, client: httpx.AsyncClient = None):
        self.config = config or get_settings().backend
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=10.0,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, url, **kwargs)

    async def _request(
        self, method: str, endpoint: str, conflict_slot: str = "", **kwargs,
    ) -> Optional[Any]:
        """
        Call a named endpoint. 404 maps to None; 409 maps to None for
        write endpoints that signal "already taken", or to BookingConflict
        when `conflict_slot` is set; 5xx and transport failures raise
        BackendUnavailable; any other 4xx raises BackendRejected.
        """
        url = self.config.endpoints.get(endpoint, endpoint)
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", str(v))

        try:
            response = await self._send(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("backend_request_failed", endpoint=endpoint, error=str(e))
            raise BackendUnavailable(str(e), endpoint) from e

        if response.status_code == 409 and conflict_slot:
            raise BookingConflict(conflict_slot)
        if response.status_code in (404, 409, 410):
            return None
        if response.status_code >= 500:
            logger.error("backend_server_error", endpoint=endpoint, status=response.status_code)
            raise BackendUnavailable(f"{endpoint} returned {response.status_code}", endpoint)
        if response.status_code >= 400:
            logger.error("backend_request_rejected", endpoint=endpoint, status=response.status_code)
            raise BackendRejected(
                f"{endpoint} returned {response.status_code}", endpoint, response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            logger.error("backend_invalid_json", endpoint=endpoint, status=response.status_code)
            raise BackendUnavailable(f"{endpoint} returned invalid JSON", endpoint) from e

    @staticmethod
    def _items(result: Any) -> list[dict[str, Any]]:
        if result is None:
            return []
        if isinstance(result, list):
            return result
        return result.get("data", result.get("results", []))

    # ── Directory ─────────────────────────────────────────────

    async def find_staff(self, tenant_id: str, address: str) -> Optional[dict[str, Any]]:
        items = self._items(await self._request(
            "GET", "find_staff", params={"tenant_id": tenant_id, "phone": address}))
        return items[0] if items else None

    async def find_customer(self, tenant_id: str, address: str) -> Optional[dict[str, Any]]:
        items = self._items(await self._request(
            "GET", "find_customer", params={"tenant_id": tenant_id, "phone": address}))
        return items[0] if items else None

    # ── Availability / booking ────────────────────────────────

    async def list_slots(
        self, tenant_id: str, day: Optional[date] = None,
        service: str = "", staff_name: str = "",
    ) -> list[Slot]:
        params = {"tenant_id": tenant_id}
        if day:
            params["date"] = day.isoformat()
        if service:
            params["service"] = service
        if staff_name:
            params["staff"] = staff_name
        result = await self._request("GET", "list_slots", params=params)
        return [Slot(**item) for item in self._items(result)]

    async def confirm_booking(self, tenant_id: str, slot_id: str, customer: Sender) -> Optional[BookingRecord]:
        result = await self._request("POST", "confirm_booking", conflict_slot=slot_id, json={
            "tenant_id": tenant_id,
            "slot_id": slot_id,
            "customer_id": customer.directory_id,
            "phone": customer.channel_address,
            "name": customer.display_name,
        })
        return BookingRecord(**result) if result else None

    async def list_services(self, tenant_id: str) -> list[ServiceItem]:
        result = await self._request("GET", "list_services", params={"tenant_id": tenant_id})
        return [ServiceItem(**item) for item in self._items(result)]

    async def customer_appointments(self, tenant_id: str, customer_id: str) -> list[Appointment]:
        result = await self._request(
            "GET", "customer_appointments",
            params={"tenant_id": tenant_id, "upcoming": "true"},
            path_params={"customer_id": customer_id},
        )
        return [Appointment(**item) for item in self._items(result)]

    async def cancel_appointment(self, tenant_id: str, customer_id: str, appointment_id: str) -> bool:
        result = await self._request(
            "POST", "cancel_appointment",
            json={"tenant_id": tenant_id, "customer_id": customer_id},
            path_params={"appointment_id": appointment_id},
        )
        return result is not None

    # ── Loyalty ───────────────────────────────────────────────

    async def get_loyalty_balance(self, tenant_id: str, customer_id: str) -> Optional[LoyaltyBalance]:
        result = await self._request(
            "GET", "loyalty_balance",
            params={"tenant_id": tenant_id},
            path_params={"customer_id": customer_id},
        )
        return LoyaltyBalance(**result) if result else None

    # ── Staff ─────────────────────────────────────────────────

    async def staff_schedule(self, tenant_id: str, staff_id: str, day: date) -> list[Appointment]:
        result = await self._request(
            "GET", "staff_schedule",
            params={"tenant_id": tenant_id, "date": day.isoformat()},
            path_params={"staff_id": staff_id},
        )
        return [Appointment(**item) for item in self._items(result)]

    async def check_in(self, tenant_id: str, staff_id: str, client_name: str) -> Optional[Appointment]:
        result = await self._request(
            "POST", "check_in",
            json={"tenant_id": tenant_id, "client_name": client_name},
            path_params={"staff_id": staff_id},
        )
        return Appointment(**result) if result else None

    async def start_break(self, tenant_id: str, staff_id: str) -> dict[str, Any]:
        result = await self._request(
            "POST", "start_break",
            json={"tenant_id": tenant_id},
            path_params={"staff_id": staff_id},
        )
        return result or {}

    async def complete_service(self, tenant_id: str, staff_id: str) -> Optional[Appointment]:
        result = await self._request(
            "POST", "complete_service",
            json={"tenant_id": tenant_id},
            path_params={"staff_id": staff_id},
        )
        return Appointment(**result) if result else None

    async def close(self):
        if self.client and not self.client.is_closed:
            await self.client.aclose()


def create_backend_connector(config: BackendConfig = None) -> BackendConnector:
    """Factory: build a connector based on config."""
    config = config or get_settings().backend
    if config.type == "rest":
        return RESTBackendConnector(config)
    from backend.memory import InMemoryBackend
    return InMemoryBackend()
