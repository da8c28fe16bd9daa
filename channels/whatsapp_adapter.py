"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Outbound: Reply → text / interactive button / interactive list payloads,
  clipped to the provider's limits, POSTed with httpx
- Inbound: webhook envelope → InboundEvents (text, interactive
  button_reply / list_reply, media) and DeliveryReceipts (statuses)
- Webhook verification (hub.verify_token challenge)
- Payload signature verification (X-Hub-Signature-256)
"""
from __future__ import annotations

import hashlib
import hmac
import structlog
from typing import Any, Optional

import httpx

from channels.base import ChannelAdapter, ChannelError, InputSanitizer
from config.settings import ChannelConfig
from models.schemas import (
    DeliveryReceipt, DeliveryStatus, InboundEvent, MenuOption, Reply, ReplyKind,
)

logger = structlog.get_logger()

GRAPH_API_BASE = "https://graph.facebook.com"

# Cloud API interactive message limits
MAX_BUTTONS = 3
MAX_LIST_ROWS = 10
MAX_BUTTON_TITLE = 20
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72
MAX_SECTION_TITLE = 24
MAX_HEADER = 60
MAX_INTERACTIVE_BODY = 1024
MAX_TEXT_BODY = 4096

_STATUS_MAP = {
    "sent": DeliveryStatus.SENT,
    "delivered": DeliveryStatus.DELIVERED,
    "read": DeliveryStatus.READ,
    "failed": DeliveryStatus.FAILED,
}


def _clip(text: str, limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else text[: limit - 1] + "…"


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Business Cloud API adapter."""

    name = "whatsapp"

    def __init__(
        self,
        phone_number_id: str = "",
        access_token: str = "",
        verify_token: str = "",
        app_secret: str = "",
        api_version: str = "v18.0",
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(max_attempts=max_attempts, backoff_base=backoff_base)
        self.phone_number_id = phone_number_id
        self._access_token = access_token
        self._verify_token = verify_token
        self._app_secret = app_secret
        self.api_version = api_version
        self._client = client
        self._sanitizer = InputSanitizer()

    @classmethod
    def from_config(cls, config: ChannelConfig, client: Optional[httpx.AsyncClient] = None) -> WhatsAppAdapter:
        creds = config.credentials
        return cls(
            phone_number_id=str(creds.get("phone_number_id", "")),
            access_token=str(creds.get("access_token", "")),
            verify_token=str(creds.get("verify_token", "")),
            app_secret=str(creds.get("app_secret", "")),
            api_version=str(creds.get("api_version", "v18.0")),
            max_attempts=int(creds.get("send_max_attempts", 3)),
            client=client,
        )

    @property
    def messages_url(self) -> str:
        return f"{GRAPH_API_BASE}/{self.api_version}/{self.phone_number_id}/messages"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self._verify_token and token == self._verify_token:
            return challenge
        logger.warning("whatsapp_webhook_verification_failed", mode=mode)
        return None

    def verify_signature(self, body: bytes, signature_header: str) -> bool:
        """Check X-Hub-Signature-256. Without an app secret configured, checks are skipped."""
        if not self._app_secret:
            return True
        if not signature_header or not signature_header.startswith("sha256="):
            return False
        expected = hmac.new(self._app_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature_header[len("sha256="):])

    # ── Outbound ──────────────────────────────────────────────

    def build_payload(self, to: str, reply: Reply) -> dict[str, Any]:
        base: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
        }
        options = reply.options

        if reply.kind == ReplyKind.TEXT or not options:
            return {**base, "type": "text",
                    "text": {"body": _clip(reply.body, MAX_TEXT_BODY), "preview_url": False}}

        if reply.kind == ReplyKind.BUTTON_MENU and len(options) <= MAX_BUTTONS:
            interactive: dict[str, Any] = {
                "type": "button",
                "body": {"text": _clip(reply.body, MAX_INTERACTIVE_BODY)},
                "action": {"buttons": [
                    {"type": "reply", "reply": {"id": o.id, "title": _clip(o.title, MAX_BUTTON_TITLE)}}
                    for o in options
                ]},
            }
        else:
            # Lists also carry button menus that outgrew the 3-button limit
            interactive = {
                "type": "list",
                "body": {"text": _clip(reply.body, MAX_INTERACTIVE_BODY)},
                "action": {
                    "button": _clip(reply.button_label or "Choose", MAX_BUTTON_TITLE),
                    "sections": self._list_sections(reply),
                },
            }

        if reply.header:
            interactive["header"] = {"type": "text", "text": _clip(reply.header, MAX_HEADER)}
        return {**base, "type": "interactive", "interactive": interactive}

    @staticmethod
    def _row(option: MenuOption) -> dict[str, Any]:
        row = {"id": option.id, "title": _clip(option.title, MAX_ROW_TITLE)}
        if option.description:
            row["description"] = _clip(option.description, MAX_ROW_DESCRIPTION)
        return row

    def _list_sections(self, reply: Reply) -> list[dict[str, Any]]:
        sections = []
        remaining = MAX_LIST_ROWS
        for index, section in enumerate(reply.sections):
            if remaining <= 0:
                break
            rows = [self._row(o) for o in section.options[:remaining]]
            if not rows:
                continue
            remaining -= len(rows)
            sections.append({
                "title": _clip(section.title or f"Options {index + 1}", MAX_SECTION_TITLE),
                "rows": rows,
            })
        return sections

    async def _do_send(self, to: str, reply: Reply) -> str:
        payload = self.build_payload(to, reply)
        headers = {"Authorization": f"Bearer {self._access_token}"}
        try:
            response = await self._get_client().post(self.messages_url, json=payload, headers=headers)
        except httpx.TransportError as e:
            raise ChannelError(f"transport error: {e}", self.name, retryable=True) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ChannelError(f"provider returned {response.status_code}", self.name,
                               retryable=True, status_code=response.status_code)
        if response.status_code >= 400:
            raise ChannelError(f"provider rejected message: {response.status_code} {response.text[:200]}",
                               self.name, retryable=False, status_code=response.status_code)

        data = response.json()
        messages = data.get("messages") or [{}]
        return str(messages[0].get("id", ""))

    # ── Inbound parsing ───────────────────────────────────────

    def parse_webhook(
        self, raw_payload: dict[str, Any], tenant_id: str,
    ) -> tuple[list[InboundEvent], list[DeliveryReceipt]]:
        """Unwrap a Cloud API webhook envelope into messages and delivery receipts."""
        events: list[InboundEvent] = []
        receipts: list[DeliveryReceipt] = []

        for entry in raw_payload.get("entry", []) or []:
            for change in entry.get("changes", []) or []:
                value = change.get("value", {}) or {}
                names = {
                    c.get("wa_id", ""): c.get("profile", {}).get("name", "")
                    for c in value.get("contacts", []) or []
                }
                for msg in value.get("messages", []) or []:
                    event = self._parse_message(msg, tenant_id, names)
                    if event:
                        events.append(event)
                for status in value.get("statuses", []) or []:
                    receipt = self._parse_status(status, tenant_id)
                    if receipt:
                        receipts.append(receipt)

        return events, receipts

    def _parse_message(
        self, msg: dict[str, Any], tenant_id: str, names: dict[str, str],
    ) -> Optional[InboundEvent]:
        sender = msg.get("from", "")
        msg_id = msg.get("id", "")
        if not sender or not msg_id:
            logger.warning("whatsapp_message_missing_fields", has_from=bool(sender), has_id=bool(msg_id))
            return None

        msg_type = msg.get("type", "text")
        text = ""
        interactive = None

        if msg_type == "text":
            text = msg.get("text", {}).get("body", "")
        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            selected = interactive.get(interactive.get("type", ""), {}) or {}
            text = selected.get("title", "")
        elif msg_type == "button":
            # Template quick-reply buttons arrive as type=button with a payload
            button = msg.get("button", {})
            msg_type = "interactive"
            interactive = {"type": "button_reply",
                           "button_reply": {"id": button.get("payload", ""), "title": button.get("text", "")}}
            text = button.get("text", "")
        elif msg_type in ("image", "video", "document"):
            text = msg.get(msg_type, {}).get("caption", "")

        return InboundEvent(
            tenant_id=tenant_id,
            message_id=msg_id,
            channel_address=sender,
            type=msg_type,
            text=self._sanitizer.sanitize(text),
            interactive=interactive,
            timestamp=str(msg.get("timestamp", "")),
            sender_name=names.get(sender, ""),
        )

    @staticmethod
    def _parse_status(status: dict[str, Any], tenant_id: str) -> Optional[DeliveryReceipt]:
        mapped = _STATUS_MAP.get(status.get("status", ""))
        if mapped is None or not status.get("id"):
            return None
        return DeliveryReceipt(
            tenant_id=tenant_id,
            message_id=status["id"],
            status=mapped,
            recipient=status.get("recipient_id", ""),
            timestamp=str(status.get("timestamp", "")),
        )

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        base = await super().health_check()
        return {
            **base,
            "phone_number_id": self.phone_number_id,
            "configured": bool(self.phone_number_id and self._access_token),
        }
