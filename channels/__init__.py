"""Channel adapters for outbound replies and inbound webhook parsing."""
from channels.base import (
    ChannelAdapter,
    ChannelError,
    ChannelSendFailure,
    InputSanitizer,
    SendResult,
)
from channels.whatsapp_adapter import WhatsAppAdapter

__all__ = [
    "ChannelAdapter", "ChannelError", "ChannelSendFailure",
    "InputSanitizer", "SendResult", "WhatsAppAdapter",
]
