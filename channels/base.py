"""
Channel Adapters — Base infrastructure for outbound reply transports.

Provides:
- ChannelError / ChannelSendFailure: structured error hierarchy
- SendResult: what a successful send reports back
- InputSanitizer: strips control characters from inbound text
- ChannelAdapter: abstract base wrapping every send with bounded
  exponential-backoff retry (tenacity)
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass
from typing import Any

from tenacity import (
    AsyncRetrying, RetryError, retry_if_exception, stop_after_attempt, wait_exponential,
)

from models.schemas import Reply

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False,
                 status_code: int = 0):
        self.channel = channel
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class ChannelSendFailure(ChannelError):
    """A reply could not be delivered to the provider after all attempts."""

    def __init__(self, message: str, channel: str = "", attempts: int = 0):
        self.attempts = attempts
        super().__init__(message, channel, retryable=False)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ChannelError) and exc.retryable


@dataclass
class SendResult:
    message_id: str
    attempts: int = 1
    channel: str = ""


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 4096):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length]
        return content.strip()


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement _do_send, raising ChannelError with
    ``retryable=True`` for transient provider failures. The base class
    retries those with exponential backoff up to ``max_attempts`` and turns
    exhaustion (or a permanent error) into ChannelSendFailure.
    """

    name: str = ""

    def __init__(self, max_attempts: int = 3, backoff_base: float = 0.5, backoff_max: float = 8.0):
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    @abc.abstractmethod
    async def _do_send(self, to: str, reply: Reply) -> str:
        """Transmit one reply. Returns the provider's message id."""
        ...

    async def send_reply(self, to: str, reply: Reply) -> SendResult:
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        logger.warning("channel_send_retry", channel=self.name, to=to, attempt=attempts)
                    message_id = await self._do_send(to, reply)
        except (ChannelError, RetryError) as e:
            logger.error("channel_send_failed",
                         channel=self.name, to=to, attempts=attempts, error=str(e))
            raise ChannelSendFailure(str(e), self.name, attempts) from e

        logger.info("channel_reply_sent",
                    channel=self.name, to=to, kind=reply.kind.value,
                    message_id=message_id, attempts=attempts)
        return SendResult(message_id=message_id, attempts=attempts, channel=self.name)

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.name, "max_attempts": self.max_attempts}

    async def close(self) -> None:
        pass
