"""
Conversation Orchestrator — Runs one inbound message through the full turn.

Turn states:
  RESOLVING_SENDER → LOADING_CONVERSATION → CHECKING_DUPLICATE →
  LOGGING_INBOUND → CLASSIFYING → DISPATCHING → COMPOSING → SENDING →
  LOGGING_OUTBOUND → UPDATING_CONTEXT → DONE

Any failure moves the turn to FAILED, which sends a best-effort apology
and reports the failure in the TurnOutcome instead of raising. Two
failures do propagate, because the caller must redeliver the event:
  - PersistenceFailure (the store could not read or write)
  - LockTimeout (another worker holds the conversation)

CHECKING_DUPLICATE is the idempotency gate: an inbound message_id that is
already in the log ends the turn at DONE with nothing classified,
dispatched or sent.

The per-conversation lease is taken after the sender is resolved and held
until the context is saved, so two events for one conversation never
interleave their context reads and writes.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelAdapter, ChannelSendFailure
from context.conversations import ConversationStoreAdapter
from context.locks import ConversationLockManager, LockTimeout, conversation_key
from context.message_log import MessageLogWriter
from core.composer import ResponseComposer, apology
from core.dispatcher import ActionDispatcher
from database.store_base import PersistenceFailure
from identity.resolver import DirectoryUnavailable, IdentityResolver, normalize_address
from intents.classifier import IntentClassifier
from models.schemas import (
    ActionResult, Conversation, ConversationContext, DeliveryReceipt, InboundEvent,
    Intent, IntentAction, MessageDirection, Reply, Sender, SenderRole, TurnOutcome,
    TurnState, WriteResult, utcnow,
)

logger = structlog.get_logger()


class TurnTimeout(Exception):
    """The turn did not finish within the per-turn deadline."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"turn exceeded {seconds:.0f}s")


class _Turn:
    """Mutable bookkeeping for one turn; survives cancellation by the timeout."""

    def __init__(self, event: InboundEvent):
        self.event = event
        self.state = TurnState.RESOLVING_SENDER
        self.history: list[TurnState] = [TurnState.RESOLVING_SENDER]
        self.sender: Optional[Sender] = None
        self.directory_fallback = False
        self.conversation: Optional[Conversation] = None
        self.snapshot: Optional[ConversationContext] = None
        self.inbound_logged = False
        self.duplicate = False
        self.intent: Optional[Intent] = None
        self.result: Optional[ActionResult] = None
        self.reply: Optional[Reply] = None
        self.sent = False
        self.error = ""

    def enter(self, state: TurnState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("turn_state",
                     state=state.value,
                     message_id=self.event.message_id,
                     conversation_id=self.conversation.id if self.conversation else None)

    def outcome(self) -> TurnOutcome:
        return TurnOutcome(
            state=self.state,
            conversation_id=self.conversation.id if self.conversation else None,
            message_id=self.event.message_id,
            duplicate=self.duplicate,
            intent=self.intent,
            result=self.result,
            reply=self.reply,
            sent=self.sent,
            error=self.error,
            history=self.history,
        )


class ConversationOrchestrator:

    def __init__(
        self,
        resolver: IdentityResolver,
        conversations: ConversationStoreAdapter,
        message_log: MessageLogWriter,
        classifier: IntentClassifier,
        dispatcher: ActionDispatcher,
        composer: ResponseComposer,
        channel: ChannelAdapter,
        locks: ConversationLockManager,
        turn_timeout: float = 15.0,
        directory_retry_attempts: int = 2,
        directory_retry_delay: float = 0.2,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.resolver = resolver
        self.conversations = conversations
        self.message_log = message_log
        self.classifier = classifier
        self.dispatcher = dispatcher
        self.composer = composer
        self.channel = channel
        self.locks = locks
        self.turn_timeout = turn_timeout
        self.directory_retry_attempts = directory_retry_attempts
        self.directory_retry_delay = directory_retry_delay
        self.clock = clock

    # ══════════════════════════════════════════════════════════
    #  INBOUND
    # ══════════════════════════════════════════════════════════

    async def handle_inbound(self, event: InboundEvent) -> TurnOutcome:
        turn = _Turn(event)
        log = logger.bind(message_id=event.message_id, tenant_id=event.tenant_id)

        try:
            turn.sender = await self._resolve_sender(turn)
        except Exception as e:
            # No sender, so no conversation or lease; still answer the address
            await self._fail(turn, e)
            return turn.outcome()
        key = conversation_key(event.tenant_id, turn.sender.channel_address)

        async with self.locks.hold(key):
            try:
                await asyncio.wait_for(self._run_turn(turn), timeout=self.turn_timeout)
            except (PersistenceFailure, LockTimeout):
                log.error("turn_aborted", state=turn.state.value, exc_info=True)
                raise
            except asyncio.TimeoutError:
                await self._fail(turn, TurnTimeout(self.turn_timeout))
            except Exception as e:
                await self._fail(turn, e)

        if turn.state == TurnState.DONE:
            log.info("turn_completed",
                     conversation_id=turn.conversation.id if turn.conversation else None,
                     duplicate=turn.duplicate,
                     intent=turn.intent.action.value if turn.intent else None)
        return turn.outcome()

    async def _resolve_sender(self, turn: _Turn) -> Sender:
        event = turn.event
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.directory_retry_attempts + 1),
                wait=wait_exponential(multiplier=self.directory_retry_delay, max=2.0),
                retry=retry_if_exception_type(DirectoryUnavailable),
                reraise=True,
            ):
                with attempt:
                    return await self.resolver.resolve(event.tenant_id, event.channel_address)
        except DirectoryUnavailable as e:
            # Least privilege: an unknown role only ever gets the greeting menu
            logger.warning("directory_fallback_anonymous",
                           message_id=event.message_id, error=str(e))
            turn.directory_fallback = True
            return Sender(
                role=SenderRole.ANONYMOUS,
                channel_address=normalize_address(event.channel_address) or event.channel_address,
                display_name=event.sender_name,
            )

    async def _run_turn(self, turn: _Turn) -> None:
        event, sender = turn.event, turn.sender
        now = self.clock()

        turn.enter(TurnState.LOADING_CONVERSATION)
        conversation = await self.conversations.get_or_create(
            event.tenant_id, sender.channel_address, sender,
            record_role=not turn.directory_fallback,
        )
        turn.conversation = conversation
        turn.snapshot = conversation.context.model_copy(deep=True)

        turn.enter(TurnState.CHECKING_DUPLICATE)
        if await self.message_log.is_logged(event.tenant_id, MessageDirection.INBOUND, event.message_id):
            self._short_circuit(turn)
            return

        turn.enter(TurnState.LOGGING_INBOUND)
        if await self.message_log.log_inbound(conversation, event, sender) == WriteResult.DUPLICATE:
            self._short_circuit(turn)
            return
        turn.inbound_logged = True

        turn.enter(TurnState.CLASSIFYING)
        if turn.directory_fallback:
            turn.intent = Intent(action=IntentAction.GREETING, confidence=0.0)
        else:
            flow = self.conversations.active_pending_flow(conversation, now)
            turn.intent = self.classifier.classify(event, sender.role, flow, now)

        turn.enter(TurnState.DISPATCHING)
        if turn.directory_fallback:
            turn.result = ActionResult.ok(role=SenderRole.ANONYMOUS.value, name=sender.display_name)
        else:
            turn.result = await self.dispatcher.dispatch(turn.intent, sender, conversation, now)

        turn.enter(TurnState.COMPOSING)
        turn.reply = self.composer.compose(turn.intent.action, turn.result)

        turn.enter(TurnState.SENDING)
        try:
            sent = await self.channel.send_reply(event.channel_address, turn.reply)
        except ChannelSendFailure as e:
            turn.enter(TurnState.LOGGING_OUTBOUND)
            await self.message_log.log_outbound(
                conversation, turn.reply, sent=False, error=str(e), in_reply_to=event.message_id,
            )
            raise
        turn.sent = True

        turn.enter(TurnState.LOGGING_OUTBOUND)
        await self.message_log.log_outbound(
            conversation, turn.reply, provider_message_id=sent.message_id, in_reply_to=event.message_id,
        )

        turn.enter(TurnState.UPDATING_CONTEXT)
        await self.conversations.save(conversation, now)
        turn.enter(TurnState.DONE)

    @staticmethod
    def _short_circuit(turn: _Turn) -> None:
        turn.duplicate = True
        logger.info("duplicate_inbound_skipped",
                    message_id=turn.event.message_id,
                    conversation_id=turn.conversation.id if turn.conversation else None)
        turn.enter(TurnState.DONE)

    async def _fail(self, turn: _Turn, error: Exception) -> None:
        failed_in = turn.state
        turn.error = str(error) or type(error).__name__
        turn.enter(TurnState.FAILED)
        logger.error("turn_failed",
                     message_id=turn.event.message_id,
                     failed_in=failed_in.value,
                     error=turn.error,
                     error_type=type(error).__name__,
                     exc_info=error)

        turn.reply = apology()
        try:
            result = await self.channel.send_reply(turn.event.channel_address, turn.reply)
            turn.sent = True
            if turn.conversation is not None and turn.inbound_logged:
                # Roll back whatever the failed turn did to the context
                turn.conversation.context = turn.snapshot
                await self.message_log.log_outbound(
                    turn.conversation, turn.reply,
                    provider_message_id=result.message_id, in_reply_to=turn.event.message_id,
                )
                await self.conversations.save(turn.conversation, self.clock())
        except Exception as e:
            logger.error("apology_failed", message_id=turn.event.message_id, error=str(e))

    # ══════════════════════════════════════════════════════════
    #  DELIVERY RECEIPTS
    # ══════════════════════════════════════════════════════════

    async def handle_receipt(self, receipt: DeliveryReceipt) -> bool:
        return await self.message_log.apply_receipt(receipt)

    async def transcript(self, tenant_id: str, channel_address: str, limit: int = 50):
        address = normalize_address(channel_address) or channel_address
        conversation = await self.conversations.find(tenant_id, address)
        if conversation is None:
            return None, []
        return conversation, await self.message_log.transcript(conversation.id, limit)
