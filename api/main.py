"""
FastAPI Application — Webhook surface for the conversational engine.

Provides:
- WhatsApp webhook verification and delivery (messages + status receipts)
- Synchronous inbound endpoint for channels that want the turn outcome
- Conversation transcript lookup
- Health and worker-pool diagnostics
"""
from __future__ import annotations

import json
import structlog
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from contextlib import asynccontextmanager
from typing import Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request, Query
from fastapi.responses import PlainTextResponse

from backend.connector import BackendConnector, create_backend_connector
from channels.base import ChannelAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import ChannelConfig, Settings, get_settings
from context.conversations import ConversationStoreAdapter
from context.locks import ConversationLockManager, LockTimeout, create_lock_manager
from context.message_log import MessageLogWriter
from core.composer import ResponseComposer
from core.dispatcher import ActionDispatcher
from core.orchestrator import ConversationOrchestrator
from database.session import close_db, init_db, ping_db
from database.store_base import ConversationRepo, MessageRepo, PersistenceFailure
from database.store_factory import create_repositories
from identity.resolver import IdentityResolver
from intents.classifier import IntentClassifier
from job_queue.worker import InboundWorkerPool
from models.schemas import InboundEvent

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Engine:
    settings: Settings
    backend: BackendConnector
    channel: ChannelAdapter
    locks: ConversationLockManager
    orchestrator: ConversationOrchestrator
    workers: InboundWorkerPool


def build_engine(
    settings: Optional[Settings] = None,
    backend: Optional[BackendConnector] = None,
    channel: Optional[ChannelAdapter] = None,
    repositories: Optional[tuple[ConversationRepo, MessageRepo]] = None,
    locks: Optional[ConversationLockManager] = None,
) -> Engine:
    """Wire every component from configuration; any piece can be injected."""
    settings = settings or get_settings()
    engine_cfg = settings.engine

    backend = backend or create_backend_connector(settings.backend)
    channel = channel or WhatsAppAdapter.from_config(
        settings.channels.get("whatsapp", ChannelConfig()),
    )
    conversation_repo, message_repo = repositories or create_repositories(settings.database)
    locks = locks or create_lock_manager(
        settings.locks,
        ttl_seconds=engine_cfg.lock_ttl_seconds,
        timeout_seconds=engine_cfg.lock_timeout_seconds,
    )

    orchestrator = ConversationOrchestrator(
        resolver=IdentityResolver(backend),
        conversations=ConversationStoreAdapter(conversation_repo),
        message_log=MessageLogWriter(message_repo),
        classifier=IntentClassifier(settings.catalog.services, settings.catalog.staff_names),
        dispatcher=ActionDispatcher(
            backend, flow_ttl=timedelta(minutes=engine_cfg.pending_flow_ttl_minutes),
        ),
        composer=ResponseComposer(),
        channel=channel,
        locks=locks,
        turn_timeout=engine_cfg.turn_timeout_seconds,
        directory_retry_attempts=engine_cfg.directory_retry_attempts,
    )
    workers = InboundWorkerPool(
        orchestrator,
        concurrency=engine_cfg.worker_concurrency,
        max_attempts=engine_cfg.worker_max_attempts,
        retry_backoff_seconds=engine_cfg.worker_retry_backoff_seconds,
    )
    return Engine(settings, backend, channel, locks, orchestrator, workers)


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    engine = engine or build_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = engine.settings
        if settings.database.store_backend == "sql":
            await init_db(settings.database)
        await engine.workers.start()
        logger.info("chat_engine_started",
                    store_backend=settings.database.store_backend,
                    lock_backend=settings.locks.backend,
                    backend=type(engine.backend).__name__)
        yield

        await engine.workers.stop()
        await engine.channel.close()
        await engine.locks.close()
        close_backend = getattr(engine.backend, "close", None)
        if close_backend:
            await close_backend()
        if settings.database.store_backend == "sql":
            await close_db()
        logger.info("chat_engine_stopped")

    app = FastAPI(
        title=engine.settings.app_name,
        description="Channel-agnostic conversational engine for bookings and staff operations",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    _register_routes(app, engine)
    return app


# ══════════════════════════════════════════════════════════════
#  ROUTES
# ══════════════════════════════════════════════════════════════

def _register_routes(app: FastAPI, engine: Engine) -> None:
    orchestrator = engine.orchestrator
    tenant_id = engine.settings.engine.default_tenant_id

    @app.get("/health")
    async def health():
        sql = engine.settings.database.store_backend == "sql"
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store_backend": engine.settings.database.store_backend,
            "lock_backend": engine.settings.locks.backend,
            "database": (await ping_db()) if sql else None,
            "workers": engine.workers.stats(),
            "channel": await engine.channel.health_check(),
        }

    # ── Inbound ─────────────────────────────────────────────

    @app.post("/api/v1/messages/inbound")
    async def receive_inbound_message(event: InboundEvent):
        """Run one turn synchronously and return its outcome."""
        try:
            outcome = await orchestrator.handle_inbound(event)
        except LockTimeout:
            raise HTTPException(409, "Conversation busy, retry later")
        except PersistenceFailure:
            raise HTTPException(503, "Storage unavailable, retry later")
        return outcome.model_dump(mode="json")

    @app.get("/api/v1/conversations/{tenant}/{address}/messages")
    async def conversation_messages(tenant: str, address: str, limit: int = Query(50, ge=1, le=500)):
        conversation, messages = await orchestrator.transcript(tenant, address, limit)
        if conversation is None:
            raise HTTPException(404, "Conversation not found")
        return {
            "conversation": conversation.model_dump(mode="json"),
            "messages": [m.model_dump(mode="json") for m in messages],
        }

    # ── WhatsApp webhooks ───────────────────────────────────

    whatsapp = engine.channel if isinstance(engine.channel, WhatsAppAdapter) else None

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        if whatsapp is None:
            raise HTTPException(404, "WhatsApp channel not configured")
        challenge = whatsapp.verify_webhook(dict(request.query_params))
        if challenge:
            return PlainTextResponse(challenge)
        raise HTTPException(403, "Verification failed")

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request):
        """Receive WhatsApp messages and status updates with signature verification."""
        if whatsapp is None:
            raise HTTPException(404, "WhatsApp channel not configured")
        body_bytes = await request.body()

        signature = request.headers.get("X-Hub-Signature-256", "")
        if not whatsapp.verify_signature(body_bytes, signature):
            logger.warning("whatsapp_webhook_signature_invalid")
            raise HTTPException(403, "Invalid signature")

        try:
            body = json.loads(body_bytes)
        except ValueError:
            raise HTTPException(400, "Invalid JSON")

        events, receipts = whatsapp.parse_webhook(body, tenant_id)
        for receipt in receipts:
            await orchestrator.handle_receipt(receipt)
        for event in events:
            await engine.workers.submit(event)

        return {"status": "ok", "messages": len(events), "receipts": len(receipts)}


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
