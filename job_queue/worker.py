"""
Inbound Worker Pool — Concurrent processing of webhook deliveries.

Webhook handlers submit InboundEvents and return immediately; N worker
tasks pull them off an asyncio.Queue and run each through the
orchestrator. Events for different conversations run in parallel; events
for the same conversation serialize on the orchestrator's lease.

Retry policy:
  - LockTimeout / PersistenceFailure → requeued after an exponential
    delay (backoff * 2**attempt), same job_id across attempts
  - after max_attempts the job is moved to the dead-letter list
  - anything else escaping the orchestrator is dead-lettered immediately
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from context.locks import LockTimeout
from core.orchestrator import ConversationOrchestrator
from database.store_base import PersistenceFailure
from models.schemas import InboundEvent, TurnOutcome

logger = structlog.get_logger()


@dataclass
class InboundJob:
    """One webhook message on the queue."""
    event: InboundEvent
    attempt: int = 0
    job_id: str = ""
    created_at: str = ""
    last_error: str = ""
    history: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat()

    def next_attempt(self, error: str) -> InboundJob:
        return InboundJob(
            event=self.event,
            attempt=self.attempt + 1,
            job_id=self.job_id,
            created_at=self.created_at,
            last_error=error,
            history=[*self.history, error],
        )


class InboundWorkerPool:

    def __init__(
        self,
        orchestrator: ConversationOrchestrator,
        concurrency: int = 5,
        max_attempts: int = 5,
        retry_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        max_dead_letters: int = 1000,
    ):
        self.orchestrator = orchestrator
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds

        self._queue: asyncio.Queue[InboundJob] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._delayed: set[asyncio.Task] = set()
        # Oldest dead letters are evicted once the bound is reached
        self.dead_letters: deque[InboundJob] = deque(maxlen=max(1, max_dead_letters))
        self.outcomes: deque[TurnOutcome] = deque(maxlen=200)
        self._processed = 0
        self._retried = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"inbound-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("worker_pool_started", concurrency=self.concurrency)

    async def stop(self) -> None:
        for task in [*self._workers, *self._delayed]:
            task.cancel()
        await asyncio.gather(*self._workers, *self._delayed, return_exceptions=True)
        self._workers = []
        self._delayed.clear()
        logger.info("worker_pool_stopped", processed=self._processed,
                    dead_letters=len(self.dead_letters))

    async def submit(self, event: InboundEvent) -> InboundJob:
        job = InboundJob(event=event)
        await self._queue.put(job)
        logger.debug("inbound_job_queued", job_id=job.job_id, message_id=event.message_id)
        return job

    async def join(self) -> None:
        """Wait until every submitted job, including delayed retries, has settled."""
        while True:
            await self._queue.join()
            if not self._delayed:
                return
            await asyncio.gather(*list(self._delayed), return_exceptions=True)

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._process(job)
            finally:
                self._queue.task_done()

    async def _process(self, job: InboundJob) -> None:
        log = logger.bind(job_id=job.job_id, message_id=job.event.message_id, attempt=job.attempt + 1)
        try:
            outcome = await self.orchestrator.handle_inbound(job.event)
        except (LockTimeout, PersistenceFailure) as e:
            log.warning("inbound_job_retryable_failure", error=str(e), error_type=type(e).__name__)
            self._retry(job, str(e))
            return
        except Exception as e:
            log.error("inbound_job_crashed", error=str(e), exc_info=True)
            self._dead_letter(job.next_attempt(str(e)))
            return

        self._processed += 1
        self.outcomes.append(outcome)

    def _retry(self, job: InboundJob, error: str) -> None:
        retry_job = job.next_attempt(error)
        if retry_job.attempt >= self.max_attempts:
            self._dead_letter(retry_job)
            return

        delay = min(self.retry_backoff_seconds * (2 ** job.attempt), self.max_backoff_seconds)
        self._retried += 1
        task = asyncio.create_task(self._requeue_after(retry_job, delay))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _requeue_after(self, job: InboundJob, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._queue.put(job)
        logger.info("inbound_job_requeued", job_id=job.job_id, attempt=job.attempt + 1, delay=delay)

    def _dead_letter(self, job: InboundJob) -> None:
        if len(self.dead_letters) == self.dead_letters.maxlen:
            evicted = self.dead_letters[0]
            logger.warning("dead_letter_evicted",
                           job_id=evicted.job_id,
                           message_id=evicted.event.message_id)
        self.dead_letters.append(job)
        logger.warning("job_moved_to_dlq",
                       job_id=job.job_id,
                       message_id=job.event.message_id,
                       attempts=job.attempt,
                       last_error=job.last_error)

    def stats(self) -> dict[str, int]:
        return {
            "queued": self._queue.qsize(),
            "delayed": len(self._delayed),
            "processed": self._processed,
            "retried": self._retried,
            "dead_letters": len(self.dead_letters),
        }

    def find_dead_letter(self, message_id: str) -> Optional[InboundJob]:
        return next((j for j in self.dead_letters if j.event.message_id == message_id), None)
