"""
Inbound job queue — Decouples webhook receipt from turn processing.

- Webhook handlers SUBMIT inbound events to the pool
- Worker tasks CONSUME them and run the orchestrator
- Retryable failures are requeued with exponential backoff, then dead-lettered
"""
from job_queue.worker import InboundJob, InboundWorkerPool

__all__ = ["InboundJob", "InboundWorkerPool"]
