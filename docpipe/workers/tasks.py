"""
Celery Tasks — Document Processing

Task: process_document
  Server-side full run through the orchestrator:
  download → extract → chunk → embed → COMPLETED (or ERROR).
  Transient, non-pipeline failures (storage / database hiccups) are retried;
  pipeline failures are already persisted as ERROR and are not.

Task: run_worker_session
  The isolated worker of the dual-path coordinator. Speaks the message
  protocol in workers/protocol.py: validates the short-lived token from
  `init`, reports INITIALIZED, runs `process` while publishing PROGRESS
  states, and returns a terminal `complete` or `error` message.

Task: requeue_stale_documents
  Beat task — re-dispatches documents stuck in 'pending' for > 5 minutes
  (e.g. the API process died before its background coordination ran).

Task: health_check
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any

from celery import Task
from pydantic import ValidationError

from docpipe.core.errors import (
    CoordinationError,
    DocumentNotFoundError,
    PipelineError,
    ProcessingConflictError,
)
from docpipe.workers.celery_app import celery_app
from docpipe.workers.protocol import (
    STATE_INITIALIZED,
    STATE_PROGRESS,
    MessageType,
    WorkerMessage,
    complete_message,
    error_message,
    initialized_message,
    status_message,
)

logger = logging.getLogger(__name__)

STALE_PENDING_AFTER = timedelta(minutes=5)
REQUEUE_BATCH_LIMIT = 50


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Server-side processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipe.workers.tasks.process_document",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(self: Task, *, document_id: str) -> dict[str, Any]:
    return run_async(_process_document_async(self, uuid.UUID(document_id)))


async def _process_document_async(task: Task, document_id: uuid.UUID) -> dict[str, Any]:
    from docpipe.services.orchestrator import build_orchestrator

    orchestrator = build_orchestrator()
    try:
        outcome = await orchestrator.process_document(document_id)
    except DocumentNotFoundError:
        logger.error("Document not found | doc=%s", document_id)
        return {"status": "not_found", "document_id": str(document_id)}
    except ProcessingConflictError:
        logger.warning("Document not startable, skipping | doc=%s", document_id)
        return {"status": "skipped", "document_id": str(document_id)}
    except PipelineError as exc:
        # ERROR already persisted by the orchestrator
        return {"status": "error", "document_id": str(document_id), "error": exc.message}
    except Exception as exc:
        logger.exception("Processing failed, retrying | doc=%s", document_id)
        raise task.retry(exc=exc)

    return {
        "status":       outcome.status,
        "document_id":  str(document_id),
        "chunks_count": outcome.chunks_count,
        "skipped":      outcome.skipped,
    }


# ---------------------------------------------------------------------------
# Isolated worker session
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipe.workers.tasks.run_worker_session",
    bind=True,
    acks_late=False,     # the coordinator is waiting; never redeliver
    max_retries=0,
)
def run_worker_session(self: Task, init: dict, process: dict) -> dict[str, Any]:
    return run_async(_run_worker_session_async(self, init, process))


async def _run_worker_session_async(task: Task, init: dict, process: dict) -> dict[str, Any]:
    from docpipe.auth.token import decode_worker_token
    from docpipe.processing.progress import CallbackProgressSink
    from docpipe.services.orchestrator import build_orchestrator

    # ── init → initialized ─────────────────────────────────────────
    try:
        init_msg    = WorkerMessage(**init)
        process_msg = WorkerMessage(**process)
    except ValidationError as exc:
        return error_message(f"Malformed worker message: {exc}")
    if init_msg.type != MessageType.INIT or process_msg.type != MessageType.PROCESS:
        return error_message("Expected init and process messages")

    raw_id = str(process_msg.data.get("documentId", ""))
    try:
        document_id = uuid.UUID(raw_id)
    except ValueError:
        return error_message(f"Invalid documentId: {raw_id!r}")

    try:
        decode_worker_token(str(init_msg.data.get("token", "")), document_id)
    except CoordinationError as exc:
        logger.warning("Worker init rejected | doc=%s reason=%s", document_id, exc.message)
        return error_message(exc.message)

    # Token redeemed: the worker uses its own configured provider credentials
    orchestrator = build_orchestrator()
    task.update_state(state=STATE_INITIALIZED, meta=initialized_message())
    logger.info("Worker initialized | doc=%s task_id=%s", document_id, task.request.id)

    # ── process → status* → complete | error ───────────────────────
    async def publish(progress: float, stage: str) -> None:
        task.update_state(state=STATE_PROGRESS, meta=status_message(progress, stage))

    sink = CallbackProgressSink(publish)
    text = process_msg.data.get("extractedText")
    try:
        if text is not None:
            outcome = await orchestrator.process_text(document_id, text, progress=sink)
        else:
            outcome = await orchestrator.process_document(document_id, progress=sink)
    except PipelineError as exc:
        return error_message(exc.message)

    return complete_message(
        str(document_id), outcome.status, outcome.chunks_count, outcome.skipped,
    )


# ---------------------------------------------------------------------------
# Stale-pending scanner: runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipe.workers.tasks.requeue_stale_documents",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stale_documents() -> dict[str, int]:
    """Find documents stuck in 'pending' for > 5 minutes and re-queue them."""
    return run_async(_requeue_stale_documents_async())


async def _requeue_stale_documents_async() -> dict[str, int]:
    from docpipe.services.state import DocumentStateStore

    stale = await DocumentStateStore().list_stale_pending(STALE_PENDING_AFTER)
    queued = 0
    for document_id in stale[:REQUEUE_BATCH_LIMIT]:
        process_document.apply_async(
            kwargs={"document_id": str(document_id)},
            countdown=5,
        )
        queued += 1
        logger.info("Re-queued stale document | doc=%s", document_id)

    return {"requeued": queued}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="docpipe.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
