"""
Celery Application Factory

Configures the Celery app that runs document processing off the request path.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) works for local dev.
Result backend: Redis. The worker-session protocol reads custom task states
(INITIALIZED / PROGRESS) from it; durable processing state lives in PostgreSQL.

Queue topology:
  documents.process  — full pipeline runs and isolated worker sessions
  documents.retry    — re-queued documents stuck in 'pending'
  system.health      — internal health-check tasks

Never pass raw file bytes in task payloads: tasks receive document ids and
load content from blob storage inside the worker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docpipe.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.process",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.process",
        queue_arguments={"x-max-priority": 10},
        durable=True,
    ),
    Queue(
        "documents.retry",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.retry",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docpipe.workers.tasks.process_document":        {"queue": "documents.process"},
    "docpipe.workers.tasks.run_worker_session":      {"queue": "documents.process"},
    "docpipe.workers.tasks.requeue_stale_documents": {"queue": "documents.retry"},
    "docpipe.workers.tasks.health_check":            {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docpipe")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.process",
        task_default_exchange="documents",
        task_default_routing_key="documents.process",

        # --- Reliability ---
        task_acks_late=True,           # ack only after the task completes
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one document per worker process at a time
        task_track_started=True,

        # --- Retries ---
        task_max_retries=3,
        task_default_retry_delay=60,    # seconds

        # --- Timeouts ---
        task_soft_time_limit=int(settings.worker_run_timeout_seconds),
        task_time_limit=int(settings.worker_run_timeout_seconds) + 60,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale-pending scanner) ---
        beat_schedule={
            "requeue-stale-documents-every-60s": {
                "task":     "docpipe.workers.tasks.requeue_stale_documents",
                "schedule": 60,
                "options":  {"queue": "documents.retry"},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,   # recycle processes (OCR / PDF memory)
    )

    app.autodiscover_tasks(["docpipe.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

def _document_id(args, kwargs) -> str:
    if kwargs and kwargs.get("document_id"):
        return kwargs["document_id"]
    process = (kwargs or {}).get("process") or {}
    return (process.get("data") or {}).get("documentId", "?")


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, _document_id(args, kwargs),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, _document_id(args, kwargs),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, _document_id(args, kwargs), exception,
        exc_info=True,
    )
