"""
Celery Application Factory

Configures the Celery app that runs the ingestion pipeline.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) works for local dev.
Result backend: Redis (optional — document state lives in the documents table,
not in Celery results).

Queue topology:
  documents.ingest   — document ingestion jobs (process_document)
  documents.retry    — stale-document scanner + explicit retries
  system.health      — internal health-check tasks

Delivery is at-least-once (acks_late + reject_on_worker_lost). The pipeline
is idempotent per document, so a redelivered job is always safe to run.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import (
    after_setup_logger,
    task_failure,
    task_postrun,
    task_prerun,
    worker_process_init,
)
from kombu import Exchange, Queue

from doc_ingest.core.config import settings
from doc_ingest.observability.logging import configure_logging
from doc_ingest.observability.tracing import TracingConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

INGEST_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.ingest",
        exchange=INGEST_EXCHANGE,
        routing_key="documents.ingest",
        durable=True,
    ),
    Queue(
        "documents.retry",
        exchange=INGEST_EXCHANGE,
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
    "doc_ingest.workers.tasks.process_document":        {"queue": "documents.ingest"},
    "doc_ingest.workers.tasks.requeue_stale_documents": {"queue": "documents.retry"},
    "doc_ingest.workers.tasks.mark_for_retry":          {"queue": "documents.retry"},
    "doc_ingest.workers.tasks.health_check":            {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("doc_ingest")

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
        task_default_queue="documents.ingest",
        task_default_exchange="documents",
        task_default_routing_key="documents.ingest",

        # --- Reliability ---
        task_acks_late=True,         # ack only after the job finished (redelivery on crash)
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one document at a time per worker process

        # --- Timeouts ---
        task_soft_time_limit=settings.task_soft_time_limit,
        task_time_limit=settings.task_time_limit,   # keep lease_ttl_seconds >= this

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale-document scanner) ---
        beat_schedule={
            "requeue-stale-documents-every-60s": {
                "task":     "doc_ingest.workers.tasks.requeue_stale_documents",
                "schedule": 60,
                "options":  {"queue": "documents.retry"},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,   # recycle workers to prevent memory bloat
    )

    app.autodiscover_tasks(["doc_ingest.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — logging setup + per-task log lines
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_after_setup_logger(logger, loglevel=None, **_):
    configure_logging(settings.log_level, logger)


@worker_process_init.connect
def on_worker_process_init(**_):
    TracingConfig.init()


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, (kwargs or {}).get("document_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, (kwargs or {}).get("document_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "?"), exception,
        exc_info=True,
    )
