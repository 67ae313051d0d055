"""
Celery Tasks — Document Ingestion

Task: process_document(document_id, owner_id, file_extension)
  Builds the production pipeline and runs IngestionPipeline.handle_job().
  handle_job() never raises on job errors and always leaves a terminal status
  behind, so the task itself is never retried by Celery; a failed document
  re-enters the pipeline only through mark_for_retry. When the soft time limit
  fires, the task records a failed status unless the interrupted job already
  did.

Task: requeue_stale_documents
  Beat task — re-dispatches documents stuck in 'pending' for longer than
  STALE_PENDING_MINUTES (dispatches lost between registration and the
  broker), and documents left in 'processing' with no status write for
  LEASE_TTL_SECONDS (a crashed worker whose redelivery was skipped while the
  dead worker's lease was still live).

Task: mark_for_retry(document_id)
  The explicit retry trigger: failed → pending, then re-enqueue.

Each task runs its coroutine in a fresh event loop and disposes the DB
engine before returning (asyncpg connections are bound to their loop).
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from celery import Task
from celery.exceptions import SoftTimeLimitExceeded

from doc_ingest.core.config import settings
from doc_ingest.core.retry import policy_from_settings
from doc_ingest.db.repository import SqlDocumentRepository
from doc_ingest.db.session import check_db_health, dispose_engine
from doc_ingest.schemas.documents import JobOutcome, JobPayload, ProcessingStatus
from doc_ingest.services.pipeline import INTERRUPTED_MESSAGE, build_pipeline
from doc_ingest.services.status import StatusTracker
from doc_ingest.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

REQUEUE_BATCH_LIMIT = 50


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    # already inside a loop (eager mode under an async caller)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


def _extension_of(file_name: str) -> str:
    return file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="doc_ingest.workers.tasks.process_document",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=settings.task_soft_time_limit,
    time_limit=settings.task_time_limit,
)
def process_document(
    self: Task,
    document_id:    str,
    owner_id:       str,
    file_extension: str = "",
) -> dict[str, Any]:
    """Run the ingestion pipeline for one document delivery."""
    payload = JobPayload(
        document_id=document_id,
        owner_id=owner_id,
        file_extension=file_extension,
    )
    try:
        return run_async(_process_document_async(payload))
    except SoftTimeLimitExceeded:
        logger.error("Soft time limit exceeded | doc=%s limit=%ss", document_id, settings.task_soft_time_limit)
        return run_async(_record_interruption(payload))


async def _process_document_async(payload: JobPayload) -> dict[str, Any]:
    pipeline = build_pipeline(settings)
    try:
        outcome = await pipeline.handle_job(payload)
    finally:
        await pipeline.aclose()
        await dispose_engine()
    return outcome.model_dump()


async def _record_interruption(payload: JobPayload) -> dict[str, Any]:
    tracker = StatusTracker(
        SqlDocumentRepository(),
        retry_policy=policy_from_settings(settings),
        timeout=settings.status_timeout_seconds,
    )
    written = False
    try:
        current = await tracker.read(payload.document_id)
        # the cancelled job normally wrote its own failed status already
        if current is not None and not current.processing_status.is_terminal:
            written = await tracker.set_status(
                payload.document_id, ProcessingStatus.FAILED, INTERRUPTED_MESSAGE,
            )
    finally:
        await dispose_engine()

    return JobOutcome(
        document_id=payload.document_id,
        status=ProcessingStatus.FAILED.value,
        message=INTERRUPTED_MESSAGE,
        status_written=written,
    ).model_dump()


# ---------------------------------------------------------------------------
# Stale-document scanner — runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="doc_ingest.workers.tasks.requeue_stale_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stale_documents() -> dict[str, int]:
    """Find documents stuck in 'pending' or abandoned in 'processing' and dispatch them again."""
    return run_async(_requeue_stale_documents_async())


async def _requeue_stale_documents_async() -> dict[str, int]:
    now = datetime.now(timezone.utc)
    repository = SqlDocumentRepository()
    try:
        pending = await repository.list_stale_pending(
            now - timedelta(minutes=settings.stale_pending_minutes), limit=REQUEUE_BATCH_LIMIT,
        )
        abandoned = await repository.list_stale_processing(
            now - timedelta(seconds=settings.lease_ttl_seconds), limit=REQUEUE_BATCH_LIMIT,
        )
    finally:
        await dispose_engine()

    if abandoned:
        logger.warning("Abandoned processing documents found | count=%d", len(abandoned))

    stale = pending + abandoned

    for source in stale:
        process_document.apply_async(
            kwargs={
                "document_id":    source.document_id,
                "owner_id":       source.owner_id,
                "file_extension": _extension_of(source.file_name),
            },
            countdown=5,
        )
        logger.info("Re-queued stale document | doc=%s owner=%s", source.document_id, source.owner_id)

    return {"requeued": len(stale)}


# ---------------------------------------------------------------------------
# Explicit retry trigger
# ---------------------------------------------------------------------------

@celery_app.task(name="doc_ingest.workers.tasks.mark_for_retry")
def mark_for_retry(document_id: str) -> dict[str, str]:
    """Move a failed document back to pending and enqueue it again."""
    return run_async(_mark_for_retry_async(document_id))


async def _mark_for_retry_async(document_id: str) -> dict[str, str]:
    repository = SqlDocumentRepository()
    try:
        if not await repository.reset_to_pending(document_id):
            logger.warning("Retry rejected, document missing or not failed | doc=%s", document_id)
            return {"status": "rejected", "document_id": document_id}
        source = await repository.locate(document_id)
    finally:
        await dispose_engine()

    if source is None:
        return {"status": "rejected", "document_id": document_id}

    process_document.apply_async(
        kwargs={
            "document_id":    document_id,
            "owner_id":       source.owner_id,
            "file_extension": _extension_of(source.file_name),
        },
    )
    logger.info("Retry queued | doc=%s", document_id)
    return {"status": "queued", "document_id": document_id}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="doc_ingest.workers.tasks.health_check")
def health_check() -> dict[str, Any]:
    return {"status": "ok", "worker": "healthy", "database": run_async(_db_health())}


async def _db_health() -> dict:
    try:
        return await check_db_health()
    finally:
        await dispose_engine()
