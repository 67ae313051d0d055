"""
Ingestion Pipeline Orchestrator

One job = one document:

  1. locate      — resolve documentId → {fileURL, fileType, fileName, ownerId}
  2. processing  — status write "Starting document processing"
  3. extract     — TextExtractor (job-fatal on failure)
  4. chunk       — normalize_text + build_chunks (job-fatal on zero chunks)
  5. batches     — for each processing batch of `batch_size` chunks:
                     embed_batch (chunk-scoped failures)
                     upsert      (batch-scoped failures, retried)
                     status write with processedChunks progress
                   sleeping `batch_delay` seconds between batches
  6. prune       — a re-run with fewer chunks deletes the previous tail ids
  7. verify      — fetch "{documentId}_chunk_0" from the index
  8. terminal    — exactly one completed | failed status write

Idempotency:
  Deliveries are at-least-once. Vector ids are derived from chunk positions
  and upserts overwrite by id, so a redelivered job simply re-runs in full.
  A per-document lease keeps two deliveries from running at the same time;
  the one that loses the lease returns "skipped" and writes nothing. If the
  holder died, the stale-document scanner re-dispatches the document once
  the lease has expired.

handle_job() never raises on job errors. Whatever escapes a stage is turned
into the single failed terminal write. Cancellation (the Celery soft time
limit tearing down the event loop, or worker shutdown) also gets the failed
write, shielded from the cancellation, and is then re-raised.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from doc_ingest.core.config import Settings, settings as default_settings
from doc_ingest.core.exceptions import ChunkingError, IngestionError, VerificationError
from doc_ingest.core.retry import policy_from_settings
from doc_ingest.processing.chunking import Chunk, build_chunks, make_vector_id, normalize_text
from doc_ingest.processing.embeddings import EmbeddingClient
from doc_ingest.processing.extractor import TextExtractor
from doc_ingest.processing.upserter import VectorUpserter
from doc_ingest.schemas.documents import (
    DocumentSource,
    DocumentState,
    JobOutcome,
    JobPayload,
    ProcessingStatus,
)
from doc_ingest.services.lease import DocumentLease, NullLease, RedisLease
from doc_ingest.services.status import StatusTracker
from doc_ingest.vectorstore.base import VectorRecord

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Processing interrupted before completion (time limit or worker shutdown)"


# ---------------------------------------------------------------------------
# Storage locator port
# ---------------------------------------------------------------------------

class DocumentLocator(ABC):
    @abstractmethod
    async def locate(self, document_id: str) -> DocumentSource | None:
        """Resolve a document id to its stored file; None if unknown."""


class DocumentNotFoundError(IngestionError):
    pass


# ---------------------------------------------------------------------------
# Run counters
# ---------------------------------------------------------------------------

@dataclass
class PipelineStats:
    """
    Counters for one run.

    A processing batch counts as failed when its upsert failed after every
    attempt or when any of its chunks could not be embedded, so
    successfully_upserted_chunks + failed_upsert_batches * batch_size
    always covers total_chunks_processed.
    """
    total_chunks:                 int  = 0
    total_chunks_processed:       int  = 0
    successfully_upserted_chunks: int  = 0
    failed_upsert_batches:        int  = 0
    failed_embedding_chunks:      int  = 0
    verified:                     bool = False
    first_error:                  str | None = None

    def record_error(self, message: str) -> None:
        if self.first_error is None:
            self.first_error = message

    @property
    def succeeded(self) -> bool:
        return (
            self.verified
            and self.total_chunks_processed > 0
            and self.successfully_upserted_chunks == self.total_chunks_processed
        )

    def final_message(self) -> str:
        if self.succeeded:
            return f"Successfully processed all {self.total_chunks_processed} chunks"
        return (
            f"Partially failed: {self.successfully_upserted_chunks}/{self.total_chunks_processed} "
            f"chunks processed successfully. {self.failed_upsert_batches} batch(es) failed. "
            f"Error: {self.first_error or 'Unknown error'}"
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class IngestionPipeline:
    """
    All collaborators are injected; build_pipeline() wires the production set.

    Usage:
        pipeline = build_pipeline(settings)
        outcome  = await pipeline.handle_job({"documentId": "d1", "ownerId": "u1"})
    """

    def __init__(
        self,
        locator:       DocumentLocator,
        extractor:     TextExtractor,
        embedder:      EmbeddingClient,
        upserter:      VectorUpserter,
        tracker:       StatusTracker,
        lease:         DocumentLease | None = None,
        *,
        chunk_size:    int   = 1000,
        chunk_overlap: int   = 200,
        batch_size:    int   = 5,
        batch_delay:   float = 1.0,
        sleep:         Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._locator       = locator
        self._extractor     = extractor
        self._embedder      = embedder
        self._upserter      = upserter
        self._tracker       = tracker
        self._lease         = lease or NullLease()
        self._chunk_size    = chunk_size
        self._chunk_overlap = chunk_overlap
        self._batch_size    = batch_size
        self._batch_delay   = batch_delay
        self._sleep         = sleep

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def handle_job(self, payload: JobPayload | dict) -> JobOutcome:
        """Process one delivery of a job. Safe to call again for the same document."""
        if not isinstance(payload, JobPayload):
            payload = JobPayload.model_validate(payload)

        document_id = payload.document_id
        async with self._lease.hold(document_id) as granted:
            if not granted:
                logger.warning("Document leased by another worker, skipping | doc=%s", document_id)
                return JobOutcome(
                    document_id=document_id,
                    status="skipped",
                    message="Document is already being processed by another worker",
                )
            return await self._run_guarded(payload)

    async def aclose(self) -> None:
        await self._embedder.aclose()
        await self._lease.aclose()

    # ------------------------------------------------------------------
    # Job body
    # ------------------------------------------------------------------

    async def _run_guarded(self, payload: JobPayload) -> JobOutcome:
        document_id = payload.document_id
        stats = PipelineStats()
        t0 = time.monotonic()

        logger.info(
            "Job start | doc=%s owner=%s ext=%s",
            document_id, payload.owner_id, payload.file_extension or "-",
        )

        try:
            await self._run(payload, stats)
            status  = ProcessingStatus.COMPLETED if stats.succeeded else ProcessingStatus.FAILED
            message = stats.final_message()
        except IngestionError as exc:
            logger.error("Job failed | doc=%s stage_error=%s: %s",
                         document_id, type(exc).__name__, exc.message)
            status, message = ProcessingStatus.FAILED, exc.message
        except asyncio.CancelledError:
            logger.error("Job interrupted | doc=%s elapsed_ms=%.0f", document_id, (time.monotonic() - t0) * 1000)
            await asyncio.shield(self._tracker.set_status(
                document_id,
                ProcessingStatus.FAILED,
                INTERRUPTED_MESSAGE,
                total_chunks=stats.total_chunks if stats.total_chunks else None,
                processed_chunks=stats.successfully_upserted_chunks if stats.total_chunks else None,
            ))
            raise
        except Exception as exc:
            logger.exception("Job crashed | doc=%s", document_id)
            status, message = ProcessingStatus.FAILED, f"{type(exc).__name__}: {exc}"

        # the one terminal write
        written = await self._tracker.set_status(
            document_id,
            status,
            message,
            total_chunks=stats.total_chunks if stats.total_chunks else None,
            processed_chunks=stats.successfully_upserted_chunks if stats.total_chunks else None,
        )

        logger.info(
            "Job done | doc=%s status=%s chunks=%d upserted=%d failed_batches=%d "
            "failed_embeddings=%d verified=%s elapsed_ms=%.0f",
            document_id, status.value, stats.total_chunks_processed,
            stats.successfully_upserted_chunks, stats.failed_upsert_batches,
            stats.failed_embedding_chunks, stats.verified, (time.monotonic() - t0) * 1000,
        )

        return JobOutcome(
            document_id=document_id,
            status=status.value,
            message=message,
            total_chunks=stats.total_chunks,
            total_chunks_processed=stats.total_chunks_processed,
            successfully_upserted_chunks=stats.successfully_upserted_chunks,
            failed_upsert_batches=stats.failed_upsert_batches,
            failed_embedding_chunks=stats.failed_embedding_chunks,
            verified=stats.verified,
            status_written=written,
        )

    async def _run(self, payload: JobPayload, stats: PipelineStats) -> None:
        document_id = payload.document_id

        # ---- 1: locate -------------------------------------------------
        source = await self._locator.locate(document_id)
        if source is None:
            raise DocumentNotFoundError("Document not found", document_id=document_id)

        previous = await self._tracker.read(document_id)
        if previous is not None and previous.processing_status in (
            ProcessingStatus.PROCESSING, ProcessingStatus.COMPLETED,
        ):
            logger.warning(
                "Possible redelivery, re-running in full | doc=%s previous_status=%s",
                document_id, previous.processing_status.value,
            )

        # ---- 2: processing ---------------------------------------------
        await self._tracker.set_status(
            document_id, ProcessingStatus.PROCESSING, "Starting document processing",
            processed_chunks=0,
        )

        # ---- 3: extract ------------------------------------------------
        text = await self._extractor.extract(
            source.file_url, source.file_type or payload.file_extension or None,
        )
        await self._tracker.set_status(
            document_id, ProcessingStatus.PROCESSING,
            f"Text extracted ({len(text)} characters)",
        )

        # ---- 4: chunk --------------------------------------------------
        chunks = build_chunks(
            document_id, normalize_text(text),
            size=self._chunk_size, overlap=self._chunk_overlap,
        )
        if not chunks:
            raise ChunkingError("No chunks produced from extracted text", document_id=document_id)

        stats.total_chunks = len(chunks)
        await self._tracker.set_status(
            document_id, ProcessingStatus.PROCESSING,
            f"Split into {len(chunks)} chunks",
            total_chunks=len(chunks), processed_chunks=0,
        )

        # ---- 5: batches ------------------------------------------------
        await self._process_batches(source, chunks, stats)

        # ---- 6: prune stale tail ---------------------------------------
        await self._prune_stale_tail(document_id, previous, len(chunks))

        # ---- 7: verify -------------------------------------------------
        await self._verify(document_id, stats)

    async def _process_batches(
        self,
        source: DocumentSource,
        chunks: list[Chunk],
        stats:  PipelineStats,
    ) -> None:
        total = len(chunks)
        num_batches = (total + self._batch_size - 1) // self._batch_size
        indexed_at = datetime.now(timezone.utc).isoformat()

        for batch_no, start in enumerate(range(0, total, self._batch_size), start=1):
            if batch_no > 1 and self._batch_delay > 0:
                await self._sleep(self._batch_delay)

            batch = chunks[start : start + self._batch_size]
            stats.total_chunks_processed += len(batch)
            batch_failed = False

            result = await self._embedder.embed_batch(batch)
            if result.failed:
                batch_failed = True
                stats.failed_embedding_chunks += len(result.failed)
                chunk, error = result.failed[0]
                stats.record_error(f"Embedding error in chunk {chunk.chunk_index}: {error.message}")

            records = [
                self._to_record(source, chunk, vector, total, indexed_at)
                for chunk, vector in result.embedded
            ]
            if records:
                if await self._upserter.upsert(records):
                    stats.successfully_upserted_chunks += len(records)
                else:
                    batch_failed = True
                    error = self._upserter.last_error
                    stats.record_error(
                        f"Upsert error in batch {batch_no}: "
                        f"{error.message if error else 'unknown error'}"
                    )

            if batch_failed:
                stats.failed_upsert_batches += 1

            logger.info(
                "Batch | doc=%s batch=%d/%d size=%d upserted=%d failed=%s",
                source.document_id, batch_no, num_batches, len(batch), len(records), batch_failed,
            )
            await self._tracker.set_status(
                source.document_id, ProcessingStatus.PROCESSING,
                f"Processed batch {batch_no}/{num_batches}",
                processed_chunks=stats.successfully_upserted_chunks,
            )

    async def _prune_stale_tail(
        self,
        document_id: str,
        previous:    DocumentState | None,
        new_total:   int,
    ) -> None:
        old_total = previous.total_chunks if previous is not None else None
        if not old_total or old_total <= new_total:
            return
        stale = [make_vector_id(document_id, i) for i in range(new_total, old_total)]
        deleted = await self._upserter.delete(stale)
        logger.info(
            "Pruned stale tail | doc=%s old_total=%d new_total=%d ok=%s",
            document_id, old_total, new_total, deleted,
        )

    async def _verify(self, document_id: str, stats: PipelineStats) -> None:
        check_id = make_vector_id(document_id, 0)
        if await self._upserter.fetch_one(check_id):
            stats.verified = True
            return

        error = VerificationError(
            f"Failed to verify data persistence in the vector index ({check_id} not found)",
            document_id=document_id,
        )
        logger.warning("Verification failed | doc=%s id=%s", document_id, check_id)
        stats.record_error(error.message)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_record(
        source:     DocumentSource,
        chunk:      Chunk,
        vector:     list[float],
        total:      int,
        indexed_at: str,
    ) -> VectorRecord:
        return VectorRecord(
            id=chunk.vector_id,
            values=vector,
            metadata={
                "documentId":  source.document_id,
                "chunkIndex":  chunk.chunk_index,
                "totalChunks": total,
                "sourceName":  source.file_name,
                "ownerId":     source.owner_id,
                "text":        chunk.text,
                "timestamp":   indexed_at,
            },
        )


# ---------------------------------------------------------------------------
# Production wiring
# ---------------------------------------------------------------------------

def build_pipeline(settings: Settings | None = None) -> IngestionPipeline:
    """Wire the production collaborators from Settings."""
    from doc_ingest.db.repository import SqlDocumentRepository
    from doc_ingest.vectorstore.factory import get_vector_index

    settings = settings or default_settings
    policy = policy_from_settings(settings)
    repository = SqlDocumentRepository()

    lease: DocumentLease
    if settings.redis_url:
        lease = RedisLease.from_url(settings.redis_url, ttl_seconds=settings.lease_ttl_seconds)
    else:
        lease = NullLease()

    return IngestionPipeline(
        locator=repository,
        extractor=TextExtractor(
            settings.extraction_service_url,
            api_key=settings.extraction_api_key,
            timeout=settings.extraction_timeout_seconds,
            budget=settings.extraction_budget_seconds,
            retry_policy=policy,
        ),
        embedder=EmbeddingClient(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=settings.openai_api_key,
            timeout=settings.embedding_timeout_seconds,
            retry_policy=policy,
            concurrency=settings.embedding_concurrency,
        ),
        upserter=VectorUpserter(
            get_vector_index(settings),
            retry_policy=policy,
            timeout=settings.upsert_timeout_seconds,
        ),
        tracker=StatusTracker(
            repository,
            retry_policy=policy,
            timeout=settings.status_timeout_seconds,
        ),
        lease=lease,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        batch_size=settings.processing_batch_size,
        batch_delay=settings.batch_delay_seconds,
    )
