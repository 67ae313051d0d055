"""
Unit Tests — IngestionPipeline
══════════════════════════════
Drives handle_job() end to end against in-process fakes:
  • FakeLocator / FakeStatusStore / FakeExtractor from conftest.py
  • InMemoryVectorIndex (or a subclass that fails on purpose)
  • AsyncOpenAI replaced by a MagicMock with an AsyncMock embeddings.create

Coverage targets:
  ✅ Happy path      → completed, one terminal write, progress per batch
  ✅ Embedding error → failed "4/5", other chunks indexed (chunk 1 missing)
  ✅ Redelivery      → identical ids and content, no duplicates
  ✅ Empty text      → failed "No extractable text", zero embed/upsert calls
  ✅ Upsert failure  → batch counted as failed, later batches still run
  ✅ Verification    → index read-back miss downgrades to failed
  ✅ Stale tail      → ids past the new chunk count are deleted
  ✅ Lease contended → skipped, nothing written
  ✅ Status store down / unexpected errors → still exactly one outcome
  ✅ Cancelled mid-run  → failed status still written, cancellation re-raised
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from doc_ingest.core.exceptions import VectorIndexError
from doc_ingest.processing.chunking import build_chunks
from doc_ingest.schemas.documents import JobPayload, ProcessingStatus
from doc_ingest.services.lease import RedisLease
from doc_ingest.services.pipeline import INTERRUPTED_MESSAGE, IngestionPipeline, PipelineStats
from doc_ingest.vectorstore.memory_store import InMemoryVectorIndex

DOC_ID   = "doc-1"
OWNER_ID = "user-1"

FIVE_CHUNK_TEXT = " ".join(f"w{i:04d}" for i in range(650))     # 3 899 chars → 5 chunks


def _payload(**overrides) -> JobPayload:
    fields = {"documentId": DOC_ID, "ownerId": OWNER_ID, "fileExtension": "txt"}
    fields.update(overrides)
    return JobPayload.model_validate(fields)


def _chunk_ids(n: int, doc_id: str = DOC_ID) -> set[str]:
    return {f"{doc_id}_chunk_{i}" for i in range(n)}


class FailingUpsertIndex(InMemoryVectorIndex):
    """Rejects any upsert containing one of fail_ids."""

    def __init__(self, fail_ids: set[str]) -> None:
        super().__init__()
        self.fail_ids = fail_ids

    async def upsert(self, records):
        if any(r.id in self.fail_ids for r in records):
            self.calls["upsert"] += 1
            raise VectorIndexError("Pinecone upsert failed: 503 Service Unavailable")
        return await super().upsert(records)


class BlindIndex(InMemoryVectorIndex):
    """Accepts writes but never finds anything on read-back."""

    async def fetch(self, ids):
        self.calls["fetch"] += 1
        return {}


@pytest.fixture
def ready(locator, extractor):
    """Register DOC_ID and give the extractor a 5-chunk text."""
    locator.add(DOC_ID)
    extractor.text = FIVE_CHUNK_TEXT


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestHappyPath:

    async def test_completed_with_all_chunks_indexed(self, ready, make_pipeline, status_store, vector_index):
        outcome = await make_pipeline().handle_job(_payload())

        assert outcome.status == "completed"
        assert outcome.ok
        assert outcome.message == "Successfully processed all 5 chunks"
        assert outcome.total_chunks == 5
        assert outcome.successfully_upserted_chunks == 5
        assert outcome.failed_upsert_batches == 0
        assert outcome.verified is True
        assert outcome.status_written is True
        assert vector_index.ids() == _chunk_ids(5)

        state = status_store.states[DOC_ID]
        assert state.processing_status is ProcessingStatus.COMPLETED
        assert state.total_chunks == 5
        assert state.processed_chunks == 5

    async def test_status_progression(self, ready, make_pipeline, status_store):
        await make_pipeline(batch_size=2).handle_job(_payload())

        assert [(w["status"], w["message"]) for w in status_store.writes] == [
            (ProcessingStatus.PROCESSING, "Starting document processing"),
            (ProcessingStatus.PROCESSING, "Text extracted (3899 characters)"),
            (ProcessingStatus.PROCESSING, "Split into 5 chunks"),
            (ProcessingStatus.PROCESSING, "Processed batch 1/3"),
            (ProcessingStatus.PROCESSING, "Processed batch 2/3"),
            (ProcessingStatus.PROCESSING, "Processed batch 3/3"),
            (ProcessingStatus.COMPLETED,  "Successfully processed all 5 chunks"),
        ]
        assert [w["processed_chunks"] for w in status_store.writes] == [0, None, 0, 2, 4, 5, 5]
        assert len(status_store.terminal_writes()) == 1

    async def test_record_metadata(self, ready, make_pipeline, vector_index):
        await make_pipeline().handle_job(_payload())

        record = vector_index.get(f"{DOC_ID}_chunk_2")
        expected_text = build_chunks(DOC_ID, FIVE_CHUNK_TEXT)[2].text

        assert len(record.values) == 8
        assert set(record.metadata) == {
            "documentId", "chunkIndex", "totalChunks", "sourceName", "ownerId", "text", "timestamp",
        }
        assert record.metadata["documentId"] == DOC_ID
        assert record.metadata["chunkIndex"] == 2
        assert record.metadata["totalChunks"] == 5
        assert record.metadata["sourceName"] == "notes.txt"
        assert record.metadata["ownerId"] == OWNER_ID
        assert record.metadata["text"] == expected_text

    async def test_accepts_camel_case_dict_payload(self, ready, make_pipeline, extractor):
        outcome = await make_pipeline().handle_job(
            {"documentId": DOC_ID, "ownerId": OWNER_ID, "fileExtension": ".TXT"}
        )

        assert outcome.status == "completed"
        assert extractor.calls == [(f"https://blob.example.com/{DOC_ID}/notes.txt", "text/plain")]

    async def test_sleeps_between_batches_only(
        self, ready, locator, extractor, status_store, vector_index, openai_mock, fast_retry,
    ):
        from doc_ingest.processing.embeddings import EmbeddingClient
        from doc_ingest.processing.upserter import VectorUpserter
        from doc_ingest.services.status import StatusTracker

        sleeps: list[float] = []

        async def _sleep(seconds: float) -> None:
            sleeps.append(seconds)

        pipeline = IngestionPipeline(
            locator=locator,
            extractor=extractor,
            embedder=EmbeddingClient(client=openai_mock, dimensions=8, retry_policy=fast_retry, timeout=None),
            upserter=VectorUpserter(vector_index, retry_policy=fast_retry, timeout=None),
            tracker=StatusTracker(status_store, retry_policy=fast_retry, timeout=None),
            batch_size=2,
            batch_delay=1.0,
            sleep=_sleep,
        )

        await pipeline.handle_job(_payload())

        assert sleeps == [1.0, 1.0]          # 3 batches → 2 pauses

    def test_batch_size_must_be_positive(self, make_pipeline):
        with pytest.raises(ValueError):
            make_pipeline(batch_size=0)


# ─────────────────────────────────────────────────────────────────────────────
# Partial failures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestPartialFailures:

    async def test_embedding_failure_on_one_chunk(self, ready, make_pipeline, make_openai, status_store, vector_index):
        bad_text = build_chunks(DOC_ID, FIVE_CHUNK_TEXT)[1].text
        pipeline = make_pipeline(openai_client=make_openai(fail_on={bad_text}))

        outcome = await pipeline.handle_job(_payload())

        assert outcome.status == "failed"
        assert outcome.message == (
            "Partially failed: 4/5 chunks processed successfully. 1 batch(es) failed. "
            "Error: Embedding error in chunk 1: ValueError: invalid input"
        )
        assert outcome.failed_embedding_chunks == 1
        assert vector_index.ids() == _chunk_ids(5) - {f"{DOC_ID}_chunk_1"}

        (terminal,) = status_store.terminal_writes()
        assert terminal["status"] is ProcessingStatus.FAILED
        assert terminal["total_chunks"] == 5
        assert terminal["processed_chunks"] == 4

    async def test_failed_upsert_batch_does_not_stop_later_batches(self, ready, make_pipeline, status_store):
        index = FailingUpsertIndex(fail_ids={f"{DOC_ID}_chunk_2"})

        outcome = await make_pipeline(index=index, batch_size=2).handle_job(_payload())

        assert outcome.status == "failed"
        assert outcome.successfully_upserted_chunks == 3
        assert outcome.failed_upsert_batches == 1
        assert outcome.message == (
            "Partially failed: 3/5 chunks processed successfully. 1 batch(es) failed. "
            "Error: Upsert error in batch 2: Pinecone upsert failed: 503 Service Unavailable"
        )
        assert index.ids() == {f"{DOC_ID}_chunk_{i}" for i in (0, 1, 4)}
        assert index.calls["upsert"] == 3 + 2          # batch 2 tried 3 times
        assert len(status_store.terminal_writes()) == 1

    async def test_first_error_wins(self, ready, make_pipeline, make_openai):
        chunks = build_chunks(DOC_ID, FIVE_CHUNK_TEXT)
        client = make_openai(fail_on={chunks[3].text})
        index = FailingUpsertIndex(fail_ids={f"{DOC_ID}_chunk_0"})

        outcome = await make_pipeline(openai_client=client, index=index, batch_size=2).handle_job(_payload())

        assert outcome.failed_upsert_batches == 2
        assert "Error: Upsert error in batch 1:" in outcome.message

    async def test_verification_miss_downgrades_to_failed(self, ready, make_pipeline):
        outcome = await make_pipeline(index=BlindIndex()).handle_job(_payload())

        assert outcome.status == "failed"
        assert outcome.successfully_upserted_chunks == 5
        assert outcome.verified is False
        assert outcome.message.endswith(
            f"Error: Failed to verify data persistence in the vector index ({DOC_ID}_chunk_0 not found)"
        )


# ─────────────────────────────────────────────────────────────────────────────
# Job-fatal stages
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestFatalStages:

    async def test_empty_extraction(self, locator, extractor, make_pipeline, openai_mock, status_store, vector_index):
        locator.add(DOC_ID)
        extractor.text = ""

        outcome = await make_pipeline(openai_client=openai_mock).handle_job(_payload())

        assert outcome.status == "failed"
        assert "No extractable text" in outcome.message
        openai_mock.embeddings.create.assert_not_awaited()
        assert vector_index.calls["upsert"] == 0

        (terminal,) = status_store.terminal_writes()
        assert terminal["total_chunks"] is None          # never chunked

    async def test_text_that_normalizes_to_nothing(self, locator, extractor, make_pipeline):
        locator.add(DOC_ID)
        extractor.text = "\u200b\u200b"

        outcome = await make_pipeline().handle_job(_payload())

        assert outcome.status == "failed"
        assert outcome.message == "No chunks produced from extracted text"

    async def test_unknown_document(self, make_pipeline, extractor, status_store):
        outcome = await make_pipeline().handle_job(_payload())

        assert outcome.status == "failed"
        assert outcome.message == "Document not found"
        assert extractor.calls == []
        assert len(status_store.terminal_writes()) == 1

    async def test_unexpected_error_is_contained(self, ready, make_pipeline, extractor, status_store):
        extractor.error = RuntimeError("kaboom")

        outcome = await make_pipeline().handle_job(_payload())

        assert outcome.status == "failed"
        assert outcome.message == "RuntimeError: kaboom"
        assert len(status_store.terminal_writes()) == 1

    async def test_status_store_outage_does_not_crash_the_job(self, ready, make_pipeline, status_store, vector_index):
        status_store.fail_all = True

        outcome = await make_pipeline().handle_job(_payload())

        assert outcome.status == "completed"
        assert outcome.status_written is False
        assert vector_index.ids() == _chunk_ids(5)


# ─────────────────────────────────────────────────────────────────────────────
# Interruption (soft time limit / worker shutdown cancels the event loop)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestInterruption:

    async def test_cancelled_during_extraction(self, ready, make_pipeline, extractor, status_store):
        started = asyncio.Event()

        async def _hang(file_url, file_type=None):
            started.set()
            await asyncio.Event().wait()

        extractor.extract = _hang
        task = asyncio.create_task(make_pipeline().handle_job(_payload()))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        terminal = status_store.terminal_writes()
        assert len(terminal) == 1
        assert terminal[0]["status"] is ProcessingStatus.FAILED
        assert terminal[0]["message"] == INTERRUPTED_MESSAGE
        assert status_store.states[DOC_ID].processing_status is ProcessingStatus.FAILED

    async def test_cancelled_mid_batches_keeps_progress(self, ready, make_pipeline, make_openai, status_store):
        chunks = build_chunks(DOC_ID, FIVE_CHUNK_TEXT)
        openai_client = make_openai()
        answer = openai_client.embeddings.create.side_effect
        started = asyncio.Event()

        async def _create(*, model, input, dimensions=None):
            if input == chunks[2].text:
                started.set()
                await asyncio.Event().wait()
            return await answer(model=model, input=input, dimensions=dimensions)

        openai_client.embeddings.create.side_effect = _create
        task = asyncio.create_task(make_pipeline(openai_client=openai_client, batch_size=2).handle_job(_payload()))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        terminal = status_store.terminal_writes()
        assert len(terminal) == 1
        assert terminal[0]["message"] == INTERRUPTED_MESSAGE
        assert terminal[0]["total_chunks"] == 5
        assert terminal[0]["processed_chunks"] == 2


# ─────────────────────────────────────────────────────────────────────────────
# Idempotency
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestIdempotency:

    async def test_redelivery_after_completed_is_identical(self, ready, make_pipeline, status_store, vector_index):
        pipeline = make_pipeline()

        await pipeline.handle_job(_payload())
        first = {i: (r.values, {k: v for k, v in r.metadata.items() if k != "timestamp"})
                 for i in vector_index.ids() for r in [vector_index.get(i)]}

        outcome = await pipeline.handle_job(_payload())
        second = {i: (r.values, {k: v for k, v in r.metadata.items() if k != "timestamp"})
                  for i in vector_index.ids() for r in [vector_index.get(i)]}

        assert outcome.status == "completed"
        assert second == first
        assert len(vector_index) == 5
        assert len(status_store.terminal_writes()) == 2      # one per delivery

    async def test_shorter_rerun_prunes_stale_tail(self, ready, make_pipeline, status_store, vector_index):
        from doc_ingest.vectorstore.base import VectorRecord

        status_store.seed(DOC_ID, ProcessingStatus.FAILED, total_chunks=8)
        await vector_index.upsert([VectorRecord(id=i, values=[0.0] * 8) for i in _chunk_ids(8)])

        outcome = await make_pipeline().handle_job(_payload())

        assert outcome.status == "completed"
        assert vector_index.ids() == _chunk_ids(5)

    async def test_contended_lease_skips_without_writing(self, ready, make_pipeline, status_store, extractor):
        redis_client = AsyncMock()
        redis_client.set = AsyncMock(return_value=None)

        outcome = await make_pipeline(lease=RedisLease(redis_client)).handle_job(_payload())

        assert outcome.status == "skipped"
        assert outcome.status_written is False
        assert status_store.writes == []
        assert extractor.calls == []

    async def test_lease_is_released_after_the_job(self, ready, make_pipeline):
        redis_client = AsyncMock()
        redis_client.set = AsyncMock(return_value=True)

        outcome = await make_pipeline(lease=RedisLease(redis_client)).handle_job(_payload())

        assert outcome.status == "completed"
        redis_client.eval.assert_awaited_once()


@pytest.mark.unit
class TestPipelineStats:

    def test_zero_chunks_never_succeeds(self):
        stats = PipelineStats(verified=True)
        assert stats.succeeded is False
        assert stats.final_message() == (
            "Partially failed: 0/0 chunks processed successfully. 0 batch(es) failed. "
            "Error: Unknown error"
        )

    def test_record_error_keeps_first(self):
        stats = PipelineStats()
        stats.record_error("first")
        stats.record_error("second")
        assert stats.first_error == "first"

