"""
Root conftest.py — Shared fixtures for the unit tests

Fixture hierarchy:
  function-scoped : fast_retry, status_store, locator, vector_index,
                    openai_mock, make_openai, extractor, make_pipeline, db_factory

Environment strategy:
  - Settings are pinned to local, in-process backends before any package import:
    in-memory vector index, SQLite (aiosqlite) database, in-memory Celery broker.
  - External services are never called: the OpenAI client is an AsyncMock,
    the extraction service is an httpx.MockTransport, Pinecone is a MagicMock.
  - Retry delays are zero, so retry paths run instantly.

How to run:
  pytest                           # all tests
  pytest -m unit                   # unit tests only
  pytest -m ingestion              # pipeline scenarios
  pytest tests/unit/test_chunking.py
"""

from __future__ import annotations

import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any package imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("VECTOR_STORE_BACKEND",  "memory")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("REDIS_URL",             "")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")

from doc_ingest.core.exceptions import ExtractionError, StatusWriteError  # noqa: E402
from doc_ingest.core.retry import RetryPolicy  # noqa: E402
from doc_ingest.processing.embeddings import EmbeddingClient  # noqa: E402
from doc_ingest.processing.upserter import VectorUpserter  # noqa: E402
from doc_ingest.schemas.documents import (  # noqa: E402
    DocumentSource,
    DocumentState,
    ProcessingStatus,
)
from doc_ingest.services.pipeline import DocumentLocator, IngestionPipeline  # noqa: E402
from doc_ingest.services.status import StatusStore, StatusTracker  # noqa: E402
from doc_ingest.vectorstore.memory_store import InMemoryVectorIndex  # noqa: E402

TEST_DIMENSIONS = 8
DOC_ID   = "doc-1"
OWNER_ID = "user-1"


async def _no_sleep(_seconds: float) -> None:
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────────────────────

class FakeStatusStore(StatusStore):
    """Dict-backed status store that records every write."""

    def __init__(self) -> None:
        self.states: dict[str, DocumentState] = {}
        self.writes: list[dict] = []
        self.fail_writes = 0          # fail the next N writes
        self.fail_all = False

    def seed(self, document_id: str, status: ProcessingStatus = ProcessingStatus.PENDING,
             total_chunks: int | None = None) -> None:
        self.states[document_id] = DocumentState(
            document_id=document_id, processing_status=status, total_chunks=total_chunks,
        )

    async def read(self, document_id: str) -> DocumentState | None:
        return self.states.get(document_id)

    async def write(self, document_id, status, message, *, total_chunks=None, processed_chunks=None):
        if self.fail_all or self.fail_writes > 0:
            self.fail_writes = max(0, self.fail_writes - 1)
            raise StatusWriteError("database unavailable", document_id=document_id)

        self.writes.append({
            "document_id":      document_id,
            "status":           ProcessingStatus(status),
            "message":          message,
            "total_chunks":     total_chunks,
            "processed_chunks": processed_chunks,
        })
        current = self.states.get(document_id)
        self.states[document_id] = DocumentState(
            document_id=document_id,
            processing_status=ProcessingStatus(status),
            status_message=message,
            total_chunks=total_chunks if total_chunks is not None else (current.total_chunks if current else None),
            processed_chunks=processed_chunks if processed_chunks is not None else (current.processed_chunks if current else 0),
        )

    def terminal_writes(self, document_id: str = DOC_ID) -> list[dict]:
        return [
            w for w in self.writes
            if w["document_id"] == document_id and w["status"].is_terminal
        ]


class FakeLocator(DocumentLocator):
    def __init__(self) -> None:
        self.sources: dict[str, DocumentSource] = {}

    def add(self, document_id: str = DOC_ID, file_type: str = "text/plain",
            file_name: str = "notes.txt") -> DocumentSource:
        source = DocumentSource(
            document_id=document_id,
            file_url=f"https://blob.example.com/{document_id}/{file_name}",
            file_type=file_type,
            file_name=file_name,
            owner_id=OWNER_ID,
        )
        self.sources[document_id] = source
        return source

    async def locate(self, document_id: str) -> DocumentSource | None:
        return self.sources.get(document_id)


class FakeExtractor:
    """Returns a fixed text (or raises) and counts calls."""

    def __init__(self, text: str = "") -> None:
        self.text = text
        self.error: Exception | None = None
        self.calls: list[tuple[str, str | None]] = []

    async def extract(self, file_url: str, file_type: str | None = None) -> str:
        self.calls.append((file_url, file_type))
        if self.error is not None:
            raise self.error
        if not self.text.strip():
            raise ExtractionError(
                "No extractable text found in document. It may be image-based or scanned."
            )
        return self.text


def fake_embedding_response(text: str, dims: int = TEST_DIMENSIONS) -> SimpleNamespace:
    """Deterministic vector derived from the input text."""
    seed = float(len(text) % 97)
    return SimpleNamespace(data=[SimpleNamespace(embedding=[seed + i for i in range(dims)])])


def make_openai_mock(fail_on: set[str] | None = None, dims: int | None = None) -> MagicMock:
    """
    AsyncOpenAI stand-in; raises ValueError for any input listed in fail_on.

    Vectors have the requested number of dimensions unless `dims` pins a
    fixed length (a model that ignores the dimensions parameter).
    """
    fail_on = fail_on or set()

    async def _create(*, model, input, dimensions=None):
        if input in fail_on:
            raise ValueError("invalid input")
        return fake_embedding_response(input, dims or dimensions or TEST_DIMENSIONS)

    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=_create)
    client.close = AsyncMock()
    return client


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Three attempts, no waiting."""
    return RetryPolicy(max_attempts=3, backoff=lambda attempt: 0.0, sleep=_no_sleep)


@pytest.fixture
def status_store() -> FakeStatusStore:
    return FakeStatusStore()


@pytest.fixture
def locator() -> FakeLocator:
    return FakeLocator()


@pytest.fixture
def vector_index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex()


@pytest.fixture
def openai_mock() -> MagicMock:
    return make_openai_mock()


@pytest.fixture
def make_openai():
    """Factory for AsyncOpenAI stand-ins: make_openai(fail_on={...}, dims=...)."""
    return make_openai_mock


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def make_pipeline(status_store, locator, vector_index, extractor, fast_retry):
    """Factory: build an IngestionPipeline wired to the in-process fakes."""
    def _build(openai_client=None, index=None, lease=None, batch_size=5, **kwargs):
        embedder = EmbeddingClient(
            client=openai_client if openai_client is not None else make_openai_mock(),
            dimensions=TEST_DIMENSIONS,
            retry_policy=fast_retry,
            timeout=None,
        )
        return IngestionPipeline(
            locator=locator,
            extractor=extractor,
            embedder=embedder,
            upserter=VectorUpserter(index if index is not None else vector_index, retry_policy=fast_retry, timeout=None),
            tracker=StatusTracker(status_store, retry_policy=fast_retry, timeout=None),
            lease=lease,
            batch_size=batch_size,
            batch_delay=0.0,
            sleep=_no_sleep,
            **kwargs,
        )
    return _build


@pytest.fixture
async def db_factory():
    """In-memory SQLite database with the documents table; yields a session factory."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool

    from doc_ingest.models.documents import Base

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
