"""
Embedding Client  —  One Vector per Chunk, Bounded Fan-out
═══════════════════════════════════════════════════════════

Design goals:
  • Chunk isolation: one provider call per chunk, so a bad chunk never takes
    its siblings down with it
  • Bounded concurrency: chunks in one processing batch are embedded together,
    at most `concurrency` requests in flight
  • Retry: transient errors (timeouts, connection drops, 429, 5xx) go through
    the shared RetryPolicy; auth / bad-request errors fail immediately
  • Strict dimension: a vector whose length is not `dimensions` is an error,
    never silently truncated or padded

OpenAI embedding model selection:
  text-embedding-3-small  → 1536 dims
  text-embedding-3-large  → 3072 dims  (default)

Input limit:
  The model accepts 8191 tokens per input. Inputs are cut to
  MAX_INPUT_CHARS characters first, which stays under that for normal prose.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Sequence

from openai import AsyncOpenAI

from doc_ingest.core.exceptions import EmbeddingError
from doc_ingest.core.retry import RetryPolicy, is_transient
from doc_ingest.observability.tracing import traced
from doc_ingest.processing.chunking import Chunk

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_MODEL       = "text-embedding-3-large"
DEFAULT_DIMENSIONS  = 3072
DEFAULT_CONCURRENCY = 5
MAX_INPUT_CHARS     = 30_000


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingBatchResult:
    """
    Output of embed_batch() for one processing batch.

    embedded : (chunk, vector) pairs, in chunk order
    failed   : (chunk, error) pairs for chunks that were skipped
    """
    embedded: list[tuple[Chunk, list[float]]]   = field(default_factory=list)
    failed:   list[tuple[Chunk, EmbeddingError]] = field(default_factory=list)

    @property
    def first_error(self) -> EmbeddingError | None:
        return self.failed[0][1] if self.failed else None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class EmbeddingClient:
    """
    Thin wrapper around openai.AsyncOpenAI embeddings.

    Usage:
        client = EmbeddingClient(AsyncOpenAI(api_key=...), dimensions=3072)
        vector = await client.embed("some chunk text")
        result = await client.embed_batch(chunks)
    """

    def __init__(
        self,
        client:       AsyncOpenAI | None = None,
        model:        str   = DEFAULT_MODEL,
        dimensions:   int   = DEFAULT_DIMENSIONS,
        api_key:      str   = "",
        timeout:      float = 30.0,
        retry_policy: RetryPolicy | None = None,
        concurrency:  int   = DEFAULT_CONCURRENCY,
    ) -> None:
        self._client      = client or AsyncOpenAI(api_key=api_key)
        self._model       = model
        self._dimensions  = dimensions
        self._concurrency = max(1, concurrency)
        self._retry = (
            (retry_policy or RetryPolicy())
            .with_retry_on(is_transient)
            .with_timeout(timeout)
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def aclose(self) -> None:
        await self._client.close()

    # ------------------------------------------------------------------
    # Single text
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        """Return one embedding of exactly `dimensions` floats; raise EmbeddingError otherwise."""
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")

        payload = text[:MAX_INPUT_CHARS]
        if len(text) > MAX_INPUT_CHARS:
            logger.debug("Embedding input truncated | chars=%d max=%d", len(text), MAX_INPUT_CHARS)

        try:
            response = await self._retry.run(
                lambda: self._client.embeddings.create(
                    model=self._model,
                    input=payload,
                    dimensions=self._dimensions,
                ),
                label="embed",
            )
        except Exception as exc:
            raise EmbeddingError(
                f"{type(exc).__name__}: {exc}", original=exc,
            ) from exc

        if not response.data:
            raise EmbeddingError("Embedding provider returned no data")

        vector = list(response.data[0].embedding)
        if len(vector) != self._dimensions:
            raise EmbeddingError(
                f"Embedding dimension mismatch: expected {self._dimensions}, got {len(vector)}"
            )
        return vector

    # ------------------------------------------------------------------
    # Processing batch
    # ------------------------------------------------------------------

    @traced("embed_batch")
    async def embed_batch(self, chunks: Sequence[Chunk]) -> EmbeddingBatchResult:
        """
        Embed every chunk of one processing batch concurrently.

        A failing chunk lands in `failed`; the others still complete.
        """
        if not chunks:
            return EmbeddingBatchResult()

        t0 = time.monotonic()
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _one(chunk: Chunk) -> tuple[Chunk, list[float] | EmbeddingError]:
            async with semaphore:
                try:
                    return chunk, await self.embed(chunk.text)
                except EmbeddingError as exc:
                    exc.chunk_index = chunk.chunk_index
                    exc.document_id = chunk.document_id
                    logger.error(
                        "Embedding failed | doc=%s chunk=%d error=%s",
                        chunk.document_id, chunk.chunk_index, exc.message,
                    )
                    return chunk, exc
                except Exception as exc:
                    logger.error(
                        "Embedding failed unexpectedly | doc=%s chunk=%d",
                        chunk.document_id, chunk.chunk_index, exc_info=True,
                    )
                    return chunk, EmbeddingError(
                        f"{type(exc).__name__}: {exc}",
                        chunk_index=chunk.chunk_index,
                        document_id=chunk.document_id,
                        original=exc,
                    )

        outcomes = await asyncio.gather(*(_one(c) for c in chunks))

        result = EmbeddingBatchResult()
        for chunk, value in outcomes:
            if isinstance(value, EmbeddingError):
                result.failed.append((chunk, value))
            else:
                result.embedded.append((chunk, value))

        logger.info(
            "Embedded batch | doc=%s chunks=%d ok=%d failed=%d elapsed_ms=%.0f",
            chunks[0].document_id, len(chunks), len(result.embedded),
            len(result.failed), (time.monotonic() - t0) * 1000,
        )
        return result
