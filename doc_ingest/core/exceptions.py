"""
Ingestion Error Taxonomy

Scope of each error decides how far it propagates:

  ExtractionError   — job-fatal: no text, nothing to chunk
  ChunkingError     — job-fatal: no chunks from non-empty text, or bad params
  EmbeddingError    — chunk-scoped: the chunk is skipped, siblings continue
  VectorIndexError  — batch-scoped: retried, then counted as a failed batch
  VerificationError — downgrades an otherwise successful run to failed
  StatusWriteError  — logged by the StatusTracker, never raised to the pipeline
  LeaseError        — lease backend unreachable; pipeline proceeds unleased
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for every error raised by the ingestion pipeline."""

    def __init__(
        self,
        message: str,
        *,
        document_id: str | None = None,
        original: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message     = message
        self.document_id = document_id
        self.original    = original

    def to_dict(self) -> dict:
        return {
            "error":       type(self).__name__,
            "message":     self.message,
            "document_id": self.document_id,
            "original":    repr(self.original) if self.original else None,
        }


class ExtractionError(IngestionError):
    pass


class ChunkingError(IngestionError):
    pass


class EmbeddingError(IngestionError):
    """Raised for a single chunk; carries the chunk index when known."""

    def __init__(
        self,
        message: str,
        *,
        chunk_index: int | None = None,
        document_id: str | None = None,
        original: BaseException | None = None,
    ) -> None:
        super().__init__(message, document_id=document_id, original=original)
        self.chunk_index = chunk_index


class VectorIndexError(IngestionError):
    pass


class VerificationError(IngestionError):
    pass


class StatusWriteError(IngestionError):
    pass


class LeaseError(IngestionError):
    pass
