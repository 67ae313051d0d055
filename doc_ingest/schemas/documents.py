"""
Document Ingestion — Pydantic Schemas

Covers the worker-side contracts:
  - JobPayload: the message delivered (at-least-once) by the dispatch transport
  - DocumentSource: what the storage locator resolves a documentId to
  - DocumentState: the persisted status shape that external progress
    endpoints poll
  - JobOutcome: structured result of one handle_job() run

Design decisions:
  - Field names are snake_case in Python; the camelCase wire names used by the
    upload flow and the status endpoints are accepted/emitted via aliases.
  - JobPayload carries no file URL: the URL is always re-resolved from the
    document record, so a redelivered message can never point at stale data.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to documents.processingStatus.
    Transitions: pending → processing → completed | failed
    """
    PENDING     = "pending"      # registered, not yet picked up by a worker
    PROCESSING  = "processing"   # worker actively extracting + embedding
    COMPLETED   = "completed"    # all chunks indexed and verified
    FAILED      = "failed"       # unrecoverable or partial failure

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)


# ---------------------------------------------------------------------------
# Job payload — delivered by the queue transport
# ---------------------------------------------------------------------------

class JobPayload(BaseModel):
    """{documentId, ownerId, fileExtension} — safe to deliver more than once."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    document_id:    str = Field(..., alias="documentId", min_length=1)
    owner_id:       str = Field(..., alias="ownerId", min_length=1)
    file_extension: str = Field("", alias="fileExtension")

    @field_validator("file_extension")
    @classmethod
    def _normalize_extension(cls, v: str) -> str:
        return v.strip().lower().lstrip(".")


# ---------------------------------------------------------------------------
# Storage locator result
# ---------------------------------------------------------------------------

class DocumentSource(BaseModel):
    document_id: str
    file_url:    str
    file_type:   str
    file_name:   str
    owner_id:    str


# ---------------------------------------------------------------------------
# Persisted status shape
# ---------------------------------------------------------------------------

class DocumentState(BaseModel):
    """Status fields of one document record, as read back from the status store."""

    model_config = ConfigDict(populate_by_name=True)

    document_id:       str              = Field(..., alias="documentId")
    processing_status: ProcessingStatus = Field(..., alias="processingStatus")
    status_message:    str | None       = Field(None, alias="statusMessage")
    total_chunks:      int | None       = Field(None, alias="totalChunks")
    processed_chunks:  int              = Field(0, alias="processedChunks")


# ---------------------------------------------------------------------------
# Job outcome — returned from IngestionPipeline.handle_job()
# ---------------------------------------------------------------------------

class JobOutcome(BaseModel):
    document_id:                  str
    status:                       str    # completed | failed | skipped
    message:                      str
    total_chunks:                 int  = 0
    total_chunks_processed:       int  = 0
    successfully_upserted_chunks: int  = 0
    failed_upsert_batches:        int  = 0
    failed_embedding_chunks:      int  = 0
    verified:                     bool = False
    status_written:               bool = False

    @property
    def ok(self) -> bool:
        return self.status == ProcessingStatus.COMPLETED.value
