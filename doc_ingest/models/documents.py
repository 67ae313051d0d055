"""
SQLAlchemy ORM Models — Documents

The document row is created by the external upload flow (status=pending)
and mutated by this worker only through the StatusTracker. This core never
deletes it.

Column names are the camelCase names polled by the status/progress endpoints:
processingStatus, statusMessage, totalChunks, processedChunks.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from registration → chunking → vector indexing.

    State machine (processingStatus column):
        pending    — registered by the upload flow, not yet picked up
        processing — worker actively extracting / chunking / embedding
        completed  — every chunk indexed and verified
        failed     — unrecoverable error or partial indexing (see statusMessage)
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "\"processingStatus\" IN ('pending', 'processing', 'completed', 'failed')",
            name="documents_processing_status_check",
        ),
        Index("documents_userId_idx", "userId"),
        Index("documents_status_idx", "processingStatus"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)

    owner_id: Mapped[str] = mapped_column("userId", Text, nullable=False)

    # Blob store reference
    source_url: Mapped[str] = mapped_column(
        "blobUrl",
        Text,
        nullable=False,
        comment="URL of the stored file, readable by the extraction service",
    )
    file_name: Mapped[str] = mapped_column("fileName", Text, nullable=False)
    file_type: Mapped[str] = mapped_column(
        "fileType",
        Text,
        nullable=False,
        comment="MIME type recorded at upload",
    )

    # Ingestion state machine
    processing_status: Mapped[str] = mapped_column(
        "processingStatus",
        Text,
        nullable=False,
        default="pending",
        server_default="pending",
    )
    status_message: Mapped[Optional[str]] = mapped_column("statusMessage", Text, nullable=True)

    # Progress counters, updated per processing batch
    total_chunks: Mapped[Optional[int]] = mapped_column("totalChunks", Integer, nullable=True)
    processed_chunks: Mapped[int] = mapped_column(
        "processedChunks", Integer, nullable=False, default=0, server_default="0",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        "createdAt",
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        "updatedAt",
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} owner={self.owner_id} "
            f"status={self.processing_status} file={self.file_name!r}>"
        )
