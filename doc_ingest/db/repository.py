"""
SQL-backed storage locator + status store.

SqlDocumentRepository is the production implementation of both worker-side
ports over the `documents` table:

  locate(document_id)  → DocumentSource | None     (read-only)
  read(document_id)    → DocumentState | None
  write(document_id, status, message, ...)         (raises StatusWriteError)

plus the queries used by the maintenance tasks: stale pending documents,
abandoned processing documents, and the failed → pending reset behind an
explicit retry.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from doc_ingest.core.exceptions import StatusWriteError
from doc_ingest.db.session import get_session_factory, session_scope
from doc_ingest.models.documents import Document
from doc_ingest.schemas.documents import DocumentSource, DocumentState, ProcessingStatus
from doc_ingest.services.pipeline import DocumentLocator
from doc_ingest.services.status import StatusStore

logger = logging.getLogger(__name__)


class SqlDocumentRepository(DocumentLocator, StatusStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._factory = session_factory

    def _session(self):
        return session_scope(self._factory or get_session_factory())

    # ------------------------------------------------------------------
    # Storage locator
    # ------------------------------------------------------------------

    async def locate(self, document_id: str) -> DocumentSource | None:
        async with self._session() as session:
            doc = await session.get(Document, document_id)
            if doc is None:
                return None
            return DocumentSource(
                document_id=doc.id,
                file_url=doc.source_url or "",
                file_type=doc.file_type or "",
                file_name=doc.file_name or "",
                owner_id=doc.owner_id,
            )

    # ------------------------------------------------------------------
    # Status store
    # ------------------------------------------------------------------

    async def read(self, document_id: str) -> DocumentState | None:
        async with self._session() as session:
            doc = await session.get(Document, document_id)
            if doc is None:
                return None
            return DocumentState(
                document_id=doc.id,
                processing_status=ProcessingStatus(doc.processing_status),
                status_message=doc.status_message,
                total_chunks=doc.total_chunks,
                processed_chunks=doc.processed_chunks or 0,
            )

    async def write(
        self,
        document_id:      str,
        status:           ProcessingStatus,
        message:          str,
        *,
        total_chunks:     int | None = None,
        processed_chunks: int | None = None,
    ) -> None:
        values: dict = {
            "processing_status": ProcessingStatus(status).value,
            "status_message":    message,
            "updated_at":        func.now(),
        }
        if total_chunks is not None:
            values["total_chunks"] = total_chunks
        if processed_chunks is not None:
            values["processed_chunks"] = processed_chunks

        try:
            async with self._session() as session:
                result = await session.execute(
                    update(Document).where(Document.id == document_id).values(**values)
                )
                if result.rowcount == 0:
                    raise StatusWriteError(
                        f"Document {document_id} not found", document_id=document_id,
                    )
        except SQLAlchemyError as exc:
            raise StatusWriteError(
                f"Status update failed: {type(exc).__name__}: {exc}",
                document_id=document_id,
                original=exc,
            ) from exc

    # ------------------------------------------------------------------
    # Maintenance queries
    # ------------------------------------------------------------------

    async def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[DocumentSource]:
        """Documents still pending whose last update is before *older_than*."""
        return await self._list_stale(ProcessingStatus.PENDING, older_than, limit)

    async def list_stale_processing(self, older_than: datetime, limit: int = 100) -> list[DocumentSource]:
        """
        Documents left in processing with no status write since *older_than*.

        A live job writes progress after every batch and is killed at the hard
        time limit, so a cutoff at least that old only matches abandoned runs.
        """
        return await self._list_stale(ProcessingStatus.PROCESSING, older_than, limit)

    async def _list_stale(
        self, status: ProcessingStatus, older_than: datetime, limit: int,
    ) -> list[DocumentSource]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(Document)
                    .where(
                        Document.processing_status == status.value,
                        Document.updated_at < older_than,
                    )
                    .order_by(Document.updated_at)
                    .limit(limit)
                )
            ).scalars().all()
            return [
                DocumentSource(
                    document_id=doc.id,
                    file_url=doc.source_url or "",
                    file_type=doc.file_type or "",
                    file_name=doc.file_name or "",
                    owner_id=doc.owner_id,
                )
                for doc in rows
            ]

    async def reset_to_pending(self, document_id: str) -> bool:
        """failed → pending; False if the document is missing or not failed."""
        async with self._session() as session:
            result = await session.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.processing_status == ProcessingStatus.FAILED.value,
                )
                .values(
                    processing_status=ProcessingStatus.PENDING.value,
                    status_message="Queued for retry",
                    processed_chunks=0,
                    updated_at=func.now(),
                )
            )
            reset = result.rowcount > 0
        logger.info("Reset to pending | doc=%s reset=%s", document_id, reset)
        return reset
