"""
Status Tracker — the document state machine, as seen by the status store

The tracker is the only component that writes processingStatus /
statusMessage / totalChunks / processedChunks. Writes are retried
(linear backoff) and never raise: a status store outage must not turn a
successfully indexed document into a crashed job. A write that is lost
after every attempt is logged at ERROR and reported as False.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from doc_ingest.core.retry import RetryPolicy
from doc_ingest.schemas.documents import DocumentState, ProcessingStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Status store port
# ---------------------------------------------------------------------------

class StatusStore(ABC):
    """Persistence behind the tracker (SqlDocumentRepository in production)."""

    @abstractmethod
    async def read(self, document_id: str) -> DocumentState | None:
        """Return the stored state, or None when the document is unknown."""

    @abstractmethod
    async def write(
        self,
        document_id:      str,
        status:           ProcessingStatus,
        message:          str,
        *,
        total_chunks:     int | None = None,
        processed_chunks: int | None = None,
    ) -> None:
        """Persist one status update. Raises StatusWriteError on failure."""


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class StatusTracker:
    def __init__(
        self,
        store:        StatusStore,
        retry_policy: RetryPolicy | None = None,
        timeout:      float | None = 10.0,
    ) -> None:
        self._store = store
        self._retry = (retry_policy or RetryPolicy()).with_timeout(timeout)

    async def set_status(
        self,
        document_id:      str,
        status:           ProcessingStatus,
        message:          str,
        *,
        total_chunks:     int | None = None,
        processed_chunks: int | None = None,
    ) -> bool:
        """Write one status update; True if it landed, False after all attempts failed."""
        try:
            await self._retry.run(
                lambda: self._store.write(
                    document_id,
                    status,
                    message,
                    total_chunks=total_chunks,
                    processed_chunks=processed_chunks,
                ),
                label=f"status doc={document_id} status={ProcessingStatus(status).value}",
            )
        except Exception:
            logger.error(
                "Status update lost | doc=%s status=%s message=%r",
                document_id, ProcessingStatus(status).value, message, exc_info=True,
            )
            return False

        logger.info(
            "Status | doc=%s status=%s total=%s processed=%s message=%r",
            document_id, ProcessingStatus(status).value, total_chunks, processed_chunks, message,
        )
        return True

    async def read(self, document_id: str) -> DocumentState | None:
        try:
            return await self._store.read(document_id)
        except Exception as exc:
            logger.warning("Status read failed | doc=%s error=%s", document_id, exc)
            return None
