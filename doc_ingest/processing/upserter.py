"""
Vector Upserter  —  retried batch writes + read-back verification

One processing batch = one upsert call. A batch that still fails after
the last attempt is reported as False; the orchestrator counts it as a
failed batch and moves on to the next one.
"""

from __future__ import annotations

import logging

from doc_ingest.core.exceptions import VectorIndexError
from doc_ingest.core.retry import RetryPolicy
from doc_ingest.observability.tracing import traced
from doc_ingest.vectorstore.base import VectorIndex, VectorRecord

logger = logging.getLogger(__name__)


class VectorUpserter:
    """
    Usage:
        upserter = VectorUpserter(index, RetryPolicy(max_attempts=3), timeout=30)
        ok = await upserter.upsert(records)
        if not ok:
            print(upserter.last_error)
    """

    def __init__(
        self,
        index:        VectorIndex,
        retry_policy: RetryPolicy | None = None,
        timeout:      float | None = 30.0,
    ) -> None:
        self._index = index
        self._retry = (retry_policy or RetryPolicy()).with_timeout(timeout)
        # error of the most recent failed upsert/fetch, for the status message
        self.last_error: VectorIndexError | None = None

    @traced("upsert")
    async def upsert(self, records: list[VectorRecord]) -> bool:
        """Write *records*; True on success, False once every attempt has failed."""
        if not records:
            return True

        first_id = records[0].id
        try:
            await self._retry.run(
                lambda: self._index.upsert(records),
                label=f"upsert first_id={first_id} size={len(records)}",
            )
        except Exception as exc:
            self.last_error = _as_index_error(exc)
            logger.error(
                "Upsert batch failed | first_id=%s size=%d error=%s",
                first_id, len(records), self.last_error.message, exc_info=True,
            )
            return False

        logger.debug("Upsert batch ok | first_id=%s size=%d", first_id, len(records))
        return True

    async def fetch_one(self, vector_id: str) -> bool:
        """True if *vector_id* is present in the index. Fetch errors count as absent."""
        try:
            found = await self._retry.run(
                lambda: self._index.fetch([vector_id]), label=f"fetch id={vector_id}",
            )
        except Exception as exc:
            self.last_error = _as_index_error(exc)
            logger.warning("Verification fetch failed | id=%s error=%s", vector_id, exc)
            return False
        return vector_id in found

    async def delete(self, ids: list[str]) -> bool:
        """Best-effort delete; never raises."""
        if not ids:
            return True
        try:
            await self._retry.run(lambda: self._index.delete(ids), label=f"delete count={len(ids)}")
        except Exception as exc:
            logger.warning("Delete failed | count=%d error=%s", len(ids), exc)
            return False
        return True


def _as_index_error(exc: Exception) -> VectorIndexError:
    if isinstance(exc, VectorIndexError):
        return exc
    return VectorIndexError(f"{type(exc).__name__}: {exc}", original=exc)
