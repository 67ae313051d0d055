"""
Pinecone Vector Index

Architecture:
  One shared Pinecone index. Vectors optionally go to a configured
  namespace (PINECONE_NAMESPACE); empty means the default namespace.
  Namespace creation is implicit — Pinecone creates it on first upsert.

The Pinecone client is synchronous, so every call is pushed to a worker
thread with asyncio.to_thread() to keep the event loop free while the
embedding fan-out of the next batch is pending.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from pinecone import Pinecone

from doc_ingest.core.exceptions import VectorIndexError
from doc_ingest.vectorstore.base import VectorIndex, VectorRecord

logger = logging.getLogger(__name__)


class PineconeVectorIndex(VectorIndex):
    """
    Pinecone-backed index.

    `index` may be injected (any object with upsert/fetch/delete taking
    Pinecone's keyword arguments); otherwise it is opened from the api key
    and index name.
    """

    def __init__(
        self,
        api_key:    str = "",
        index_name: str = "",
        namespace:  str = "",
        index:      Any = None,
    ) -> None:
        self._index_name = index_name
        self._namespace  = namespace
        if index is None:
            pc    = Pinecone(api_key=api_key)
            index = pc.Index(index_name)
        self._index = index

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upsert(self, records: list[VectorRecord]) -> int:
        if not records:
            return 0

        vectors = [
            {"id": rec.id, "values": rec.values, "metadata": rec.metadata}
            for rec in records
        ]
        await self._call("upsert", lambda: self._index.upsert(vectors=vectors, **self._ns()))
        logger.debug(
            "Pinecone upsert | index=%s namespace=%s count=%d",
            self._index_name, self._namespace or "-", len(vectors),
        )
        return len(vectors)

    async def fetch(self, ids: list[str]) -> dict[str, VectorRecord]:
        if not ids:
            return {}

        resp = await self._call("fetch", lambda: self._index.fetch(ids=ids, **self._ns()))
        vectors = getattr(resp, "vectors", None)
        if vectors is None and isinstance(resp, dict):
            vectors = resp.get("vectors", {})

        found: dict[str, VectorRecord] = {}
        for vec_id, vec in (vectors or {}).items():
            values   = _field(vec, "values") or []
            metadata = _field(vec, "metadata") or {}
            found[vec_id] = VectorRecord(id=vec_id, values=list(values), metadata=dict(metadata))
        return found

    async def delete(self, ids: list[str]) -> None:
        if not ids:
            return
        await self._call("delete", lambda: self._index.delete(ids=ids, **self._ns()))
        logger.info(
            "Pinecone delete | index=%s namespace=%s count=%d",
            self._index_name, self._namespace or "-", len(ids),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ns(self) -> dict:
        return {"namespace": self._namespace} if self._namespace else {}

    async def _call(self, op: str, fn: Callable[[], Any]) -> Any:
        # A caller-side timeout (RetryPolicy.timeout) abandons the await but not
        # the thread: a timed-out upsert may still land after its retry started.
        # Both attempts carry the same ids and values, and the index overwrites
        # by id, so the overlap converges to one record per id.
        try:
            return await asyncio.to_thread(fn)
        except Exception as exc:
            raise VectorIndexError(
                f"Pinecone {op} failed: {type(exc).__name__}: {exc}", original=exc,
            ) from exc


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)
