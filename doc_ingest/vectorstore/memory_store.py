"""In-process vector index for local runs and tests (VECTOR_STORE_BACKEND=memory)."""

from __future__ import annotations

import asyncio
import copy

from doc_ingest.vectorstore.base import VectorIndex, VectorRecord


class InMemoryVectorIndex(VectorIndex):
    """
    Dict-backed index with the same overwrite-by-id semantics as Pinecone.

    Counts calls per operation so tests can assert on traffic.
    """

    def __init__(self) -> None:
        self._vectors: dict[str, VectorRecord] = {}
        self._lock = asyncio.Lock()
        self.calls: dict[str, int] = {"upsert": 0, "fetch": 0, "delete": 0}

    async def upsert(self, records: list[VectorRecord]) -> int:
        self.calls["upsert"] += 1
        async with self._lock:
            for rec in records:
                self._vectors[rec.id] = copy.deepcopy(rec)
        return len(records)

    async def fetch(self, ids: list[str]) -> dict[str, VectorRecord]:
        self.calls["fetch"] += 1
        return {i: copy.deepcopy(self._vectors[i]) for i in ids if i in self._vectors}

    async def delete(self, ids: list[str]) -> None:
        self.calls["delete"] += 1
        async with self._lock:
            for i in ids:
                self._vectors.pop(i, None)

    # ------------------------------------------------------------------
    # Inspection helpers
    # ------------------------------------------------------------------

    def ids(self) -> set[str]:
        return set(self._vectors)

    def get(self, vector_id: str) -> VectorRecord | None:
        return self._vectors.get(vector_id)

    def __len__(self) -> int:
        return len(self._vectors)
