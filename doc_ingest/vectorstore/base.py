"""
Vector Index — Abstract Base

Every concrete backend (Pinecone, in-memory) implements this interface.
The ingestion pipeline only speaks this protocol, so backends are
swappable without touching the upserter or the orchestrator.

Contract (enforced by ALL implementations):
  - upsert overwrites by id: writing the same id twice keeps the latest
    values + metadata, never a duplicate.
  - fetch returns only the ids that exist; missing ids are simply absent.
  - delete of an unknown id is a no-op.
  - Backend failures surface as VectorIndexError.
  - There is no query operation here; retrieval lives outside ingestion.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A single embedding record to upsert into the index."""
    id:        str              # deterministic: "{documentId}_chunk_{chunkIndex}"
    values:    list[float]      # embedding, exactly D floats
    metadata:  dict = field(default_factory=dict)
    # Fields inside metadata:
    # - documentId: str
    # - chunkIndex: int         (zero-based)
    # - totalChunks: int
    # - sourceName: str
    # - ownerId: str
    # - text: str               (the raw chunk text)
    # - timestamp: str          (ISO-8601, time of indexing)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorIndex(ABC):
    """Write-side vector index interface used by the ingestion pipeline."""

    @abstractmethod
    async def upsert(self, records: list[VectorRecord]) -> int:
        """Insert or overwrite records. Returns the number of vectors written."""

    @abstractmethod
    async def fetch(self, ids: list[str]) -> dict[str, VectorRecord]:
        """Return the stored records for the ids that exist, keyed by id."""

    @abstractmethod
    async def delete(self, ids: list[str]) -> None:
        """Delete vectors by id. Unknown ids are ignored."""
