"""
Vector Index Factory

Selects the backend (pinecone | memory) based on config.
The pipeline factory only calls get_vector_index() — it never touches
the concrete classes directly.
"""

from __future__ import annotations

from doc_ingest.core.config import Settings, settings as default_settings
from doc_ingest.vectorstore.base import VectorIndex


def get_vector_index(settings: Settings | None = None) -> VectorIndex:
    """Return the vector index for the configured backend."""
    settings = settings or default_settings
    backend = settings.vector_store_backend.lower()

    if backend == "pinecone":
        from doc_ingest.vectorstore.pinecone_store import PineconeVectorIndex
        return PineconeVectorIndex(
            api_key=settings.pinecone_api_key,
            index_name=settings.pinecone_index_name,
            namespace=settings.pinecone_namespace,
        )

    if backend == "memory":
        from doc_ingest.vectorstore.memory_store import InMemoryVectorIndex
        return InMemoryVectorIndex()

    raise ValueError(
        f"Unknown vector store backend: '{backend}'. "
        f"Valid options: 'pinecone', 'memory'"
    )
