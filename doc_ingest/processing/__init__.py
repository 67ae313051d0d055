"""
Document Processing Package
════════════════════════════

The per-document stages run by the ingestion pipeline:

  Text Extraction → Chunking → Embedding → Vector Upsert

Modules
───────
  extractor.py  URL → text (direct fetch for text/markdown, extraction service otherwise)
  chunking.py   Deterministic boundary-aware chunker with overlap
  embeddings.py One embedding call per chunk, bounded fan-out per batch
  upserter.py   Retried batch upsert + read-back verification

Design principles
─────────────────
  • Every component is stateless and dependency-injected.
  • Every external call goes through core.retry.RetryPolicy.
  • Every step emits pipe-delimited log lines.
"""

from doc_ingest.processing.chunking import Chunk, build_chunks, chunk_text, normalize_text
from doc_ingest.processing.embeddings import EmbeddingBatchResult, EmbeddingClient
from doc_ingest.processing.extractor import TextExtractor
from doc_ingest.processing.upserter import VectorUpserter

__all__ = [
    "Chunk",
    "build_chunks",
    "chunk_text",
    "normalize_text",
    "EmbeddingBatchResult",
    "EmbeddingClient",
    "TextExtractor",
    "VectorUpserter",
]
