"""
Boundary-Aware Chunker  —  Overlapping Character Windows
══════════════════════════════════════════════════════════

Algorithm
─────────
  1. Walk the text in windows of `size` characters.
  2. If the remaining text fits in one window, emit it and stop.
  3. Otherwise search backward from the window's right edge for the nearest
     boundary, trying each kind in preference order:
         "\\n\\n"  paragraph break
         "! "    exclamation
         "? "    question
         ". "    sentence end
     The first kind found inside the window wins; cut just after it.
     No boundary → cut at the raw window edge.
  4. The next window starts `overlap` characters before the cut. If that
     would not move past the current start, the next window starts at the
     cut instead (no overlap, but guaranteed forward progress).

Guarantees
──────────
  - Pure and deterministic: same text + same (size, overlap) → same chunks.
    Vector ids are derived from chunk positions, so this is what keeps
    re-processing idempotent.
  - Every chunk is at most `size` characters.
  - No gaps: each window starts at or before the previous cut.
  - Non-empty text → at least one chunk; empty text → zero chunks.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass

from doc_ingest.core.exceptions import ChunkingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE    = 1000
DEFAULT_CHUNK_OVERLAP = 200

# Preference order: earlier entries win
BOUNDARIES: tuple[str, ...] = ("\n\n", "! ", "? ", ". ")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Chunk:
    """
    One chunk of a document, the unit of embedding and indexing.

    chunk_index is zero-based and dense over [0, total_chunks).
    """
    document_id: str
    chunk_index: int
    text:        str

    @property
    def vector_id(self) -> str:
        return make_vector_id(self.document_id, self.chunk_index)


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

def chunk_text(
    text:    str,
    size:    int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[str]:
    """Split *text* into overlapping, boundary-aligned chunks of at most *size* chars."""
    _validate_params(size, overlap)

    chunks: list[str] = []
    start = 0
    length = len(text)

    while start < length:
        if length - start <= size:
            chunks.append(text[start:])
            break

        end = start + size
        cut = _find_cut(text, start, end)
        chunks.append(text[start:cut])

        next_start = cut - overlap
        start = next_start if next_start > start else cut

    return chunks


def build_chunks(
    document_id: str,
    text:        str,
    size:        int = DEFAULT_CHUNK_SIZE,
    overlap:     int = DEFAULT_CHUNK_OVERLAP,
) -> list[Chunk]:
    """Chunk *text* and attach zero-based indices + deterministic vector ids."""
    pieces = chunk_text(text, size=size, overlap=overlap)
    logger.debug(
        "Chunked | doc=%s chars=%d chunks=%d size=%d overlap=%d",
        document_id, len(text), len(pieces), size, overlap,
    )
    return [
        Chunk(document_id=document_id, chunk_index=i, text=piece)
        for i, piece in enumerate(pieces)
    ]


def _find_cut(text: str, start: int, end: int) -> int:
    """Return the cut position for window [start, end)."""
    for boundary in BOUNDARIES:
        # the boundary must start after `start` and end within the window
        pos = text.rfind(boundary, start + 1, end)
        if pos != -1:
            return pos + len(boundary)
    return end


def _validate_params(size: int, overlap: int) -> None:
    if size <= 0:
        raise ChunkingError(f"chunk size must be positive, got {size}")
    if overlap < 0:
        raise ChunkingError(f"chunk overlap must be non-negative, got {overlap}")
    if overlap >= size:
        raise ChunkingError(f"chunk overlap ({overlap}) must be smaller than size ({size})")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_text(text: str) -> str:
    """
    Normalize Unicode, strip invisible characters, collapse excess blank lines.
    Preserves paragraph breaks (double newlines).
    """
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[\u00a0\u200b\u200c\u200d\ufeff]", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    lines = [line.rstrip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def make_vector_id(document_id: str, chunk_index: int) -> str:
    """
    Deterministic vector id: "{document_id}_chunk_{chunk_index}".
    Re-processing the same document overwrites the same ids instead of
    adding duplicates, and a document's vectors can be enumerated from
    its chunk count alone.
    """
    return f"{document_id}_chunk_{chunk_index}"
