"""Document ingestion worker: extract, chunk, embed and index uploaded documents."""

__version__ = "0.1.0"
