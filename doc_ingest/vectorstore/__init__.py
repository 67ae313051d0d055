from doc_ingest.vectorstore.base import VectorIndex, VectorRecord
from doc_ingest.vectorstore.factory import get_vector_index

__all__ = ["VectorIndex", "VectorRecord", "get_vector_index"]
