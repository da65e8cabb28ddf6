"""
Vector Index Client
═══════════════════

  filters.py         tagged filter conditions, dict parser, clause compiler
  base.py            VectorStoreBase contract, ids, shared helpers
  weaviate_store.py  Weaviate v4 backend (default)
  pinecone_store.py  Pinecone backend
  factory.py         backend selection from settings
"""

from docsim.vectorstore.base import (
    SearchHit,
    VectorRecord,
    VectorStoreBase,
    point_id,
    vector_id_for,
)
from docsim.vectorstore.filters import Eq, In, NotEq, Range, compile_filter, parse_filter

__all__ = [
    "Eq",
    "In",
    "NotEq",
    "Range",
    "SearchHit",
    "VectorRecord",
    "VectorStoreBase",
    "compile_filter",
    "parse_filter",
    "point_id",
    "vector_id_for",
]
