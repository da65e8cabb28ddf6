"""
Vector Store — Abstract Base

Every concrete backend (Weaviate, Pinecone) implements this interface. The
pipeline, cleanup service and search engine only speak this protocol, so
backends are swappable without touching them.

Ids:
  vector id  "{document_id}_chunk_{chunk_index}"  (human-readable, stored in
             the payload as `vector_id`)
  point id   63-bit blake2b hash of the vector id, for stores that need
             numeric / UUID keys. Collisions need ~3e9 chunks before they
             become likely.

Payload contract (written by the pipeline, read by search):
  document_id, chunk_index, vector_id, page_number, start_page_number,
  end_page_number, text, character_count, filename, user_id, plus all
  business metadata of the document.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import numpy as np

from docsim.vectorstore.filters import Eq, FilterClauses, FilterExpr, compile_filter

logger = logging.getLogger(__name__)

# Max ids per delete call
DELETE_BATCH_SIZE = 1000

PageRange = tuple[int, int]


def vector_id_for(document_id: Any, chunk_index: int) -> str:
    return f"{document_id}_chunk_{chunk_index}"


def point_id(vector_id: str) -> int:
    """Deterministic positive 63-bit integer for a string id."""
    digest = hashlib.blake2b(vector_id.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFF_FFFF_FFFF_FFFF


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A single embedding record to upsert into the vector store."""
    id:      str               # vector id, see vector_id_for()
    vector:  list[float]
    payload: dict[str, Any]


@dataclass
class SearchHit:
    """One chunk returned by a search or fetch."""
    id:          str
    score:       float                 # cosine similarity; 1.0 for fetches
    document_id: str
    text:        str = ""
    payload:     dict[str, Any] = field(default_factory=dict)
    vector:      list[float] | None = None

    @property
    def chunk_index(self) -> int:
        return int(self.payload.get("chunk_index", 0))

    @property
    def page_number(self) -> int:
        return int(self.payload.get("page_number") or self.payload.get("start_page_number") or 1)

    @property
    def start_page(self) -> int:
        return int(self.payload.get("start_page_number") or self.page_number)

    @property
    def end_page(self) -> int:
        return int(self.payload.get("end_page_number") or self.start_page)

    @property
    def character_count(self) -> int:
        value = self.payload.get("character_count")
        return int(value) if value is not None else len(self.text)


def hit_from_payload(
    hit_id: str,
    score: float,
    payload: dict[str, Any] | None,
    vector: list[float] | None = None,
) -> SearchHit | None:
    """Build a SearchHit; None when the payload lacks a document id."""
    payload = dict(payload or {})
    document_id = payload.get("document_id")
    if not document_id:
        return None
    return SearchHit(
        id=str(payload.get("vector_id") or hit_id),
        score=float(score),
        document_id=str(document_id),
        text=str(payload.get("text") or ""),
        payload=payload,
        vector=vector,
    )


def in_page_range(hit: SearchHit, page_range: PageRange | None) -> bool:
    if page_range is None:
        return True
    start, end = page_range
    return start <= hit.page_number <= end


def normalized_centroid(vectors: Sequence[Sequence[float]]) -> list[float] | None:
    if not vectors:
        return None
    matrix = np.asarray(vectors, dtype=np.float64)
    mean = matrix.mean(axis=0)
    norm = float(np.linalg.norm(mean))
    if norm > 0:
        mean = mean / norm
    return mean.tolist()


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorStoreBase(ABC):
    """Async interface over a single chunk collection / index."""

    backend: str = "base"

    @abstractmethod
    async def ensure_collection(self) -> None:
        """Create the collection/index if missing. Idempotent."""

    @abstractmethod
    async def upsert(self, records: list[VectorRecord]) -> int:
        """Insert or overwrite records by id. Returns the number written."""

    @abstractmethod
    async def _search(
        self,
        vector: list[float],
        clauses: FilterClauses | None,
        limit: int,
        with_vectors: bool,
    ) -> list[SearchHit]:
        """Raw nearest-neighbour query, best score first."""

    @abstractmethod
    async def fetch_document_vectors(
        self,
        document_id: str,
        page_range: PageRange | None = None,
    ) -> list[SearchHit]:
        """Every chunk of a document (with vectors), ordered by chunk index."""

    @abstractmethod
    async def delete(self, ids: list[str]) -> None:
        """Delete by vector id. Callers pass at most DELETE_BATCH_SIZE ids."""

    @abstractmethod
    async def _delete_document_points(self, document_id: str) -> None:
        """Delete every point whose payload document_id matches."""

    @abstractmethod
    async def set_payload_by_document(self, document_id: str, payload: dict[str, Any]) -> int:
        """Merge `payload` into every chunk of a document. Returns points touched."""

    @abstractmethod
    async def count(self, filters: Iterable[FilterExpr] | None = None) -> int:
        """Number of points, optionally restricted by filters."""

    async def document_vector_count(self, document_id: str) -> int:
        return await self.count([Eq("document_id", document_id)])

    async def close(self) -> None:
        """Release client resources."""

    # ------------------------------------------------------------------
    # Shared behaviour
    # ------------------------------------------------------------------

    async def search(
        self,
        vector: list[float],
        filters: Iterable[FilterExpr] | None = None,
        limit: int = 10,
        score_threshold: float = 0.0,
        with_vectors: bool = False,
    ) -> list[SearchHit]:
        if limit <= 0:
            return []
        hits = await self._search(vector, compile_filter(filters or []), limit, with_vectors)
        return [h for h in hits if h.score >= score_threshold]

    async def document_query_vector(
        self,
        document_id: str,
        page_range: PageRange | None = None,
    ) -> list[float] | None:
        """
        Query vector for a document.

        With a page range: normalised centroid of the chunks whose
        page_number falls in the range. Without: the first chunk's vector.
        """
        hits = await self.fetch_document_vectors(document_id, page_range)
        vectors = [h.vector for h in hits if h.vector]
        if not vectors:
            logger.warning(
                "No vectors for query | doc=%s page_range=%s", document_id, page_range,
            )
            return None
        if page_range is None:
            return list(vectors[0])
        return normalized_centroid(vectors)

    async def delete_by_document(
        self,
        document_id: str,
        vector_ids: list[str] | None = None,
    ) -> int:
        """
        Remove a document's vectors. With known ids, deletes in batches of
        DELETE_BATCH_SIZE, then sweeps by payload filter if any point of the
        document is left; otherwise deletes by payload filter. Idempotent.
        """
        if vector_ids:
            for start in range(0, len(vector_ids), DELETE_BATCH_SIZE):
                await self.delete(vector_ids[start:start + DELETE_BATCH_SIZE])
            remaining = await self.document_vector_count(document_id)
            if remaining:
                logger.warning(
                    "Vectors left after delete by id, sweeping | backend=%s doc=%s remaining=%d",
                    self.backend, document_id, remaining,
                )
                await self._delete_document_points(document_id)
            logger.info(
                "Vectors deleted by id | backend=%s doc=%s count=%d",
                self.backend, document_id, len(vector_ids),
            )
            return len(vector_ids)

        await self._delete_document_points(document_id)
        logger.info("Vectors deleted by filter | backend=%s doc=%s", self.backend, document_id)
        return 0
