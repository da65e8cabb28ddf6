"""
In-memory collaborators for unit and API tests.

InMemoryVectorStore implements VectorStoreBase over a dict and evaluates
FilterClauses the way the real backends do, so search stages can be tested
end to end without Weaviate or Pinecone.
"""

from __future__ import annotations

import math
from typing import Any, Iterable

from docsim.processing.extraction import ExtractedDocument, PageText, Paragraph
from docsim.vectorstore.base import (
    PageRange,
    SearchHit,
    VectorRecord,
    VectorStoreBase,
    hit_from_payload,
    in_page_range,
    vector_id_for,
)
from docsim.vectorstore.filters import (
    Condition,
    Eq,
    FilterClauses,
    FilterExpr,
    In,
    NotEq,
    Range,
    compile_filter,
)


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def _matches(condition: Condition, payload: dict[str, Any]) -> bool:
    value = payload.get(condition.field)
    if isinstance(condition, Eq):
        if isinstance(value, list):
            return condition.value in value
        return value == condition.value
    if isinstance(condition, NotEq):
        if isinstance(value, list):
            return condition.value not in value
        return value != condition.value
    if isinstance(condition, In):
        if isinstance(value, list):
            return any(v in condition.values for v in value)
        return value in condition.values
    if isinstance(condition, Range):
        if not isinstance(value, (int, float)):
            return False
        return (
            (condition.gte is None or value >= condition.gte)
            and (condition.lte is None or value <= condition.lte)
            and (condition.gt is None or value > condition.gt)
            and (condition.lt is None or value < condition.lt)
        )
    return False


def clauses_match(clauses: FilterClauses | None, payload: dict[str, Any]) -> bool:
    if clauses is None:
        return True
    if not all(_matches(c, payload) for c in clauses.must):
        return False
    if any(_matches(c, payload) for c in clauses.must_not):
        return False
    return all(any(_matches(c, payload) for c in group) for group in clauses.any_of)


class InMemoryVectorStore(VectorStoreBase):
    backend = "memory"

    def __init__(self) -> None:
        self.records: dict[str, VectorRecord] = {}
        self.search_calls: list[dict[str, Any]] = []
        self.fail_search: BaseException | None = None
        self.fail_fetch_for: set[str] = set()

    async def ensure_collection(self) -> None:
        return None

    async def upsert(self, records: list[VectorRecord]) -> int:
        for record in records:
            self.records[record.id] = VectorRecord(record.id, list(record.vector), dict(record.payload))
        return len(records)

    async def _search(
        self,
        vector: list[float],
        clauses: FilterClauses | None,
        limit: int,
        with_vectors: bool,
    ) -> list[SearchHit]:
        self.search_calls.append({"clauses": clauses, "limit": limit})
        if self.fail_search is not None:
            raise self.fail_search
        scored = []
        for record in self.records.values():
            if not clauses_match(clauses, record.payload):
                continue
            hit = hit_from_payload(
                record.id, _cosine(vector, record.vector), record.payload,
                list(record.vector) if with_vectors else None,
            )
            if hit is not None:
                scored.append(hit)
        scored.sort(key=lambda h: h.score, reverse=True)
        return scored[:limit]

    async def fetch_document_vectors(
        self,
        document_id: str,
        page_range: PageRange | None = None,
    ) -> list[SearchHit]:
        if document_id in self.fail_fetch_for:
            raise ConnectionError(f"fetch failed for {document_id}")
        hits = [
            hit_from_payload(r.id, 1.0, r.payload, list(r.vector))
            for r in self.records.values()
            if r.payload.get("document_id") == document_id
        ]
        hits = [h for h in hits if h is not None and in_page_range(h, page_range)]
        return sorted(hits, key=lambda h: h.chunk_index)

    async def delete(self, ids: list[str]) -> None:
        for vector_id in ids:
            self.records.pop(vector_id, None)

    async def _delete_document_points(self, document_id: str) -> None:
        for vector_id in [k for k, r in self.records.items() if r.payload.get("document_id") == document_id]:
            del self.records[vector_id]

    async def set_payload_by_document(self, document_id: str, payload: dict[str, Any]) -> int:
        touched = 0
        for record in self.records.values():
            if record.payload.get("document_id") == document_id:
                record.payload.update(payload)
                touched += 1
        return touched

    async def count(self, filters: Iterable[FilterExpr] | None = None) -> int:
        clauses = compile_filter(filters or [])
        return sum(1 for r in self.records.values() if clauses_match(clauses, r.payload))

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def add_document(
        self,
        document_id: str,
        vectors: list[list[float]],
        *,
        user_id: str = "user-1",
        texts: list[str] | None = None,
        pages: list[int] | None = None,
        character_count: int = 100,
        **metadata: Any,
    ) -> None:
        for index, vector in enumerate(vectors):
            page = pages[index] if pages else index + 1
            vector_id = vector_id_for(document_id, index)
            self.records[vector_id] = VectorRecord(
                id=vector_id,
                vector=list(vector),
                payload={
                    **metadata,
                    "document_id":       document_id,
                    "user_id":           user_id,
                    "chunk_index":       index,
                    "vector_id":         vector_id,
                    "page_number":       page,
                    "start_page_number": page,
                    "end_page_number":   page,
                    "text":              texts[index] if texts else f"chunk {index} of {document_id}",
                    "character_count":   character_count,
                },
            )


# ---------------------------------------------------------------------------
# Embedding client
# ---------------------------------------------------------------------------

class FakeEmbedder:
    """Deterministic vectors; `failures` makes the first N calls raise."""

    def __init__(self, dimensions: int = 4, failures: int = 0, error: BaseException | None = None) -> None:
        self.dimensions = dimensions
        self.failures = failures
        self.error = error or ConnectionError("embedding service unreachable")
        self.calls: list[str] = []
        self.closed = False

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        seed = (sum(ord(c) for c in text) % 97) + 1
        return [float(seed + i) for i in range(self.dimensions)]

    async def close(self) -> None:
        self.closed = True


def make_extracted(page_texts: list[str], with_paragraphs: bool = True) -> ExtractedDocument:
    pages = [PageText(i + 1, text) for i, text in enumerate(page_texts)]
    paragraphs = (
        [Paragraph(text, i + 1, i) for i, text in enumerate(page_texts)]
        if with_paragraphs else []
    )
    return ExtractedDocument(pages=pages, paragraphs=paragraphs)
