"""
Pinecone Vector Store

Uses the vector id ("{document_id}_chunk_{n}") natively as the Pinecone id,
which makes every chunk of a document listable by id prefix. Document-level
fetch, delete and payload merge are built on `index.list(prefix=...)`, which
serverless indexes support (metadata-filtered deletes are pod-only).
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Iterable

from pinecone import Pinecone, ServerlessSpec

from docsim.vectorstore.base import (
    DELETE_BATCH_SIZE,
    PageRange,
    SearchHit,
    VectorRecord,
    VectorStoreBase,
    hit_from_payload,
    in_page_range,
)
from docsim.vectorstore.filters import (
    Eq,
    FilterClauses,
    FilterExpr,
    In,
    NotEq,
    Range,
    compile_filter,
)

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 100      # stays within Pinecone's 2 MB request limit
FETCH_BATCH_SIZE  = 100
MAX_TOP_K         = 10_000


# ---------------------------------------------------------------------------
# Filter rendering
# ---------------------------------------------------------------------------

def _render_condition(condition) -> dict:
    if isinstance(condition, Eq):
        return {condition.field: {"$eq": condition.value}}
    if isinstance(condition, NotEq):
        return {condition.field: {"$ne": condition.value}}
    if isinstance(condition, In):
        return {condition.field: {"$in": list(condition.values)}}
    if isinstance(condition, Range):
        bounds = {
            f"${name}": value
            for name, value in (
                ("gte", condition.gte), ("gt", condition.gt),
                ("lte", condition.lte), ("lt", condition.lt),
            )
            if value is not None
        }
        return {condition.field: bounds}
    raise TypeError(f"Unsupported condition {condition!r}")


def _render_negated(condition) -> dict:
    if isinstance(condition, Eq):
        return {condition.field: {"$ne": condition.value}}
    if isinstance(condition, In):
        return {condition.field: {"$nin": list(condition.values)}}
    raise TypeError(f"Cannot negate {condition!r}")


def build_pinecone_filter(clauses: FilterClauses | None) -> dict | None:
    if clauses is None or clauses.is_empty():
        return None
    parts = [_render_condition(c) for c in clauses.must]
    parts += [_render_negated(c) for c in clauses.must_not]
    for group in clauses.any_of:
        rendered = [_render_condition(c) for c in group]
        parts.append(rendered[0] if len(rendered) == 1 else {"$or": rendered})
    return parts[0] if len(parts) == 1 else {"$and": parts}


def _document_prefix(document_id: str) -> str:
    return f"{document_id}_chunk_"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class PineconeVectorStore(VectorStoreBase):
    backend = "pinecone"

    def __init__(
        self,
        client: Pinecone,
        index_name: str,
        *,
        dimension: int = 1536,
        cloud: str = "aws",
        region: str = "us-east-1",
        namespace: str = "",
    ) -> None:
        self._pc = client
        self._index_name = index_name
        self._dimension = dimension
        self._cloud = cloud
        self._region = region
        self._namespace = namespace
        self._index = None

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    @property
    def index(self):
        if self._index is None:
            self._index = self._pc.Index(self._index_name)
        return self._index

    # ------------------------------------------------------------------
    # Index provisioning
    # ------------------------------------------------------------------

    async def ensure_collection(self) -> None:
        await self._run(self._ensure_index_sync)

    def _ensure_index_sync(self) -> None:
        existing = [i.name for i in self._pc.list_indexes()]
        if self._index_name in existing:
            return
        self._pc.create_index(
            name=self._index_name,
            dimension=self._dimension,
            metric="cosine",
            spec=ServerlessSpec(cloud=self._cloud, region=self._region),
        )
        logger.info("Pinecone index '%s' created", self._index_name)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upsert(self, records: list[VectorRecord]) -> int:
        total = 0
        for start in range(0, len(records), UPSERT_BATCH_SIZE):
            batch = records[start:start + UPSERT_BATCH_SIZE]
            vectors = [
                {
                    "id":       rec.id,
                    "values":   rec.vector,
                    "metadata": {k: v for k, v in {**rec.payload, "vector_id": rec.id}.items() if v is not None},
                }
                for rec in batch
            ]
            await self._run(self.index.upsert, vectors=vectors, namespace=self._namespace)
            total += len(batch)
        logger.debug("Pinecone upsert | index=%s total=%d", self._index_name, total)
        return total

    async def _search(
        self,
        vector: list[float],
        clauses: FilterClauses | None,
        limit: int,
        with_vectors: bool,
    ) -> list[SearchHit]:
        response = await self._run(
            self.index.query,
            vector=vector,
            top_k=min(limit, MAX_TOP_K),
            namespace=self._namespace,
            filter=build_pinecone_filter(clauses),
            include_metadata=True,
            include_values=with_vectors,
        )
        hits: list[SearchHit] = []
        for match in response.get("matches", []):
            values = match.get("values") if with_vectors else None
            hit = hit_from_payload(
                match["id"], match["score"], match.get("metadata"),
                list(values) if values else None,
            )
            if hit is not None:
                hits.append(hit)
        return hits

    async def _list_document_ids(self, document_id: str) -> list[str]:
        def _collect() -> list[str]:
            ids: list[str] = []
            for page in self.index.list(prefix=_document_prefix(document_id), namespace=self._namespace):
                ids.extend(page)
            return ids

        return await self._run(_collect)

    async def fetch_document_vectors(
        self,
        document_id: str,
        page_range: PageRange | None = None,
    ) -> list[SearchHit]:
        ids = await self._list_document_ids(document_id)
        hits: list[SearchHit] = []
        for start in range(0, len(ids), FETCH_BATCH_SIZE):
            response = await self._run(
                self.index.fetch, ids=ids[start:start + FETCH_BATCH_SIZE], namespace=self._namespace,
            )
            for vec_id, vec in response.vectors.items():
                hit = hit_from_payload(vec_id, 1.0, vec.metadata, list(vec.values))
                if hit is not None and in_page_range(hit, page_range):
                    hits.append(hit)
        hits.sort(key=lambda h: h.chunk_index)
        return hits

    async def delete(self, ids: list[str]) -> None:
        if not ids:
            return
        await self._run(self.index.delete, ids=ids, namespace=self._namespace)
        logger.debug("Pinecone delete | index=%s count=%d", self._index_name, len(ids))

    async def _delete_document_points(self, document_id: str) -> None:
        ids = await self._list_document_ids(document_id)
        for start in range(0, len(ids), DELETE_BATCH_SIZE):
            await self.delete(ids[start:start + DELETE_BATCH_SIZE])

    async def set_payload_by_document(self, document_id: str, payload: dict[str, Any]) -> int:
        ids = await self._list_document_ids(document_id)
        for vec_id in ids:
            await self._run(
                self.index.update, id=vec_id, set_metadata=payload, namespace=self._namespace,
            )
        logger.info(
            "Pinecone payload merged | doc=%s points=%d keys=%s",
            document_id, len(ids), sorted(payload),
        )
        return len(ids)

    async def count(self, filters: Iterable[FilterExpr] | None = None) -> int:
        where = build_pinecone_filter(compile_filter(filters or []))
        stats = await self._run(self.index.describe_index_stats, filter=where)
        namespaces = stats.get("namespaces", {}) or {}
        if self._namespace in namespaces:
            return namespaces[self._namespace].get("vector_count", 0)
        return stats.get("total_vector_count", 0)

    async def document_vector_count(self, document_id: str) -> int:
        # Serverless indexes reject metadata filters on describe_index_stats
        return len(await self._list_document_ids(document_id))


def create_pinecone_client(settings) -> Pinecone:
    return Pinecone(api_key=settings.pinecone_api_key)
