"""
Weaviate Vector Store

One collection holds every document chunk; ownership and business metadata
live in object properties and are enforced through filters. Object UUIDs are
derived from the vector id hash so re-indexing a chunk overwrites it.

The v4 Python client is synchronous; every call runs in the default thread
executor so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from typing import Any, Iterable

import weaviate
import weaviate.classes as wvc
from weaviate.classes.config import Configure, DataType, Property
from weaviate.classes.query import Filter, MetadataQuery, Sort

from docsim.vectorstore.base import (
    PageRange,
    SearchHit,
    VectorRecord,
    VectorStoreBase,
    hit_from_payload,
    in_page_range,
    point_id,
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

UPSERT_BATCH_SIZE = 100
FETCH_PAGE_SIZE   = 1000


def object_uuid(vector_id: str) -> uuid.UUID:
    return uuid.UUID(int=point_id(vector_id))


# ---------------------------------------------------------------------------
# Filter rendering
# ---------------------------------------------------------------------------

def _render_condition(condition):
    prop = Filter.by_property(condition.field)
    if isinstance(condition, Eq):
        return prop.equal(condition.value)
    if isinstance(condition, NotEq):
        return prop.not_equal(condition.value)
    if isinstance(condition, In):
        return prop.contains_any(list(condition.values))
    if isinstance(condition, Range):
        parts = []
        if condition.gte is not None:
            parts.append(Filter.by_property(condition.field).greater_or_equal(condition.gte))
        if condition.gt is not None:
            parts.append(Filter.by_property(condition.field).greater_than(condition.gt))
        if condition.lte is not None:
            parts.append(Filter.by_property(condition.field).less_or_equal(condition.lte))
        if condition.lt is not None:
            parts.append(Filter.by_property(condition.field).less_than(condition.lt))
        return parts[0] if len(parts) == 1 else Filter.all_of(parts)
    raise TypeError(f"Unsupported condition {condition!r}")


def _render_negated(condition):
    """must_not entries are equalities or memberships."""
    if isinstance(condition, Eq):
        return Filter.by_property(condition.field).not_equal(condition.value)
    if isinstance(condition, In):
        return Filter.all_of([
            Filter.by_property(condition.field).not_equal(v) for v in condition.values
        ])
    raise TypeError(f"Cannot negate {condition!r}")


def build_weaviate_filter(clauses: FilterClauses | None):
    if clauses is None or clauses.is_empty():
        return None
    parts = [_render_condition(c) for c in clauses.must]
    parts += [_render_negated(c) for c in clauses.must_not]
    for group in clauses.any_of:
        rendered = [_render_condition(c) for c in group]
        parts.append(rendered[0] if len(rendered) == 1 else Filter.any_of(rendered))
    return parts[0] if len(parts) == 1 else Filter.all_of(parts)


def _object_vector(obj) -> list[float] | None:
    vector = getattr(obj, "vector", None)
    if isinstance(vector, dict):
        vector = vector.get("default") or next(iter(vector.values()), None)
    return list(vector) if vector else None


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class WeaviateVectorStore(VectorStoreBase):
    backend = "weaviate"

    def __init__(self, client: weaviate.WeaviateClient, collection_name: str) -> None:
        self._client = client
        self._name = collection_name

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    def _collection(self):
        return self._client.collections.get(self._name)

    # ------------------------------------------------------------------
    # Collection provisioning
    # ------------------------------------------------------------------

    async def ensure_collection(self) -> None:
        await self._run(self._ensure_collection_sync)

    def _ensure_collection_sync(self) -> None:
        if self._client.collections.exists(self._name):
            return
        self._client.collections.create(
            name=self._name,
            description="PDF document chunks for similarity search",
            vectorizer_config=Configure.Vectorizer.none(),   # we supply our own vectors
            vector_index_config=Configure.VectorIndex.hnsw(
                distance_metric=wvc.config.VectorDistances.COSINE,
                ef_construction=128,
                max_connections=64,
            ),
            properties=[
                Property(name="document_id",       data_type=DataType.TEXT, index_filterable=True),
                Property(name="user_id",           data_type=DataType.TEXT, index_filterable=True),
                Property(name="vector_id",         data_type=DataType.TEXT, index_filterable=True),
                Property(name="chunk_index",       data_type=DataType.INT,  index_filterable=True),
                Property(name="page_number",       data_type=DataType.INT,  index_filterable=True),
                Property(name="start_page_number", data_type=DataType.INT),
                Property(name="end_page_number",   data_type=DataType.INT),
                Property(name="character_count",   data_type=DataType.INT),
                Property(name="filename",          data_type=DataType.TEXT, index_filterable=True),
                Property(name="text",              data_type=DataType.TEXT, index_searchable=True),
            ],
        )
        logger.info("Weaviate collection created: %s", self._name)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upsert(self, records: list[VectorRecord]) -> int:
        total = 0
        for start in range(0, len(records), UPSERT_BATCH_SIZE):
            batch = records[start:start + UPSERT_BATCH_SIZE]
            objects = [
                wvc.data.DataObject(
                    uuid=object_uuid(rec.id),
                    properties={**rec.payload, "vector_id": rec.id},
                    vector=rec.vector,
                )
                for rec in batch
            ]
            result = await self._run(self._collection().data.insert_many, objects)
            if result.has_errors:
                errors = list(result.errors.values())
                logger.error("Weaviate upsert errors | count=%d first=%s", len(errors), errors[0])
                raise RuntimeError(f"Weaviate upsert failed for {len(errors)} object(s): {errors[0]}")
            total += len(batch)
        logger.debug("Weaviate upsert | collection=%s total=%d", self._name, total)
        return total

    async def _search(
        self,
        vector: list[float],
        clauses: FilterClauses | None,
        limit: int,
        with_vectors: bool,
    ) -> list[SearchHit]:
        response = await self._run(
            self._collection().query.near_vector,
            near_vector=vector,
            limit=limit,
            filters=build_weaviate_filter(clauses),
            return_metadata=MetadataQuery(distance=True),
            include_vector=with_vectors,
        )
        hits: list[SearchHit] = []
        for obj in response.objects:
            score = 1.0 - (obj.metadata.distance or 0.0)   # cosine distance → similarity
            hit = hit_from_payload(
                str(obj.uuid), score, dict(obj.properties),
                _object_vector(obj) if with_vectors else None,
            )
            if hit is not None:
                hits.append(hit)
        return hits

    async def fetch_document_vectors(
        self,
        document_id: str,
        page_range: PageRange | None = None,
    ) -> list[SearchHit]:
        # Keyset paging on chunk_index: offsets stop at QUERY_MAXIMUM_RESULTS
        # and the `after` cursor cannot be combined with a filter
        hits: list[SearchHit] = []
        last_index: int | None = None
        while True:
            clauses = compile_filter([Eq("document_id", document_id)])
            if page_range is not None:
                clauses.must.append(Range("page_number", gte=page_range[0], lte=page_range[1]))
            if last_index is not None:
                clauses.must.append(Range("chunk_index", gt=last_index))

            response = await self._run(
                self._collection().query.fetch_objects,
                filters=build_weaviate_filter(clauses),
                limit=FETCH_PAGE_SIZE,
                sort=Sort.by_property("chunk_index", ascending=True),
                include_vector=True,
            )
            for obj in response.objects:
                hit = hit_from_payload(str(obj.uuid), 1.0, dict(obj.properties), _object_vector(obj))
                if hit is not None and in_page_range(hit, page_range):
                    hits.append(hit)
            if len(response.objects) < FETCH_PAGE_SIZE:
                break
            last_index = int(response.objects[-1].properties["chunk_index"])

        hits.sort(key=lambda h: h.chunk_index)
        return hits

    async def delete(self, ids: list[str]) -> None:
        if not ids:
            return
        uuids = [object_uuid(i) for i in ids]
        await self._run(
            self._collection().data.delete_many,
            where=Filter.by_id().contains_any(uuids),
        )
        logger.debug("Weaviate delete | collection=%s count=%d", self._name, len(ids))

    async def _delete_document_points(self, document_id: str) -> None:
        await self._run(
            self._collection().data.delete_many,
            where=Filter.by_property("document_id").equal(document_id),
        )

    async def set_payload_by_document(self, document_id: str, payload: dict[str, Any]) -> int:
        hits = await self.fetch_document_vectors(document_id)
        collection = self._collection()
        for hit in hits:
            await self._run(collection.data.update, uuid=object_uuid(hit.id), properties=payload)
        logger.info(
            "Weaviate payload merged | doc=%s points=%d keys=%s",
            document_id, len(hits), sorted(payload),
        )
        return len(hits)

    async def count(self, filters: Iterable[FilterExpr] | None = None) -> int:
        where = build_weaviate_filter(compile_filter(filters or []))
        agg = await self._run(
            self._collection().aggregate.over_all, total_count=True, filters=where,
        )
        return agg.total_count or 0

    async def close(self) -> None:
        await self._run(self._client.close)


# ---------------------------------------------------------------------------
# Client factory (one client per process)
# ---------------------------------------------------------------------------

def create_weaviate_client(settings) -> weaviate.WeaviateClient:
    """
    Create and return a connected Weaviate client.
    Supports both local (Docker) and Weaviate Cloud modes.
    """
    if settings.weaviate_api_key:
        return weaviate.connect_to_weaviate_cloud(
            cluster_url=settings.weaviate_url,
            auth_credentials=weaviate.auth.AuthApiKey(settings.weaviate_api_key),
        )
    return weaviate.connect_to_local(
        host=settings.weaviate_host,
        port=settings.weaviate_port,
        grpc_port=settings.weaviate_grpc_port,
    )
