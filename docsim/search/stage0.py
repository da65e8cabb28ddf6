"""
Stage 0: centroid recall sweep.

Query the chunk index with the source document's centroid (or a page-range
centroid), collapse hits to one best score per document and keep the top K.
Casts a wide net on purpose; later stages are precise.
"""

from __future__ import annotations

import logging
import time

from docsim.search.types import Stage0Result
from docsim.vectorstore.base import VectorStoreBase
from docsim.vectorstore.filters import (
    Eq,
    FilterExpr,
    In,
    NotEq,
    conditions_for,
    without_field,
)

logger = logging.getLogger(__name__)


def sanitize_document_id_filter(conditions: list[FilterExpr], source_id: str) -> list[FilterExpr]:
    """
    Make sure the source document can never be its own candidate.

      In(ids)        → source removed (possibly leaving an empty In)
      Eq(source)     → In(()) which matches nothing
      Eq(other)      → kept
      nothing / NotEq only → NotEq(source) added
    """
    own = conditions_for(conditions, "document_id")
    rest = without_field(conditions, "document_id")

    sanitized: list[FilterExpr] = []
    pins_documents = False
    for condition in own:
        if isinstance(condition, In):
            sanitized.append(In("document_id", tuple(v for v in condition.values if v != source_id)))
            pins_documents = True
        elif isinstance(condition, Eq):
            if condition.value == source_id:
                return rest + [In("document_id", ())]
            sanitized.append(condition)
            pins_documents = True
        else:
            sanitized.append(condition)

    if not pins_documents:
        sanitized.append(NotEq("document_id", source_id))
    return rest + sanitized


async def stage0_candidates(
    store: VectorStoreBase,
    source_id: str,
    query_vector: list[float],
    filters: list[FilterExpr],
    top_k: int,
) -> Stage0Result:
    started = time.monotonic()
    search_filters = sanitize_document_id_filter(filters, source_id)

    hits = await store.search(query_vector, search_filters, limit=top_k * 2)

    best: dict[str, float] = {}
    for hit in hits:
        if hit.document_id == source_id:
            continue
        if hit.document_id not in best or best[hit.document_id] < hit.score:
            best[hit.document_id] = hit.score

    ranked = sorted(best.items(), key=lambda item: item[1], reverse=True)[:top_k]

    if not ranked and conditions_for(search_filters, "user_id"):
        await _diagnose_owner_filter(store, query_vector, search_filters, top_k, source_id)

    time_ms = int((time.monotonic() - started) * 1000)
    scores = [score for _, score in ranked]
    logger.info(
        "Stage 0 done | doc=%s hits=%d candidates=%d avg_score=%s ms=%d",
        source_id, len(hits), len(ranked),
        f"{sum(scores) / len(scores):.3f}" if scores else "-", time_ms,
    )
    return Stage0Result([doc for doc, _ in ranked], scores, time_ms)


async def _diagnose_owner_filter(
    store: VectorStoreBase,
    query_vector: list[float],
    filters: list[FilterExpr],
    top_k: int,
    source_id: str,
) -> None:
    """Log when the owner filter alone removed every match."""
    try:
        hits = await store.search(query_vector, without_field(filters, "user_id"), limit=top_k * 2)
    except Exception as exc:
        logger.warning("Stage 0 diagnostic query failed | doc=%s error=%s", source_id, exc)
        return
    if hits:
        logger.warning(
            "Stage 0 owner filter eliminated all candidates | doc=%s unfiltered_matches=%d",
            source_id, len(hits),
        )
