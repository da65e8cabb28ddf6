"""
Stage 1: candidate-aware chunk pre-filter.

Every source chunk asks the index for its nearest neighbours; a neighbour
counts only when it belongs to a Stage 0 candidate, and each source chunk
counts at most once per candidate. Candidates are ranked by how many
distinct source chunks found them (Stage 0 order breaks ties).
"""

from __future__ import annotations

import asyncio
import logging
import time

from docsim.search.types import Stage1Result
from docsim.vectorstore.base import SearchHit, VectorStoreBase
from docsim.vectorstore.filters import FilterExpr

logger = logging.getLogger(__name__)


async def stage1_prefilter(
    store: VectorStoreBase,
    source_chunks: list[SearchHit],
    stage0_ids: list[str],
    filters: list[FilterExpr],
    *,
    top_k: int = 250,
    neighbors_per_chunk: int = 30,
    batch_size: int = 150,
) -> Stage1Result:
    started = time.monotonic()
    candidates = set(stage0_ids)
    stage0_rank = {doc_id: rank for rank, doc_id in enumerate(stage0_ids)}
    matched: dict[str, set[int]] = {}

    usable = [c for c in source_chunks if c.vector]
    if len(usable) < len(source_chunks):
        logger.warning(
            "Stage 1 skipped chunks without vectors | count=%d", len(source_chunks) - len(usable),
        )

    for start in range(0, len(usable), max(1, batch_size)):
        batch = usable[start:start + batch_size]
        responses = await asyncio.gather(*(
            store.search(chunk.vector, filters, limit=neighbors_per_chunk) for chunk in batch
        ))
        for chunk, neighbours in zip(batch, responses):
            for neighbour in neighbours:
                if neighbour.document_id in candidates:
                    # a set per candidate: one count per source chunk
                    matched.setdefault(neighbour.document_id, set()).add(chunk.chunk_index)

    ranked = sorted(
        matched.items(),
        key=lambda item: (-len(item[1]), stage0_rank.get(item[0], len(stage0_rank))),
    )[:top_k]

    time_ms = int((time.monotonic() - started) * 1000)
    counts = [len(chunks) for _, chunks in ranked]
    logger.info(
        "Stage 1 done | source_chunks=%d candidates=%d avg_matched=%s ms=%d",
        len(usable), len(ranked),
        f"{sum(counts) / len(counts):.1f}" if counts else "-", time_ms,
    )
    return Stage1Result([doc for doc, _ in ranked], counts, time_ms)

