"""
Centroid Computor
═════════════════

Document-level vector used as the Stage 0 query: the L2-normalised mean of
every chunk embedding.

  1. Deduplicate by chunk_index, keeping the first occurrence (retried
     partial runs can leave duplicates behind).
  2. Validate: identical dimensionality and finite values everywhere. A
     malformed vector aborts the computation (logged, returns None).
  3. Mean per dimension, then divide by the Euclidean norm (skipped when
     the norm is zero).

Alongside the centroid the document gets `effective_chunk_count` (chunks
actually indexed) and `total_characters` (used for the length ratio).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Protocol, Sequence
from uuid import UUID

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class ChunkVectorRow:
    chunk_index:     int
    embedding:       Sequence[float] | None
    character_count: int | None = None
    text:            str = ""


@dataclass
class CentroidResult:
    centroid:              list[float]
    effective_chunk_count: int
    total_characters:      int
    dimensions:            int


def dedupe_by_chunk_index(rows: Iterable[ChunkVectorRow]) -> list[ChunkVectorRow]:
    seen: set[int] = set()
    unique: list[ChunkVectorRow] = []
    for row in rows:
        if row.chunk_index in seen:
            continue
        seen.add(row.chunk_index)
        unique.append(row)
    return unique


def compute_centroid(rows: Iterable[ChunkVectorRow]) -> CentroidResult | None:
    unique = dedupe_by_chunk_index(rows)
    if not unique:
        logger.warning("Centroid skipped | reason=no_chunks")
        return None

    dimensions: int | None = None
    vectors: list[Sequence[float]] = []
    for row in unique:
        vector = row.embedding
        if vector is None or len(vector) == 0:
            logger.error("Centroid aborted | reason=missing_vector chunk=%d", row.chunk_index)
            return None
        if dimensions is None:
            dimensions = len(vector)
        elif len(vector) != dimensions:
            logger.error(
                "Centroid aborted | reason=dimension_mismatch chunk=%d expected=%d got=%d",
                row.chunk_index, dimensions, len(vector),
            )
            return None
        vectors.append(vector)

    matrix = np.asarray(vectors, dtype=np.float64)
    if not np.isfinite(matrix).all():
        bad = sorted({unique[i].chunk_index for i in np.where(~np.isfinite(matrix))[0]})
        logger.error("Centroid aborted | reason=non_finite chunks=%s", bad)
        return None

    mean = matrix.mean(axis=0)
    norm = float(np.linalg.norm(mean))
    if norm > 0:
        mean = mean / norm

    total_characters = sum(
        row.character_count if row.character_count is not None else len(row.text or "")
        for row in unique
    )
    return CentroidResult(
        centroid=mean.tolist(),
        effective_chunk_count=len(unique),
        total_characters=total_characters,
        dimensions=int(dimensions or 0),
    )


class CentroidRepository(Protocol):
    async def load_chunk_vectors(self, document_id: UUID) -> list[ChunkVectorRow]: ...

    async def save_centroid(self, document_id: UUID, result: CentroidResult) -> None: ...


async def compute_and_store_centroid(
    repository: CentroidRepository,
    document_id: UUID,
) -> CentroidResult | None:
    """Load, compute and persist. Failures are logged, never raised."""
    try:
        rows = await repository.load_chunk_vectors(document_id)
        result = compute_centroid(rows)
        if result is None:
            return None
        await repository.save_centroid(document_id, result)
    except Exception:
        logger.exception("Centroid computation failed | doc=%s", document_id)
        return None

    logger.info(
        "Centroid stored | doc=%s chunks=%d chars=%d dims=%d",
        document_id, result.effective_chunk_count, result.total_characters, result.dimensions,
    )
    return result

