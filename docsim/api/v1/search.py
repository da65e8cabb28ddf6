"""
Similarity Search API Router
POST /api/v1/documents/{document_id}/similar

Request lifecycle:
  ┌──────────────────────────────────────────────────────────────┐
  │ 1. X-User-ID → caller UUID (owner filter is always applied)   │
  │ 2. Split `filters` into index metadata filters and directives │
  │    (page_range, min_score, threshold, topK)                   │
  │ 3. Normalise metadata filters: strings trimmed, empty values  │
  │    dropped, one-item lists → equality, lists → $in            │
  │ 4. SimilaritySearchService.search (validation + stages 0-2)   │
  └──────────────────────────────────────────────────────────────┘

Errors (ErrorResponse envelope, mapped in main.py):
  400 invalid page range or filter   404 document not found
  409 document not ready             502 a search stage failed
"""

from __future__ import annotations

import logging
import math
from typing import Any, Mapping
from uuid import UUID

from fastapi import APIRouter, Body, status

from docsim.api.dependencies import AppSettings, CurrentUserId, SearchService
from docsim.api.schemas import ErrorResponse, SimilarityRequest
from docsim.search.page_range import requested_page_range
from docsim.search.types import MAX_RESULT_LIMIT, SearchOptions
from docsim.vectorstore.filters import parse_filter

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Similarity Search"],
)

# Keys inside `filters` consumed by the search itself, never sent to the index
FILTER_DIRECTIVES = ("page_range", "min_score", "threshold", "topK")


# ---------------------------------------------------------------------------
# Request normalisation
# ---------------------------------------------------------------------------

def normalize_top_k(value: Any) -> int | None:
    """Positive numbers (or numeric strings) capped at MAX_RESULT_LIMIT."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        if value <= 0:
            return None
        return min(MAX_RESULT_LIMIT, math.floor(value))
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return None
        return min(MAX_RESULT_LIMIT, parsed) if parsed > 0 else None
    return None


def normalize_filter_value(value: Any) -> Any:
    """None for values that should not filter at all."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        items = []
        for item in value:
            if isinstance(item, str):
                item = item.strip() or None
            if item is not None:
                items.append(item)
        if not items:
            return None
        return items[0] if len(items) == 1 else items
    if isinstance(value, str):
        return value.strip() or None
    return value


def split_filters(raw: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Returns (metadata filters, directives); a caller-supplied user_id is dropped."""
    metadata: dict[str, Any] = {}
    directives: dict[str, Any] = {}
    for key, value in raw.items():
        if key in FILTER_DIRECTIVES:
            directives[key] = value
            continue
        if key == "user_id":
            continue
        normalized = normalize_filter_value(value)
        if normalized is not None:
            metadata[key] = normalized
    return metadata, directives


def build_search_options(request: SimilarityRequest, settings) -> tuple[SearchOptions, dict[str, Any]]:
    metadata, directives = split_filters(request.filters)

    workers = request.stage2_parallel_workers
    options = SearchOptions.from_settings(
        settings,
        stage0_top_k=request.stage0_top_k,
        stage1_top_k=request.stage1_top_k,
        stage1_enabled=request.stage1_enabled,
        stage1_neighbors_per_chunk=request.stage1_neighbors_per_chunk,
        stage1_batch_size=request.stage1_batch_size,
        stage2_parallel_workers=max(1, math.floor(workers)) if workers is not None else None,
        stage2_fallback_threshold=request.stage2_fallback_threshold,
        source_min_score=request.source_min_score,
        target_min_score=request.target_min_score,
        filters=parse_filter(metadata),
        source_page_range=requested_page_range(directives.get("page_range")),
        top_k=normalize_top_k(directives.get("topK")),
    )

    applied = dict(metadata)
    if "page_range" in directives:
        applied["page_range"] = options.config()["page_range"]
    for key in ("min_score", "threshold"):
        if key in directives:
            applied[key] = directives[key]
    if options.top_k is not None:
        applied["topK"] = options.top_k
    return options, applied


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/similar
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/similar",
    status_code=status.HTTP_200_OK,
    summary="Find documents similar to this one",
    description=(
        "Three-stage search: centroid recall, neighbour pre-filter and "
        "bidirectional chunk scoring with section detection. Results are "
        "ordered by sourceScore, then targetScore."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Invalid page range or filter"},
        401: {"model": ErrorResponse, "description": "Missing or invalid X-User-ID"},
        404: {"model": ErrorResponse, "description": "Document not found"},
        409: {"model": ErrorResponse, "description": "Document not ready for similarity search"},
        502: {"model": ErrorResponse, "description": "A search stage failed"},
    },
)
async def find_similar_documents(
    document_id: UUID,
    user_id:     CurrentUserId,
    service:     SearchService,
    settings:    AppSettings,
    request:     SimilarityRequest | None = Body(None),
) -> dict[str, Any]:
    request = request or SimilarityRequest()
    options, applied_filters = build_search_options(request, settings)

    logger.info(
        "Similarity search requested | doc=%s user=%s filters=%s",
        document_id, user_id, sorted(applied_filters),
    )
    response = await service.search(document_id, user_id, options)

    body = response.to_dict()
    body["config"]["filters"] = applied_filters
    return body
