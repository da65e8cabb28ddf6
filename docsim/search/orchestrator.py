"""
Similarity Search Orchestrator
══════════════════════════════

"Find documents similar to this one" in three stages:

  Stage 0  centroid recall sweep          ~all documents → stage0_top_k
  Stage 1  neighbour-aware pre-filter      → stage1_top_k   (optional)
  Stage 2  bidirectional fine scoring      → ordered results with sections

Validation happens before any index query:
  - the document exists and belongs to the caller   (DocumentNotFoundError)
  - it is completed with a centroid and chunk count (DocumentNotReadyError)
  - the page range fits the document                (PageRangeError)

Every stage failure surfaces as SearchError(stage) so callers can tell a
broken search from an empty result.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, TypeVar
from uuid import UUID

from docsim.core.config import Settings, get_settings
from docsim.core.exceptions import (
    DocSimError,
    DocumentNotFoundError,
    DocumentNotReadyError,
    SearchError,
)
from docsim.db.repository import DocumentRepository
from docsim.models.documents import Document
from docsim.search.page_range import validate_page_range
from docsim.search.stage0 import stage0_candidates
from docsim.search.stage1 import stage1_prefilter
from docsim.search.stage2 import CandidateScore, stage2_score
from docsim.search.types import (
    MAX_RESULT_LIMIT,
    DocumentSummary,
    SearchOptions,
    SearchResponse,
    SimilarityResult,
)
from docsim.vectorstore.base import VectorStoreBase
from docsim.vectorstore.filters import Eq, FilterExpr, without_field

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _stage(name: str, operation: Callable[[], Awaitable[T]]) -> T:
    try:
        return await operation()
    except DocSimError:
        raise
    except Exception as exc:
        logger.exception("Search stage failed | stage=%s", name)
        raise SearchError(name, str(exc) or type(exc).__name__) from exc


def length_ratio(source_total: int | None, target: DocumentSummary) -> float | None:
    target_total = target.total_characters or target.effective_chunk_count
    if not source_total or not target_total:
        return None
    return source_total / target_total * 100


def summarize(document: Document | None, document_id: str) -> DocumentSummary:
    if document is None:
        return DocumentSummary(id=document_id)
    return DocumentSummary(
        id=str(document.id),
        title=document.title,
        filename=document.filename,
        page_count=document.page_count,
        total_characters=document.total_characters,
        effective_chunk_count=document.effective_chunk_count,
    )


class SimilaritySearchService:
    def __init__(
        self,
        repository: DocumentRepository,
        vector_store: VectorStoreBase,
        settings: Settings | None = None,
    ) -> None:
        self.repository = repository
        self.vector_store = vector_store
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def load_source(self, document_id: UUID, user_id: UUID) -> Document:
        document = await self.repository.get_owned_document(document_id, user_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        if document.status != "completed":
            raise DocumentNotReadyError(
                "Document is not ready for similarity search",
                details={"status": document.status},
            )

        problems = []
        if not document.centroid:
            problems.append("missing centroid")
        if not document.effective_chunk_count:
            problems.append("missing effective_chunk_count")
        if problems:
            raise DocumentNotReadyError(
                "Document is not ready for similarity search; reprocess it",
                details={"status": document.status, "errors": problems},
            )
        return document

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        document_id: UUID,
        user_id: UUID,
        options: SearchOptions | None = None,
    ) -> SearchResponse:
        options = options or SearchOptions.from_settings(self.settings)
        started = time.monotonic()

        document = await self.load_source(document_id, user_id)
        page_range = options.source_page_range
        if page_range is not None:
            page_range = validate_page_range(page_range[0], page_range[1], document.page_count)

        source_id = str(document.id)
        filters: list[FilterExpr] = without_field(options.filters, "user_id")
        filters.append(Eq("user_id", str(user_id)))

        logger.info(
            "Similarity search start | doc=%s stage0_top_k=%d stage1=%s page_range=%s",
            source_id, options.stage0_top_k, options.stage1_enabled, page_range,
        )

        # ---- Stage 0 -----------------------------------------------------
        async def _stage0():
            if page_range is not None:
                vector = await self.vector_store.document_query_vector(source_id, page_range)
                if vector is None:
                    raise SearchError("stage0", f"No indexed chunks in pages {page_range[0]}-{page_range[1]}")
            else:
                vector = list(document.centroid)
            return await stage0_candidates(
                self.vector_store, source_id, vector, filters, options.stage0_top_k,
            )

        stage0 = await _stage("stage0", _stage0)
        coarse = stage0.score_map()

        source_chunks = []
        if stage0.candidate_ids:
            source_chunks = await _stage(
                "source_vectors",
                lambda: self.vector_store.fetch_document_vectors(source_id, page_range),
            )
            if not source_chunks:
                raise SearchError("source_vectors", "Source document has no indexed chunk vectors")

        # ---- Stage 1 -----------------------------------------------------
        stage1_ms = 0
        candidate_ids = stage0.candidate_ids
        if options.stage1_enabled and candidate_ids:
            stage1 = await _stage("stage1", lambda: stage1_prefilter(
                self.vector_store,
                source_chunks,
                stage0.candidate_ids,
                filters,
                top_k=options.stage1_top_k,
                neighbors_per_chunk=options.stage1_neighbors_per_chunk,
                batch_size=options.stage1_batch_size,
            ))
            candidate_ids = stage1.candidate_ids
            stage1_ms = stage1.time_ms

        # ---- Stage 2 -----------------------------------------------------
        scored: list[CandidateScore] = []
        stage2_ms = 0
        if candidate_ids:
            scored, stage2_ms = await _stage("stage2", lambda: stage2_score(
                self.vector_store,
                source_chunks,
                [(doc_id, coarse.get(doc_id, 0.0)) for doc_id in candidate_ids],
                workers=options.stage2_parallel_workers,
                fallback_threshold=options.stage2_fallback_threshold,
            ))

        results = await self._finalize(document, scored, options)

        timing = {
            "stage0_ms": stage0.time_ms,
            "stage1_ms": stage1_ms,
            "stage2_ms": stage2_ms,
            "total_ms":  _elapsed_ms(started),
        }
        stages = {
            "stage0_candidates": len(stage0.candidate_ids),
            "stage1_candidates": len(candidate_ids),
            "final_results":     len(scored),
        }
        logger.info(
            "Similarity search done | doc=%s stage0=%d stage1=%d final=%d delivered=%d ms=%d",
            source_id, stages["stage0_candidates"], stages["stage1_candidates"],
            stages["final_results"], len(results), timing["total_ms"],
        )
        return SearchResponse(
            document_id=source_id,
            document_title=document.title,
            results=results,
            stages=stages,
            timing=timing,
            config=options.config(),
        )

    async def _finalize(
        self,
        source: Document,
        scored: list[CandidateScore],
        options: SearchOptions,
    ) -> list[SimilarityResult]:
        kept = [
            s for s in scored
            if s.scores.source_score >= options.source_min_score
            and s.scores.target_score >= options.target_min_score
        ]
        kept = kept[:options.effective_top_k(min(MAX_RESULT_LIMIT, self.settings.similarity_max_result_limit))]
        if not kept:
            return []

        documents = {
            str(d.id): d for d in await self.repository.get_documents([s.document_id for s in kept])
        }
        results: list[SimilarityResult] = []
        for candidate in kept:
            summary = summarize(documents.get(candidate.document_id), candidate.document_id)
            candidate.scores.length_ratio = length_ratio(source.total_characters, summary)
            results.append(SimilarityResult(
                document=summary,
                scores=candidate.scores,
                matched_chunk_count=candidate.matched_chunk_count,
                sections=candidate.sections,
            ))
        return results
