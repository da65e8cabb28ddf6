"""
Similarity search value types.

Internal names are snake_case; `to_dict()` renders the wire format
(camelCase score keys, `docA_pageRange` / `docB_pageRange` on sections).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from docsim.vectorstore.base import PageRange
from docsim.vectorstore.filters import FilterExpr

MAX_RESULT_LIMIT = 100


@dataclass
class SearchOptions:
    stage0_top_k:               int = 600
    stage1_top_k:               int = 250
    stage1_enabled:             bool = True
    stage1_neighbors_per_chunk: int = 30
    stage1_batch_size:          int = 150
    stage2_parallel_workers:    int = 1
    stage2_fallback_threshold:  float = 0.8
    filters:                    list[FilterExpr] = field(default_factory=list)
    source_page_range:          tuple[int | None, int | None] | None = None   # validated by the search
    source_min_score:           float = 0.7
    target_min_score:           float = 0.7
    top_k:                      int | None = None

    @classmethod
    def from_settings(cls, settings, **overrides: Any) -> "SearchOptions":
        defaults = dict(
            stage0_top_k=settings.similarity_stage0_top_k,
            stage1_top_k=settings.similarity_stage1_top_k,
            stage1_enabled=settings.similarity_stage1_enabled,
            stage1_neighbors_per_chunk=settings.similarity_stage1_neighbors_per_chunk,
            stage1_batch_size=settings.similarity_stage1_batch_size,
            stage2_parallel_workers=settings.similarity_stage2_workers,
            stage2_fallback_threshold=settings.similarity_stage2_fallback_threshold,
            source_min_score=settings.similarity_source_min_score,
            target_min_score=settings.similarity_target_min_score,
        )
        defaults.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**defaults)

    def effective_top_k(self, limit: int = MAX_RESULT_LIMIT) -> int:
        if self.top_k is None or self.top_k <= 0:
            return limit
        return min(limit, int(self.top_k))

    def config(self) -> dict[str, Any]:
        return {
            "stage0_topK":              self.stage0_top_k,
            "stage1_topK":              self.stage1_top_k,
            "stage1_enabled":           self.stage1_enabled,
            "stage1_neighborsPerChunk": self.stage1_neighbors_per_chunk,
            "stage2_parallelWorkers":   self.stage2_parallel_workers,
            "stage2_fallbackThreshold": self.stage2_fallback_threshold,
            "source_min_score":         self.source_min_score,
            "target_min_score":         self.target_min_score,
            "page_range": (
                {"use_entire_document": True}
                if self.source_page_range is None
                else {
                    "use_entire_document": False,
                    "start_page": self.source_page_range[0],
                    "end_page":   self.source_page_range[1],
                }
            ),
            "topK": self.top_k,
        }


# ---------------------------------------------------------------------------
# Stage outputs
# ---------------------------------------------------------------------------

@dataclass
class Stage0Result:
    candidate_ids: list[str]
    scores:        list[float]
    time_ms:       int

    def score_map(self) -> dict[str, float]:
        return dict(zip(self.candidate_ids, self.scores))


@dataclass
class Stage1Result:
    candidate_ids: list[str]
    match_counts:  list[int]
    time_ms:       int


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def format_page_range(start: int, end: int) -> str:
    return str(start) if start == end else f"{start}-{end}"


@dataclass
class Section:
    source_pages:    PageRange
    target_pages:    PageRange
    avg_score:       float
    chunk_count:     int
    lexical_overlap: float
    reusable:        bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "docA_pageRange": format_page_range(*self.source_pages),
            "docB_pageRange": format_page_range(*self.target_pages),
            "avgScore":       round(self.avg_score, 4),
            "chunkCount":     self.chunk_count,
            "lexicalOverlap": round(self.lexical_overlap, 4),
            "reusable":       self.reusable,
        }


@dataclass
class SimilarityScores:
    source_score:              float
    target_score:              float
    matched_source_characters: int
    matched_target_characters: int
    explanation:               str
    length_ratio:              float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceScore":             self.source_score,
            "targetScore":             self.target_score,
            "matchedSourceCharacters": self.matched_source_characters,
            "matchedTargetCharacters": self.matched_target_characters,
            "explanation":             self.explanation,
            "lengthRatio":             self.length_ratio,
        }


@dataclass
class DocumentSummary:
    id:                    str
    title:                 str | None = None
    filename:              str | None = None
    page_count:            int | None = None
    total_characters:      int | None = None
    effective_chunk_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id":                    self.id,
            "title":                 self.title,
            "filename":              self.filename,
            "page_count":            self.page_count,
            "total_characters":      self.total_characters,
            "effective_chunk_count": self.effective_chunk_count,
        }


@dataclass
class SimilarityResult:
    document:            DocumentSummary
    scores:              SimilarityScores
    matched_chunk_count: int = 0
    sections:            list[Section] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "document":          self.document.to_dict(),
            "scores":            self.scores.to_dict(),
            "matchedChunkCount": self.matched_chunk_count,
            "sections":          [s.to_dict() for s in self.sections],
        }


@dataclass
class SearchResponse:
    document_id:    str
    document_title: str | None
    results:        list[SimilarityResult]
    stages:         dict[str, int]
    timing:         dict[str, int]
    config:         dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id":    self.document_id,
            "document_title": self.document_title,
            "results":        [r.to_dict() for r in self.results],
            "total_results":  len(self.results),
            "stages":         self.stages,
            "timing":         self.timing,
            "config":         self.config,
        }
