"""
Stage 2: bidirectional fine scoring with section detection.

For every surviving candidate the full chunk-by-chunk cosine matrix is
computed (numpy). A source chunk is matched when its best target chunk
reaches CHUNK_MATCH_THRESHOLD, and symmetrically for target chunks:

  sourceScore = matched source characters / source characters
  targetScore = matched target characters / target characters

Matched source chunks are paired with their best target and grouped into
sections while both page ranges stay contiguous and the pair score stays
within SECTION_SCORE_TOLERANCE of the running average.

Candidates whose matrix would be too large, or whose scoring fails, fall
back to their Stage 0 centroid score (kept only above the fallback
threshold).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

import numpy as np

from docsim.search.jaccard import jaccard_similarity
from docsim.search.types import Section, SimilarityScores
from docsim.vectorstore.base import SearchHit, VectorStoreBase

logger = logging.getLogger(__name__)

CHUNK_MATCH_THRESHOLD = 0.85
SECTION_SCORE_TOLERANCE = 0.05
MAX_PAIRWISE_COMPARISONS = 4_000_000
REUSABLE_MIN_SCORE = 0.9
REUSABLE_MIN_JACCARD = 0.5


@dataclass
class CandidateScore:
    document_id:         str
    scores:              SimilarityScores
    matched_chunk_count: int = 0
    sections:            list[Section] = field(default_factory=list)
    coarse_score:        float = 0.0
    fallback:            bool = False


def _unit_rows(vectors: list[list[float]]) -> np.ndarray:
    matrix = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def _clamp(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

def _ranges_touch(start: int, end: int, other_start: int, other_end: int) -> bool:
    """Overlapping or directly adjacent page ranges."""
    return max(start, other_start) <= min(end, other_end) + 1


@dataclass
class _OpenSection:
    source_start: int
    source_end:   int
    target_start: int
    target_end:   int
    scores:       list[float]
    source_texts: list[str]
    target_texts: list[str]

    @property
    def average(self) -> float:
        return sum(self.scores) / len(self.scores)

    def accepts(self, source: SearchHit, target: SearchHit, score: float) -> bool:
        return (
            _ranges_touch(self.source_start, self.source_end, source.start_page, source.end_page)
            and _ranges_touch(self.target_start, self.target_end, target.start_page, target.end_page)
            and abs(score - self.average) <= SECTION_SCORE_TOLERANCE
        )

    def add(self, source: SearchHit, target: SearchHit, score: float) -> None:
        self.source_start = min(self.source_start, source.start_page)
        self.source_end = max(self.source_end, source.end_page)
        self.target_start = min(self.target_start, target.start_page)
        self.target_end = max(self.target_end, target.end_page)
        self.scores.append(score)
        self.source_texts.append(source.text)
        self.target_texts.append(target.text)

    def close(self) -> Section:
        overlap = jaccard_similarity(" ".join(self.source_texts), " ".join(self.target_texts))
        average = self.average
        return Section(
            source_pages=(self.source_start, self.source_end),
            target_pages=(self.target_start, self.target_end),
            avg_score=average,
            chunk_count=len(self.scores),
            lexical_overlap=overlap,
            reusable=average >= REUSABLE_MIN_SCORE and overlap >= REUSABLE_MIN_JACCARD,
        )


def detect_sections(pairs: list[tuple[SearchHit, SearchHit, float]]) -> list[Section]:
    """`pairs` are (source chunk, best target chunk, score) in source order."""
    sections: list[Section] = []
    current: _OpenSection | None = None
    for source, target, score in pairs:
        if current is not None and current.accepts(source, target, score):
            current.add(source, target, score)
            continue
        if current is not None:
            sections.append(current.close())
        current = _OpenSection(
            source.start_page, source.end_page, target.start_page, target.end_page,
            [score], [source.text], [target.text],
        )
    if current is not None:
        sections.append(current.close())
    return sections


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def score_candidate(
    document_id: str,
    source: list[SearchHit],
    target: list[SearchHit],
    coarse_score: float = 0.0,
) -> CandidateScore:
    if not source or not target:
        raise ValueError("both documents need chunk vectors")

    source = sorted(source, key=lambda h: h.chunk_index)
    target = sorted(target, key=lambda h: h.chunk_index)
    similarity = _unit_rows([h.vector for h in source]) @ _unit_rows([h.vector for h in target]).T

    best_target = similarity.argmax(axis=1)
    best_target_score = similarity.max(axis=1)
    best_source_score = similarity.max(axis=0)

    source_matched = best_target_score >= CHUNK_MATCH_THRESHOLD
    target_matched = best_source_score >= CHUNK_MATCH_THRESHOLD

    source_chars = np.asarray([h.character_count for h in source], dtype=np.float64)
    target_chars = np.asarray([h.character_count for h in target], dtype=np.float64)
    matched_source_chars = int(source_chars[source_matched].sum())
    matched_target_chars = int(target_chars[target_matched].sum())

    source_score = _clamp(matched_source_chars / source_chars.sum()) if source_chars.sum() > 0 else 0.0
    target_score = _clamp(matched_target_chars / target_chars.sum()) if target_chars.sum() > 0 else 0.0

    pairs = [
        (source[i], target[int(best_target[i])], float(best_target_score[i]))
        for i in np.flatnonzero(source_matched)
    ]
    matched_count = int(source_matched.sum())
    explanation = (
        f"{matched_count} of {len(source)} source chunks and "
        f"{int(target_matched.sum())} of {len(target)} target chunks matched "
        f"at cosine >= {CHUNK_MATCH_THRESHOLD}"
    )
    return CandidateScore(
        document_id=document_id,
        scores=SimilarityScores(
            source_score=source_score,
            target_score=target_score,
            matched_source_characters=matched_source_chars,
            matched_target_characters=matched_target_chars,
            explanation=explanation,
        ),
        matched_chunk_count=matched_count,
        sections=detect_sections(pairs),
        coarse_score=coarse_score,
    )


def fallback_score(document_id: str, coarse_score: float, threshold: float) -> CandidateScore | None:
    if coarse_score < threshold:
        return None
    score = _clamp(coarse_score)
    return CandidateScore(
        document_id=document_id,
        scores=SimilarityScores(
            source_score=score,
            target_score=score,
            matched_source_characters=0,
            matched_target_characters=0,
            explanation="Approximate score from document centroid similarity; chunk-level scoring was not available",
        ),
        coarse_score=coarse_score,
        fallback=True,
    )


def order_results(results: list[CandidateScore]) -> list[CandidateScore]:
    return sorted(
        results,
        key=lambda r: (-r.scores.source_score, -r.scores.target_score, r.document_id),
    )


async def stage2_score(
    store: VectorStoreBase,
    source_chunks: list[SearchHit],
    candidates: list[tuple[str, float]],
    *,
    workers: int = 1,
    fallback_threshold: float = 0.8,
) -> tuple[list[CandidateScore], int]:
    """Score `(document_id, coarse_score)` candidates. Returns (ordered results, ms)."""
    started = time.monotonic()
    semaphore = asyncio.Semaphore(max(1, workers))
    source = [h for h in source_chunks if h.vector]

    async def _one(document_id: str, coarse: float) -> CandidateScore | None:
        async with semaphore:
            try:
                target = [h for h in await store.fetch_document_vectors(document_id) if h.vector]
                if len(source) * len(target) > MAX_PAIRWISE_COMPARISONS:
                    logger.info(
                        "Stage 2 fallback | doc=%s reason=too_many_pairs pairs=%d",
                        document_id, len(source) * len(target),
                    )
                    return fallback_score(document_id, coarse, fallback_threshold)
                return score_candidate(document_id, source, target, coarse)
            except Exception as exc:
                logger.warning("Stage 2 fallback | doc=%s reason=error error=%s", document_id, exc)
                return fallback_score(document_id, coarse, fallback_threshold)

    scored = await asyncio.gather(*(_one(doc_id, coarse) for doc_id, coarse in candidates))
    results = order_results([r for r in scored if r is not None])

    time_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Stage 2 done | candidates=%d scored=%d fallbacks=%d ms=%d",
        len(candidates), len(results), sum(1 for r in results if r.fallback), time_ms,
    )
    return results, time_ms
