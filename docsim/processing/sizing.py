"""
Size Strategy Selector
══════════════════════

Classifies an upload by file size into a processing tier and picks the
extraction strategy plus batching parameters for the embedding phase.

Pure and deterministic: no I/O, no settings lookups beyond the arguments.

Tiers
─────
  tier     size        batch  concurrency  delay   gc hint
  small    < 1 MB      20     5            0.10 s  no
  medium   < 5 MB      15     4            0.25 s  no
  large    < 25 MB     10     3            0.50 s  yes
  huge     ≥ 25 MB      5     2            1.00 s  yes

Strategy
────────
  estimated pages > sync_page_limit   → chunked (split the PDF by pages)
  otherwise                           → sync, with fallback to chunked when
                                        the extractor reports a page limit
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

MB = 1024 * 1024

# Rough average for text-heavy PDFs; only used to pick a strategy
ESTIMATED_BYTES_PER_PAGE = 100 * 1024

# Seconds of end-to-end work per estimated page, used for progress messages
_SECONDS_PER_PAGE = 1.5


class SizeTier(str, Enum):
    SMALL  = "small"
    MEDIUM = "medium"
    LARGE  = "large"
    HUGE   = "huge"


class ExtractionStrategy(str, Enum):
    SYNC    = "sync"
    CHUNKED = "chunked"


@dataclass(frozen=True)
class ProcessingConfig:
    batch_size:        int
    max_concurrency:   int
    inter_batch_delay: float   # seconds
    gc_hint:           bool


@dataclass(frozen=True)
class SizeStrategy:
    tier:                SizeTier
    file_size:           int
    estimated_pages:     int
    extraction_strategy: ExtractionStrategy
    is_pdf:              bool
    processing:          ProcessingConfig


_TIER_TABLE: tuple[tuple[float, SizeTier, ProcessingConfig], ...] = (
    (1 * MB,   SizeTier.SMALL,  ProcessingConfig(20, 5, 0.1, False)),
    (5 * MB,   SizeTier.MEDIUM, ProcessingConfig(15, 4, 0.25, False)),
    (25 * MB,  SizeTier.LARGE,  ProcessingConfig(10, 3, 0.5, True)),
    (math.inf, SizeTier.HUGE,   ProcessingConfig(5, 2, 1.0, True)),
)


def is_pdf(filename: str | None, content_type: str | None) -> bool:
    if content_type and content_type.lower() == "application/pdf":
        return True
    return bool(filename) and filename.lower().endswith(".pdf")


def estimate_pages(file_size: int, pdf: bool) -> int:
    if not pdf:
        return 1
    return max(1, math.ceil(max(file_size, 0) / ESTIMATED_BYTES_PER_PAGE))


def select_strategy(
    file_size: int,
    filename: str | None = None,
    content_type: str | None = None,
    *,
    sync_page_limit: int = 15,
) -> SizeStrategy:
    if file_size < 0:
        raise ValueError("file_size must be non-negative")

    pdf = is_pdf(filename, content_type)
    pages = estimate_pages(file_size, pdf)

    for upper, tier, config in _TIER_TABLE:
        if file_size < upper:
            break

    strategy = (
        ExtractionStrategy.CHUNKED
        if pdf and pages > sync_page_limit
        else ExtractionStrategy.SYNC
    )
    return SizeStrategy(
        tier=tier,
        file_size=file_size,
        estimated_pages=pages,
        extraction_strategy=strategy,
        is_pdf=pdf,
        processing=config,
    )


def estimate_processing_minutes(strategy: SizeStrategy) -> int:
    seconds = strategy.estimated_pages * _SECONDS_PER_PAGE
    seconds += strategy.processing.inter_batch_delay * strategy.estimated_pages
    return max(1, math.ceil(seconds / 60))


def requires_special_handling(strategy: SizeStrategy) -> bool:
    return strategy.tier in (SizeTier.LARGE, SizeTier.HUGE)
