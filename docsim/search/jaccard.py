"""
Word-level Jaccard similarity, |A ∩ B| / |A ∪ B|.

Used on matched chunk pairs to tell verbatim reuse (high overlap) from
paraphrase (semantically close, lexically different). Stop words are kept
and nothing is stemmed: the point is exact lexical overlap.
"""

from __future__ import annotations

import re

_PUNCTUATION_RE = re.compile(r"[^\w\s]")


def extract_words(text: str) -> list[str]:
    if not text:
        return []
    return _PUNCTUATION_RE.sub(" ", text.lower()).split()


def jaccard_similarity(text_a: str, text_b: str) -> float:
    words_a = set(extract_words(text_a))
    words_b = set(extract_words(text_b))
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)

