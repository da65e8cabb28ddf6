"""
Document Chunker
════════════════

Splits an ExtractedDocument into page-aware TextChunks for embedding.

Paragraph path (primary)
────────────────────────
  Used whenever extraction produced paragraph boundaries.
    1. Greedily pack paragraphs (joined by a blank line) while the running
       character count stays ≤ MAX_CHUNK_CHARACTERS.
    2. When the next paragraph would exceed the bound, close the chunk.
    3. A closed chunk below MIN_CHUNK_CHARACTERS is folded into its
       predecessor when the result still fits.
  start/end page = min/max page of the constituent paragraphs.

Sentence path (fallback)
────────────────────────
  Used when only per-page text is available.
    1. Concatenate page text, recording a char-offset → page table.
    2. Split sentences (spaCy sentencizer, regex fallback).
    3. Group SENTENCES_PER_CHUNK sentences with SENTENCE_OVERLAP overlap,
       shrinking groups above MAX and extending groups below MIN.
    4. Map each chunk's first/last character back to a page.

In both paths a single paragraph or sentence longer than the maximum is
emitted as its own oversized chunk; text is never dropped. Chunk indices are
dense and start at 0.
"""

from __future__ import annotations

import bisect
import logging
import re
import unicodedata
from dataclasses import dataclass

from docsim.processing.extraction import ExtractedDocument, PageText, Paragraph

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

MIN_CHUNK_CHARACTERS = 200
MAX_CHUNK_CHARACTERS = 2000
SENTENCES_PER_CHUNK  = 5
SENTENCE_OVERLAP     = 1

PARAGRAPH_SEPARATOR = "\n\n"

SPACY_MODEL = "en_core_web_sm"


@dataclass
class TextChunk:
    chunk_index:       int
    text:              str
    character_count:   int
    page_number:       int   # == start_page_number
    start_page_number: int
    end_page_number:   int


# ---------------------------------------------------------------------------
# spaCy sentencizer singleton
# ---------------------------------------------------------------------------

_spacy_nlp = None
_spacy_loaded = False


def _get_nlp():
    """
    Load a sentence splitter once per process.

    Prefers the configured model with the rule-based sentencizer and falls
    back to a blank English pipeline. Chunkers built with use_spacy=False
    skip this and split with a regex.
    """
    global _spacy_nlp, _spacy_loaded
    if not _spacy_loaded:
        import spacy
        try:
            _spacy_nlp = spacy.load(SPACY_MODEL, disable=["ner", "parser", "lemmatizer"])
        except OSError:
            logger.warning("spaCy model '%s' not found, using blank 'en' sentencizer", SPACY_MODEL)
            _spacy_nlp = spacy.blank("en")
        if "sentencizer" not in _spacy_nlp.pipe_names:
            _spacy_nlp.add_pipe("sentencizer")
        _spacy_nlp.max_length = max(_spacy_nlp.max_length, 5_000_000)
        _spacy_loaded = True
    return _spacy_nlp


_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)")


def split_sentences(text: str, nlp=None) -> list[tuple[int, int]]:
    """Sentence spans as (start, end) character offsets into `text`."""
    if nlp is not None:
        doc = nlp(text)
        spans = [(s.start_char, s.end_char) for s in doc.sents if s.text.strip()]
    else:
        spans = [(m.start(), m.end()) for m in _SENTENCE_RE.finditer(text) if m.group().strip()]
    return [_trim_span(text, start, end) for start, end in spans]


def _trim_span(text: str, start: int, end: int) -> tuple[int, int]:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def _normalize_text(text: str) -> str:
    """NFC-normalise and collapse runs of spaces/tabs (newlines are kept)."""
    text = unicodedata.normalize("NFC", text)
    return re.sub(r"[ \t]+", " ", text)


def count_characters(text: str) -> int:
    return len(text)


# ---------------------------------------------------------------------------
# Page lookup table
# ---------------------------------------------------------------------------

class PageOffsetMap:
    """Maps character offsets of the concatenated page text to page numbers."""

    def __init__(self, pages: list[PageText]) -> None:
        self._starts: list[int] = []
        self._pages:  list[int] = []
        parts: list[str] = []
        offset = 0
        for page in pages:
            text = _normalize_text(page.text)
            if not text.endswith("\n"):
                text += "\n"
            self._starts.append(offset)
            self._pages.append(page.page_number)
            parts.append(text)
            offset += len(text)
        self.text = "".join(parts)

    def page_at(self, offset: int) -> int:
        if not self._starts:
            return 1
        position = bisect.bisect_right(self._starts, max(offset, 0)) - 1
        return self._pages[max(position, 0)]


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class DocumentChunker:
    """
    Stateless chunker.

    Usage:
        chunks = DocumentChunker().chunk(extracted)
    """

    def __init__(
        self,
        *,
        min_characters: int = MIN_CHUNK_CHARACTERS,
        max_characters: int = MAX_CHUNK_CHARACTERS,
        sentences_per_chunk: int = SENTENCES_PER_CHUNK,
        sentence_overlap: int = SENTENCE_OVERLAP,
        use_spacy: bool = True,
    ) -> None:
        if sentence_overlap >= sentences_per_chunk:
            raise ValueError("sentence_overlap must be smaller than sentences_per_chunk")
        self.min_characters = min_characters
        self.max_characters = max_characters
        self.sentences_per_chunk = sentences_per_chunk
        self.sentence_overlap = sentence_overlap
        self.use_spacy = use_spacy

    def chunk(self, document: ExtractedDocument) -> list[TextChunk]:
        paragraphs = [p for p in document.paragraphs if p.text.strip()]
        if paragraphs:
            chunks = self.chunk_paragraphs(paragraphs)
            path = "paragraph"
        else:
            chunks = self.chunk_pages(document.pages)
            path = "sentence"

        logger.info(
            "Chunked document | path=%s chunks=%d avg_chars=%.0f",
            path, len(chunks),
            sum(c.character_count for c in chunks) / max(1, len(chunks)),
        )
        return chunks

    # ------------------------------------------------------------------
    # Paragraph path
    # ------------------------------------------------------------------

    def chunk_paragraphs(self, paragraphs: list[Paragraph]) -> list[TextChunk]:
        ordered = sorted(paragraphs, key=lambda p: (p.index, p.page_number))
        groups: list[list[Paragraph]] = []
        current: list[Paragraph] = []
        current_len = 0

        for paragraph in ordered:
            text = _normalize_text(paragraph.text).strip()
            if not text:
                continue
            paragraph = Paragraph(text, paragraph.page_number, paragraph.index)
            added = len(text) + (len(PARAGRAPH_SEPARATOR) if current else 0)
            if current and current_len + added > self.max_characters:
                groups.append(current)
                current, current_len = [], 0
                added = len(text)
            current.append(paragraph)
            current_len += added

        if current:
            groups.append(current)

        groups = self._merge_small_groups(groups)
        return [
            self._make_chunk(
                index,
                PARAGRAPH_SEPARATOR.join(p.text for p in group),
                min(p.page_number for p in group),
                max(p.page_number for p in group),
            )
            for index, group in enumerate(groups)
        ]

    def _merge_small_groups(self, groups: list[list[Paragraph]]) -> list[list[Paragraph]]:
        merged: list[list[Paragraph]] = []
        for group in groups:
            if merged and self._group_len(group) < self.min_characters:
                combined = merged[-1] + group
                if self._group_len(combined) <= self.max_characters:
                    merged[-1] = combined
                    continue
            merged.append(group)
        return merged

    @staticmethod
    def _group_len(group: list[Paragraph]) -> int:
        return sum(len(p.text) for p in group) + len(PARAGRAPH_SEPARATOR) * (len(group) - 1)

    # ------------------------------------------------------------------
    # Sentence path
    # ------------------------------------------------------------------

    def chunk_pages(self, pages: list[PageText]) -> list[TextChunk]:
        page_map = PageOffsetMap(pages)
        text = page_map.text
        if not text.strip():
            return []

        nlp = _get_nlp() if self.use_spacy else None
        spans = split_sentences(text, nlp)
        if not spans:
            return []

        chunks: list[TextChunk] = []
        start = 0
        last_end = -1

        while start < len(spans):
            end = min(start + self.sentences_per_chunk, len(spans))

            # Shrink oversized groups, but never below one sentence
            while end - start > 1 and self._span_len(spans, start, end) > self.max_characters:
                end -= 1
            # Extend undersized groups while the next sentence still fits
            while (
                end < len(spans)
                and self._span_len(spans, start, end) < self.min_characters
                and self._span_len(spans, start, end + 1) <= self.max_characters
            ):
                end += 1

            if end - 1 > last_end:
                char_start = spans[start][0]
                char_end = spans[end - 1][1]
                chunks.append(self._make_chunk(
                    len(chunks),
                    " ".join(text[s:e].replace("\n", " ").strip() for s, e in spans[start:end]),
                    page_map.page_at(char_start),
                    page_map.page_at(char_end - 1),
                ))
                last_end = end - 1

            if end >= len(spans):
                break
            start = max(start + 1, end - self.sentence_overlap)

        return chunks

    @staticmethod
    def _span_len(spans: list[tuple[int, int]], start: int, end: int) -> int:
        return spans[end - 1][1] - spans[start][0]

    # ------------------------------------------------------------------

    @staticmethod
    def _make_chunk(index: int, text: str, start_page: int, end_page: int) -> TextChunk:
        return TextChunk(
            chunk_index=index,
            text=text,
            character_count=count_characters(text),
            page_number=start_page,
            start_page_number=start_page,
            end_page_number=max(end_page, start_page),
        )
