"""
Text Extraction
═══════════════

Turns PDF bytes into an ExtractedDocument: per-page text, paragraph
boundaries, entities, tables and document-level key/value fields.

Backends (ExtractionService)
────────────────────────────
  PyMuPDFExtractionService  local; text blocks become paragraphs, tables via
                            page.find_tables(), entities via spaCy NER when a
                            model is installed. Runs in a thread executor.
  HttpExtractionService     remote structured-extraction endpoint (httpx).

Both refuse documents over their synchronous page limit with
PageLimitExceededError. A file the backend cannot parse raises
InvalidDocumentError, which neither retries nor trips the breaker.

Strategy (DocumentExtractor)
────────────────────────────
  sync     one call for the whole file; on PageLimitExceededError falls
           through to chunked.
  chunked  the PDF is split with pypdf into slices of `sync_page_limit`
           pages; each slice is extracted separately and its page numbers
           are shifted by the slice offset before merging.

Every backend call goes through the extraction breaker and retry policy.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from docsim.core.exceptions import InvalidDocumentError, PageLimitExceededError
from docsim.processing.sizing import ExtractionStrategy
from docsim.resilience.service import Dependency, ResilienceService

logger = logging.getLogger(__name__)

# PyMuPDF block tuple: (x0, y0, x1, y1, text, block_no, block_type); 0 = text
_TEXT_BLOCK = 0

# Entity labels worth keeping for metadata filtering
_ENTITY_LABELS = frozenset({"PERSON", "ORG", "GPE", "DATE", "MONEY", "LAW", "PRODUCT"})

# Remote answers that blame the upload, not the service
REJECTED_DOCUMENT_STATUSES = frozenset({400, 415, 422})


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    page_number: int     # 1-based
    text:        str


@dataclass
class Paragraph:
    text:        str
    page_number: int
    index:       int = 0   # document-wide reading order


@dataclass
class ExtractedDocument:
    pages:      list[PageText]
    paragraphs: list[Paragraph] = field(default_factory=list)
    entities:   list[dict[str, Any]] = field(default_factory=list)
    tables:     list[dict[str, Any]] = field(default_factory=list)
    fields:     dict[str, Any] = field(default_factory=dict)
    page_count: int = 0

    def __post_init__(self) -> None:
        if not self.page_count:
            self.page_count = len(self.pages)

    @property
    def text(self) -> str:
        return "\n\n".join(p.text for p in self.pages if p.text.strip())

    def is_empty(self) -> bool:
        return not self.text.strip()

    def shifted(self, offset: int) -> "ExtractedDocument":
        """Copy with every page number moved by `offset` pages."""
        return ExtractedDocument(
            pages=[PageText(p.page_number + offset, p.text) for p in self.pages],
            paragraphs=[
                Paragraph(p.text, p.page_number + offset, p.index) for p in self.paragraphs
            ],
            entities=[
                {**e, "page_number": e.get("page_number", 1) + offset} for e in self.entities
            ],
            tables=[
                {**t, "page_number": t.get("page_number", 1) + offset} for t in self.tables
            ],
            fields=dict(self.fields),
            page_count=self.page_count,
        )


def merge_documents(parts: list[ExtractedDocument]) -> ExtractedDocument:
    """Concatenate slice results; paragraph indices are renumbered."""
    merged = ExtractedDocument(pages=[])
    for part in parts:
        merged.pages.extend(part.pages)
        merged.paragraphs.extend(part.paragraphs)
        merged.entities.extend(part.entities)
        merged.tables.extend(part.tables)
        for key, value in part.fields.items():
            merged.fields.setdefault(key, value)
    for index, paragraph in enumerate(merged.paragraphs):
        paragraph.index = index
    merged.page_count = sum(p.page_count for p in parts)
    return merged


# ---------------------------------------------------------------------------
# spaCy NER singleton
# ---------------------------------------------------------------------------

_ner_models: dict[str, Any] = {}


def _get_ner(model_name: str):
    """Load a spaCy NER pipeline once per process; None when not installed."""
    if model_name not in _ner_models:
        import spacy
        try:
            _ner_models[model_name] = spacy.load(model_name, disable=["parser", "lemmatizer"])
            logger.info("spaCy NER model '%s' loaded", model_name)
        except OSError:
            logger.warning(
                "spaCy model '%s' not found, entity extraction disabled "
                "(run: python -m spacy download %s)",
                model_name, model_name,
            )
            _ner_models[model_name] = None
    return _ner_models[model_name]


# ---------------------------------------------------------------------------
# Backend contract
# ---------------------------------------------------------------------------

class ExtractionService(ABC):
    """Raw PDF bytes in, ExtractedDocument out."""

    name: str = "base"

    def __init__(self, page_limit: int = 15) -> None:
        self.page_limit = page_limit

    @abstractmethod
    async def extract(self, pdf_bytes: bytes) -> ExtractedDocument:
        """Raise PageLimitExceededError when the document is too long."""


# ---------------------------------------------------------------------------
# Local backend: PyMuPDF
# ---------------------------------------------------------------------------

class PyMuPDFExtractionService(ExtractionService):
    name = "pymupdf"

    def __init__(
        self,
        page_limit: int = 15,
        *,
        spacy_model: str | None = "en_core_web_sm",
        extract_tables: bool = True,
    ) -> None:
        super().__init__(page_limit)
        self.spacy_model = spacy_model
        self.extract_tables = extract_tables

    async def extract(self, pdf_bytes: bytes) -> ExtractedDocument:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        result = await loop.run_in_executor(None, self._extract_sync, pdf_bytes)
        logger.info(
            "PyMuPDF | pages=%d paragraphs=%d tables=%d entities=%d elapsed_ms=%.0f",
            result.page_count, len(result.paragraphs), len(result.tables),
            len(result.entities), (time.monotonic() - t0) * 1000,
        )
        return result

    def _extract_sync(self, pdf_bytes: bytes) -> ExtractedDocument:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except (RuntimeError, ValueError) as exc:
            raise InvalidDocumentError(f"Unreadable PDF: {exc}") from exc

        with doc:
            if doc.page_count > self.page_limit:
                raise PageLimitExceededError(doc.page_count, self.page_limit)

            pages: list[PageText] = []
            paragraphs: list[Paragraph] = []
            tables: list[dict[str, Any]] = []

            for page_number, page in enumerate(doc, start=1):
                blocks = page.get_text("blocks", sort=True) or []
                page_paragraphs = [
                    " ".join(block[4].split())
                    for block in blocks
                    if block[6] == _TEXT_BLOCK and block[4].strip()
                ]
                for text in page_paragraphs:
                    paragraphs.append(Paragraph(text, page_number, len(paragraphs)))
                pages.append(PageText(page_number, "\n\n".join(page_paragraphs)))

                if self.extract_tables:
                    tables.extend(self._tables(page, page_number))

            fields = {
                key: value for key, value in (doc.metadata or {}).items()
                if value and key in ("title", "author", "subject", "keywords", "creationDate")
            }

        extracted = ExtractedDocument(
            pages=pages,
            paragraphs=paragraphs,
            tables=tables,
            fields=fields,
            page_count=len(pages),
        )
        if self.spacy_model:
            extracted.entities = self._entities(pages)
        return extracted

    def _tables(self, page, page_number: int) -> list[dict[str, Any]]:
        found = page.find_tables()
        return [
            {"page_number": page_number, "rows": table.extract()}
            for table in found.tables
        ]

    def _entities(self, pages: list[PageText]) -> list[dict[str, Any]]:
        nlp = _get_ner(self.spacy_model)
        if nlp is None:
            return []
        entities: list[dict[str, Any]] = []
        seen: set[tuple[str, str]] = set()
        for page in pages:
            if not page.text:
                continue
            for ent in nlp(page.text).ents:
                key = (ent.label_, ent.text.strip())
                if ent.label_ in _ENTITY_LABELS and key not in seen:
                    seen.add(key)
                    entities.append({
                        "type":        ent.label_,
                        "text":        key[1],
                        "page_number": page.page_number,
                    })
        return entities


# ---------------------------------------------------------------------------
# Remote backend: HTTP structured-extraction service
# ---------------------------------------------------------------------------

class HttpExtractionService(ExtractionService):
    """
    POSTs the PDF as multipart to a structured-extraction endpoint.

    Expected JSON response:
        {"page_count": int,
         "pages": [{"page_number": int, "text": str, "paragraphs": [str]}],
         "entities": [...], "tables": [...], "fields": {...}}

    HTTP 413 (or error code PAGE_LIMIT_EXCEEDED) means the document is over
    the synchronous page limit.
    """

    name = "http"

    def __init__(
        self,
        url: str,
        page_limit: int = 15,
        *,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(page_limit)
        self.url = url
        self.timeout = timeout
        self._client = client

    async def extract(self, pdf_bytes: bytes) -> ExtractedDocument:
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.post(
                self.url,
                files={"file": ("document.pdf", pdf_bytes, "application/pdf")},
                data={"page_limit": str(self.page_limit)},
            )
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code == 413 or (
            response.status_code == 400
            and _error_code(response) == "PAGE_LIMIT_EXCEEDED"
        ):
            body = _json_or_empty(response)
            raise PageLimitExceededError(int(body.get("page_count", 0)), self.page_limit)
        if response.status_code in REJECTED_DOCUMENT_STATUSES:
            raise InvalidDocumentError(
                f"Extraction service rejected the document: HTTP {response.status_code}",
                details={"status": response.status_code, "error_code": _error_code(response)},
            )
        response.raise_for_status()
        return self._parse(response.json())

    @staticmethod
    def _parse(payload: dict[str, Any]) -> ExtractedDocument:
        pages: list[PageText] = []
        paragraphs: list[Paragraph] = []
        for raw in payload.get("pages", []):
            number = int(raw.get("page_number", len(pages) + 1))
            pages.append(PageText(number, raw.get("text", "") or ""))
            for text in raw.get("paragraphs") or []:
                if text and text.strip():
                    paragraphs.append(Paragraph(text.strip(), number, len(paragraphs)))
        return ExtractedDocument(
            pages=pages,
            paragraphs=paragraphs,
            entities=list(payload.get("entities") or []),
            tables=list(payload.get("tables") or []),
            fields=dict(payload.get("fields") or {}),
            page_count=int(payload.get("page_count") or len(pages)),
        )


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_code(response: httpx.Response) -> str | None:
    body = _json_or_empty(response)
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("code")
    return body.get("error_code")


def create_extraction_service(settings) -> ExtractionService:
    if settings.extraction_backend == "http":
        return HttpExtractionService(
            settings.extraction_url,
            settings.sync_page_limit,
            timeout=settings.extraction_timeout,
        )
    if settings.extraction_backend == "pymupdf":
        return PyMuPDFExtractionService(
            settings.sync_page_limit,
            spacy_model=settings.spacy_model or None,
        )
    raise ValueError(
        f"Unknown extraction_backend '{settings.extraction_backend}'. "
        "Valid options: 'pymupdf', 'http'"
    )


# ---------------------------------------------------------------------------
# PDF page splitting (pypdf)
# ---------------------------------------------------------------------------

def split_pdf(pdf_bytes: bytes, pages_per_slice: int) -> list[tuple[int, bytes]]:
    """Split into (page_offset, slice_bytes) pairs of at most `pages_per_slice` pages."""
    from pypdf import PdfReader, PdfWriter

    if pages_per_slice < 1:
        raise ValueError("pages_per_slice must be >= 1")

    reader = PdfReader(io.BytesIO(pdf_bytes))
    total = len(reader.pages)
    slices: list[tuple[int, bytes]] = []
    for start in range(0, total, pages_per_slice):
        writer = PdfWriter()
        for index in range(start, min(start + pages_per_slice, total)):
            writer.add_page(reader.pages[index])
        buffer = io.BytesIO()
        writer.write(buffer)
        slices.append((start, buffer.getvalue()))
    return slices


# ---------------------------------------------------------------------------
# Strategy orchestrator
# ---------------------------------------------------------------------------

class DocumentExtractor:
    def __init__(
        self,
        service: ExtractionService,
        resilience: ResilienceService,
        *,
        sync_page_limit: int = 15,
    ) -> None:
        self.service = service
        self.resilience = resilience
        self.sync_page_limit = sync_page_limit

    async def extract(
        self,
        pdf_bytes: bytes,
        strategy: ExtractionStrategy = ExtractionStrategy.SYNC,
    ) -> ExtractedDocument:
        if strategy is ExtractionStrategy.SYNC:
            try:
                return await self._call(pdf_bytes)
            except PageLimitExceededError as exc:
                logger.info(
                    "Sync extraction refused, falling back to chunked | pages=%d limit=%d",
                    exc.page_count, exc.limit,
                )
        return await self._extract_chunked(pdf_bytes)

    async def _extract_chunked(self, pdf_bytes: bytes) -> ExtractedDocument:
        loop = asyncio.get_running_loop()
        slices = await loop.run_in_executor(
            None, split_pdf, pdf_bytes, self.sync_page_limit,
        )
        logger.info(
            "Chunked extraction | slices=%d pages_per_slice=%d",
            len(slices), self.sync_page_limit,
        )
        parts: list[ExtractedDocument] = []
        for offset, slice_bytes in slices:
            part = await self._call(slice_bytes)
            parts.append(part.shifted(offset))
        return merge_documents(parts)

    async def _call(self, pdf_bytes: bytes) -> ExtractedDocument:
        return await self.resilience.call(
            Dependency.EXTRACTION, lambda: self.service.extract(pdf_bytes),
        )
