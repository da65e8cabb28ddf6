"""
Exception hierarchy shared by the pipeline, the search engine and the API.

Every error raised on purpose derives from DocSimError so the HTTP layer can
map it to a structured ErrorResponse with a single handler.

  Transient     RetryExhaustedError, CircuitOpenError
  Control flow  ProcessingCancelled
  Validation    ValidationError → PageRangeError, FilterError
  Fatal         ExtractionError, PageLimitExceededError, MalformedVectorError,
                ChunkBatchError, SearchError
  Caller-facing DocumentNotFoundError, DocumentNotReadyError, DocumentStateError
"""

from __future__ import annotations

from typing import Any


class DocSimError(Exception):
    """Base class for all service errors."""

    error_code: str = "DOCSIM_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ---------------------------------------------------------------------------
# Transient failures that outlived the resilience layer
# ---------------------------------------------------------------------------

class RetryExhaustedError(DocSimError):
    error_code = "RETRY_EXHAUSTED"

    def __init__(self, operation: str, last_error: BaseException | None, attempts: int) -> None:
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {last_error}",
            details={"operation": operation, "attempts": attempts},
        )
        self.operation = operation
        self.last_error = last_error
        self.attempts = attempts


class CircuitOpenError(DocSimError):
    error_code = "CIRCUIT_OPEN"

    def __init__(self, dependency: str, retry_after: float = 0.0) -> None:
        super().__init__(
            f"Circuit for '{dependency}' is open; retry in {retry_after:.1f}s",
            details={"dependency": dependency, "retry_after": round(retry_after, 1)},
        )
        self.dependency = dependency
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Cancellation (control flow, not a failure)
# ---------------------------------------------------------------------------

class ProcessingCancelled(DocSimError):
    error_code = "PROCESSING_CANCELLED"

    def __init__(self, document_id: Any, reason: str = "cancelled") -> None:
        super().__init__(
            f"Processing of document {document_id} was cancelled ({reason})",
            details={"document_id": str(document_id), "reason": reason},
        )
        self.document_id = document_id
        self.reason = reason


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationError(DocSimError):
    error_code = "VALIDATION_ERROR"


class PageRangeError(ValidationError):
    error_code = "INVALID_PAGE_RANGE"


class FilterError(ValidationError):
    error_code = "INVALID_FILTER"


# ---------------------------------------------------------------------------
# Document lookups
# ---------------------------------------------------------------------------

class DocumentNotFoundError(DocSimError):
    error_code = "DOCUMENT_NOT_FOUND"


class DocumentNotReadyError(DocSimError):
    error_code = "DOCUMENT_NOT_READY"


class DocumentStateError(DocSimError):
    """The requested transition is not allowed from the current status."""

    error_code = "INVALID_DOCUMENT_STATE"


# ---------------------------------------------------------------------------
# Fatal pipeline errors
# ---------------------------------------------------------------------------

class ExtractionError(DocSimError):
    error_code = "EXTRACTION_FAILED"


class InvalidDocumentError(ExtractionError):
    """The file itself is unreadable; says nothing about the extraction backend."""

    error_code = "INVALID_DOCUMENT"


class PageLimitExceededError(ExtractionError):
    """The extraction backend refused the document for synchronous processing."""

    error_code = "PAGE_LIMIT_EXCEEDED"

    def __init__(self, page_count: int, limit: int) -> None:
        super().__init__(
            f"Document has {page_count} pages; synchronous limit is {limit}",
            details={"page_count": page_count, "limit": limit},
        )
        self.page_count = page_count
        self.limit = limit


class MalformedVectorError(DocSimError):
    error_code = "MALFORMED_VECTOR"


class ChunkBatchError(DocSimError):
    error_code = "CHUNK_BATCH_FAILED"

    def __init__(self, failed_indices: list[int], last_error: BaseException | None) -> None:
        super().__init__(
            f"{len(failed_indices)} chunk(s) failed after intra-batch retries: {last_error}",
            details={"failed_chunks": failed_indices},
        )
        self.failed_indices = failed_indices
        self.last_error = last_error


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class SearchError(DocSimError):
    error_code = "SEARCH_FAILED"

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"[{stage}] {message}", details={"stage": stage})
        self.stage = stage
