"""
Retry Policies
══════════════

A RetryPolicy is a frozen value: attempt budget, backoff curve and an error
classifier. Named policies exist for each external dependency; the
document-level embedding policy is built on demand from settings.

Backoff
───────
  delay(attempt) = min(base_delay * factor ** (attempt - 1), max_delay)
                   + uniform(0, jitter * that)

  factor is `rate_limit_factor` when the failure is a rate limit and the
  policy defines one, else `backoff_factor`.

Classification
──────────────
  Errors are classified by exception class name, HTTP status (from
  `status_code` / `status` / `response.status_code`) and message keywords.
  Cancellation, validation, unreadable documents, malformed vectors and
  foreign-key violations are never retried.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable

from docsim.core.exceptions import (
    ChunkBatchError,
    CircuitOpenError,
    InvalidDocumentError,
    MalformedVectorError,
    ProcessingCancelled,
    RetryExhaustedError,
    ValidationError,
)

Classifier = Callable[[BaseException], bool]

# ---------------------------------------------------------------------------
# Error inspection helpers
# ---------------------------------------------------------------------------

_TRANSIENT_EXCEPTION_TYPES = (
    # openai
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    "ServiceUnavailableError",
    # httpx / generic
    "ConnectTimeout",
    "ReadTimeout",
    "ConnectError",
    "RemoteProtocolError",
    "TimeoutError",
    "ConnectionError",
    "ConnectionResetError",
)

_RATE_LIMIT_KEYWORDS = ("rate limit", "ratelimit", "rate_limit", "too many requests", "429", "quota", "throttl")

FOREIGN_KEY_VIOLATION = "23503"

# Bad input or a deliberate stop; another attempt gives the same answer
NEVER_RETRY = (ProcessingCancelled, ValidationError, MalformedVectorError, InvalidDocumentError)


def error_status(exc: BaseException) -> int | None:
    """Best-effort HTTP status of an SDK/HTTP error."""
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def error_message(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}".lower()


def is_foreign_key_violation(exc: BaseException) -> bool:
    """True for a PostgreSQL 23503 raised directly or wrapped by SQLAlchemy."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        code = getattr(current, "sqlstate", None) or getattr(current, "pgcode", None)
        if code == FOREIGN_KEY_VIOLATION:
            return True
        if "foreignkeyviolation" in type(current).__name__.lower():
            return True
        current = getattr(current, "orig", None) or current.__cause__
    return "violates foreign key constraint" in str(exc).lower()


def is_never_retryable(exc: BaseException) -> bool:
    return (
        isinstance(exc, NEVER_RETRY)
        or is_foreign_key_violation(exc)
    )


def is_rate_limit_error(exc: BaseException) -> bool:
    if error_status(exc) == 429:
        return True
    message = error_message(exc)
    return any(keyword in message for keyword in _RATE_LIMIT_KEYWORDS)


def _is_transient_type(exc: BaseException) -> bool:
    name = type(exc).__name__
    return isinstance(exc, (TimeoutError, ConnectionError)) or any(
        name.endswith(t) for t in _TRANSIENT_EXCEPTION_TYPES
    )


# ---------------------------------------------------------------------------
# Per-dependency classifiers
# ---------------------------------------------------------------------------

def is_retryable_extraction_error(exc: BaseException) -> bool:
    if is_never_retryable(exc):
        return False
    status = error_status(exc)
    if status in (429, 503, 504):
        return True
    # gRPC DEADLINE_EXCEEDED / UNAVAILABLE
    if getattr(exc, "code", None) in (4, 14):
        return True
    message = error_message(exc)
    return _is_transient_type(exc) or any(
        k in message for k in ("timeout", "unavailable", "deadline", "temporar")
    )


def is_retryable_embedding_error(exc: BaseException) -> bool:
    if is_never_retryable(exc):
        return False
    status = error_status(exc)
    if status in (429, 500, 502, 503, 504):
        return True
    message = error_message(exc)
    return _is_transient_type(exc) or any(
        k in message for k in ("quota", "rate limit", "timeout", "overloaded")
    )


def is_retryable_index_error(exc: BaseException) -> bool:
    if is_never_retryable(exc):
        return False
    status = error_status(exc)
    if status is not None and status >= 500:
        return True
    message = error_message(exc)
    return _is_transient_type(exc) or any(
        k in message for k in ("timeout", "connection", "temporar", "unavailable")
    )


def is_retryable_database_error(exc: BaseException) -> bool:
    if is_never_retryable(exc):
        return False
    status = error_status(exc)
    if status is not None and status >= 500:
        return True
    message = error_message(exc)
    return _is_transient_type(exc) or any(
        k in message for k in ("timeout", "connection", "deadlock", "too many clients")
    )


def is_retryable_document_error(exc: BaseException) -> bool:
    """Document-level embedding loop: retry what a dependency gave up on.

    Errors the resilience layer refused to retry (auth failures, bad
    requests, malformed vectors) arrive unwrapped and fail the document.
    """
    if isinstance(exc, (ChunkBatchError, RetryExhaustedError, CircuitOpenError)):
        return True
    if is_never_retryable(exc):
        return False
    return is_retryable_embedding_error(exc)


# ---------------------------------------------------------------------------
# Policy value
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    name:           str
    max_attempts:   int
    base_delay:     float            # seconds
    max_delay:      float            # seconds
    backoff_factor: float = 2.0
    jitter:         float = 0.1      # fraction of the computed delay
    is_retryable:   Classifier = is_retryable_index_error
    rate_limit_factor: float | None = None
    is_rate_limited:   Classifier = is_rate_limit_error

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")

    def factor_for(self, exc: BaseException | None) -> float:
        if self.rate_limit_factor is not None and exc is not None and self.is_rate_limited(exc):
            return self.rate_limit_factor
        return self.backoff_factor

    def base_delay_for(self, attempt: int, exc: BaseException | None = None) -> float:
        """Delay before attempt `attempt + 1`, without jitter."""
        exponent = max(attempt - 1, 0)
        return min(self.base_delay * self.factor_for(exc) ** exponent, self.max_delay)

    def delay_for(
        self,
        attempt: int,
        exc: BaseException | None = None,
        rng: Callable[[], float] = random.random,
    ) -> float:
        delay = self.base_delay_for(attempt, exc)
        return delay + delay * self.jitter * rng()


# ---------------------------------------------------------------------------
# Named policies
# ---------------------------------------------------------------------------

EXTRACTION_POLICY = RetryPolicy(
    name="extraction",
    max_attempts=5,
    base_delay=2.0,
    max_delay=60.0,
    backoff_factor=2.5,
    is_retryable=is_retryable_extraction_error,
)

EMBEDDING_POLICY = RetryPolicy(
    name="embeddings",
    max_attempts=4,
    base_delay=3.0,
    max_delay=45.0,
    backoff_factor=2.0,
    is_retryable=is_retryable_embedding_error,
)

INDEX_POLICY = RetryPolicy(
    name="vector_index",
    max_attempts=3,
    base_delay=1.5,
    max_delay=20.0,
    backoff_factor=2.0,
    is_retryable=is_retryable_index_error,
)

DATABASE_POLICY = RetryPolicy(
    name="database",
    max_attempts=3,
    base_delay=1.0,
    max_delay=15.0,
    backoff_factor=2.0,
    is_retryable=is_retryable_database_error,
)


def document_embedding_policy(max_attempts: int) -> RetryPolicy:
    """Practically unbounded retry of a document's whole embedding phase."""
    return RetryPolicy(
        name="document_embeddings",
        max_attempts=max_attempts,
        base_delay=1.0,
        max_delay=120.0,
        backoff_factor=1.5,
        rate_limit_factor=2.0,
        is_retryable=is_retryable_document_error,
    )
