"""
Resilience Layer
════════════════

Retry policies with exponential backoff, per-dependency circuit breakers and
the service object that combines the two for every external call.

Modules
───────
  policy.py           RetryPolicy value, named policies, error classifiers
  retry.py            execute(): run an operation under a policy
  circuit_breaker.py  closed → open → half-open breaker
  service.py          ResilienceService (one breaker per dependency)
"""

from docsim.resilience.circuit_breaker import CircuitBreaker, CircuitState
from docsim.resilience.policy import (
    DATABASE_POLICY,
    EMBEDDING_POLICY,
    EXTRACTION_POLICY,
    INDEX_POLICY,
    RetryPolicy,
    document_embedding_policy,
)
from docsim.resilience.retry import RetryOutcome, execute
from docsim.resilience.service import Dependency, ResilienceService

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "DATABASE_POLICY",
    "EMBEDDING_POLICY",
    "EXTRACTION_POLICY",
    "INDEX_POLICY",
    "Dependency",
    "ResilienceService",
    "RetryOutcome",
    "RetryPolicy",
    "document_embedding_policy",
    "execute",
]
