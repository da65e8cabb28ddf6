"""
ResilienceService: one breaker per external dependency, shared by every
caller in the process.

Constructed once (API lifespan / worker bootstrap) and injected; tests pass a
fake clock and sleep so retry and cooldown timing is deterministic.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from docsim.core.exceptions import (
    InvalidDocumentError,
    MalformedVectorError,
    PageLimitExceededError,
    ProcessingCancelled,
    RetryExhaustedError,
    ValidationError,
)
from docsim.resilience.circuit_breaker import CircuitBreaker
from docsim.resilience.policy import (
    DATABASE_POLICY,
    EMBEDDING_POLICY,
    EXTRACTION_POLICY,
    INDEX_POLICY,
    RetryPolicy,
)
from docsim.resilience.retry import Clock, RetryOutcome, Sleep, execute

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Dependency(str, Enum):
    EXTRACTION   = "extraction"
    EMBEDDINGS   = "embeddings"
    VECTOR_INDEX = "vector_index"
    DATABASE     = "database"


# (max_failures, reset_timeout seconds); the database has retries only
BREAKER_SETTINGS: dict[Dependency, tuple[int, float]] = {
    Dependency.EXTRACTION:   (3, 120.0),
    Dependency.EMBEDDINGS:   (5, 60.0),
    Dependency.VECTOR_INDEX: (3, 90.0),
}

# Caller-side errors that say nothing about the dependency's health
CALLER_ERRORS: tuple[type[BaseException], ...] = (
    ValidationError,
    InvalidDocumentError,
    PageLimitExceededError,
    ProcessingCancelled,
    MalformedVectorError,
)

DEFAULT_POLICIES: dict[Dependency, RetryPolicy] = {
    Dependency.EXTRACTION:   EXTRACTION_POLICY,
    Dependency.EMBEDDINGS:   EMBEDDING_POLICY,
    Dependency.VECTOR_INDEX: INDEX_POLICY,
    Dependency.DATABASE:     DATABASE_POLICY,
}


class ResilienceService:
    def __init__(
        self,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
        policies: dict[Dependency, RetryPolicy] | None = None,
    ) -> None:
        self.sleep = sleep
        self.clock = clock
        self.policies = {**DEFAULT_POLICIES, **(policies or {})}
        self.breakers: dict[Dependency, CircuitBreaker] = {
            dep: CircuitBreaker(
                dep.value,
                max_failures=failures,
                reset_timeout=timeout,
                clock=clock,
                ignored=CALLER_ERRORS,
            )
            for dep, (failures, timeout) in BREAKER_SETTINGS.items()
        }

    def breaker(self, dependency: Dependency) -> CircuitBreaker | None:
        return self.breakers.get(dependency)

    async def run(
        self,
        dependency: Dependency,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
    ) -> RetryOutcome[T]:
        """Retry `operation` with each attempt passing through the breaker."""
        breaker = self.breakers.get(dependency)
        guarded = operation if breaker is None else (lambda: breaker.call(operation))
        return await execute(
            guarded,
            policy or self.policies[dependency],
            sleep=self.sleep,
            clock=self.clock,
        )

    async def call(
        self,
        dependency: Dependency,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
    ) -> T:
        """Like `run` but returns the result or raises.

        Non-retryable errors (including CircuitOpenError) propagate unchanged;
        an exhausted budget raises RetryExhaustedError.
        """
        outcome = await self.run(dependency, operation, policy)
        if outcome.success:
            return outcome.result  # type: ignore[return-value]
        error = outcome.error
        resolved = policy or self.policies[dependency]
        if error is not None and not resolved.is_retryable(error):
            raise error
        raise RetryExhaustedError(dependency.value, error, outcome.attempts) from error

    def health(self) -> dict[str, dict]:
        return {dep.value: b.snapshot() for dep, b in self.breakers.items()}

    def reset(self) -> None:
        for breaker in self.breakers.values():
            breaker.reset()
