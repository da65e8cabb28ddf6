"""Retry executor: runs an async operation under a RetryPolicy."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from docsim.resilience.policy import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]
Clock = Callable[[], float]


@dataclass
class RetryOutcome(Generic[T]):
    success:  bool
    result:   T | None
    error:    BaseException | None
    attempts: int
    elapsed:  float   # seconds


async def execute(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    clock: Clock = time.monotonic,
    on_retry: Callable[[int, BaseException, float], Awaitable[None] | None] | None = None,
) -> RetryOutcome[T]:
    """
    Attempt `operation` until it succeeds, fails non-retryably or the budget
    runs out. Never raises for operation errors; inspect the outcome instead.

    `on_retry(attempt, error, delay)` fires before each backoff sleep and may
    raise to abort (used by the pipeline to honour cancellation).
    """
    started = clock()
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # classified below
            last_error = exc
            if not policy.is_retryable(exc):
                logger.warning(
                    "Non-retryable failure | policy=%s attempt=%d error=%s",
                    policy.name, attempt, exc,
                )
                return RetryOutcome(False, None, exc, attempt, clock() - started)

            if attempt == policy.max_attempts:
                logger.error(
                    "Retry budget exhausted | policy=%s attempts=%d error=%s",
                    policy.name, attempt, exc,
                )
                return RetryOutcome(False, None, exc, attempt, clock() - started)

            delay = policy.delay_for(attempt, exc)
            logger.warning(
                "Retrying | policy=%s attempt=%d/%d delay=%.2fs error=%s",
                policy.name, attempt, policy.max_attempts, delay, exc,
            )
            if on_retry is not None:
                maybe = on_retry(attempt, exc, delay)
                if asyncio.iscoroutine(maybe):
                    await maybe
            await sleep(delay)
            continue

        if attempt > 1:
            logger.info(
                "Recovered after retry | policy=%s attempts=%d", policy.name, attempt,
            )
        return RetryOutcome(True, result, None, attempt, clock() - started)

    # max_attempts >= 1 guarantees the loop returns
    return RetryOutcome(False, None, last_error, policy.max_attempts, clock() - started)
