"""
Circuit Breaker
═══════════════

Fails fast when a dependency keeps failing, instead of letting every caller
wait out its own timeouts and retries.

States
──────
  CLOSED     calls pass through; consecutive failures are counted.
  OPEN       calls are rejected with CircuitOpenError without being invoked.
  HALF_OPEN  after `reset_timeout`, exactly one trial call is admitted.
             Success closes the circuit, failure re-opens it and restarts
             the cooldown. Callers arriving while the trial call is in flight
             are rejected.

Usage:
    breaker = CircuitBreaker("embeddings", max_failures=5, reset_timeout=60)
    vector = await breaker.call(lambda: client.embed(text))
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from docsim.core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED    = "closed"
    OPEN      = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    total_calls:          int = 0
    successful_calls:     int = 0
    failed_calls:         int = 0
    rejected_calls:       int = 0
    consecutive_failures: int = 0
    last_failure_time:    float | None = None
    last_success_time:    float | None = None


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        max_failures: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        ignored: tuple[type[BaseException], ...] = (),
    ) -> None:
        if max_failures < 1:
            raise ValueError("max_failures must be >= 1")
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout
        self._clock = clock
        # Errors the caller caused; they pass through without counting
        self._ignored = ignored

        self._state = CircuitState.CLOSED
        self._opened_at: float = 0.0
        self._trial_in_flight = False
        self._stats = CircuitStats()
        # Breakers are shared by every event loop in the process (Celery
        # may run coroutines on helper threads).
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # State inspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    def _current_state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit half-open | breaker=%s", self.name)
        return self._state

    def retry_after(self) -> float:
        if self._state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self._opened_at))

    # ------------------------------------------------------------------
    # Call path
    # ------------------------------------------------------------------

    def _admit(self) -> None:
        with self._lock:
            state = self._current_state()
            if state is CircuitState.OPEN or (
                state is CircuitState.HALF_OPEN and self._trial_in_flight
            ):
                self._stats.rejected_calls += 1
                raise CircuitOpenError(self.name, self.retry_after())
            if state is CircuitState.HALF_OPEN:
                self._trial_in_flight = True
            self._stats.total_calls += 1

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def _record_success(self) -> None:
        with self._lock:
            self._stats.successful_calls += 1
            self._stats.last_success_time = self._clock()
            self._stats.consecutive_failures = 0
            if self._state is not CircuitState.CLOSED:
                logger.info("Circuit closed | breaker=%s", self.name)
            self._state = CircuitState.CLOSED
            self._trial_in_flight = False

    def _record_failure(self, exc: BaseException) -> None:
        with self._lock:
            now = self._clock()
            self._stats.failed_calls += 1
            self._stats.last_failure_time = now
            self._stats.consecutive_failures += 1

            if self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._opened_at = now
                self._trial_in_flight = False
                logger.warning(
                    "Circuit re-opened after failed trial call | breaker=%s error=%s",
                    self.name, exc,
                )
            elif (
                self._state is CircuitState.CLOSED
                and self._stats.consecutive_failures >= self.max_failures
            ):
                self._state = CircuitState.OPEN
                self._opened_at = now
                logger.warning(
                    "Circuit opened | breaker=%s failures=%d error=%s",
                    self.name, self._stats.consecutive_failures, exc,
                )

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._admit()
        try:
            result = await operation()
        except self._ignored:
            self._release_trial()
            raise
        except Exception as exc:
            self._record_failure(exc)
            raise
        except BaseException:
            # Task cancellation is not a dependency failure
            self._release_trial()
            raise
        self._record_success()
        return result

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._opened_at = 0.0
            self._trial_in_flight = False
            self._stats = CircuitStats()
        logger.info("Circuit manually reset | breaker=%s", self.name)

    def snapshot(self) -> dict:
        state = self.state
        return {
            "name":          self.name,
            "state":         state.value,
            "max_failures":  self.max_failures,
            "reset_timeout": self.reset_timeout,
            "retry_after":   round(self.retry_after(), 1),
            **asdict(self._stats),
        }
