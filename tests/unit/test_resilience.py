"""
Unit Tests — Resilience (policies, retry executor, circuit breaker, service)
═════════════════════════════════════════════════════════════════════════════

All timing is fake: `fake_sleep` records delays and advances `fake_clock`,
so breaker cooldowns and backoff curves are checked without waiting.

Coverage targets:
  ✅ Backoff curve per named policy, non-decreasing and capped at max_delay
  ✅ Rate-limit factor on the document-level embedding policy
  ✅ Classifiers: HTTP status, transient types, never-retry set, FK violations
  ✅ Document-level retry only for errors a dependency gave up on
  ✅ Rate-limit keywords match whole phrases only
  ✅ Unreadable documents never count against the extraction breaker
  ✅ execute(): recovery, non-retryable stop, exhausted budget, on_retry abort
  ✅ Breaker: CLOSED → OPEN → HALF_OPEN → CLOSED / re-OPEN, ignored errors
  ✅ ResilienceService.call(): RetryExhaustedError, CircuitOpenError fast-fail
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from docsim.core.exceptions import (
    ChunkBatchError,
    CircuitOpenError,
    InvalidDocumentError,
    MalformedVectorError,
    ProcessingCancelled,
    RetryExhaustedError,
    ValidationError,
)
from docsim.resilience.circuit_breaker import CircuitBreaker, CircuitState
from docsim.resilience.policy import (
    DATABASE_POLICY,
    EMBEDDING_POLICY,
    EXTRACTION_POLICY,
    INDEX_POLICY,
    RetryPolicy,
    document_embedding_policy,
    is_foreign_key_violation,
    is_rate_limit_error,
    is_retryable_document_error,
    is_retryable_embedding_error,
    is_retryable_extraction_error,
    is_retryable_index_error,
)
from docsim.resilience.retry import execute
from docsim.resilience.service import Dependency, ResilienceService


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _HttpError(Exception):
    """SDK-style error carrying an HTTP status."""

    def __init__(self, status_code: int, message: str = "request failed") -> None:
        super().__init__(message)
        self.status_code = status_code


class _PgError(Exception):
    sqlstate = "23503"


class _WrappedDbError(Exception):
    """Shape of sqlalchemy.exc.IntegrityError: driver error under `.orig`."""

    def __init__(self, orig: BaseException) -> None:
        super().__init__("integrity error")
        self.orig = orig


def _flaky(failures: int, error: BaseException, result="ok") -> AsyncMock:
    return AsyncMock(side_effect=[error] * failures + [result])


# ─────────────────────────────────────────────────────────────────────────────
# Policies
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestRetryPolicies:

    def test_named_policy_budgets(self):
        assert (EXTRACTION_POLICY.max_attempts, EXTRACTION_POLICY.base_delay,
                EXTRACTION_POLICY.max_delay, EXTRACTION_POLICY.backoff_factor) == (5, 2.0, 60.0, 2.5)
        assert (EMBEDDING_POLICY.max_attempts, EMBEDDING_POLICY.base_delay,
                EMBEDDING_POLICY.max_delay) == (4, 3.0, 45.0)
        assert (INDEX_POLICY.max_attempts, INDEX_POLICY.base_delay,
                INDEX_POLICY.max_delay) == (3, 1.5, 20.0)
        assert (DATABASE_POLICY.max_attempts, DATABASE_POLICY.base_delay,
                DATABASE_POLICY.max_delay) == (3, 1.0, 15.0)

    def test_extraction_backoff_curve_is_capped(self):
        delays = [EXTRACTION_POLICY.base_delay_for(n) for n in range(1, 6)]
        assert delays == [2.0, 5.0, 12.5, 31.25, 60.0]

    def test_jitter_adds_at_most_ten_percent(self):
        assert EMBEDDING_POLICY.delay_for(1, rng=lambda: 0.0) == 3.0
        assert EMBEDDING_POLICY.delay_for(1, rng=lambda: 1.0) == pytest.approx(3.3)

    def test_document_policy_uses_rate_limit_factor(self):
        policy = document_embedding_policy(1_000)
        assert policy.max_attempts == 1_000
        assert policy.base_delay_for(3, ConnectionError("reset")) == pytest.approx(2.25)
        assert policy.base_delay_for(3, _HttpError(429)) == pytest.approx(4.0)

    def test_document_policy_caps_at_two_minutes(self):
        policy = document_embedding_policy(1_000)
        assert policy.base_delay_for(50) == 120.0

    def test_backoff_never_decreases(self):
        for policy in (EXTRACTION_POLICY, EMBEDDING_POLICY, INDEX_POLICY, DATABASE_POLICY,
                       document_embedding_policy(100)):
            delays = [policy.base_delay_for(n) for n in range(1, 30)]
            assert delays == sorted(delays), policy.name
            assert max(delays) <= policy.max_delay
            assert policy.delay_for(29, rng=lambda: 1.0) <= policy.max_delay * 1.1 + 1e-9

    def test_invalid_policy_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(name="bad", max_attempts=0, base_delay=1, max_delay=1)
        with pytest.raises(ValueError):
            RetryPolicy(name="bad", max_attempts=1, base_delay=1, max_delay=1, backoff_factor=0.5)


@pytest.mark.unit
class TestClassifiers:

    @pytest.mark.parametrize("status", [429, 503, 504])
    def test_extraction_retries_throttle_and_unavailable(self, status):
        assert is_retryable_extraction_error(_HttpError(status)) is True

    def test_extraction_does_not_retry_bad_request(self):
        assert is_retryable_extraction_error(_HttpError(400, "bad request")) is False

    def test_extraction_retries_grpc_deadline(self):
        exc = Exception("rpc failed")
        exc.code = 4
        assert is_retryable_extraction_error(exc) is True

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_embedding_retries_server_errors(self, status):
        assert is_retryable_embedding_error(_HttpError(status)) is True

    def test_embedding_does_not_retry_auth_errors(self):
        assert is_retryable_embedding_error(_HttpError(401, "invalid api key")) is False

    def test_transient_builtin_types_are_retryable(self):
        assert is_retryable_index_error(TimeoutError()) is True
        assert is_retryable_index_error(ConnectionError()) is True

    @pytest.mark.parametrize("exc", [
        ProcessingCancelled("doc-1"),
        ValidationError("bad input"),
        MalformedVectorError("wrong dimension"),
        InvalidDocumentError("Unreadable PDF"),
    ])
    def test_never_retry_set(self, exc):
        assert is_retryable_index_error(exc) is False
        assert is_retryable_embedding_error(exc) is False
        assert is_retryable_document_error(exc) is False

    def test_foreign_key_violation_detected_through_wrapper(self):
        assert is_foreign_key_violation(_PgError()) is True
        assert is_foreign_key_violation(_WrappedDbError(_PgError())) is True
        assert is_foreign_key_violation(ValueError("nope")) is False

    def test_foreign_key_violation_is_never_retried(self):
        assert is_retryable_document_error(_WrappedDbError(_PgError())) is False

    def test_document_error_retries_open_circuit(self):
        assert is_retryable_document_error(CircuitOpenError("embeddings", 30)) is True

    def test_rate_limit_detection(self):
        assert is_rate_limit_error(_HttpError(429)) is True
        assert is_rate_limit_error(Exception("You exceeded your current quota")) is True
        assert is_rate_limit_error(Exception("socket closed")) is False

    def test_document_error_retries_what_a_dependency_gave_up_on(self):
        assert is_retryable_document_error(ChunkBatchError([0, 3], ConnectionError("reset"))) is True
        assert is_retryable_document_error(RetryExhaustedError("embeddings", TimeoutError(), 4)) is True

    def test_document_error_fails_fast_on_refused_errors(self):
        assert is_retryable_document_error(_HttpError(401, "invalid api key")) is False
        assert is_retryable_document_error(_HttpError(400, "bad request")) is False

    @pytest.mark.parametrize("message", [
        "Rate limit reached for requests",
        "Too Many Requests",
        "ratelimit exceeded",
    ])
    def test_rate_limit_messages(self, message):
        assert is_rate_limit_error(Exception(message)) is True

    @pytest.mark.parametrize("message", [
        "page limit exceeded",
        "failed to generate embedding",
        "separate request failed",
    ])
    def test_words_containing_rate_or_limit_are_not_rate_limits(self, message):
        assert is_rate_limit_error(Exception(message)) is False


# ─────────────────────────────────────────────────────────────────────────────
# Retry executor
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestExecute:

    async def test_recovers_after_transient_failures(self, fake_sleep, fake_clock):
        operation = _flaky(2, ConnectionError("reset"))

        outcome = await execute(operation, INDEX_POLICY, sleep=fake_sleep, clock=fake_clock)

        assert outcome.success is True
        assert outcome.result == "ok"
        assert outcome.attempts == 3
        assert len(fake_sleep.delays) == 2
        assert outcome.elapsed == pytest.approx(sum(fake_sleep.delays))

    async def test_stops_on_non_retryable(self, fake_sleep, fake_clock):
        operation = AsyncMock(side_effect=ValidationError("bad"))

        outcome = await execute(operation, INDEX_POLICY, sleep=fake_sleep, clock=fake_clock)

        assert outcome.success is False
        assert outcome.attempts == 1
        assert isinstance(outcome.error, ValidationError)
        assert fake_sleep.delays == []

    async def test_exhausts_budget(self, fake_sleep, fake_clock):
        operation = AsyncMock(side_effect=ConnectionError("down"))

        outcome = await execute(operation, INDEX_POLICY, sleep=fake_sleep, clock=fake_clock)

        assert outcome.success is False
        assert outcome.attempts == INDEX_POLICY.max_attempts
        assert operation.await_count == INDEX_POLICY.max_attempts
        assert len(fake_sleep.delays) == INDEX_POLICY.max_attempts - 1

    async def test_on_retry_can_abort(self, fake_sleep, fake_clock):
        operation = AsyncMock(side_effect=ConnectionError("down"))

        async def on_retry(attempt, error, delay):
            raise ProcessingCancelled("doc-1")

        with pytest.raises(ProcessingCancelled):
            await execute(
                operation, INDEX_POLICY,
                sleep=fake_sleep, clock=fake_clock, on_retry=on_retry,
            )
        assert operation.await_count == 1
        assert fake_sleep.delays == []


# ─────────────────────────────────────────────────────────────────────────────
# Circuit breaker
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCircuitBreaker:

    @pytest.fixture
    def breaker(self, fake_clock):
        return CircuitBreaker(
            "embeddings", max_failures=3, reset_timeout=60, clock=fake_clock,
            ignored=(ValidationError,),
        )

    async def _fail(self, breaker, times=1):
        for _ in range(times):
            with pytest.raises(ConnectionError):
                await breaker.call(AsyncMock(side_effect=ConnectionError("down")))

    async def test_opens_after_consecutive_failures(self, breaker):
        await self._fail(breaker, 3)
        assert breaker.state is CircuitState.OPEN

    async def test_open_circuit_rejects_without_calling(self, breaker):
        await self._fail(breaker, 3)
        operation = AsyncMock(return_value="ok")

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(operation)

        operation.assert_not_awaited()
        assert exc_info.value.dependency == "embeddings"
        assert breaker.stats.rejected_calls == 1

    async def test_success_resets_failure_count(self, breaker):
        await self._fail(breaker, 2)
        await breaker.call(AsyncMock(return_value="ok"))
        await self._fail(breaker, 2)
        assert breaker.state is CircuitState.CLOSED

    async def test_half_open_trial_success_closes(self, breaker, fake_clock):
        await self._fail(breaker, 3)
        fake_clock.advance(60)
        assert breaker.state is CircuitState.HALF_OPEN

        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state is CircuitState.CLOSED

    async def test_half_open_trial_failure_reopens(self, breaker, fake_clock):
        await self._fail(breaker, 3)
        fake_clock.advance(61)

        await self._fail(breaker)

        assert breaker.state is CircuitState.OPEN
        assert breaker.retry_after() == pytest.approx(60)

    async def test_ignored_errors_do_not_count(self, breaker):
        for _ in range(5):
            with pytest.raises(ValidationError):
                await breaker.call(AsyncMock(side_effect=ValidationError("bad")))
        assert breaker.state is CircuitState.CLOSED
        assert breaker.stats.failed_calls == 0

    async def test_reset_and_snapshot(self, breaker):
        await self._fail(breaker, 3)
        snapshot = breaker.snapshot()
        assert snapshot["state"] == "open"
        assert snapshot["failed_calls"] == 3
        assert snapshot["retry_after"] == 60.0

        breaker.reset()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.snapshot()["failed_calls"] == 0

    def test_rejects_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker("x", max_failures=0)


# ─────────────────────────────────────────────────────────────────────────────
# ResilienceService
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestResilienceService:

    def test_breaker_thresholds(self, resilience):
        extraction = resilience.breaker(Dependency.EXTRACTION)
        embeddings = resilience.breaker(Dependency.EMBEDDINGS)
        index = resilience.breaker(Dependency.VECTOR_INDEX)
        assert (extraction.max_failures, extraction.reset_timeout) == (3, 120.0)
        assert (embeddings.max_failures, embeddings.reset_timeout) == (5, 60.0)
        assert (index.max_failures, index.reset_timeout) == (3, 90.0)
        assert resilience.breaker(Dependency.DATABASE) is None

    async def test_call_returns_result_after_retry(self, resilience):
        operation = _flaky(1, ConnectionError("reset"), result=[0.1, 0.2])
        assert await resilience.call(Dependency.EMBEDDINGS, operation) == [0.1, 0.2]

    async def test_exhausted_budget_raises_and_opens_breaker(self, resilience):
        operation = AsyncMock(side_effect=ConnectionError("index down"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await resilience.call(Dependency.VECTOR_INDEX, operation)

        assert exc_info.value.attempts == 3
        assert exc_info.value.operation == "vector_index"
        assert resilience.breaker(Dependency.VECTOR_INDEX).state is CircuitState.OPEN

    async def test_open_breaker_fails_fast(self, resilience):
        await resilience.breaker(Dependency.VECTOR_INDEX).call(AsyncMock(return_value=None))
        for _ in range(3):
            with pytest.raises(ConnectionError):
                await resilience.breaker(Dependency.VECTOR_INDEX).call(
                    AsyncMock(side_effect=ConnectionError("down"))
                )
        operation = AsyncMock(return_value="ok")

        with pytest.raises(CircuitOpenError):
            await resilience.call(Dependency.VECTOR_INDEX, operation)
        operation.assert_not_awaited()

    async def test_non_retryable_error_propagates_unchanged(self, resilience):
        operation = AsyncMock(side_effect=ValidationError("bad filter"))

        with pytest.raises(ValidationError):
            await resilience.call(Dependency.VECTOR_INDEX, operation)

        assert operation.await_count == 1
        assert resilience.breaker(Dependency.VECTOR_INDEX).stats.failed_calls == 0

    async def test_unreadable_documents_leave_extraction_breaker_closed(self, resilience):
        operation = AsyncMock(side_effect=InvalidDocumentError("Unreadable PDF"))

        for _ in range(3):
            with pytest.raises(InvalidDocumentError):
                await resilience.call(Dependency.EXTRACTION, operation)

        breaker = resilience.breaker(Dependency.EXTRACTION)
        assert breaker.state is CircuitState.CLOSED
        assert breaker.stats.failed_calls == 0
        assert operation.await_count == 3

    async def test_database_has_retries_without_breaker(self, resilience, fake_sleep):
        operation = _flaky(2, ConnectionError("connection refused"))
        assert await resilience.call(Dependency.DATABASE, operation) == "ok"
        assert len(fake_sleep.delays) == 2

    def test_health_lists_every_breaker(self, resilience):
        health = resilience.health()
        assert set(health) == {"extraction", "embeddings", "vector_index"}
        assert all(entry["state"] == "closed" for entry in health.values())
