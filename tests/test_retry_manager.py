"""
Retry Manager Tests
Backoff, circuit breakers, classification and batch execution.
"""

import asyncio

import pytest

from changelink.errors import (
    BatchAbortedError,
    ChangeLinkError,
    CircuitOpenError,
    ErrorType,
    OperationTimeoutError,
    ValidationError,
)
from changelink.retry_manager import BatchOperation, CircuitState, RetryStrategy


def failing(error, calls):
    async def op():
        calls.append(1)
        raise error
    return op


# === Retry Strategy ===

@pytest.mark.unit
class TestRetryStrategy:

    def test_delay_grows_and_caps(self):
        strategy = RetryStrategy(max_retries=5, base_delay=1.0, backoff_multiplier=2.0, max_delay=10.0, jitter=False)

        assert [strategy.calculate_delay(a) for a in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_jitter_stays_within_ten_percent(self):
        strategy = RetryStrategy(max_retries=3, base_delay=4.0, backoff_multiplier=1.0, max_delay=4.0, jitter=True)

        for _ in range(50):
            assert 3.6 <= strategy.calculate_delay(0) <= 4.4


# === Execution ===

@pytest.mark.resilience
class TestRunWithRetry:

    @pytest.mark.asyncio
    async def test_retries_transient_errors_then_succeeds(self, retry_manager, clock):
        attempts = []

        async def op():
            attempts.append(1)
            if len(attempts) < 3:
                raise ChangeLinkError("network unreachable", ErrorType.NETWORK_ERROR)
            return "ok"

        outcome = await retry_manager.run_with_retry(
            op, "fetch_thing", ErrorType.NETWORK_ERROR, strategy_overrides={"jitter": False}
        )

        assert outcome.success
        assert outcome.result == "ok"
        assert outcome.attempts == 3
        assert len(outcome.retry_history) == 2
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_validation_errors_are_never_retried(self, retry_manager, clock):
        calls = []

        outcome = await retry_manager.run_with_retry(
            failing(ValidationError("Ad Group ID is required"), calls), "validate_thing"
        )

        assert not outcome.success
        assert outcome.attempts == 1
        assert outcome.error_type == ErrorType.VALIDATION_ERROR
        assert len(calls) == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, retry_manager):
        calls = []

        outcome = await retry_manager.run_with_retry(
            failing(ChangeLinkError("server error", ErrorType.SERVER_ERROR), calls),
            "flaky_server",
            strategy_overrides={"max_retries": 2},
        )

        assert not outcome.success
        assert outcome.attempts == 3
        assert len(calls) == 3
        assert isinstance(outcome.error, ChangeLinkError)

    @pytest.mark.asyncio
    async def test_rejected_result_is_retried(self, retry_manager):
        values = iter([1, 2, 3])

        async def op():
            return next(values)

        outcome = await retry_manager.run_with_retry(
            op, "poll_value", strategy_overrides={"max_retries": 3}, retry_on_result=lambda v: v < 3
        )

        assert outcome.success
        assert outcome.result == 3
        assert outcome.attempts == 3
        assert retry_manager.get_circuit_state("poll_value") == CircuitState.CLOSED.value

    @pytest.mark.asyncio
    async def test_last_rejected_result_is_returned_when_attempts_run_out(self, retry_manager):
        values = iter(["a", "b", "c"])

        async def op():
            return next(values)

        outcome = await retry_manager.run_with_retry(
            op, "poll_value", strategy_overrides={"max_retries": 2}, retry_on_result=lambda v: True
        )

        assert outcome.success
        assert outcome.result == "c"
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_execute_with_retry_raises_last_error(self, retry_manager):
        with pytest.raises(ValidationError):
            await retry_manager.execute_with_retry(failing(ValidationError("bad input"), []), "strict_op")

    @pytest.mark.asyncio
    async def test_timeout_bounds_the_whole_retry_loop(self, retry_manager):
        async def slow():
            await asyncio.sleep(10)

        with pytest.raises(OperationTimeoutError) as exc:
            await retry_manager.execute_with_timeout_and_retry(slow, "slow_op", timeout=0.05)

        assert exc.value.error_type == ErrorType.TIMEOUT_ERROR


# === Circuit Breaker ===

@pytest.mark.resilience
class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_open_circuit_blocks_calls_until_cooldown(self, retry_manager, clock):
        retry_manager.add_circuit_breaker("flaky_op", failure_threshold=3, cooldown=60.0)
        calls = []
        op = failing(ChangeLinkError("forbidden", ErrorType.AUTH_ERROR), calls)

        for _ in range(3):
            await retry_manager.run_with_retry(op, "flaky_op")
        assert len(calls) == 3
        assert retry_manager.get_circuit_state("flaky_op") == CircuitState.OPEN.value

        blocked = await retry_manager.run_with_retry(op, "flaky_op")
        assert isinstance(blocked.error, CircuitOpenError)
        assert len(calls) == 3

        clock.advance(60.0)

        async def healthy():
            return True

        await retry_manager.run_with_retry(healthy, "flaky_op")
        assert retry_manager.get_circuit_state("flaky_op") == CircuitState.HALF_OPEN.value

        await retry_manager.run_with_retry(healthy, "flaky_op")
        await retry_manager.run_with_retry(healthy, "flaky_op")
        assert retry_manager.get_circuit_state("flaky_op") == CircuitState.CLOSED.value

    @pytest.mark.asyncio
    async def test_failure_in_half_open_reopens(self, retry_manager, clock):
        retry_manager.add_circuit_breaker("flaky_op", failure_threshold=1, cooldown=30.0)
        op = failing(ChangeLinkError("forbidden", ErrorType.AUTH_ERROR), [])

        await retry_manager.run_with_retry(op, "flaky_op")
        clock.advance(30.0)
        await retry_manager.run_with_retry(op, "flaky_op")

        assert retry_manager.get_circuit_state("flaky_op") == CircuitState.OPEN.value

    def test_breaker_profile_follows_operation_name(self, retry_manager):
        browser = retry_manager.get_circuit_breaker("adspower_get_browser_start")
        api = retry_manager.get_circuit_breaker("google_ads_api_update_123")

        assert (browser.failure_threshold, browser.cooldown) == (3, 120.0)
        assert (api.failure_threshold, api.cooldown) == (5, 60.0)

    @pytest.mark.asyncio
    async def test_health_reports_open_circuits(self, retry_manager):
        assert retry_manager.get_health_status()["status"] == "healthy"

        retry_manager.add_circuit_breaker("flaky_op", failure_threshold=2, cooldown=60.0)
        op = failing(ChangeLinkError("forbidden", ErrorType.AUTH_ERROR), [])
        await retry_manager.run_with_retry(op, "flaky_op")
        await retry_manager.run_with_retry(op, "flaky_op")

        health = retry_manager.get_health_status()
        assert health["status"] == "unhealthy"
        assert health["open_circuits"] == ["flaky_op"]
        assert retry_manager.get_operation_stats("flaky_op")["failed_executions"] == 2


# === Classification ===

@pytest.mark.unit
class TestClassification:

    @pytest.mark.parametrize("message,expected", [
        ("429 Too Many Requests", ErrorType.RATE_LIMIT_ERROR),
        ("request timed out", ErrorType.TIMEOUT_ERROR),
        ("401 Unauthorized", ErrorType.AUTH_ERROR),
        ("Target closed", ErrorType.BROWSER_ERROR),
        ("connect ECONNREFUSED 127.0.0.1:50325", ErrorType.CONNECTION_ERROR),
        ("DNS lookup failed", ErrorType.NETWORK_ERROR),
    ])
    def test_message_patterns(self, retry_manager, message, expected):
        assert retry_manager.classify_error(RuntimeError(message)) == expected

    def test_typed_errors_keep_their_type(self, retry_manager):
        error = ChangeLinkError("anything", ErrorType.SERVER_ERROR)
        assert retry_manager.classify_error(error) == ErrorType.SERVER_ERROR

    def test_unknown_falls_back_to_default(self, retry_manager):
        assert retry_manager.classify_error(RuntimeError("boom")) == ErrorType.UNKNOWN_ERROR
        assert retry_manager.classify_error(RuntimeError("boom"), ErrorType.BROWSER_ERROR) == ErrorType.BROWSER_ERROR


# === Batch Execution ===

@pytest.mark.resilience
class TestBatchExecution:

    def _operations(self, fail_at, calls):
        ops = []
        for i in range(5):
            async def op(i=i):
                calls.append(i)
                if i == fail_at:
                    raise ValidationError(f"operation {i} rejected")
                return i * 10
            ops.append(BatchOperation(operation=op, name=f"op_{i}"))
        return ops

    @pytest.mark.asyncio
    async def test_collects_every_outcome_in_order(self, retry_manager, clock):
        calls = []

        results = await retry_manager.execute_batch(self._operations(2, calls), concurrency=2)

        assert [r.index for r in results] == [0, 1, 2, 3, 4]
        assert [r.success for r in results] == [True, True, False, True, True]
        assert results[2].error_type == ErrorType.VALIDATION_ERROR
        assert results[4].result == 40
        assert sorted(calls) == [0, 1, 2, 3, 4]
        # one delay between each of the three chunks
        assert clock.sleeps == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_fail_fast_stops_before_later_chunks(self, retry_manager):
        calls = []

        with pytest.raises(BatchAbortedError) as exc:
            await retry_manager.execute_batch(self._operations(1, calls), concurrency=2, fail_fast=True)

        assert exc.value.index == 1
        assert exc.value.operation_name == "op_1"
        assert sorted(calls) == [0, 1]
