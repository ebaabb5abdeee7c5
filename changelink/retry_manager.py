#!/usr/bin/env python3
"""
Retry Manager - Centralized retry, backoff and circuit breaking.

Every outbound call in the core (browser automation API, ads API, URL
extraction attempts) goes through a single RetryManager instance:

    manager = RetryManager()
    data = await manager.execute_with_retry(fetch, "ads_power_get_user_list",
                                            ErrorType.CONNECTION_ERROR)

Backoff: delay = min(base_delay * multiplier^attempt, max_delay) +/- 10% jitter
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .clock import Clock, get_clock
from .errors import (
    NON_RETRYABLE_ERRORS,
    BatchAbortedError,
    ChangeLinkError,
    CircuitOpenError,
    ErrorType,
    OperationTimeoutError,
)

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if recovered


@dataclass
class RetryStrategy:
    """Backoff parameters for one error type (seconds)."""
    max_retries: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0
    jitter: bool = True

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt + 1` (attempt is 0-based)."""
        delay = min(self.base_delay * (self.backoff_multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay += delay * random.uniform(-0.1, 0.1)
        return max(delay, 0.0)


DEFAULT_STRATEGIES: Dict[ErrorType, RetryStrategy] = {
    ErrorType.NETWORK_ERROR: RetryStrategy(3, 1.0, 2.0, 10.0, True),
    ErrorType.TIMEOUT_ERROR: RetryStrategy(2, 5.0, 1.5, 15.0, True),
    ErrorType.BROWSER_ERROR: RetryStrategy(2, 3.0, 2.0, 12.0, False),
    ErrorType.RATE_LIMIT_ERROR: RetryStrategy(5, 60.0, 1.0, 60.0, False),
    ErrorType.AUTH_ERROR: RetryStrategy(1, 5.0, 1.0, 5.0, False),
    ErrorType.CONNECTION_ERROR: RetryStrategy(4, 2.0, 2.0, 16.0, True),
    ErrorType.SERVER_ERROR: RetryStrategy(3, 3.0, 1.8, 20.0, True),
}

DEFAULT_STRATEGY = RetryStrategy(3, 1.0, 2.0, 10.0, True)


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    cooldown: float = 60.0
    half_open_successes: int = 3


# Breaker profile picked by keyword in the operation name
BREAKER_PROFILES = {
    "browser": CircuitBreakerConfig(failure_threshold=3, cooldown=120.0),
    "api": CircuitBreakerConfig(failure_threshold=5, cooldown=60.0),
    "default": CircuitBreakerConfig(failure_threshold=5, cooldown=60.0),
}


class CircuitBreaker:
    """
    Circuit breaker pattern for resilience.

    After failure_threshold consecutive failures, opens the circuit for the
    cooldown period. The first call after the cooldown is a half-open trial;
    a failure there reopens the circuit, 3 successes close it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        half_open_successes: int = 3,
        clock: Optional[Clock] = None
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.half_open_successes = half_open_successes
        self.clock = clock or get_clock()
        self.failures = 0
        self.last_failure: Optional[float] = None
        self.state = CircuitState.CLOSED
        self.success_count = 0

    def can_execute(self) -> bool:
        """Check if the operation may run now."""
        if self.state == CircuitState.OPEN:
            if self.clock.monotonic() - (self.last_failure or 0) >= self.cooldown:
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                logger.info(f"[CircuitBreaker] {self.name}: entering half-open state")
                return True
            return False
        return True

    def retry_after(self) -> float:
        if self.state != CircuitState.OPEN or self.last_failure is None:
            return 0.0
        return max(self.cooldown - (self.clock.monotonic() - self.last_failure), 0.0)

    def record_success(self):
        self.failures = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.half_open_successes:
                self.state = CircuitState.CLOSED
                logger.info(f"[CircuitBreaker] {self.name}: circuit closed - recovered")
        else:
            self.state = CircuitState.CLOSED

    def record_failure(self, error: str):
        self.failures += 1
        self.last_failure = self.clock.monotonic()

        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            logger.warning(f"[CircuitBreaker] {self.name}: failure in half-open, opening circuit: {error}")
        elif self.state == CircuitState.CLOSED and self.failures >= self.failure_threshold:
            self.state = CircuitState.OPEN
            logger.warning(f"[CircuitBreaker] {self.name}: circuit opened after {self.failures} failures")

    def get_state(self) -> str:
        return self.state.value

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "failure_threshold": self.failure_threshold,
            "cooldown": self.cooldown,
            "retry_after": round(self.retry_after(), 3),
        }


@dataclass
class RetryResult:
    """Outcome of one execute_with_retry call."""
    success: bool
    result: Any
    attempts: int
    total_duration: float
    error_type: Optional[ErrorType] = None
    error: Optional[BaseException] = None
    retry_history: List[Dict] = field(default_factory=list)


@dataclass
class BatchOperation:
    """One entry of execute_batch."""
    operation: Operation
    name: str
    error_type: Optional[ErrorType] = None
    strategy_overrides: Optional[Dict[str, Any]] = None


@dataclass
class BatchItemResult:
    index: int
    operation_name: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    attempts: int = 0


class RetryManager:
    """
    Single executor for every retried call.

    - One retry strategy per ErrorType (overridable per call)
    - One circuit breaker per operation name
    - Per-operation stats and an aggregate health status
    """

    def __init__(
        self,
        strategies: Optional[Dict[ErrorType, RetryStrategy]] = None,
        clock: Optional[Clock] = None,
        batch_delay: float = 1.0
    ):
        self.clock = clock or get_clock()
        self.strategies: Dict[ErrorType, RetryStrategy] = dict(DEFAULT_STRATEGIES)
        if strategies:
            self.strategies.update(strategies)
        self.batch_delay = batch_delay

        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self._breaker_configs: Dict[str, CircuitBreakerConfig] = {}
        self.stats: Dict[str, Dict[str, Any]] = {}

    # ===== Configuration =====

    def add_retry_strategy(self, error_type: ErrorType, strategy: RetryStrategy):
        self.strategies[error_type] = strategy

    def add_circuit_breaker(
        self,
        operation_name: str,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        half_open_successes: int = 3
    ) -> CircuitBreaker:
        """Register an explicit breaker for one operation name."""
        self._breaker_configs[operation_name] = CircuitBreakerConfig(
            failure_threshold, cooldown, half_open_successes
        )
        breaker = CircuitBreaker(
            operation_name,
            failure_threshold=failure_threshold,
            cooldown=cooldown,
            half_open_successes=half_open_successes,
            clock=self.clock
        )
        self.circuit_breakers[operation_name] = breaker
        return breaker

    def get_strategy(
        self,
        error_type: Optional[ErrorType] = None,
        overrides: Optional[Dict[str, Any]] = None
    ) -> RetryStrategy:
        strategy = self.strategies.get(error_type, DEFAULT_STRATEGY) if error_type else DEFAULT_STRATEGY
        if overrides:
            strategy = replace(strategy, **overrides)
        return strategy

    def get_circuit_breaker(self, operation_name: str) -> CircuitBreaker:
        breaker = self.circuit_breakers.get(operation_name)
        if breaker is None:
            cfg = self._breaker_configs.get(operation_name) or self._profile_for(operation_name)
            breaker = CircuitBreaker(
                operation_name,
                failure_threshold=cfg.failure_threshold,
                cooldown=cfg.cooldown,
                half_open_successes=cfg.half_open_successes,
                clock=self.clock
            )
            self.circuit_breakers[operation_name] = breaker
        return breaker

    @staticmethod
    def _profile_for(operation_name: str) -> CircuitBreakerConfig:
        lowered = operation_name.lower()
        if "browser" in lowered:
            return BREAKER_PROFILES["browser"]
        if "api" in lowered:
            return BREAKER_PROFILES["api"]
        return BREAKER_PROFILES["default"]

    # ===== Classification =====

    def classify_error(self, error: BaseException, default: Optional[ErrorType] = None) -> ErrorType:
        """Map an exception onto the error taxonomy."""
        if isinstance(error, ChangeLinkError):
            return error.error_type
        if isinstance(error, asyncio.TimeoutError):
            return ErrorType.TIMEOUT_ERROR

        error_str = str(error).lower()

        if 'rate limit' in error_str or 'too many request' in error_str or '429' in error_str:
            return ErrorType.RATE_LIMIT_ERROR
        elif 'timeout' in error_str or 'timed out' in error_str:
            return ErrorType.TIMEOUT_ERROR
        elif 'unauthorized' in error_str or 'authentication' in error_str or 'forbidden' in error_str:
            return ErrorType.AUTH_ERROR
        elif 'browser' in error_str or 'page crashed' in error_str or 'target closed' in error_str:
            return ErrorType.BROWSER_ERROR
        elif 'connection' in error_str or 'econnrefused' in error_str:
            return ErrorType.CONNECTION_ERROR
        elif 'server error' in error_str or 'internal error' in error_str:
            return ErrorType.SERVER_ERROR
        elif 'network' in error_str or 'dns' in error_str:
            return ErrorType.NETWORK_ERROR
        return default or ErrorType.UNKNOWN_ERROR

    @staticmethod
    def is_retryable(error_type: ErrorType) -> bool:
        return error_type not in NON_RETRYABLE_ERRORS

    # ===== Execution =====

    async def run_with_retry(
        self,
        operation: Operation,
        operation_name: str,
        error_type: Optional[ErrorType] = None,
        strategy_overrides: Optional[Dict[str, Any]] = None,
        retry_on_result: Optional[Callable[[Any], bool]] = None,
        use_circuit_breaker: bool = True
    ) -> RetryResult:
        """
        Execute `operation` with retries and return a RetryResult.

        Never raises for operation failures; the error is carried on the
        result. Cancellation propagates.

        `retry_on_result` rejects a returned value: the call is retried with
        the same backoff but the circuit breaker counts it as a success. The
        last value is returned once attempts run out.

        With `use_circuit_breaker=False` every attempt runs regardless of
        earlier failures under the same operation name; stats are still kept.
        """
        strategy = self.get_strategy(error_type, strategy_overrides)
        breaker = self.get_circuit_breaker(operation_name) if use_circuit_breaker else None
        start = self.clock.monotonic()
        history: List[Dict] = []
        last_error: Optional[BaseException] = None
        last_type: Optional[ErrorType] = None
        attempts = 0

        for attempt in range(strategy.max_retries + 1):
            if breaker is not None and not breaker.can_execute():
                last_error = CircuitOpenError(operation_name, breaker.retry_after())
                last_type = last_error.error_type
                logger.warning(f"[RetryManager] {last_error}")
                break

            attempts = attempt + 1
            try:
                logger.debug(f"[RetryManager] Attempt {attempts}/{strategy.max_retries + 1} for {operation_name}")
                result = await operation()
            except Exception as e:
                last_error = e
                last_type = self.classify_error(e, error_type)
                if breaker is not None:
                    breaker.record_failure(str(e))

                logger.warning(
                    f"[RetryManager] Attempt {attempts}/{strategy.max_retries + 1} failed "
                    f"for {operation_name} ({last_type.value}): {e}"
                )
                history.append({
                    'attempt': attempts,
                    'error': str(e),
                    'error_type': last_type.value,
                    'timestamp': self.clock.time(),
                })

                if not self.is_retryable(last_type):
                    logger.info(f"[RetryManager] {last_type.value} is not retryable, giving up on {operation_name}")
                    break
                if attempt >= strategy.max_retries:
                    break

                delay = strategy.calculate_delay(attempt)
                logger.debug(f"[RetryManager] Waiting {delay:.2f}s before retrying {operation_name}")
                await self.clock.sleep(delay)
                continue

            if breaker is not None:
                breaker.record_success()
            if retry_on_result is not None and attempt < strategy.max_retries and retry_on_result(result):
                history.append({
                    'attempt': attempts,
                    'error': "result rejected",
                    'error_type': None,
                    'timestamp': self.clock.time(),
                })
                delay = strategy.calculate_delay(attempt)
                logger.debug(f"[RetryManager] Result rejected for {operation_name}, retrying in {delay:.2f}s")
                await self.clock.sleep(delay)
                continue

            duration = self.clock.monotonic() - start
            self._record(operation_name, True, attempts, duration)
            return RetryResult(
                success=True,
                result=result,
                attempts=attempts,
                total_duration=duration,
                retry_history=history
            )

        duration = self.clock.monotonic() - start
        self._record(operation_name, False, attempts, duration)
        return RetryResult(
            success=False,
            result=None,
            attempts=attempts,
            total_duration=duration,
            error_type=last_type,
            error=last_error,
            retry_history=history
        )

    async def execute_with_retry(
        self,
        operation: Operation,
        operation_name: str,
        error_type: Optional[ErrorType] = None,
        strategy_overrides: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Execute with retries; returns the result or raises the last error."""
        outcome = await self.run_with_retry(operation, operation_name, error_type, strategy_overrides)
        if outcome.success:
            return outcome.result
        raise outcome.error

    async def execute_with_timeout_and_retry(
        self,
        operation: Operation,
        operation_name: str,
        timeout: float,
        error_type: Optional[ErrorType] = None,
        strategy_overrides: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Bound the whole retry loop (backoff included) by `timeout` seconds."""
        try:
            return await asyncio.wait_for(
                self.execute_with_retry(operation, operation_name, error_type, strategy_overrides),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            raise OperationTimeoutError(
                f"Operation '{operation_name}' timed out after {timeout}s",
                details={"operation": operation_name, "timeout": timeout}
            )

    async def execute_batch(
        self,
        operations: List[BatchOperation],
        concurrency: int = 3,
        timeout: Optional[float] = None,
        fail_fast: bool = False
    ) -> List[BatchItemResult]:
        """
        Run operations in chunks of `concurrency`.

        With fail_fast=False every operation's outcome is collected
        independently, in input order. With fail_fast=True the batch raises
        BatchAbortedError once a chunk contains a failure and later chunks
        never start.
        """
        concurrency = max(1, concurrency)
        results: List[BatchItemResult] = []
        total_chunks = (len(operations) + concurrency - 1) // concurrency

        for chunk_start in range(0, len(operations), concurrency):
            chunk = operations[chunk_start:chunk_start + concurrency]
            logger.debug(
                f"[RetryManager] Batch chunk {chunk_start // concurrency + 1}/{total_chunks} "
                f"({len(chunk)} operations)"
            )

            chunk_results = await asyncio.gather(*[
                self._run_batch_item(chunk_start + i, op, timeout)
                for i, op in enumerate(chunk)
            ])
            results.extend(chunk_results)

            if fail_fast:
                for item in chunk_results:
                    if not item.success:
                        cause = ChangeLinkError(item.error or "unknown error", item.error_type)
                        raise BatchAbortedError(item.operation_name, item.index, cause)

            if chunk_start + concurrency < len(operations) and self.batch_delay > 0:
                await self.clock.sleep(self.batch_delay)

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"[RetryManager] Batch complete: {succeeded}/{len(results)} succeeded")
        return results

    async def _run_batch_item(
        self,
        index: int,
        op: BatchOperation,
        timeout: Optional[float]
    ) -> BatchItemResult:
        run = self.run_with_retry(op.operation, op.name, op.error_type, op.strategy_overrides)
        try:
            if timeout:
                outcome = await asyncio.wait_for(run, timeout=timeout)
            else:
                outcome = await run
        except asyncio.TimeoutError:
            return BatchItemResult(
                index=index,
                operation_name=op.name,
                success=False,
                error=f"Operation '{op.name}' timed out after {timeout}s",
                error_type=ErrorType.TIMEOUT_ERROR,
            )

        return BatchItemResult(
            index=index,
            operation_name=op.name,
            success=outcome.success,
            result=outcome.result,
            error=str(outcome.error) if outcome.error else None,
            error_type=outcome.error_type,
            attempts=outcome.attempts,
        )

    # ===== Stats =====

    def _record(self, operation_name: str, success: bool, attempts: int, duration: float):
        stats = self.stats.setdefault(operation_name, {
            'total_executions': 0,
            'successful_executions': 0,
            'failed_executions': 0,
            'total_retries': 0,
            'average_retries': 0.0,
            'last_execution_time': None,
            'last_duration': 0.0,
        })
        stats['total_executions'] += 1
        if success:
            stats['successful_executions'] += 1
        else:
            stats['failed_executions'] += 1
        stats['total_retries'] += max(attempts - 1, 0)
        stats['average_retries'] = stats['total_retries'] / stats['total_executions']
        stats['last_execution_time'] = self.clock.time()
        stats['last_duration'] = round(duration, 3)

    def get_operation_stats(self, operation_name: Optional[str] = None) -> Dict[str, Any]:
        """Stats snapshot for one operation, or all of them."""
        if operation_name is not None:
            return dict(self.stats.get(operation_name, {}))
        return {name: dict(s) for name, s in self.stats.items()}

    def get_circuit_breaker_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: cb.get_stats() for name, cb in self.circuit_breakers.items()}

    def get_circuit_state(self, operation_name: str) -> str:
        breaker = self.circuit_breakers.get(operation_name)
        return breaker.get_state() if breaker else CircuitState.CLOSED.value

    def reset_stats(self):
        self.stats.clear()
        logger.info("[RetryManager] Stats reset")

    def get_health_status(self) -> Dict[str, Any]:
        """Aggregate health: healthy / degraded / unhealthy."""
        open_breakers = [
            name for name, cb in self.circuit_breakers.items()
            if cb.state == CircuitState.OPEN
        ]
        total = sum(s['total_executions'] for s in self.stats.values())
        successful = sum(s['successful_executions'] for s in self.stats.values())
        retries = sum(s['total_retries'] for s in self.stats.values())
        success_rate = successful / total if total > 0 else 1.0

        if not open_breakers and success_rate >= 0.95:
            status = "healthy"
        elif len(open_breakers) <= 1 and success_rate >= 0.8:
            status = "degraded"
        else:
            status = "unhealthy"

        return {
            "status": status,
            "open_circuits": open_breakers,
            "circuit_breakers": {name: cb.get_state() for name, cb in self.circuit_breakers.items()},
            "total_operations": total,
            "success_rate": round(success_rate, 4),
            "average_retries": round(retries / total, 4) if total else 0.0,
        }


# Global instance
_manager: Optional[RetryManager] = None


def get_retry_manager() -> RetryManager:
    """Get the process-wide retry manager."""
    global _manager
    if _manager is None:
        _manager = RetryManager()
    return _manager
