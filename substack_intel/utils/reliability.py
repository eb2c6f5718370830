"""
Reliability patterns for the pipeline.

Provides the shared retry policy, circuit breakers, rate limiting and
performance tracking used around the mailbox, LLM and storage calls.
"""

import threading
import time
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, Type, Union

import structlog
from sqlalchemy.exc import IntegrityError, OperationalError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

from substack_intel.core.exceptions import CircuitBreakerError, ExtractionError, TransientError

logger = structlog.get_logger(__name__)

RetryablePredicate = Union[Tuple[Type[BaseException], ...], Callable[[BaseException], bool]]


class RetryPolicy:
    """
    Bounded exponential backoff around a callable.

    One object describes max attempts, the backoff curve and which errors
    are retryable; the last error is re-raised unchanged once attempts are
    exhausted. A ``base_delay`` of 0 retries without sleeping.
    """

    def __init__(
        self,
        name: str,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        retryable: RetryablePredicate = (TransientError,),
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.name = name
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.retryable = retryable

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(self.retryable, tuple):
            return isinstance(exc, self.retryable)
        return bool(self.retryable(exc))

    def _wait(self):
        if self.base_delay <= 0:
            return wait_none()
        return wait_exponential(multiplier=self.base_delay, max=self.max_delay)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying after failure",
            policy=self.name,
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            sleep_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else 0,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    def call(self, func: Callable, *args, **kwargs) -> Any:
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait(),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retryer(func, *args, **kwargs)

    def __call__(self, func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)

        wrapper.retry_policy = self
        return wrapper

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(name={self.name!r}, max_attempts={self.max_attempts}, "
            f"base_delay={self.base_delay}, max_delay={self.max_delay})"
        )


def mailbox_retry_policy(settings) -> RetryPolicy:
    cfg = settings.pipeline
    return RetryPolicy(
        "mailbox",
        max_attempts=cfg.mailbox_max_attempts,
        base_delay=cfg.retry_base_delay,
        max_delay=cfg.retry_max_delay,
    )


def extraction_retry_policy(settings) -> RetryPolicy:
    cfg = settings.pipeline
    return RetryPolicy(
        "extraction",
        max_attempts=cfg.extraction_max_retries + 1,
        base_delay=cfg.retry_base_delay,
        max_delay=cfg.retry_max_delay,
        retryable=(ExtractionError,),
    )


def resolver_retry_policy(settings) -> RetryPolicy:
    cfg = settings.pipeline
    return RetryPolicy(
        "resolver",
        max_attempts=cfg.resolver_max_attempts,
        base_delay=min(cfg.retry_base_delay, 0.25),
        max_delay=cfg.retry_max_delay,
        retryable=(IntegrityError, OperationalError),
    )


class CircuitBreakerState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker pattern implementation.

    Prevents cascading failures by opening the circuit when error thresholds are exceeded.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: Type[Exception] = Exception,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitBreakerState.CLOSED
        self._lock = threading.Lock()

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        with self._lock:
            if self.state == CircuitBreakerState.OPEN:
                if self._should_attempt_reset():
                    self.state = CircuitBreakerState.HALF_OPEN
                    logger.info("Circuit breaker half-open, testing recovery", name=self.name)
                else:
                    raise CircuitBreakerError(
                        f"Circuit breaker '{self.name}' is open",
                        details={"retry_at": self.last_failure_time + self.recovery_timeout},
                        retry_after=self.recovery_timeout,
                    )

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        return (
            self.last_failure_time is not None
            and time.time() >= self.last_failure_time + self.recovery_timeout
        )

    def _on_success(self):
        with self._lock:
            self.failure_count = 0
            if self.state == CircuitBreakerState.HALF_OPEN:
                self.state = CircuitBreakerState.CLOSED
                logger.info("Circuit breaker closed", name=self.name)

    def _on_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()

            if self.failure_count >= self.failure_threshold:
                self.state = CircuitBreakerState.OPEN
                logger.warning(
                    "Circuit breaker opened",
                    name=self.name,
                    failure_count=self.failure_count,
                    threshold=self.failure_threshold,
                )

    def reset(self) -> None:
        with self._lock:
            self.failure_count = 0
            self.state = CircuitBreakerState.CLOSED
            self.last_failure_time = None

    @property
    def status(self) -> Dict[str, Any]:
        """Get current circuit breaker status."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "next_attempt_time": (
                self.last_failure_time + self.recovery_timeout if self.last_failure_time else None
            ),
        }


class AdaptiveRateLimiter:
    """
    Adaptive rate limiter using token bucket algorithm.

    Slows down after repeated errors and recovers after a run of successes.
    """

    def __init__(self, calls_per_second: float = 2.0, burst_size: int = 5, adaptive: bool = True):
        self.base_calls_per_second = calls_per_second
        self.current_calls_per_second = calls_per_second
        self.burst_size = burst_size
        self.adaptive = adaptive

        self.tokens = float(burst_size)
        self.last_refill = time.monotonic()
        self.consecutive_errors = 0
        self.consecutive_successes = 0
        self._lock = threading.Lock()

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Acquire a token, waiting if necessary.

        Returns True if token acquired, False if timeout exceeded.
        """
        start_time = time.monotonic()

        while True:
            with self._lock:
                self._refill_tokens()

                if self.tokens >= 1:
                    self.tokens -= 1
                    return True

                wait_time = (1 - self.tokens) / self.current_calls_per_second

            if timeout is not None and (time.monotonic() - start_time + wait_time) > timeout:
                return False

            time.sleep(min(wait_time, 0.1))

    def _refill_tokens(self):
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.burst_size, self.tokens + elapsed * self.current_calls_per_second)
        self.last_refill = now

    def on_success(self):
        if not self.adaptive:
            return

        with self._lock:
            self.consecutive_errors = 0
            self.consecutive_successes += 1

            if self.consecutive_successes >= 10:
                self.current_calls_per_second = min(
                    self.base_calls_per_second, self.current_calls_per_second * 1.25
                )
                self.consecutive_successes = 0

    def on_error(self):
        if not self.adaptive:
            return

        with self._lock:
            self.consecutive_successes = 0
            self.consecutive_errors += 1

            if self.consecutive_errors >= 3:
                self.current_calls_per_second = max(
                    self.base_calls_per_second * 0.25, self.current_calls_per_second * 0.5
                )
                self.consecutive_errors = 0

    @property
    def status(self) -> Dict[str, Any]:
        return {
            "base_calls_per_second": self.base_calls_per_second,
            "current_calls_per_second": self.current_calls_per_second,
            "tokens": self.tokens,
            "consecutive_errors": self.consecutive_errors,
            "consecutive_successes": self.consecutive_successes,
        }


# Named circuit breaker registry
_breakers: Dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def get_circuit_breaker(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: float = 60.0,
    expected_exception: Type[Exception] = Exception,
) -> CircuitBreaker:
    """Return the registered breaker for ``name``, creating it on first use."""
    with _breakers_lock:
        if name not in _breakers:
            _breakers[name] = CircuitBreaker(
                name, failure_threshold, recovery_timeout, expected_exception
            )
        return _breakers[name]


def with_circuit_breaker(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: float = 60.0,
    expected_exception: Type[Exception] = Exception,
):
    """Decorator to add circuit breaker protection to functions."""
    breaker = get_circuit_breaker(name, failure_threshold, recovery_timeout, expected_exception)

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return breaker.call(func, *args, **kwargs)

        wrapper.circuit_breaker = breaker
        return wrapper

    return decorator


def get_circuit_breaker_status() -> Dict[str, Any]:
    """Get status of all circuit breakers."""
    return {name: breaker.status for name, breaker in _breakers.items()}


def reset_circuit_breaker(name: str) -> bool:
    """Reset a circuit breaker by name."""
    breaker = _breakers.get(name)
    if breaker is None:
        return False
    breaker.reset()
    logger.info("Circuit breaker reset", name=name)
    return True


def track_performance(operation_name: str):
    """
    Decorator to log the duration of an operation.

    Args:
        operation_name: Name of the operation for logging
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "Operation failed",
                    operation=operation_name,
                    duration_seconds=round(time.time() - start_time, 3),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            logger.info(
                "Operation completed",
                operation=operation_name,
                duration_seconds=round(time.time() - start_time, 3),
            )
            return result

        return wrapper

    return decorator
