"""
================================================================================
RESILIENT CALLS
================================================================================

Generic retry + circuit breaker wrapper for the external data and broker
clients. Knows nothing about trading:

- RetryPolicy: exponential backoff between attempts
- CircuitBreaker: CLOSED -> OPEN after N consecutive failures,
  OPEN -> HALF_OPEN after reset timeout, HALF_OPEN -> CLOSED on success
- ResilientCaller: applies both and raises UpstreamUnavailableError

================================================================================
"""

import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from qppf_trader.config import (
    RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY, RETRY_MAX_DELAY, RETRY_BACKOFF,
    BREAKER_FAILURE_THRESHOLD, BREAKER_RESET_SECONDS
)
from qppf_trader.errors import CircuitOpenError, UpstreamUnavailableError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing - calls short-circuited
    HALF_OPEN = "half_open"  # Probing recovery


@dataclass
class RetryPolicy:
    """Exponential backoff schedule"""
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY
    max_delay: float = RETRY_MAX_DELAY
    backoff: float = RETRY_BACKOFF

    def delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt"""
        return min(self.max_delay, self.base_delay * self.backoff ** (attempt - 1))


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker
    """

    def __init__(
        self,
        failure_threshold: int = BREAKER_FAILURE_THRESHOLD,
        reset_timeout: float = BREAKER_RESET_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None

    def allow_request(self) -> bool:
        """True when a call may go through (moves OPEN -> HALF_OPEN on timeout)"""
        if self.state == CircuitState.OPEN:
            if self._clock() - self.opened_at >= self.reset_timeout:
                self.state = CircuitState.HALF_OPEN
                logger.info("Circuit half-open - probing")
                return True
            return False
        return True

    def record_success(self):
        if self.state != CircuitState.CLOSED:
            logger.info("Circuit closed")
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None

    def record_failure(self):
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(f"Circuit opened after {self.failure_count} failures")
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()

    def reset(self):
        """Manual reset"""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None


class ResilientCaller:
    """
    Runs a callable under a retry policy and a circuit breaker

    Parameters:
    -----------
    name : str - Provider name used in errors and logs
    policy : RetryPolicy
    breaker : CircuitBreaker
    sleep : callable - Injected for tests
    """

    def __init__(
        self,
        name: str,
        policy: RetryPolicy = None,
        breaker: CircuitBreaker = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.name = name
        self.policy = policy or RetryPolicy()
        self.breaker = breaker or CircuitBreaker()
        self._sleep = sleep

    def call(self, fn: Callable, *args, **kwargs):
        if not self.breaker.allow_request():
            raise CircuitOpenError(self.name)

        last_error: Optional[Exception] = None
        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                result = fn(*args, **kwargs)
            except UpstreamUnavailableError:
                self.breaker.record_failure()
                raise
            except Exception as e:
                last_error = e
                self.breaker.record_failure()
                logger.warning(f"{self.name} call failed (attempt {attempt}/{self.policy.max_attempts}): {e}")
                if not self.breaker.allow_request():
                    break
                if attempt < self.policy.max_attempts:
                    self._sleep(self.policy.delay(attempt))
                continue

            self.breaker.record_success()
            return result

        raise UpstreamUnavailableError(self.name, f"{self.name} failed: {last_error}") from last_error
