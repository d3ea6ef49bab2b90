"""
Circuit breaker for upstream reads (ledger, blob store).
"""

import time
from enum import Enum
from typing import Dict, Any, Callable, Awaitable

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenException(Exception):
    """Raised when a call is short-circuited by an open breaker."""


class CircuitBreaker:
    """Counts consecutive failures and blocks calls while the upstream is down."""

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 30.0,
                 name: str = "default"):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.logger = get_logger(f"circuit_breaker.{name}")

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0

    def _should_attempt_call(self) -> bool:
        if self._state == CircuitBreakerState.OPEN:
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitBreakerState.HALF_OPEN
                self.logger.info("Circuit breaker transitioning to half-open")
                return True
            return False
        return True

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        if not self._should_attempt_call():
            raise CircuitBreakerOpenException(f"Circuit breaker '{self.name}' is open")

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._record_failure()
            raise

        if self._state != CircuitBreakerState.CLOSED or self._failure_count:
            if self._state == CircuitBreakerState.HALF_OPEN:
                self.logger.info("Circuit breaker reset to closed after successful call")
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
        return result

    def _record_failure(self):
        self._failure_count += 1
        if self._state == CircuitBreakerState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            if self._state != CircuitBreakerState.OPEN:
                self.logger.warning(
                    "Circuit breaker opened due to failures",
                    failure_count=self._failure_count,
                    threshold=self.failure_threshold
                )
            self._state = CircuitBreakerState.OPEN
            self._opened_at = time.monotonic()

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout
        }
