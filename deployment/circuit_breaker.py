"""
Circuit breaker for calls to external collaborators.
Prevents a degraded text-classification service from slowing every request:
once open, calls fail fast and the analyzer falls back to keyword rules.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitOpenError(Exception):
    """Raised when circuit breaker is open."""

    pass


@dataclass
class CircuitBreaker:
    """
    Circuit breaker for external service calls.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests rejected immediately
    - HALF_OPEN: Testing recovery, limited requests allowed

    Timeouts count as failures. Cancellation does not.

    Usage:
        breaker = CircuitBreaker(failure_threshold=3)
        hypothesis = await breaker.call_async(classifier.classify, text, labels)
    """

    name: str = "collaborator"
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_max_calls: int = 3
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    # State tracking
    state: CircuitState = field(default=CircuitState.CLOSED)
    failures: int = field(default=0)
    successes: int = field(default=0)
    last_failure_time: Optional[float] = field(default=None)
    half_open_calls: int = field(default=0)

    def _should_allow_request(self) -> bool:
        """Check if request should be allowed based on circuit state."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            # Check if reset timeout has passed
            if (
                self.last_failure_time is not None
                and (self.clock() - self.last_failure_time) >= self.reset_timeout
            ):
                self._transition_to_half_open()
                return True
            return False

        return self.half_open_calls < self.half_open_max_calls

    def _transition_to_open(self):
        logger.warning(f"Circuit breaker '{self.name}' OPEN: {self.failures} failures in succession")
        self.state = CircuitState.OPEN
        self.last_failure_time = self.clock()

    def _transition_to_half_open(self):
        logger.info(f"Circuit breaker '{self.name}' transitioning to HALF_OPEN")
        self.state = CircuitState.HALF_OPEN
        self.half_open_calls = 0
        self.successes = 0

    def _transition_to_closed(self):
        logger.info(f"Circuit breaker '{self.name}' CLOSED: service recovered")
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.half_open_calls = 0

    def _record_success(self):
        self.failures = 0

        if self.state == CircuitState.HALF_OPEN:
            self.successes += 1
            if self.successes >= self.half_open_max_calls:
                self._transition_to_closed()

    def _record_failure(self):
        self.failures += 1
        self.last_failure_time = self.clock()

        if self.state == CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
            self._transition_to_open()

    async def call_async(self, fn: Callable, *args, **kwargs) -> Any:
        """
        Await `fn(*args, **kwargs)` with circuit breaker protection.

        Raises:
            CircuitOpenError: If circuit is open
            Exception: Original exception from function
        """
        if not self._should_allow_request():
            raise CircuitOpenError(f"Circuit '{self.name}' is {self.state.value}")

        if self.state == CircuitState.HALF_OPEN:
            self.half_open_calls += 1

        try:
            result = fn(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def get_stats(self) -> dict:
        """Get circuit breaker statistics."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "last_failure_time": self.last_failure_time,
            "half_open_calls": self.half_open_calls,
        }


# Global circuit breaker for the text-classification collaborator
_classifier_breaker: Optional[CircuitBreaker] = None


def get_classifier_breaker() -> CircuitBreaker:
    """Get circuit breaker for text-classifier calls."""
    global _classifier_breaker
    if _classifier_breaker is None:
        _classifier_breaker = CircuitBreaker(
            name="text_classifier", failure_threshold=3, reset_timeout=30.0, half_open_max_calls=2
        )
    return _classifier_breaker
