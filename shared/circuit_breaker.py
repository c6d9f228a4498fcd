"""
Circuit breaker for upstream provider calls.

CLOSED passes calls through and counts consecutive failures. OPEN rejects
calls until ``recovery_timeout`` seconds have passed since the last failure,
then lets one trial call through as HALF_OPEN. A successful trial closes the
breaker; a failed one opens it again.
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
    """Raised instead of calling an upstream whose breaker is open."""


class CircuitBreaker:
    """Per-upstream failure gate."""

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 name: str = "default",
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.logger = get_logger(f"costguard.circuit_breaker.{name}")
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def _transition(self, state: CircuitBreakerState) -> None:
        if state is self._state:
            return
        self.logger.info(
            "Circuit breaker state change",
            previous=self._state.value,
            current=state.value,
            failure_count=self._failure_count,
        )
        self._state = state

    def _cooled_down(self) -> bool:
        return self._clock() - self._last_failure_time >= self.recovery_timeout

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await ``func(*args, **kwargs)`` unless the breaker is open."""
        if self._state is CircuitBreakerState.OPEN:
            if not self._cooled_down():
                raise CircuitBreakerOpenException(f"Circuit breaker '{self.name}' is open")
            self._transition(CircuitBreakerState.HALF_OPEN)

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise

        self._failure_count = 0
        self._transition(CircuitBreakerState.CLOSED)
        return result

    def _on_failure(self):
        self._failure_count += 1
        self._last_failure_time = self._clock()
        probing = self._state is CircuitBreakerState.HALF_OPEN
        if probing or self._failure_count >= self.failure_threshold:
            self._transition(CircuitBreakerState.OPEN)

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "last_failure_time": self._last_failure_time,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }


class CircuitBreakerManager:
    """Breakers of one service instance, keyed by upstream name."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get_circuit_breaker(self,
                            name: str,
                            failure_threshold: int = 5,
                            recovery_timeout: float = 60.0) -> CircuitBreaker:
        """Return the breaker for ``name``, creating it on first use."""
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(failure_threshold, recovery_timeout, name, self._clock)
            self._breakers[name] = breaker
        return breaker

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_state() for name, breaker in self._breakers.items()}
