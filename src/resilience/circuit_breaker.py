"""Circuit Breaker pattern for fault tolerance.

Guards calls to the external filing authority. The circuit has three states:
- CLOSED: Normal operation, requests pass through
- OPEN: Authority is failing, requests are rejected immediately
- HALF_OPEN: Testing if the authority has recovered

Only transient failures (timeouts, unreachable endpoint) count toward
opening the circuit. A rejected upload is a valid answer from a healthy
authority and never trips it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Optional

from .retry import is_transient

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreakerOpen(Exception):
    """Raised when circuit breaker is open."""

    def __init__(
        self,
        message: str,
        circuit_name: str,
        time_remaining: float,
    ):
        super().__init__(message)
        self.circuit_name = circuit_name
        self.time_remaining = time_remaining


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker.

    Attributes:
        failure_threshold: Number of failures before opening circuit.
        success_threshold: Number of successes in half-open to close.
        recovery_timeout: Seconds to wait before trying half-open.
        counts_as_failure: Predicate selecting exceptions that count.
    """
    failure_threshold: int = 5
    success_threshold: int = 2
    recovery_timeout: float = 30.0
    counts_as_failure: Callable[[BaseException], bool] = is_transient

    @classmethod
    def from_settings(cls, settings: Any) -> "CircuitBreakerConfig":
        """Build from a ResilienceSettings instance."""
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            success_threshold=settings.circuit_success_threshold,
            recovery_timeout=settings.circuit_recovery_timeout,
        )


class CircuitBreaker:
    """Circuit breaker for fault tolerance.

    Usage:
        breaker = CircuitBreaker(name="filing_authority")

        async with breaker:
            await authority.upload(payload)

    State transitions:
        CLOSED -> OPEN: failure_threshold failures reached
        OPEN -> HALF_OPEN: recovery_timeout elapsed
        HALF_OPEN -> CLOSED: success_threshold successes
        HALF_OPEN -> OPEN: any failure
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._lock = Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            return self._get_state()

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _get_state(self) -> CircuitState:
        """Get state with automatic transition check."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.config.recovery_timeout:
                self._transition_to_half_open()
        return self._state

    def _transition_to_open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.warning(
            f"[CIRCUIT] '{self.name}' OPENED after {self._failure_count} failures"
        )

    def _transition_to_closed(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        logger.info(f"[CIRCUIT] '{self.name}' CLOSED")

    def _transition_to_half_open(self) -> None:
        self._state = CircuitState.HALF_OPEN
        self._success_count = 0
        logger.info(f"[CIRCUIT] '{self.name}' HALF-OPEN")

    def time_remaining(self) -> float:
        """Seconds until an open circuit will allow a trial request."""
        if self._opened_at is None:
            return 0.0
        elapsed = self._clock() - self._opened_at
        return max(0.0, self.config.recovery_timeout - elapsed)

    def allow_request(self) -> bool:
        """Check if a request should be allowed.

        Raises:
            CircuitBreakerOpen: If circuit is open.
        """
        with self._lock:
            if self._get_state() != CircuitState.OPEN:
                return True

            raise CircuitBreakerOpen(
                f"Circuit breaker '{self.name}' is open",
                circuit_name=self.name,
                time_remaining=self.time_remaining(),
            )

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._transition_to_closed()
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, exception: BaseException) -> None:
        """Record a failed call; ignored unless the error counts as a failure."""
        if not self.config.counts_as_failure(exception):
            # A definite answer from the remote side proves it is reachable.
            self.record_success()
            return

        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to_open()
            elif self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    self._transition_to_open()

    def reset(self) -> None:
        with self._lock:
            self._transition_to_closed()

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "retry_after": round(self.time_remaining(), 1),
        }

    async def __aenter__(self) -> "CircuitBreaker":
        self.allow_request()  # May raise CircuitBreakerOpen
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            self.record_success()
        elif exc_val is not None:
            self.record_failure(exc_val)
        return False  # Don't suppress exceptions
