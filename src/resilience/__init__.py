"""Resilience patterns for calls to external collaborators.

Provides error-kind driven retry with exponential backoff and a circuit
breaker guarding the filing authority.
"""

from .retry import (
    async_retry,
    call_with_retry,
    is_transient,
    RetryConfig,
)

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
    CircuitState,
)

__all__ = [
    # Retry
    "async_retry",
    "call_with_retry",
    "is_transient",
    "RetryConfig",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerOpen",
    "CircuitState",
]
