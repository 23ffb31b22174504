"""Retry pattern with exponential backoff.

Retries are driven by error kind: only failures classified as
PROVIDER_TRANSIENT are retried. Rejections, conflicts and validation
errors surface immediately. Used for idempotent reads against the
identity provider and the filing authority; the submission upload itself
is never retried here.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from efiling.errors import FilingError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exception: BaseException) -> bool:
    """True for errors the caller may retry as-is."""
    return isinstance(exception, FilingError) and exception.retryable


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including the initial one).
        base_delay: Initial delay between retries in seconds.
        max_delay: Maximum delay between retries in seconds.
        backoff_multiplier: Multiplier for exponential backoff.
        jitter: Random jitter as a fraction of the delay (0-1).
        should_retry: Predicate deciding whether an exception is retried.
        on_retry: Callback called on each retry.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.1
    should_retry: Callable[[BaseException], bool] = is_transient
    on_retry: Optional[Callable[[int, Exception, float], None]] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryConfig":
        """Build from a ResilienceSettings instance."""
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt number.

        Args:
            attempt: Current attempt number (1-indexed).

        Returns:
            Delay in seconds with exponential backoff and jitter.
        """
        delay = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-jitter_range, jitter_range))

        return delay


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    **kwargs: Any,
) -> T:
    """Await func(*args, **kwargs), retrying transient failures.

    When attempts run out, the last transient error is re-raised unchanged
    so callers still see its kind and code.
    """
    retry_config = config or RetryConfig()
    name = getattr(func, "__qualname__", repr(func))

    for attempt in range(1, retry_config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not retry_config.should_retry(e):
                raise

            if attempt >= retry_config.max_attempts:
                logger.warning(
                    f"[RETRY] Exhausted for {name} after {attempt} attempts: {e}"
                )
                raise

            delay = retry_config.calculate_delay(attempt)
            logger.info(
                f"[RETRY] {attempt}/{retry_config.max_attempts} for {name} "
                f"in {delay:.2f}s: {e}"
            )
            if retry_config.on_retry:
                retry_config.on_retry(attempt, e, delay)

            await asyncio.sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover


def async_retry(
    config: Optional[RetryConfig] = None,
    **kwargs: Any,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator form of call_with_retry.

    Usage:
        @async_retry(max_attempts=3, base_delay=0.5)
        async def fetch_status(ack):
            ...
    """
    retry_config = config or RetryConfig(**kwargs)

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kw: Any) -> T:
            return await call_with_retry(func, *args, config=retry_config, **kw)

        return wrapper
    return decorator
