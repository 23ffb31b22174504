"""Middleware components for the e-filing service.

Provides:
- Request correlation ID tracking
"""

from .correlation import (
    CorrelationIdMiddleware,
    get_correlation_id,
)

__all__ = [
    "CorrelationIdMiddleware",
    "get_correlation_id",
]
