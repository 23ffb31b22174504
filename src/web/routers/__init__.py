"""
FastAPI Routers.

- filing: declaration, e-verification, submission and status endpoints
- health: liveness and readiness checks
"""

from .filing import router as filing_router
from .health import router as health_router

__all__ = [
    "filing_router",
    "health_router",
]
