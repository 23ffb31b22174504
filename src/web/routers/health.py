"""
Health Check Endpoints

Provides:
1. /health - Component health (storage, authority circuit, polling loop)
2. /health/live - Simple liveness check (for k8s)
3. /health/ready - Readiness check (for k8s)
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from efiling.authority import GuardedAuthority

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = datetime.now(timezone.utc)


def _authority_health(request: Request) -> Dict[str, Any]:
    authority = request.app.state.workflow.submission_client.authority
    if isinstance(authority, GuardedAuthority):
        stats = authority.breaker.stats()
        return {"status": "degraded" if authority.breaker.is_open else "healthy", **stats}
    return {"status": "healthy"}


async def _storage_health(request: Request) -> Dict[str, Any]:
    settings = request.app.state.settings
    if settings.storage_backend != "database":
        return {"status": "healthy", "backend": "memory"}

    from database import DatabaseHealth

    return await DatabaseHealth().check()


@router.get("/health")
async def health(request: Request):
    """Full health check across components."""
    polling_loop = getattr(request.app.state, "polling_loop", None)
    components = {
        "storage": await _storage_health(request),
        "authority": _authority_health(request),
        "polling": {
            "status": "healthy",
            "running": bool(polling_loop and polling_loop.running),
        },
    }
    statuses = {c["status"] for c in components.values()}
    overall = "unhealthy" if "unhealthy" in statuses else (
        "degraded" if "degraded" in statuses else "healthy"
    )
    return JSONResponse(
        status_code=503 if overall == "unhealthy" else 200,
        content={
            "status": overall,
            "uptime_seconds": int((datetime.now(timezone.utc) - _start_time).total_seconds()),
            "components": components,
        },
    )


@router.get("/health/live")
async def liveness():
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness(request: Request):
    storage = await _storage_health(request)
    if storage["status"] != "healthy":
        return JSONResponse(status_code=503, content={"status": "not_ready", "storage": storage})
    return {"status": "ready"}
