"""
FastAPI application for the e-filing workflow.

Routes:
- /filing/...  : declaration, e-verification, submission and status
                 (see web.routers.filing)
- /health      : component health, liveness and readiness

The workflow is assembled once per process in the lifespan and exposed as
app.state.workflow. When EFILING_POLL_ENABLED is set, an in-process loop
polls submitted filings every EFILING_POLL_INTERVAL_SECONDS.
"""

import logging
import traceback
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import Settings, get_settings
from efiling.errors import ErrorKind, FilingError
from efiling.factory import build_workflow, close_workflow
from efiling.status import StatusPollingLoop
from efiling.workflow import FilingWorkflow
from middleware.correlation import CorrelationIdMiddleware
from services.logging_config import configure_from_settings

from .routers import filing_router, health_router

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 5


# =============================================================================
# ERROR HANDLERS
# =============================================================================

async def filing_error_handler(request: Request, exc: FilingError) -> JSONResponse:
    """Render a FilingError as {"error": {...}} with the kind's HTTP status."""
    if exc.kind == ErrorKind.FATAL:
        logger.critical(f"[API] {exc.code}: {exc.message} | path={request.url.path}")
    elif exc.kind in (ErrorKind.PROVIDER_TRANSIENT, ErrorKind.PROVIDER_REJECTED):
        logger.warning(f"[API] {exc.code}: {exc.message} | path={request.url.path}")
    else:
        logger.info(f"[API] {exc.code}: {exc.message} | path={request.url.path}")

    headers = {}
    if exc.kind == ErrorKind.PROVIDER_TRANSIENT:
        headers["Retry-After"] = str(exc.details.get("retry_after", DEFAULT_RETRY_AFTER_SECONDS))
    elif exc.code == "RATE_LIMITED" and "retry_after" in exc.details:
        headers["Retry-After"] = str(exc.details["retry_after"])

    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.to_dict()},
        headers=headers,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors in the same error envelope."""
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append(f"{field}: {error['msg']}")

    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "kind": ErrorKind.VALIDATION.value,
                "code": "MALFORMED_REQUEST",
                "message": "Invalid request data",
                "retryable": False,
                "details": {"validation_errors": errors},
            }
        },
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected exceptions."""
    logger.error(f"Unexpected error: {exc}\n{traceback.format_exc()}")
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "kind": ErrorKind.FATAL.value,
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "retryable": False,
                "details": {"type": type(exc).__name__},
            }
        },
    )


# =============================================================================
# APPLICATION FACTORY
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    workflow: Optional[FilingWorkflow] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to get_settings())
        workflow: Pre-assembled workflow; built from settings when omitted

    Returns:
        Configured FastAPI app
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.storage_backend == "database":
            from database import init_database

            await init_database()

        app.state.workflow = workflow or build_workflow(settings)
        app.state.polling_loop = None

        polling = settings.polling
        if polling.enabled:
            loop = StatusPollingLoop(
                lambda: app.state.workflow.refresh_submitted(limit=polling.batch_size),
                interval_seconds=polling.interval_seconds,
            )
            loop.start()
            app.state.polling_loop = loop

        logger.info(f"{settings.name} {settings.version} started | env={settings.environment}")
        try:
            yield
        finally:
            if app.state.polling_loop is not None:
                await app.state.polling_loop.stop()
            if workflow is None:
                await close_workflow(app.state.workflow)
            if settings.storage_backend == "database":
                from database import close_database

                await close_database()
            logger.info(f"{settings.name} stopped")

    app = FastAPI(title=settings.name, version=settings.version, lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    app.add_exception_handler(FilingError, filing_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(filing_router)
    app.include_router(health_router)

    return app


def _create_default_app() -> FastAPI:
    settings = get_settings()
    configure_from_settings(settings.log_settings)
    return create_app(settings)


app = _create_default_app()
