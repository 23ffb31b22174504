"""
Status polling tasks.

The beat schedule runs poll_submitted_filings every
EFILING_POLL_INTERVAL_SECONDS; refresh_filing_status serves on-demand
refreshes queued by other services. Both go through
FilingWorkflow.refresh_status, the same code path as the API.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import shared_task

from config.settings import get_settings
from efiling.factory import build_workflow
from efiling.workflow import FilingWorkflow

logger = logging.getLogger(__name__)

_workflow: Optional[FilingWorkflow] = None
_loop = None


def _run_async(coro):
    """
    Run an async coroutine from sync context, handling existing event loops.

    Works in both sync context (Celery workers) and async context (tests).
    The worker keeps one loop for its lifetime because the workflow's HTTP
    clients are bound to the loop they were first used on.
    """
    import asyncio
    global _loop

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        if _loop is None or _loop.is_closed():
            _loop = asyncio.new_event_loop()
        return _loop.run_until_complete(coro)
    else:
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as executor:
            future = executor.submit(asyncio.run, coro)
            return future.result(timeout=300)


def get_workflow() -> FilingWorkflow:
    """Workflow shared by every task in this worker process."""
    global _workflow
    if _workflow is None:
        settings = get_settings()
        if settings.storage_backend != "database":
            logger.warning(
                "[POLL] Worker uses process-local storage; it will not see filings "
                "created by the API. Set APP_STORAGE_BACKEND=database."
            )
        _workflow = build_workflow(settings)
    return _workflow


def set_workflow(workflow: Optional[FilingWorkflow]) -> None:
    global _workflow
    _workflow = workflow


@shared_task(bind=True, name="tasks.status_polling.poll_submitted_filings")
def poll_submitted_filings(self, limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Poll the authority for every SUBMITTED filing.

    Args:
        limit: Maximum filings per run (defaults to EFILING_POLL_BATCH_SIZE)

    Returns:
        {"polled": n}
    """
    limit = limit or get_settings().polling.batch_size
    polled = _run_async(get_workflow().refresh_submitted(limit=limit))
    logger.info(f"[POLL] Scheduled poll finished | polled={polled}")
    return {"polled": polled}


@shared_task(bind=True, name="tasks.status_polling.refresh_filing_status")
def refresh_filing_status(self, filing_id: str) -> Dict[str, Any]:
    """Poll one filing now."""
    snapshot = _run_async(get_workflow().refresh_status(filing_id))
    if snapshot is None:
        return {"filing_id": filing_id, "polled": False}
    return {
        "filing_id": filing_id,
        "polled": True,
        "raw_stage": snapshot.raw_stage,
        "mapped_stage": snapshot.mapped_stage.value if snapshot.mapped_stage else None,
        "persisted": snapshot.persisted,
        "anomaly": snapshot.anomaly,
    }
