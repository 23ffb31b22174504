"""
Celery App Configuration - Background task processing with Redis broker.

Configures Celery for:
- Periodic status polling of submitted filings
- On-demand status refresh of a single filing

Usage:
    # Run worker
    celery -A tasks.celery_app worker --loglevel=info

    # Run with beat scheduler
    celery -A tasks.celery_app worker --beat --loglevel=info

Workers share filing state only through the database, so run them with
APP_STORAGE_BACKEND=database.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from celery import Celery, Task
from celery.signals import (
    task_postrun,
    task_prerun,
    task_retry,
    worker_ready,
    worker_shutdown,
)

from config.settings import CelerySettings, PollingSettings, RedisSettings, get_settings
from efiling.errors import AuthorityUnavailableError, ProviderUnavailableError

logger = logging.getLogger(__name__)


def create_celery_app(
    redis_settings: Optional[RedisSettings] = None,
    celery_settings: Optional[CelerySettings] = None,
    polling_settings: Optional[PollingSettings] = None,
) -> Celery:
    """
    Create and configure a Celery application.

    Args:
        redis_settings: Redis connection settings
        celery_settings: Celery configuration settings
        polling_settings: Status polling schedule

    Returns:
        Configured Celery application
    """
    settings = get_settings()
    redis_settings = redis_settings or settings.redis
    celery_settings = celery_settings or settings.celery
    polling_settings = polling_settings or settings.polling

    base_url = redis_settings.base_url
    broker_url = f"{base_url}/{celery_settings.broker_db}"
    result_backend = f"{base_url}/{celery_settings.result_db}"

    app = Celery(
        "efiling",
        broker=broker_url,
        backend=result_backend,
        include=[
            "tasks.status_polling",
        ],
    )

    app.conf.update(
        # Serialization
        task_serializer=celery_settings.task_serializer,
        result_serializer=celery_settings.result_serializer,
        accept_content=celery_settings.accept_content,
        result_accept_content=celery_settings.accept_content,

        # Task acknowledgment
        task_acks_late=celery_settings.task_acks_late,
        task_reject_on_worker_lost=True,

        # Worker settings
        worker_prefetch_multiplier=celery_settings.worker_prefetch_multiplier,

        # Time limits
        task_time_limit=celery_settings.task_time_limit,
        task_soft_time_limit=celery_settings.task_soft_time_limit,

        result_expires=3600,
        task_track_started=True,
        task_default_retry_delay=60,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "poll-submitted-filings": {
                "task": "tasks.status_polling.poll_submitted_filings",
                "schedule": polling_settings.interval_seconds,
                "kwargs": {"limit": polling_settings.batch_size},
            },
        },
    )

    return app


# Global Celery app instance
celery_app = create_celery_app()


@lru_cache
def get_celery_app() -> Celery:
    """Get the global Celery app instance."""
    return celery_app


class TaskBase(Task):
    """
    Base task class.

    Only transient provider/authority failures are retried; every other
    FilingError is final.
    """

    abstract = True
    autoretry_for = (AuthorityUnavailableError, ProviderUnavailableError)
    retry_backoff = True
    retry_backoff_max = 600  # Max 10 minutes between retries
    retry_jitter = True
    max_retries = 3

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            f"Task {self.name}[{task_id}] failed: {exc}",
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "exception": str(exc),
            },
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(
            f"Task {self.name}[{task_id}] retrying: {exc}",
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "retry_count": self.request.retries,
            },
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)


celery_app.Task = TaskBase


@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    logger.info(f"Celery worker ready: {sender}")


@worker_shutdown.connect
def on_worker_shutdown(sender, **kwargs):
    logger.info(f"Celery worker shutting down: {sender}")


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **other):
    logger.debug(
        f"Task starting: {task.name}[{task_id}]",
        extra={"task_id": task_id, "task_name": task.name},
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **other):
    logger.debug(
        f"Task completed: {task.name}[{task_id}] state={state}",
        extra={"task_id": task_id, "task_name": task.name, "state": state},
    )


@task_retry.connect
def on_task_retry(request, reason, einfo, **kwargs):
    logger.warning(
        f"Task retry: {request.task}[{request.id}] - {reason}",
        extra={"task_id": request.id, "task_name": request.task},
    )


def get_task_info(task_id: str) -> Dict[str, Any]:
    """
    Get information about a task.

    Args:
        task_id: Celery task ID

    Returns:
        Dict with task status and result
    """
    result = celery_app.AsyncResult(task_id)

    info = {
        "task_id": task_id,
        "status": result.status,
        "ready": result.ready(),
    }

    if result.ready():
        if result.successful():
            info["result"] = result.result
        else:
            info["error"] = str(result.result)

    return info
