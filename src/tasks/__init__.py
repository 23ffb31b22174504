"""
Background Tasks Module - Celery-based async task processing.

Provides:
- Celery app configuration with Redis broker
- Periodic and on-demand status polling
"""

from .celery_app import celery_app, get_celery_app, get_task_info
from .status_polling import poll_submitted_filings, refresh_filing_status

__all__ = [
    "celery_app",
    "get_celery_app",
    "get_task_info",
    "poll_submitted_filings",
    "refresh_filing_status",
]
