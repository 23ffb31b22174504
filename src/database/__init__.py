"""
Database layer for the filing workflow.

This module provides:
- SQLAlchemy ORM models for filings, sessions, submissions and audit
- Async database engine with connection pooling
- SqlFilingRepository, the persistent FilingRepository
"""

from .async_engine import (
    DatabaseHealth,
    close_database,
    create_engine,
    create_tables,
    get_async_engine,
    get_async_session,
    get_async_session_factory,
    get_session_factory,
    init_database,
)
from .filing_repository import SqlFilingRepository
from .models import (
    Base,
    FilingGroupRow,
    FilingRow,
    FilingTransitionRow,
    SubmissionRecordRow,
    VerificationSessionRow,
)

__all__ = [
    "Base",
    "DatabaseHealth",
    "FilingGroupRow",
    "FilingRow",
    "FilingTransitionRow",
    "SqlFilingRepository",
    "SubmissionRecordRow",
    "VerificationSessionRow",
    "close_database",
    "create_engine",
    "create_tables",
    "get_async_engine",
    "get_async_session",
    "get_async_session_factory",
    "get_session_factory",
    "init_database",
]
