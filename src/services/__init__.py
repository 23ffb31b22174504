"""
Services Module - Infrastructure services for the e-filing workflow.

- Logging and observability (structured formatters, correlation context, masking)
"""

from .logging_config import (
    ContextLogger,
    JsonFormatter,
    ReadableFormatter,
    configure_from_settings,
    configure_logging,
    filing_context,
    filing_id_var,
    get_logger,
    log_performance,
    mask_secret,
    mask_value,
    request_id_var,
)

__all__ = [
    "ContextLogger",
    "JsonFormatter",
    "ReadableFormatter",
    "configure_from_settings",
    "configure_logging",
    "filing_context",
    "filing_id_var",
    "get_logger",
    "log_performance",
    "mask_secret",
    "mask_value",
    "request_id_var",
]
