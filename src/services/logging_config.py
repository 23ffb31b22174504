"""
Logging Configuration for the E-Filing Workflow service.

Provides structured logging with:
- JSON formatting for production
- Human-readable formatting for development
- Request and filing correlation through context variables
- Masking helpers so identifiers and one-time codes never reach log output
"""

import logging
import json
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable, Iterator
from functools import wraps
from pathlib import Path
from contextvars import ContextVar

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
filing_id_var: ContextVar[Optional[str]] = ContextVar('filing_id', default=None)


def mask_value(value: Optional[str], visible: int = 4) -> str:
    """Mask all but the last `visible` characters (PAN, Aadhaar, account numbers)."""
    if not value:
        return ""
    value = str(value)
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


def mask_secret(value: Optional[str]) -> str:
    """Fully mask a one-time code or token, keeping only its length."""
    if not value:
        return ""
    return "*" * len(str(value))


def _context_fields() -> Dict[str, Any]:
    fields = {}
    request_id = request_id_var.get()
    if request_id:
        fields["request_id"] = request_id
    filing_id = filing_id_var.get()
    if filing_id:
        fields["filing_id"] = filing_id
    return fields


class JsonFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Outputs logs as JSON objects for easy parsing by log aggregators.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        log_data.update(_context_fields())

        if hasattr(record, 'extra_data') and record.extra_data:
            log_data.update(record.extra_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ReadableFormatter(logging.Formatter):
    """
    Human-readable log formatter for development.
    """

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m',
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for human readability."""
        color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        reset = self.COLORS['RESET']

        timestamp = datetime.now().strftime('%H:%M:%S.%f')[:-3]
        level = f"{color}{record.levelname:8s}{reset}"

        message = f"{timestamp} {level} [{record.name}] {record.getMessage()}"

        extras = dict(_context_fields())
        if hasattr(record, 'extra_data') and record.extra_data:
            extras.update(record.extra_data)
        if extras:
            message += " | " + ' | '.join(f"{k}={v}" for k, v in extras.items())

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that attaches fixed context to every record.
    """

    def process(self, msg: str, kwargs: Dict) -> tuple:
        extra = kwargs.get('extra', {})
        extra_data = dict(self.extra)
        extra_data.update(extra.get('extra_data', {}))
        extra['extra_data'] = extra_data
        kwargs['extra'] = extra
        return msg, kwargs


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[Path] = None
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON formatted logs
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = JsonFormatter() if json_output else ReadableFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JsonFormatter())  # Always JSON for files
        root_logger.addHandler(file_handler)

    # Set levels for noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def configure_from_settings(log_settings: Any) -> None:
    """Configure logging from a LoggingSettings instance."""
    configure_logging(
        level=log_settings.level.upper(),
        json_output=log_settings.json_output,
        log_file=Path(log_settings.file) if log_settings.file else None,
    )


def get_logger(name: str, **extra) -> ContextLogger:
    """
    Get a context-aware logger.

    Args:
        name: Logger name (typically __name__)
        **extra: Additional context to include in all logs

    Returns:
        ContextLogger instance
    """
    return ContextLogger(logging.getLogger(name), extra)


@contextmanager
def filing_context(filing_id: Optional[str]) -> Iterator[None]:
    """Tag every log record emitted inside the block with a filing id."""
    token = filing_id_var.set(filing_id)
    try:
        yield
    finally:
        filing_id_var.reset(token)


def log_performance(name: Optional[str] = None) -> Callable:
    """
    Decorator logging the duration of an async operation.

    Args:
        name: Optional name override for the log entry
    """
    def decorator(func: Callable) -> Callable:
        func_name = name or func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger("performance")
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.warning(
                    f"{func_name} failed",
                    extra={'extra_data': {
                        'duration_ms': int((time.perf_counter() - start) * 1000),
                        'error': type(e).__name__,
                    }}
                )
                raise
            logger.debug(
                f"{func_name} completed",
                extra={'extra_data': {
                    'duration_ms': int((time.perf_counter() - start) * 1000),
                }}
            )
            return result

        return wrapper

    return decorator
