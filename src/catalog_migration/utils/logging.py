"""Logging configuration for Catalog Bridge using structlog.

Console output is rendered through Rich; the optional log file receives one
JSON object per line so long migrations can be audited afterwards.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any

import structlog
from rich.console import Console
from rich.logging import RichHandler
from structlog.typing import EventDict, WrappedLogger

from catalog_migration import __version__

APP_NAME = "catalog-bridge"

_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Matched case-insensitively as substrings of payload keys
SENSITIVE_FIELDS = frozenset(
    {
        "token",
        "password",
        "secret",
        "api_key",
        "authorization",
        "access_token",
        "x-shopify-access-token",
        "aws_access_key_id",
        "aws_secret_access_key",
        "credential",
    }
)


def add_app_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application name and version to every log entry."""
    event_dict["app"] = APP_NAME
    event_dict["version"] = __version__
    return event_dict


class JSONFileFormatter(logging.Formatter):
    """Formatter that writes structlog-rendered records as JSON lines.

    ANSI escape codes are stripped from the event message.
    """

    def format(self, record: logging.LogRecord) -> str:
        message = _ANSI_PATTERN.sub("", record.getMessage())

        log_entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": message,
            "app": APP_NAME,
            "version": __version__,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


def configure_logging(
    level: str = "WARNING",
    log_format: str = "json",
    log_file: str | None = None,
    file_level: str | None = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: File output format ('json' or 'console')
        log_file: Optional path to log file
        file_level: File log level (defaults to DEBUG)

    Note:
        Console output is always human-readable. The file handler has its
        own level so a quiet console can sit next to a detailed file log.
    """
    console_level = getattr(logging, level.upper(), logging.WARNING)
    file_log_level = getattr(logging, (file_level or "DEBUG").upper(), logging.DEBUG)

    rich_handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(console_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(file_log_level)
        if log_format == "json":
            file_handler.setFormatter(JSONFileFormatter())
        else:
            file_handler.setFormatter(logging.Formatter("%(message)s"))
        root_logger.addHandler(file_handler)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_app_context,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer(colors=False),  # RichHandler handles coloring
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            min(console_level, file_log_level) if log_file else console_level
        ),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Optional logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return structlog.get_logger(name)


def log_api_request(
    logger: structlog.stdlib.BoundLogger,
    method: str,
    url: str,
    status_code: int | None = None,
    duration_ms: float | None = None,
    **extra: Any,
) -> None:
    """Log an API request with structured data.

    Args:
        logger: Logger instance
        method: HTTP method (GET, POST, etc.)
        url: Request URL
        status_code: HTTP status code
        duration_ms: Request duration in milliseconds
        **extra: Additional context to log
    """
    log_data: dict[str, Any] = {"method": method, "url": url, **extra}

    if status_code is not None:
        log_data["status_code"] = status_code
    if duration_ms is not None:
        log_data["duration_ms"] = round(duration_ms, 2)

    if status_code is None:
        logger.debug("api_request_started", **log_data)
    elif 200 <= status_code < 300:
        logger.debug("api_request_success", **log_data)
    elif 400 <= status_code < 500:
        logger.warning("api_request_client_error", **log_data)
    elif 500 <= status_code < 600:
        logger.warning("api_request_server_error", **log_data)
    else:
        logger.info("api_request_completed", **log_data)


def log_migration_progress(
    logger: structlog.stdlib.BoundLogger,
    phase: str,
    completed: int,
    total: int,
    **extra: Any,
) -> None:
    """Log migration progress with structured data.

    Args:
        logger: Logger instance
        phase: Migration phase name (products, variants, ...)
        completed: Number of items completed
        total: Total number of items
        **extra: Additional context to log
    """
    percentage = (completed / total * 100) if total > 0 else 0

    logger.info(
        "migration_progress",
        phase=phase,
        completed=completed,
        total=total,
        percentage=round(percentage, 2),
        **extra,
    )


def log_error(
    logger: structlog.stdlib.BoundLogger,
    error: Exception,
    event: str = "error_occurred",
    **extra: Any,
) -> None:
    """Log ``error`` under ``event`` with its type and message.

    API errors also carry their response status.
    """
    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        extra["status_code"] = status_code
    logger.error(
        event,
        error_type=type(error).__name__,
        error=str(error),
        **extra,
    )


def redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Redact sensitive keyword arguments passed to any log call."""
    for key in list(event_dict):
        if key != "event" and _is_sensitive(key):
            event_dict[key] = "[REDACTED]"
    return event_dict


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(sensitive in lowered for sensitive in SENSITIVE_FIELDS)


def sanitize_payload(payload: Any, max_depth: int = 10) -> Any:
    """Redact sensitive fields in a payload before logging.

    Args:
        payload: The payload to sanitize (dict, list, or primitive)
        max_depth: Maximum recursion depth

    Returns:
        Sanitized copy of the payload with sensitive values redacted
    """
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(payload, dict):
        sanitized = {}
        for key, value in payload.items():
            if _is_sensitive(key):
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, (dict, list)):
                sanitized[key] = sanitize_payload(value, max_depth - 1)
            else:
                sanitized[key] = value
        return sanitized

    if isinstance(payload, list):
        return [sanitize_payload(item, max_depth - 1) for item in payload]

    return payload


def truncate_payload(payload: Any, max_size: int = 10000) -> str:
    """Convert payload to a string and truncate it if too large."""
    try:
        payload_str = json.dumps(payload, indent=2, default=str)
    except (TypeError, ValueError):
        payload_str = str(payload)

    if len(payload_str) > max_size:
        return payload_str[:max_size] + f"\n... [TRUNCATED - {len(payload_str)} total chars]"

    return payload_str


def should_log_payloads(logger: structlog.stdlib.BoundLogger, log_payloads_enabled: bool) -> bool:
    """Return True when payload logging is enabled and the logger is at DEBUG."""
    if not log_payloads_enabled:
        return False

    is_enabled_for = getattr(logger, "is_enabled_for", None)
    if is_enabled_for is not None:
        return bool(is_enabled_for(logging.DEBUG))
    return logging.getLogger().isEnabledFor(logging.DEBUG)
