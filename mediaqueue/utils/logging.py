"""Structured Logging Configuration.

This module provides structured logging with JSON output and context binding
for the process-level code paths (worker entry point, downloader subprocess
wrapper) that run before or outside the structlog-configured services.

Configuration:
- JSON output format, one object per line
- Context binding via bind() (request ids, attempt labels, etc.)
- Log levels: DEBUG, INFO, WARNING, ERROR
"""

import json
import logging
import sys
from typing import Any

_SENSITIVE_FLAGS = ("--cookies", "--cookies-from-browser", "--proxy", "--password", "--token")
_MAX_ARG_LENGTH = 200


class StructuredLogger:
    """Wrapper around standard Logger with structured JSON logging support.

    Provides structured logging methods (info, error, warning, debug) that
    accept keyword arguments and output JSON. Context passed to bind() is
    merged into every entry.
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self._logger = logger
        self._context = dict(context or {})

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Return a logger that adds kwargs to every entry."""
        return StructuredLogger(self._logger, {**self._context, **kwargs})

    def _format_json(self, event: str, **kwargs: Any) -> str:
        log_entry = {"event": event, **self._context, **kwargs}
        return json.dumps(log_entry, default=str, ensure_ascii=False)

    def _log(self, level: int, event: str, kwargs: dict[str, Any]) -> None:
        exc_info = bool(kwargs.pop("exc_info", False))
        self._logger.log(level, self._format_json(event, **kwargs), exc_info=exc_info)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, event, kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, kwargs)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, kwargs)


def sanitize_args(args: list[str]) -> list[str]:
    """Redact values following sensitive flags and truncate long arguments.

    Cookie profiles and proxy URLs may embed credentials, so the value after
    those flags is replaced before logging.
    """
    sanitized: list[str] = []
    redact_next = False
    for arg in args:
        if redact_next:
            sanitized.append("***REDACTED***")
            redact_next = False
        elif arg.lower() in _SENSITIVE_FLAGS:
            sanitized.append(arg)
            redact_next = True
        else:
            sanitized.append(
                arg[:_MAX_ARG_LENGTH] + "..." if len(arg) > _MAX_ARG_LENGTH else arg
            )
    return sanitized


def truncate(text: str, limit: int = 2000) -> str:
    """Keep the tail of long diagnostic output (errors are usually last)."""
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Configured StructuredLogger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return StructuredLogger(logger)
