"""
Structured logging configuration for infrabump.

Provides consistent, machine-readable event logging for project discovery,
registry resolution and file rewrites. Events go to stderr so that report
output on stdout stays clean.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# LogRecord attributes that are not event payload
_RESERVED_ATTRIBUTES = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "getMessage",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRIBUTES:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class EventLogger:
    """Structured logger for named pipeline events."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(f"infrabump.{name}")
        self._setup_logger()
        self.run_context: Dict[str, Any] = {}

    def _setup_logger(self) -> None:
        """Setup logger with structured formatting."""
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)
            self.logger.propagate = False
            self.logger.setLevel(logging.WARNING)

    def set_run_context(
        self,
        run_id: Optional[str] = None,
        root_path: Optional[str] = None,
        recursive: Optional[bool] = None,
    ) -> None:
        """Set run context attached to every event."""
        self.run_context = {}
        if run_id:
            self.run_context["run_id"] = run_id
        if root_path:
            self.run_context["root_path"] = root_path
        if recursive is not None:
            self.run_context["recursive"] = recursive

    def clear_run_context(self) -> None:
        """Clear run context."""
        self.run_context.clear()

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method."""
        log_data = {"event_type": event_type, **self.run_context, **kwargs}
        self.logger.log(level, event_type, extra=log_data)

    def info(self, event_type: str, **kwargs) -> None:
        """Log info level event."""
        self._log(logging.INFO, event_type, **kwargs)

    def warning(self, event_type: str, **kwargs) -> None:
        """Log warning level event."""
        self._log(logging.WARNING, event_type, **kwargs)

    def error(self, event_type: str, **kwargs) -> None:
        """Log error level event."""
        self._log(logging.ERROR, event_type, **kwargs)

    def debug(self, event_type: str, **kwargs) -> None:
        """Log debug level event."""
        self._log(logging.DEBUG, event_type, **kwargs)


# Global logger instances
_scanner_logger = EventLogger("scanner")
_registry_logger = EventLogger("registry")
_rewriter_logger = EventLogger("rewriter")
_bumper_logger = EventLogger("bumper")

_ALL_LOGGERS = (_scanner_logger, _registry_logger, _rewriter_logger, _bumper_logger)


def get_scanner_logger() -> EventLogger:
    """Get discovery and scanning logger."""
    return _scanner_logger


def get_registry_logger() -> EventLogger:
    """Get registry operations logger."""
    return _registry_logger


def get_rewriter_logger() -> EventLogger:
    """Get file rewrite logger."""
    return _rewriter_logger


def get_bumper_logger() -> EventLogger:
    """Get orchestration logger."""
    return _bumper_logger


def log_registry_check(
    cache_key: str,
    registry: str,
    latest_version: Optional[str],
    error: Optional[str] = None,
    response_time_ms: Optional[int] = None,
) -> None:
    """Log the outcome of one registry lookup."""
    log_data: Dict[str, Any] = {
        "cache_key": cache_key,
        "registry": registry,
    }
    if response_time_ms is not None:
        log_data["response_time_ms"] = response_time_ms

    if error:
        _registry_logger.warning("registry_lookup_failed", error=error, **log_data)
    else:
        _registry_logger.debug(
            "registry_lookup_completed", latest_version=latest_version, **log_data
        )


def set_run_context(
    run_id: Optional[str] = None,
    root_path: Optional[str] = None,
    recursive: Optional[bool] = None,
) -> None:
    """Set global run context for all loggers."""
    for logger in _ALL_LOGGERS:
        logger.set_run_context(run_id, root_path, recursive)


def clear_run_context() -> None:
    """Clear global run context."""
    for logger in _ALL_LOGGERS:
        logger.clear_run_context()


def configure_logging(log_level: str = "WARNING") -> None:
    """Configure the level of every infrabump event logger."""
    level = getattr(logging, log_level.upper(), logging.WARNING)
    logging.getLogger("infrabump").setLevel(level)
    for logger in _ALL_LOGGERS:
        logger.logger.setLevel(level)
