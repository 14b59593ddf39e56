"""
Error taxonomy and centralized error reporting for infrabump.

Defines the typed exceptions raised by scanners, registry clients and the
rewriter, plus a handler that logs structured, secret-free error contexts.
"""

import logging
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse


class ErrorLevel(Enum):
    """Severity of a reported problem, valued as stdlib logging levels."""

    WARNING = logging.WARNING
    ERROR = logging.ERROR


class ErrorCategory(Enum):
    """Error categories used for coarse-grained policy decisions."""

    PARSING = "PARSING"
    NETWORK = "NETWORK"
    VALIDATION = "VALIDATION"
    CREDENTIAL = "CREDENTIAL"
    CONFIGURATION = "CONFIGURATION"
    FILESYSTEM = "FILESYSTEM"


def exception_chain(exception: BaseException) -> List[str]:
    """Messages of ``exception`` and its ``__cause__`` chain, outermost first."""
    messages: List[str] = []
    current: Optional[BaseException] = exception
    while current is not None:
        text = str(current)
        if text and text not in messages:
            messages.append(text)
        current = current.__cause__
    return messages


class BumpError(Exception):
    """
    Base class for every error infrabump raises on purpose.

    The original exception, if any, is available as ``__cause__`` when the
    error is raised with ``raise ... from exc``.
    """

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def chain(self) -> List[str]:
        """Return this error's message followed by the messages of its causes."""
        return exception_chain(self)


class ScanError(BumpError):
    """A declaration source could not be read or is malformed."""

    category = ErrorCategory.PARSING


class NetworkError(BumpError):
    """A registry host was unreachable or answered with a non-2xx status."""

    category = ErrorCategory.NETWORK

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.url = url
        self.status_code = status_code


class ParseError(BumpError):
    """A registry body or version string could not be parsed."""

    category = ErrorCategory.PARSING


class AuthError(BumpError):
    """A configured token command failed or produced no usable token."""

    category = ErrorCategory.CREDENTIAL


class RewriteError(BumpError):
    """An approved update could not be written back to its source file."""

    category = ErrorCategory.FILESYSTEM


# Secrets that may leak into messages: token assignments, auth headers, URL credentials
SENSITIVE_PATTERNS = [
    (r'token["\s]*[:=]["\s]*([a-zA-Z0-9_\-+=/.]{8,})', 'token="[REDACTED]"'),
    (r'password["\s]*[:=]["\s]*([^\s"\']+)', 'password="[REDACTED]"'),
    (r"(https?://[^@\s/]+:)[^@\s]+@", r"\1[REDACTED]@"),
    (r"Authorization:\s*\w+\s+([^\s]+)", "Authorization: [REDACTED]"),
    (r"Bearer\s+[a-zA-Z0-9_\-+=/.]{8,}", "Bearer [REDACTED]"),
]

SENSITIVE_KEYS = {"token", "password", "secret", "credential", "authorization"}


def sanitize_message(message: str) -> str:
    """Remove secrets from a free-form message."""
    for pattern, replacement in SENSITIVE_PATTERNS:
        message = re.sub(pattern, replacement, message, flags=re.IGNORECASE)
    return message


def sanitize_url(url: str) -> str:
    """
    Strip credentials and query strings from a URL before it is logged.

    Args:
        url: URL that may contain credentials

    Returns:
        str: URL with scheme, host, port and path only
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return "[REDACTED_URL]"

    if not parsed.scheme or not parsed.hostname:
        return url

    sanitized = f"{parsed.scheme}://{parsed.hostname}"
    if parsed.port:
        sanitized += f":{parsed.port}"
    return sanitized + parsed.path


def redact_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``details`` with credential-like keys hidden and strings scrubbed."""
    redacted: Dict[str, Any] = {}
    for key, value in details.items():
        if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
            redacted[key] = "[REDACTED]"
        elif isinstance(value, dict):
            redacted[key] = redact_details(value)
        elif isinstance(value, str):
            redacted[key] = sanitize_message(value)
        else:
            redacted[key] = value
    return redacted


@dataclass
class ErrorContext:
    """One reported problem: where it happened and what caused it."""

    level: ErrorLevel
    category: ErrorCategory
    message: str
    component: str
    operation: str
    details: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[BaseException] = None

    def render(self) -> str:
        """Single log line, secrets removed."""
        text = (
            f"[{self.category.value}] {self.component}.{self.operation}: "
            f"{sanitize_message(self.message)}"
        )
        if self.details:
            text += f" {redact_details(self.details)}"
        if self.exception is not None:
            causes = " <- ".join(exception_chain(self.exception))
            text += f" ({type(self.exception).__name__}: {sanitize_message(causes)})"
        return text


ErrorCallback = Callable[[ErrorContext], None]


def _configure_error_logger(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logger.addHandler(handler)
    return logger


class ErrorHandler:
    """
    Central sink for problems that are reported but do not abort a run.

    Every report is logged with secrets scrubbed, counted per category and
    level, and handed to the callbacks registered for its category.
    """

    def __init__(self, logger_name: str = "infrabump", log_level: int = logging.WARNING):
        self.logger = _configure_error_logger(logger_name, log_level)
        self._callbacks: List[Tuple[Optional[ErrorCategory], ErrorCallback]] = []
        self.error_stats: Dict[str, int] = {}

    def register_callback(
        self, callback: ErrorCallback, category: Optional[ErrorCategory] = None
    ) -> None:
        """Call ``callback`` for every report of ``category`` (all reports when None)."""
        self._callbacks.append((category, callback))

    def handle_error(
        self,
        level: ErrorLevel,
        category: ErrorCategory,
        message: str,
        component: str,
        operation: str,
        exception: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ErrorContext:
        context = ErrorContext(
            level=level,
            category=category,
            message=message,
            component=component,
            operation=operation,
            details=details or {},
            exception=exception,
        )

        stat_key = f"{category.value}_{level.name}"
        self.error_stats[stat_key] = self.error_stats.get(stat_key, 0) + 1

        self.logger.log(level.value, context.render())

        for wanted, callback in self._callbacks:
            if wanted is not None and wanted is not category:
                continue
            try:
                callback(context)
            except Exception as cb_error:
                # A failing callback must not turn a report into a crash
                self.logger.error(f"Error in callback: {cb_error}")

        return context

    def warning(
        self, category: ErrorCategory, message: str, component: str, operation: str, **kwargs
    ) -> ErrorContext:
        return self.handle_error(ErrorLevel.WARNING, category, message, component, operation, **kwargs)

    def error(
        self, category: ErrorCategory, message: str, component: str, operation: str, **kwargs
    ) -> ErrorContext:
        return self.handle_error(ErrorLevel.ERROR, category, message, component, operation, **kwargs)

    def get_error_stats(self) -> Dict[str, int]:
        return dict(self.error_stats)


_global_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """Return the process-wide handler, creating a default one on first use."""
    global _global_error_handler
    if _global_error_handler is None:
        _global_error_handler = ErrorHandler()
    return _global_error_handler


def setup_error_handling(
    log_level: int = logging.WARNING, logger_name: str = "infrabump"
) -> ErrorHandler:
    """Replace the process-wide handler, e.g. once the run's log level is known."""
    global _global_error_handler
    _global_error_handler = ErrorHandler(logger_name, log_level)
    return _global_error_handler


def _report_warning(
    category: ErrorCategory,
    message: str,
    component: str,
    operation: str,
    exception: Optional[BaseException],
    **details: Any,
) -> ErrorContext:
    return get_error_handler().warning(
        category,
        message,
        component,
        operation,
        details={key: value for key, value in details.items() if value is not None},
        exception=exception,
    )


def log_parsing_error(
    message: str,
    component: str,
    operation: str,
    file_path: Optional[str] = None,
    line_number: Optional[int] = None,
    exception: Optional[BaseException] = None,
) -> ErrorContext:
    """Report a declaration file that could not be read or parsed."""
    return _report_warning(
        ErrorCategory.PARSING,
        message,
        component,
        operation,
        exception,
        file_path=str(Path(file_path)) if file_path is not None else None,
        line_number=line_number,
    )


def log_network_error(
    message: str,
    component: str,
    operation: str,
    url: Optional[str] = None,
    status_code: Optional[int] = None,
    exception: Optional[BaseException] = None,
) -> ErrorContext:
    """Report a failed registry request; the URL is logged without credentials or query."""
    return _report_warning(
        ErrorCategory.NETWORK,
        message,
        component,
        operation,
        exception,
        url=sanitize_url(url) if url is not None else None,
        status_code=status_code,
    )


def log_credential_error(
    message: str,
    component: str,
    operation: str,
    registry: Optional[str] = None,
    exception: Optional[BaseException] = None,
) -> ErrorContext:
    """Report a token command for an OCI registry that failed."""
    return _report_warning(
        ErrorCategory.CREDENTIAL, message, component, operation, exception, registry=registry
    )
