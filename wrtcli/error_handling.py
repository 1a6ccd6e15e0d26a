"""
Error Handling and Logging
==========================

This module defines the error taxonomy of the backup tool together with the
classification and structured logging helpers used by every component.

Features:
- Typed errors for authentication, transport, storage and lookup failures
- Error classification into category, severity and suggested action
- Structured JSON log entries with a per-operation context stack
- One-shot logging configuration for the command line entry point
"""

import hashlib
import json
import logging
import sys
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Configure logging
logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error category classification."""
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    TIMEOUT = "timeout"
    STORAGE = "storage"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuthErrorKind(Enum):
    UNREACHABLE = "unreachable"
    REJECTED = "rejected"
    MALFORMED_RESPONSE = "malformed_response"


class TransportErrorKind(Enum):
    UNREACHABLE = "unreachable"
    UNAUTHORIZED = "unauthorized"
    BAD_PAYLOAD = "bad_payload"
    REMOTE_REJECTED = "remote_rejected"


class WrtCliError(Exception):
    """Base class for every error reported at the command line boundary."""

    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(WrtCliError):
    """Authentication against a device failed."""

    def __init__(self, kind: AuthErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    @property
    def category(self) -> ErrorCategory:
        if self.kind == AuthErrorKind.UNREACHABLE:
            return ErrorCategory.NETWORK
        if self.kind == AuthErrorKind.REJECTED:
            return ErrorCategory.AUTHENTICATION
        return ErrorCategory.VALIDATION


class TransportError(WrtCliError):
    """A remote backup operation failed."""

    def __init__(self, kind: TransportErrorKind, message: str, timed_out: bool = False):
        super().__init__(message)
        self.kind = kind
        self.timed_out = timed_out

    @property
    def category(self) -> ErrorCategory:
        if self.kind == TransportErrorKind.UNREACHABLE:
            return ErrorCategory.TIMEOUT if self.timed_out else ErrorCategory.NETWORK
        if self.kind == TransportErrorKind.UNAUTHORIZED:
            return ErrorCategory.AUTHORIZATION
        if self.kind == TransportErrorKind.BAD_PAYLOAD:
            return ErrorCategory.VALIDATION
        return ErrorCategory.CONFIGURATION


class StorageError(WrtCliError):
    """Local filesystem failure while handling artifacts or the journal."""

    category = ErrorCategory.STORAGE

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class NotFoundError(WrtCliError):
    """Unknown device or backup id."""

    category = ErrorCategory.NOT_FOUND


class RegistryError(WrtCliError):
    """The device registry could not be read, written or decrypted."""

    category = ErrorCategory.CONFIGURATION


@dataclass
class ErrorInfo:
    """Detailed error information."""
    error_id: str
    timestamp: datetime
    category: ErrorCategory
    severity: ErrorSeverity
    error_type: str
    error_message: str
    context: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    suggested_action: Optional[str] = None


class ErrorClassifier:
    """Classifies and categorizes errors."""

    SEVERITIES = {
        ErrorCategory.NETWORK: ErrorSeverity.HIGH,
        ErrorCategory.AUTHENTICATION: ErrorSeverity.HIGH,
        ErrorCategory.AUTHORIZATION: ErrorSeverity.HIGH,
        ErrorCategory.TIMEOUT: ErrorSeverity.MEDIUM,
        ErrorCategory.STORAGE: ErrorSeverity.CRITICAL,
        ErrorCategory.VALIDATION: ErrorSeverity.MEDIUM,
        ErrorCategory.NOT_FOUND: ErrorSeverity.LOW,
        ErrorCategory.CONFIGURATION: ErrorSeverity.MEDIUM,
        ErrorCategory.UNKNOWN: ErrorSeverity.MEDIUM,
    }

    SUGGESTIONS = {
        ErrorCategory.NETWORK: "Check network connectivity and device reachability",
        ErrorCategory.AUTHENTICATION: "Verify the username and password registered for the device",
        ErrorCategory.AUTHORIZATION: "The device keeps refusing the session; check the account's ACL permissions",
        ErrorCategory.TIMEOUT: "Increase WRTCLI_REQUEST_TIMEOUT or check device responsiveness",
        ErrorCategory.STORAGE: "Check disk space and permissions of the backup directory",
        ErrorCategory.VALIDATION: "The device answered with unexpected data; check its firmware and API packages",
        ErrorCategory.NOT_FOUND: "Use 'wrtcli list' or 'wrtcli backup list <device>' to see what exists",
        ErrorCategory.CONFIGURATION: "Review the device's logs; it refused the requested operation",
        ErrorCategory.UNKNOWN: "Review error details and run again with --verbose",
    }

    @staticmethod
    def classify_error(exception: BaseException) -> Tuple[ErrorCategory, ErrorSeverity]:
        """Classify error into category and severity."""
        if isinstance(exception, WrtCliError):
            category = exception.category
        elif isinstance(exception, OSError):
            category = ErrorCategory.STORAGE
        else:
            category = ErrorCategory.UNKNOWN

        return category, ErrorClassifier.SEVERITIES[category]

    @staticmethod
    def suggest_action(exception: BaseException) -> str:
        """Suggest corrective action for error."""
        category, _ = ErrorClassifier.classify_error(exception)
        return ErrorClassifier.SUGGESTIONS.get(category, "Contact system administrator")


class StructuredLogger:
    """Logger with structured JSON output and context."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.context_stack: List[Dict[str, Any]] = []

    @contextmanager
    def context(self, **context_vars):
        """Add context variables for logging."""
        self.context_stack.append(context_vars)
        try:
            yield
        finally:
            self.context_stack.pop()

    def _get_context(self) -> Dict[str, Any]:
        """Get current context from stack."""
        context = {}
        for ctx in self.context_stack:
            context.update(ctx)
        return context

    def _create_log_entry(self, level: str, message: str, **kwargs) -> Dict[str, Any]:
        """Create structured log entry."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "message": message,
            "context": self._get_context()
        }
        entry.update(kwargs)
        return entry

    def debug(self, message: str, **kwargs):
        if self.logger.isEnabledFor(logging.DEBUG):
            entry = self._create_log_entry("DEBUG", message, **kwargs)
            self.logger.debug(json.dumps(entry, default=str))

    def info(self, message: str, **kwargs):
        """Log info message."""
        entry = self._create_log_entry("INFO", message, **kwargs)
        self.logger.info(json.dumps(entry, default=str))

    def warning(self, message: str, **kwargs):
        """Log warning message."""
        entry = self._create_log_entry("WARNING", message, **kwargs)
        self.logger.warning(json.dumps(entry, default=str))

    def error(self, message: str, exception: Optional[BaseException] = None, **kwargs):
        """Log error message with optional exception details."""
        entry = self._create_log_entry("ERROR", message, **kwargs)

        if exception:
            error_info = build_error_info(exception, self._get_context(), message)
            entry["exception"] = {
                "type": error_info.error_type,
                "message": error_info.error_message,
                "category": error_info.category.value,
                "severity": error_info.severity.value,
                "stack_trace": error_info.stack_trace,
                "suggested_action": error_info.suggested_action
            }

        self.logger.error(json.dumps(entry, default=str))


def build_error_info(exception: BaseException, context: Optional[Dict[str, Any]] = None,
                     message: str = "") -> ErrorInfo:
    """Collect classification and trace details for an exception."""
    category, severity = ErrorClassifier.classify_error(exception)
    stack_trace = None
    if exception.__traceback__ is not None:
        stack_trace = "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))

    return ErrorInfo(
        error_id=hashlib.md5(f"{message}{exception}".encode()).hexdigest(),
        timestamp=datetime.now(timezone.utc),
        category=category,
        severity=severity,
        error_type=type(exception).__name__,
        error_message=str(exception),
        context=context or {},
        stack_trace=stack_trace,
        suggested_action=ErrorClassifier.suggest_action(exception)
    )


def get_logger(name: str) -> StructuredLogger:
    """Get structured logger instance."""
    return StructuredLogger(name)


def configure_logging(level: str = "WARNING") -> None:
    """Send log records to stderr at the requested level."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_wrtcli_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    handler._wrtcli_handler = True
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.WARNING))
    logger.debug(f"Logging configured at {level.upper()}")
