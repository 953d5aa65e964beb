"""Error taxonomy and driver error classification for the gateway."""
import re
from typing import Optional


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigError(GatewayError):
    """Missing or malformed plugin settings. Fatal at mount time."""


class BackendConnectionError(GatewayError):
    """The pool could not be opened or the backend did not answer the ping."""


class ValidationError(GatewayError):
    """Query text rejected before it reaches the backend."""


class DecodeError(GatewayError):
    """Request body is not a valid query document."""


class QueryError(GatewayError):
    """Execution, timeout or row fetch failure for a validated query."""

    def __init__(self, message: str, sql: str = "", kind: Optional[str] = None):
        super().__init__(message)
        self.sql = sql
        self.kind = kind or classify_error(message)

    @property
    def is_timeout(self) -> bool:
        return self.kind == TIMEOUT


TIMEOUT = "timeout"
CONNECTION = "connection"
SYNTAX = "syntax"
PERMISSION = "permission"
NOT_FOUND = "not_found"
CANCELLED = "cancelled"
GENERIC = "error"


class ErrorClassifier:
    """Maps backend driver error text onto a small set of error kinds."""

    # Checked in order, first match wins
    ERROR_PATTERNS = [
        (r"(timed? ?out|deadline exceeded|canceling statement due to statement timeout)", TIMEOUT),
        (r"(connection (refused|reset|closed|is closed)|server disconnect|broken pipe|"
         r"could not connect|no route to host)", CONNECTION),
        (r"(syntax error|parse error|unexpected token)", SYNTAX),
        (r"(permission denied|insufficient privileges|not authorized|access denied)", PERMISSION),
        (r"(no such (table|column)|does not exist|not found|unknown column)", NOT_FOUND),
    ]

    RETRIABLE_KINDS = (TIMEOUT, CONNECTION)

    @classmethod
    def classify(cls, error_message: str) -> str:
        """
        Classify a driver error message.

        Args:
            error_message: Error text as raised by the driver or SQLAlchemy

        Returns:
            One of the kind constants of this module, GENERIC when nothing matches
        """
        for pattern, kind in cls.ERROR_PATTERNS:
            if re.search(pattern, error_message, re.IGNORECASE):
                return kind
        return GENERIC

    @classmethod
    def is_retriable(cls, error_message: str) -> bool:
        """
        Determine if an error is transient.

        Args:
            error_message: The error message to check

        Returns:
            True if running the same query again may succeed
        """
        return cls.classify(error_message) in cls.RETRIABLE_KINDS


def classify_error(error: str) -> str:
    """Convenience wrapper around ErrorClassifier.classify."""
    return ErrorClassifier.classify(error)


def is_retriable_error(error: str) -> bool:
    """Convenience wrapper around ErrorClassifier.is_retriable."""
    return ErrorClassifier.is_retriable(error)
