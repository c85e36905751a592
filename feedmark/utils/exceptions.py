"""
FeedMark Exceptions
===================

Error hierarchy for the importer. Every error carries a stable code, a
context dict for structured logs, and a message fit for the CLI.

Two branches matter to the import pipeline: ``FeedFetchError`` and
``FeedParseError`` are confined to the source that raised them, while
``SourceRepositoryError`` and ``WatermarkPersistenceError`` end the run.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error codes, grouped by prefix."""

    # C: configuration
    CONFIG_INVALID = "C001"
    CONFIG_MISSING = "C002"

    # D: database
    DATABASE_CONNECTION = "D001"
    DATABASE_CONSTRAINT = "D003"
    DATABASE_TRANSACTION = "D004"
    DATABASE_ERROR = "D006"

    # F: feed transport and parsing
    FEED_INVALID_URL = "F001"
    FEED_FETCH_TIMEOUT = "F002"
    FEED_PARSE_ERROR = "F003"
    FEED_NETWORK_ERROR = "F004"
    FEED_HTTP_ERROR = "F005"
    FEED_DTD_PROHIBITED = "F006"
    FEED_EMPTY = "F007"
    FEED_FETCH_CANCELLED = "F008"

    # W: sources and watermarks
    SOURCE_MISCONFIGURED = "W001"
    SOURCE_ENUMERATION_FAILED = "W002"
    WATERMARK_PERSIST_FAILED = "W003"

    # V: input validation
    VALIDATION_REQUIRED_FIELD = "V001"
    VALIDATION_INVALID_FORMAT = "V002"

    # S: host system
    SYSTEM_PERMISSION_DENIED = "S002"
    SYSTEM_MEMORY_ERROR = "S004"


def _merge_context(context: Optional[Dict[str, Any]], **fields: Any) -> Dict[str, Any]:
    merged = dict(context or {})
    merged.update({key: value for key, value in fields.items() if value is not None})
    return merged


class FeedMarkError(Exception):
    """Base class for all FeedMark errors.

    Subclasses set ``default_code`` and ``recoverable_by_default``; any of
    them can still be overridden per instance through the keyword arguments.
    """

    default_code: Optional[ErrorCode] = None
    recoverable_by_default = False

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        recoverable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.error_code = error_code or self.default_code
        self.context = dict(context or {})
        self.user_message = user_message or self.describe(message)
        self.recoverable = self.recoverable_by_default if recoverable is None else recoverable

    def describe(self, message: str) -> str:
        """User-facing text when none is given explicitly."""
        return message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "error_code": self.error_code.value if self.error_code else None,
            "error_message": str(self),
            "user_message": self.user_message,
            "context": self.context,
            "recoverable": self.recoverable,
        }

    def __str__(self) -> str:
        text = super().__str__()
        return f"[{self.error_code.value}] {text}" if self.error_code else text


class ConfigurationError(FeedMarkError):
    """Settings could not be loaded or are inconsistent."""

    default_code = ErrorCode.CONFIG_INVALID

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        kwargs["context"] = _merge_context(kwargs.get("context"), config_key=config_key)
        super().__init__(message, **kwargs)

    def describe(self, message: str) -> str:
        return f"Configuration error: {message}"


class DatabaseError(FeedMarkError):
    """SQLite read or write failed."""

    default_code = ErrorCode.DATABASE_CONNECTION
    recoverable_by_default = True

    def __init__(self, message: str, query: Optional[str] = None, **kwargs):
        kwargs["context"] = _merge_context(kwargs.get("context"), query=query)
        super().__init__(message, **kwargs)

    def describe(self, message: str) -> str:
        return "Database operation failed"


class SourceRepositoryError(DatabaseError):
    """The source list could not be read, so no import can start."""

    default_code = ErrorCode.SOURCE_ENUMERATION_FAILED
    recoverable_by_default = False

    def describe(self, message: str) -> str:
        return "Could not read the source list"


class WatermarkPersistenceError(DatabaseError):
    """A source's new last-pull time could not be saved."""

    default_code = ErrorCode.WATERMARK_PERSIST_FAILED
    recoverable_by_default = False

    def __init__(self, message: str, source_id: Optional[str] = None, **kwargs):
        kwargs["context"] = _merge_context(kwargs.get("context"), source_id=source_id)
        super().__init__(message, **kwargs)

    def describe(self, message: str) -> str:
        return "Could not save source pull state"


class FeedError(FeedMarkError):
    """Something went wrong between a feed URL and its parsed entries."""

    default_code = ErrorCode.FEED_NETWORK_ERROR
    recoverable_by_default = True

    def __init__(self, message: str, feed_url: Optional[str] = None, **kwargs):
        self.feed_url = feed_url
        kwargs["context"] = _merge_context(kwargs.get("context"), feed_url=feed_url)
        super().__init__(message, **kwargs)

    def describe(self, message: str) -> str:
        return f"Feed processing failed: {message}"


class ValidationError(FeedMarkError):
    """Input value rejected."""

    default_code = ErrorCode.VALIDATION_INVALID_FORMAT

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        self.field_name = field_name
        kwargs["context"] = _merge_context(kwargs.get("context"), field_name=field_name)
        super().__init__(message, **kwargs)

    def describe(self, message: str) -> str:
        return f"Invalid {self.field_name or 'input'}: {message}"


class FeedFetchError(FeedError):
    """The feed document could not be retrieved."""


class FeedTransportError(FeedFetchError):
    """DNS, connection, timeout or HTTP status failure."""

    def __init__(
        self,
        message: str,
        feed_url: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        self.status_code = status_code
        if status_code is not None:
            kwargs.setdefault("error_code", ErrorCode.FEED_HTTP_ERROR)
        kwargs["context"] = _merge_context(kwargs.get("context"), status_code=status_code)
        super().__init__(message, feed_url=feed_url, **kwargs)


class InvalidFeedUrlError(FeedTransportError):
    """Feed URL is empty or not an absolute http(s) URI."""

    default_code = ErrorCode.FEED_INVALID_URL
    recoverable_by_default = False


class FetchCancelledError(FeedTransportError):
    """Cancellation was requested while the fetch was in flight."""

    default_code = ErrorCode.FEED_FETCH_CANCELLED


class FeedParseError(FeedError):
    """The response body could not be read as RSS or Atom."""

    default_code = ErrorCode.FEED_PARSE_ERROR


class DtdProhibitedError(FeedParseError):
    """The document declares a DTD and the policy is ``prohibit``."""

    default_code = ErrorCode.FEED_DTD_PROHIBITED

    def describe(self, message: str) -> str:
        return (
            "Feed declares a DTD; set FEEDMARK_TRANSPORT__DTD_PROCESSING to "
            "'ignore' or 'allow' to accept it"
        )


class MalformedFeedError(FeedParseError):
    """Broken XML with no recoverable entries."""


class EmptyFeedError(FeedParseError):
    """Body was fetched but holds no feed."""

    default_code = ErrorCode.FEED_EMPTY


class SourceMisconfiguredError(ValidationError):
    """Source is disabled, lacks a feed URL, or has an unreadable rss block."""

    default_code = ErrorCode.SOURCE_MISCONFIGURED

    def __init__(self, message: str, source_id: Optional[str] = None, **kwargs):
        kwargs["context"] = _merge_context(kwargs.get("context"), source_id=source_id)
        super().__init__(message, field_name="rss", **kwargs)


# Conversion of foreign exceptions

_BUILTIN_CONVERSIONS = (
    ((ConnectionError, TimeoutError), ErrorCode.FEED_NETWORK_ERROR, "Network error", "Network connection failed", True),
    (PermissionError, ErrorCode.SYSTEM_PERMISSION_DENIED, "Permission denied", "Access denied", False),
    (MemoryError, ErrorCode.SYSTEM_MEMORY_ERROR, "Memory exhausted", "System resources exhausted", True),
)


def handle_exception(
    exception: Exception,
    logger,
    operation: str,
    context: Optional[Dict[str, Any]] = None,
) -> FeedMarkError:
    """Log ``exception`` and return it as a FeedMarkError.

    FeedMark errors are logged and returned unchanged. Anything else is
    wrapped, with ``operation`` and the original type recorded in context.
    """
    if isinstance(exception, FeedMarkError):
        logger.error(f"Operation '{operation}' failed", extra=exception.to_dict())
        return exception

    context = _merge_context(
        context,
        operation=operation,
        original_exception_type=type(exception).__name__,
    )

    if isinstance(exception, FileNotFoundError):
        error: FeedMarkError = ConfigurationError(
            f"Required file not found during {operation}: {exception}",
            error_code=ErrorCode.CONFIG_MISSING,
            context=context,
            user_message="Configuration file missing",
        )
    else:
        for types, code, label, user_message, recoverable in _BUILTIN_CONVERSIONS:
            if isinstance(exception, types):
                error = FeedMarkError(
                    f"{label} during {operation}: {exception}",
                    error_code=code,
                    context=context,
                    user_message=user_message,
                    recoverable=recoverable,
                )
                break
        else:
            error = FeedMarkError(
                f"Unexpected error during {operation}: {exception}",
                context=context,
                user_message="An unexpected error occurred",
                recoverable=True,
            )

    logger.error(f"Operation '{operation}' failed", extra=error.to_dict())
    return error


def get_user_friendly_message(exception: Exception) -> str:
    """Message suitable for the terminal, for any exception."""
    if isinstance(exception, FeedMarkError):
        return exception.user_message
    return "An unexpected error occurred. Please try again later."
