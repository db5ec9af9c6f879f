"""Error taxonomy, classification and logging."""

from .failures import (
    Failure,
    HttpFailure,
    NetworkFailure,
    PlatformHTTPError,
    UnknownFailure,
    to_failure,
)
from .handler import (
    ErrorCategory,
    ErrorHandler,
    categorize_http_error,
    extract_marketinout_error,
    extract_tradingview_error,
)
from .logger import ErrorLogEntry, ErrorLogger, HttpErrorSink
from .types import (
    AUTH_ERROR_TYPES,
    ErrorContext,
    ErrorSeverity,
    Platform,
    RecoveryAction,
    RecoveryStep,
    SessionError,
    SessionErrorPayload,
    SessionErrorType,
)

__all__ = [
    "AUTH_ERROR_TYPES",
    "ErrorCategory",
    "ErrorContext",
    "ErrorHandler",
    "ErrorLogEntry",
    "ErrorLogger",
    "ErrorSeverity",
    "Failure",
    "HttpErrorSink",
    "HttpFailure",
    "NetworkFailure",
    "Platform",
    "PlatformHTTPError",
    "RecoveryAction",
    "RecoveryStep",
    "SessionError",
    "SessionErrorPayload",
    "SessionErrorType",
    "UnknownFailure",
    "categorize_http_error",
    "extract_marketinout_error",
    "extract_tradingview_error",
    "to_failure",
]
