"""Error factory, HTTP error classification and error parsing."""

import json
from typing import Any, NamedTuple, Optional

from .failures import HttpFailure, NetworkFailure, UnknownFailure, describe, to_failure
from .types import (
    ErrorContext,
    ErrorSeverity,
    Platform,
    RecoveryAction,
    RecoveryStep,
    SessionError,
    SessionErrorType,
)


class ErrorCategory(NamedTuple):
    """Result of classifying an HTTP failure."""

    is_session_error: bool
    error_type: SessionErrorType


def categorize_http_error(status: int, message: str) -> ErrorCategory:
    """
    Split HTTP failures into session-level and operation-level errors.

    Session errors mean the user must re-authenticate; everything else is a
    failure of the specific operation.

    Args:
        status: HTTP status code
        message: Error message from the platform or the raised error

    Returns:
        ErrorCategory with the session flag and the error type
    """
    lower = (message or "").lower()

    if (
        status in (401, 403)
        or "unauthorized" in lower
        or "forbidden" in lower
        or "session expired" in lower
        or "authentication failed" in lower
    ):
        error_type = (
            SessionErrorType.SESSION_EXPIRED
            if status == 401
            else SessionErrorType.INVALID_CREDENTIALS
        )
        return ErrorCategory(True, error_type)

    if status == 429 or "rate limit" in lower or "too many requests" in lower:
        return ErrorCategory(False, SessionErrorType.API_RATE_LIMITED)

    if (
        status in (400, 422)
        or "expected" in lower
        or "invalid data" in lower
        or "invalid_data" in lower
        or "format" in lower
    ):
        return ErrorCategory(False, SessionErrorType.DATA_FORMAT_ERROR)

    if status >= 500:
        return ErrorCategory(False, SessionErrorType.PLATFORM_UNAVAILABLE)

    if "permission" in lower or "access denied" in lower:
        return ErrorCategory(False, SessionErrorType.PERMISSION_DENIED)

    return ErrorCategory(False, SessionErrorType.OPERATION_FAILED)


def _step(
    action: RecoveryAction,
    description: str,
    priority: int,
    automated: bool = False,
    estimated_time: Optional[str] = None,
) -> RecoveryStep:
    return RecoveryStep(
        action=action,
        description=description,
        priority=priority,
        automated=automated,
        estimated_time=estimated_time,
    )


class ErrorHandler:
    """Factory for SessionError instances with predefined recovery plans."""

    @staticmethod
    def create_session_expired_error(
        platform: Platform,
        operation: str,
        session_id: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.WARNING,
        http_status: Optional[int] = None,
        request_url: Optional[str] = None,
    ) -> SessionError:
        context = ErrorContext(
            platform=platform,
            operation=operation,
            session_id=session_id,
            http_status=http_status,
            request_url=request_url,
        )
        steps = [
            _step(
                RecoveryAction.RE_AUTHENTICATE,
                f"Please log in to {platform.display_name} again",
                1,
                estimated_time="2-3 minutes",
            ),
            _step(
                RecoveryAction.CLEAR_CACHE,
                "Clear your browser cache and cookies if the problem persists",
                2,
                estimated_time="1 minute",
            ),
        ]
        return SessionError(
            SessionErrorType.SESSION_EXPIRED,
            f"Your {platform.display_name} session has expired. "
            "Please log in again to continue.",
            f"Session expired for platform {platform.value} during operation {operation}",
            context,
            severity,
            steps,
        )

    @staticmethod
    def create_invalid_credentials_error(
        platform: Platform,
        operation: str,
        http_status: Optional[int] = None,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        request_url: Optional[str] = None,
    ) -> SessionError:
        context = ErrorContext(
            platform=platform,
            operation=operation,
            http_status=http_status,
            request_url=request_url,
        )
        steps = [
            _step(
                RecoveryAction.UPDATE_CREDENTIALS,
                "Verify your login credentials are correct",
                1,
                estimated_time="1 minute",
            ),
            _step(
                RecoveryAction.RE_AUTHENTICATE,
                "Log out and log back in with correct credentials",
                2,
                estimated_time="2-3 minutes",
            ),
        ]
        return SessionError(
            SessionErrorType.INVALID_CREDENTIALS,
            f"Authentication failed for {platform.display_name}. "
            "Please check your login credentials and try again.",
            f"Invalid credentials for platform {platform.value} during operation "
            f"{operation} (HTTP {http_status})",
            context,
            severity,
            steps,
        )

    @staticmethod
    def create_network_error(
        platform: Platform,
        operation: str,
        cause: Any,
        url: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
    ) -> SessionError:
        if not isinstance(cause, BaseException):
            cause = Exception(describe(cause) or "Unknown network failure")
        message = describe(cause)
        context = ErrorContext(
            platform=platform,
            operation=operation,
            request_url=url,
            additional_data={
                "original_error": message,
                "error_class": type(cause).__name__,
            },
        )
        steps = [
            _step(
                RecoveryAction.CHECK_NETWORK,
                "Check your internet connection",
                1,
                estimated_time="1 minute",
            ),
            _step(
                RecoveryAction.WAIT_AND_RETRY,
                "Wait a moment and try again",
                2,
                automated=True,
                estimated_time="30 seconds",
            ),
            _step(
                RecoveryAction.RETRY,
                "Retry the operation",
                3,
                estimated_time="30 seconds",
            ),
        ]
        return SessionError(
            SessionErrorType.NETWORK_ERROR,
            "Connection failed. Please check your internet connection and try again.",
            f"Network error during {operation} for platform {platform.value}: {message}",
            context,
            severity,
            steps,
        )

    @staticmethod
    def create_platform_unavailable_error(
        platform: Platform,
        operation: str,
        http_status: Optional[int] = None,
        severity: ErrorSeverity = ErrorSeverity.WARNING,
        request_url: Optional[str] = None,
    ) -> SessionError:
        context = ErrorContext(
            platform=platform,
            operation=operation,
            http_status=http_status,
            request_url=request_url,
        )
        steps = [
            _step(
                RecoveryAction.WAIT_AND_RETRY,
                "Wait a few minutes and try again",
                1,
                automated=True,
                estimated_time="5-10 minutes",
            ),
            _step(
                RecoveryAction.CONTACT_SUPPORT,
                "Contact support if the issue persists",
                2,
                estimated_time="Variable",
            ),
        ]
        return SessionError(
            SessionErrorType.PLATFORM_UNAVAILABLE,
            f"{platform.display_name} is currently unavailable. Please try again later.",
            f"Platform {platform.value} unavailable during operation {operation} "
            f"(HTTP {http_status})",
            context,
            severity,
            steps,
        )

    @staticmethod
    def create_rate_limit_error(
        platform: Platform,
        operation: str,
        retry_after: Optional[int] = None,
        severity: ErrorSeverity = ErrorSeverity.WARNING,
        http_status: Optional[int] = None,
        request_url: Optional[str] = None,
    ) -> SessionError:
        context = ErrorContext(
            platform=platform,
            operation=operation,
            http_status=http_status,
            request_url=request_url,
            additional_data={"retry_after": retry_after},
        )
        wait_time = f"{retry_after} seconds" if retry_after else "1-2 minutes"
        steps = [
            _step(
                RecoveryAction.WAIT_AND_RETRY,
                f"Wait {wait_time} before trying again",
                1,
                automated=True,
                estimated_time=wait_time,
            ),
        ]
        return SessionError(
            SessionErrorType.API_RATE_LIMITED,
            f"Too many requests. Please wait {wait_time} before trying again.",
            f"Rate limit exceeded for platform {platform.value} during operation {operation}",
            context,
            severity,
            steps,
        )

    @staticmethod
    def create_cookie_error(
        platform: Platform,
        operation: str,
        cookie_issue: str,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
    ) -> SessionError:
        context = ErrorContext(
            platform=platform,
            operation=operation,
            additional_data={"cookie_issue": cookie_issue},
        )
        steps = [
            _step(
                RecoveryAction.CLEAR_CACHE,
                "Clear your browser cache and cookies",
                1,
                estimated_time="1-2 minutes",
            ),
            _step(
                RecoveryAction.RE_AUTHENTICATE,
                "Log in again to create fresh session cookies",
                2,
                estimated_time="2-3 minutes",
            ),
        ]
        return SessionError(
            SessionErrorType.COOKIE_INVALID,
            f"Session cookies are invalid for {platform.display_name}. "
            "Please clear your browser cache and log in again.",
            f"Cookie error for platform {platform.value} during operation "
            f"{operation}: {cookie_issue}",
            context,
            severity,
            steps,
        )

    @staticmethod
    def create_permission_error(
        platform: Platform,
        operation: str,
        required_permission: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        http_status: Optional[int] = None,
        request_url: Optional[str] = None,
    ) -> SessionError:
        context = ErrorContext(
            platform=platform,
            operation=operation,
            http_status=http_status,
            request_url=request_url,
            additional_data={"required_permission": required_permission},
        )
        steps = [
            _step(
                RecoveryAction.RE_AUTHENTICATE,
                "Log in with an account that has the necessary permissions",
                1,
                estimated_time="2-3 minutes",
            ),
            _step(
                RecoveryAction.CONTACT_SUPPORT,
                "Contact support to request access permissions",
                2,
                estimated_time="Variable",
            ),
        ]
        permission_text = f" ({required_permission})" if required_permission else ""
        return SessionError(
            SessionErrorType.PERMISSION_DENIED,
            f"Access denied{permission_text}. Please ensure you have the necessary "
            f"permissions for {platform.display_name}.",
            f"Permission denied for platform {platform.value} during operation {operation}",
            context,
            severity,
            steps,
        )

    @staticmethod
    def create_data_format_error(
        platform: Platform,
        operation: str,
        expected_format: str,
        received_data: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        http_status: Optional[int] = None,
        request_url: Optional[str] = None,
    ) -> SessionError:
        context = ErrorContext(
            platform=platform,
            operation=operation,
            http_status=http_status,
            request_url=request_url,
            additional_data={
                "expected_format": expected_format,
                "received_data": received_data[:200] if received_data else None,
            },
        )
        steps = [
            _step(
                RecoveryAction.RETRY,
                "Try the operation again",
                1,
                automated=True,
                estimated_time="30 seconds",
            ),
            _step(
                RecoveryAction.CONTACT_SUPPORT,
                "Contact support if this error persists",
                2,
                estimated_time="Variable",
            ),
        ]
        return SessionError(
            SessionErrorType.DATA_FORMAT_ERROR,
            f"Invalid data format received from {platform.display_name}. "
            "Please try again or contact support if this persists.",
            f"Data format error for platform {platform.value} during operation "
            f"{operation}: expected {expected_format}",
            context,
            severity,
            steps,
        )

    @staticmethod
    def create_storage_error(
        operation: str,
        cause: Any,
        platform: Platform = Platform.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.CRITICAL,
    ) -> SessionError:
        """The session KV backend could not be reached or failed."""
        message = describe(cause)
        context = ErrorContext(
            platform=platform,
            operation=operation,
            additional_data={"original_error": message},
        )
        steps = [
            _step(
                RecoveryAction.WAIT_AND_RETRY,
                "Wait a moment and try again",
                1,
                automated=True,
                estimated_time="30 seconds",
            ),
            _step(
                RecoveryAction.CONTACT_SUPPORT,
                "Contact support if session storage stays unavailable",
                2,
                estimated_time="Variable",
            ),
        ]
        return SessionError(
            SessionErrorType.SESSION_STORAGE_ERROR,
            "Session storage is temporarily unavailable. Please try again shortly.",
            f"Session store unavailable during {operation}: {message}",
            context,
            severity,
            steps,
        )

    @staticmethod
    def create_generic_error(
        platform: Platform,
        operation: str,
        message: Any,
        http_status: Optional[int] = None,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        request_url: Optional[str] = None,
    ) -> SessionError:
        error_message = describe(message)
        context = ErrorContext(
            platform=platform,
            operation=operation,
            http_status=http_status,
            request_url=request_url,
            additional_data={"original_error": error_message},
        )
        steps = [
            _step(
                RecoveryAction.RETRY,
                "Try the operation again",
                1,
                estimated_time="30 seconds",
            ),
            _step(
                RecoveryAction.REFRESH_SESSION,
                "Refresh your session and try again",
                2,
                automated=True,
                estimated_time="1 minute",
            ),
            _step(
                RecoveryAction.CONTACT_SUPPORT,
                "Contact support if the problem continues",
                3,
                estimated_time="Variable",
            ),
        ]
        return SessionError(
            SessionErrorType.OPERATION_FAILED,
            f"Operation failed for {platform.display_name}. "
            "Please try again or contact support if the issue persists.",
            f"Generic error for platform {platform.value} during operation "
            f"{operation}: {error_message}",
            context,
            severity,
            steps,
        )

    @staticmethod
    def create_unknown_error(
        platform: Platform,
        operation: str,
        raw: Any = None,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
    ) -> SessionError:
        context = ErrorContext(
            platform=platform,
            operation=operation,
            additional_data={"raw": repr(raw)},
        )
        steps = [
            _step(
                RecoveryAction.RETRY,
                "Try the operation again",
                1,
                estimated_time="30 seconds",
            ),
            _step(
                RecoveryAction.CONTACT_SUPPORT,
                "Contact support if the problem continues",
                2,
                estimated_time="Variable",
            ),
        ]
        return SessionError(
            SessionErrorType.UNKNOWN_ERROR,
            "Something went wrong. Please try again.",
            f"Unknown error for platform {platform.value} during operation "
            f"{operation}: {raw!r}",
            context,
            severity,
            steps,
        )

    @staticmethod
    def parse_error(raw: Any, platform: Platform, operation: str) -> SessionError:
        """
        Normalize any caught value into a SessionError.

        Already-typed SessionErrors are re-attributed to the current call
        site: the platform and operation in their context are rewritten and
        the original operation is kept in ``additional_data``.

        Args:
            raw: The caught value (exception, HTTP-status object, string, ...)
            platform: Platform of the handling call site
            operation: Operation name of the handling call site

        Returns:
            A SessionError attributed to ``platform``/``operation``
        """
        if isinstance(raw, SessionError):
            return ErrorHandler._reattribute(raw, platform, operation)

        failure = to_failure(raw)

        if isinstance(failure, HttpFailure):
            return ErrorHandler._from_http(failure, platform, operation)

        if isinstance(failure, NetworkFailure):
            return ErrorHandler.create_network_error(
                platform, operation, failure.cause, failure.url
            )

        return ErrorHandler._from_unknown(failure, platform, operation)

    @staticmethod
    def _reattribute(error: SessionError, platform: Platform, operation: str) -> SessionError:
        additional = dict(error.context.additional_data or {})
        if error.context.operation != operation:
            additional.setdefault("original_operation", error.context.operation)
        if error.platform != platform:
            additional.setdefault("original_platform", error.platform.value)
        context = error.context.model_copy(
            update={
                "platform": platform,
                "operation": operation,
                "additional_data": additional or None,
            }
        )
        return SessionError(
            error.type,
            error.user_message,
            error.technical_message,
            context,
            error.severity,
            list(error.recovery_steps),
        )

    @staticmethod
    def _from_http(failure: HttpFailure, platform: Platform, operation: str) -> SessionError:
        category = categorize_http_error(failure.status, failure.message)
        status, url = failure.status, failure.url
        error_type = category.error_type

        if error_type == SessionErrorType.SESSION_EXPIRED:
            return ErrorHandler.create_session_expired_error(
                platform, operation, http_status=status, request_url=url
            )
        if error_type == SessionErrorType.INVALID_CREDENTIALS:
            return ErrorHandler.create_invalid_credentials_error(
                platform, operation, http_status=status, request_url=url
            )
        if error_type == SessionErrorType.API_RATE_LIMITED:
            return ErrorHandler.create_rate_limit_error(
                platform, operation, http_status=status, request_url=url
            )
        if error_type == SessionErrorType.DATA_FORMAT_ERROR:
            return ErrorHandler.create_data_format_error(
                platform,
                operation,
                "JSON",
                failure.message,
                http_status=status,
                request_url=url,
            )
        if error_type == SessionErrorType.PLATFORM_UNAVAILABLE:
            return ErrorHandler.create_platform_unavailable_error(
                platform, operation, http_status=status, request_url=url
            )
        if error_type == SessionErrorType.PERMISSION_DENIED:
            return ErrorHandler.create_permission_error(
                platform, operation, http_status=status, request_url=url
            )
        return ErrorHandler.create_generic_error(
            platform,
            operation,
            failure.message or f"HTTP {status}",
            http_status=status,
            request_url=url,
        )

    @staticmethod
    def _from_unknown(failure: UnknownFailure, platform: Platform, operation: str) -> SessionError:
        message = describe(failure.raw)
        if not message.strip():
            return ErrorHandler.create_unknown_error(platform, operation, failure.raw)

        lower = message.lower()

        if "session expired" in lower or "login" in lower or "signin" in lower:
            return ErrorHandler.create_session_expired_error(platform, operation)

        if (
            "credentials" in lower
            or "authentication failed" in lower
            or "unauthorized" in lower
        ):
            return ErrorHandler.create_invalid_credentials_error(platform, operation)

        if (
            "network" in lower
            or "connection" in lower
            or "timeout" in lower
            or "timed out" in lower
        ):
            return ErrorHandler.create_network_error(platform, operation, failure.raw)

        if "unavailable" in lower or "maintenance" in lower:
            return ErrorHandler.create_platform_unavailable_error(platform, operation)

        if "rate limit" in lower or "too many requests" in lower:
            return ErrorHandler.create_rate_limit_error(platform, operation)

        if "cookie" in lower:
            return ErrorHandler.create_cookie_error(platform, operation, message)

        if (
            "format" in lower
            or "parsing" in lower
            or "json" in lower
            or "unexpected response" in lower
        ):
            return ErrorHandler.create_data_format_error(platform, operation, "JSON", message)

        return ErrorHandler.create_generic_error(platform, operation, message)


def extract_tradingview_error(data: Any) -> str:
    """Pull a readable message out of a TradingView JSON error body."""
    if not data:
        return "Unknown error"
    if not isinstance(data, dict):
        return str(data)[:200]

    errors = data.get("non_field_errors")
    if isinstance(errors, list):
        return ", ".join(str(item) for item in errors)

    if data.get("__code__"):
        details = data.get("detail") or ""
        return f"{data['__code__']}: {json.dumps(details)}"

    for field in ("error", "detail"):
        value = data.get(field)
        if value:
            return value if isinstance(value, str) else json.dumps(value)

    return json.dumps(data)[:200]


def extract_marketinout_error(data: Any) -> str:
    """Pull a readable message out of a MarketInOut JSON error body."""
    if not data:
        return "Unknown error"
    if not isinstance(data, dict):
        return str(data)[:200]

    if data.get("message"):
        return str(data["message"])

    error = data.get("error")
    if error:
        return error if isinstance(error, str) else json.dumps(error)

    errors = data.get("errors")
    if isinstance(errors, list):
        return ", ".join(str(item) for item in errors)

    return json.dumps(data)[:200]
