"""Session error types, recovery steps and the SessionError exception."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SessionErrorType(str, Enum):
    """Session error categories."""

    SESSION_EXPIRED = "SESSION_EXPIRED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    NETWORK_ERROR = "NETWORK_ERROR"
    API_RATE_LIMITED = "API_RATE_LIMITED"
    DATA_FORMAT_ERROR = "DATA_FORMAT_ERROR"
    PLATFORM_UNAVAILABLE = "PLATFORM_UNAVAILABLE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    COOKIE_INVALID = "COOKIE_INVALID"
    SESSION_STORAGE_ERROR = "SESSION_STORAGE_ERROR"
    OPERATION_FAILED = "OPERATION_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# Errors that mean the user has to log in again
AUTH_ERROR_TYPES = frozenset(
    {SessionErrorType.SESSION_EXPIRED, SessionErrorType.INVALID_CREDENTIALS}
)


class Platform(str, Enum):
    """External platforms whose sessions are managed."""

    MARKETINOUT = "marketinout"
    TRADINGVIEW = "tradingview"
    TELEGRAM = "telegram"
    UNKNOWN = "unknown"

    @classmethod
    def from_name(cls, name: Optional[str]) -> "Platform":
        """Map a platform name to a member, falling back to UNKNOWN."""
        if isinstance(name, cls):
            return name
        try:
            return cls((name or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    Platform.MARKETINOUT: "MarketInOut",
    Platform.TRADINGVIEW: "TradingView",
    Platform.TELEGRAM: "Telegram",
    Platform.UNKNOWN: "the platform",
}


class RecoveryAction(str, Enum):
    """Remediation actions the UI can offer or trigger."""

    RETRY = "retry"
    WAIT_AND_RETRY = "wait_and_retry"
    REFRESH_SESSION = "refresh_session"
    RE_AUTHENTICATE = "re_authenticate"
    CLEAR_CACHE = "clear_cache"
    CHECK_NETWORK = "check_network"
    UPDATE_CREDENTIALS = "update_credentials"
    CONTACT_SUPPORT = "contact_support"


class RecoveryStep(BaseModel):
    """One prioritized remediation step attached to an error."""

    model_config = ConfigDict(frozen=True)

    action: RecoveryAction = Field(..., description="Recovery action")
    description: str = Field(..., description="Human-readable instruction")
    priority: int = Field(..., description="Lower runs first")
    automated: bool = Field(default=False, description="Safe to run without confirmation")
    estimated_time: Optional[str] = Field(None, description="Rough duration")


class ErrorContext(BaseModel):
    """Where and when an error happened."""

    model_config = ConfigDict(frozen=True)

    platform: Platform = Field(..., description="Platform the operation targeted")
    operation: str = Field(..., description="Operation that failed")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the error was created",
    )
    session_id: Optional[str] = Field(None, description="Internal session ID")
    http_status: Optional[int] = Field(None, description="HTTP status, if any")
    request_url: Optional[str] = Field(None, description="Request URL, if any")
    additional_data: Optional[dict[str, Any]] = Field(None, description="Extra details")


class SessionErrorPayload(BaseModel):
    """JSON shape of a SessionError."""

    type: SessionErrorType
    severity: ErrorSeverity
    platform: Platform
    error_code: str
    user_message: str
    technical_message: str
    context: ErrorContext
    recovery_steps: list[RecoveryStep]


class SessionError(Exception):
    """
    Typed, immutable session failure.

    Carries a user-facing message, a technical message for logs, the context
    of the failing operation and an ordered list of recovery steps.
    """

    def __init__(
        self,
        error_type: SessionErrorType,
        user_message: str,
        technical_message: str,
        context: ErrorContext,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        recovery_steps: Optional[list[RecoveryStep]] = None,
    ):
        super().__init__(technical_message)
        steps = sorted(recovery_steps or [], key=lambda step: step.priority)
        object.__setattr__(self, "_frozen", False)
        self.type = error_type
        self.severity = severity
        self.platform = context.platform
        self.context = context
        self.user_message = user_message
        self.technical_message = technical_message
        self.recovery_steps = tuple(steps)
        self.error_code = f"{context.platform.value.upper()}_{error_type.value}"
        self._frozen = True

    def __setattr__(self, name: str, value: Any) -> None:
        # Dunder attributes (__traceback__, __notes__, ...) are interpreter-managed
        if getattr(self, "_frozen", False) and not name.startswith("__"):
            raise AttributeError(f"SessionError is immutable (cannot set {name!r})")
        object.__setattr__(self, name, value)

    def __repr__(self) -> str:
        return f"SessionError({self.error_code}, operation={self.context.operation!r})"

    @property
    def timestamp(self) -> datetime:
        return self.context.timestamp

    def get_display_message(self) -> str:
        return self.user_message

    def get_technical_details(self) -> dict[str, Any]:
        """Details for logs and debugging."""
        return {
            "error_code": self.error_code,
            "type": self.type.value,
            "severity": self.severity.value,
            "platform": self.platform.value,
            "technical_message": self.technical_message,
            "context": self.context.model_dump(mode="json"),
        }

    def get_recovery_instructions(self) -> list[str]:
        return [step.description for step in self.recovery_steps]

    def can_auto_recover(self) -> bool:
        return any(step.automated for step in self.recovery_steps)

    def get_automated_recovery_actions(self) -> list[RecoveryStep]:
        return [step for step in self.recovery_steps if step.automated]

    def first_automated_step(self) -> Optional[RecoveryStep]:
        """The step the UI may trigger without asking the user."""
        for step in self.recovery_steps:
            if step.automated:
                return step
        return None

    def to_payload(self) -> SessionErrorPayload:
        return SessionErrorPayload(
            type=self.type,
            severity=self.severity,
            platform=self.platform,
            error_code=self.error_code,
            user_message=self.user_message,
            technical_message=self.technical_message,
            context=self.context,
            recovery_steps=list(self.recovery_steps),
        )
