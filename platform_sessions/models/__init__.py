"""Data models for the platform session service."""

from .api import (
    AllPlatformsValidation,
    ErrorResponse,
    ExtensionSessionPayload,
    ExtensionSessionResponse,
    HealthAwareSessionData,
    MonitoringValidation,
    PlatformHealth,
    PlatformValidationOutcome,
    RefreshResult,
    ValidationSummary,
)
from .session import (
    HealthState,
    HealthStatus,
    PlatformSessionRecord,
    SessionBundle,
    Watchlist,
    worst_state,
)

__all__ = [
    "AllPlatformsValidation",
    "ErrorResponse",
    "ExtensionSessionPayload",
    "ExtensionSessionResponse",
    "HealthAwareSessionData",
    "HealthState",
    "HealthStatus",
    "MonitoringValidation",
    "PlatformHealth",
    "PlatformSessionRecord",
    "PlatformValidationOutcome",
    "RefreshResult",
    "SessionBundle",
    "ValidationSummary",
    "Watchlist",
    "worst_state",
]
