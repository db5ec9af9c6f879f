"""API and orchestration result models."""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from ..errors.types import SessionError
from .session import HealthState, HealthStatus, Watchlist


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_json(error: Optional[SessionError]) -> Optional[dict[str, Any]]:
    if error is None:
        return None
    return error.to_payload().model_dump(mode="json")


class ExtensionSessionPayload(BaseModel):
    """Session captured and posted by the browser extension."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_key: str = Field(..., description="Session cookie name (or full name=value)")
    session_value: Optional[str] = Field(None, description="Session cookie value")
    url: Optional[str] = Field(None, description="Page the session was captured on")
    platform: Optional[str] = Field(None, description="Platform, detected when omitted")
    user_email: Optional[str] = Field(None, description="User email")
    user_password: Optional[str] = Field(None, description="Used for deterministic IDs")
    cookies: dict[str, str] = Field(default_factory=dict, description="Other captured cookies")
    set_cookie_header: Optional[str] = Field(None, description="Raw Set-Cookie header")
    extracted_at: Optional[datetime] = Field(None, description="Capture time")
    internal_id: Optional[str] = Field(None, description="Existing internal ID, if known")

    @field_validator("internal_id")
    @classmethod
    def _check_internal_id(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and ":" in value:
            raise ValueError("internal_id must not contain ':'")
        return value


class ExtensionSessionResponse(BaseModel):
    """Result of ingesting an extension session."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    internal_id: str = Field(..., description="Internal session ID the record is stored under")
    platform: str = Field(..., description="Detected platform")
    is_valid: bool = Field(..., description="Whether validation succeeded")
    monitoring_started: bool = Field(default=False, description="Whether monitoring is active")
    cookie_errors: list[str] = Field(default_factory=list, description="Cookie parse errors")
    error: Optional[SessionError] = Field(None, description="Validation error")

    @field_serializer("error")
    def _serialize_error(self, error: Optional[SessionError]):
        return _error_json(error)


class PlatformHealth(BaseModel):
    """Health view of one platform inside a bundle."""

    platform: str = Field(..., description="Platform name")
    status: HealthState = Field(..., description="Cached health state")
    is_monitoring: bool = Field(default=False, description="Background monitoring active")
    health: Optional[HealthStatus] = Field(None, description="Cached status, if checked")


class HealthAwareSessionData(BaseModel):
    """Bundle contents cross-referenced with cached health."""

    session_exists: bool = Field(..., description="Whether a bundle exists")
    platforms: list[PlatformHealth] = Field(default_factory=list, description="Per platform")
    overall_status: HealthState = Field(..., description="Worst state across platforms")
    recommendations: list[str] = Field(default_factory=list, description="What to do next")
    can_auto_recover: bool = Field(default=False, description="Automated recovery available")
    timestamp: datetime = Field(default_factory=_utcnow, description="When computed")


class PlatformValidationOutcome(BaseModel):
    """Outcome of validating one platform."""

    is_valid: bool = Field(..., description="Whether the session works")
    monitoring_started: bool = Field(default=False, description="Monitoring active after")
    watchlists: Optional[list[Watchlist]] = Field(None, description="Fetched watchlists")
    error_code: Optional[str] = Field(None, description="Error code on failure")


class ValidationSummary(BaseModel):
    """Aggregate of an all-platform validation."""

    total: int = Field(..., description="Platforms validated")
    valid: int = Field(..., description="Platforms that passed")
    invalid: int = Field(..., description="Platforms that failed")
    can_auto_recover: bool = Field(..., description="Some failure can auto-recover")
    recovery_actions: list[str] = Field(default_factory=list, description="Deduplicated steps")


class AllPlatformsValidation(BaseModel):
    """Per-platform results, errors and summary."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    results: dict[str, PlatformValidationOutcome] = Field(default_factory=dict)
    errors: dict[str, SessionError] = Field(default_factory=dict)
    summary: ValidationSummary

    @field_serializer("errors")
    def _serialize_errors(self, errors: dict[str, SessionError]):
        return {platform: _error_json(error) for platform, error in errors.items()}


class MonitoringValidation(BaseModel):
    """Result of validating a pair and starting its monitoring."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    is_valid: bool
    monitoring_started: bool = False
    health_status: Optional[HealthState] = None
    watchlists: Optional[list[Watchlist]] = None
    error: Optional[SessionError] = None

    @field_serializer("error")
    def _serialize_error(self, error: Optional[SessionError]):
        return _error_json(error)


class RefreshResult(BaseModel):
    """Refresh outcome and post-refresh health, reported separately."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    refresh_success: bool
    health_status: Optional[HealthState] = None
    monitoring_active: bool = False
    error: Optional[SessionError] = None

    @field_serializer("error")
    def _serialize_error(self, error: Optional[SessionError]):
        return _error_json(error)


class ErrorResponse(BaseModel):
    """Error response."""

    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[dict[str, Any]] = Field(None, description="Full error payload")
