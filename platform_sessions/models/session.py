"""Session records and health status models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..errors.types import Platform, SessionError


class PlatformSessionRecord(BaseModel):
    """One platform's captured session state."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str = Field(..., description="Platform session token or cookie pair")
    user_email: Optional[str] = Field(None, description="User email, used for dedup")
    user_password: Optional[str] = Field(
        None, description="Only used to derive deterministic internal IDs"
    )
    extracted_at: Optional[datetime] = Field(None, description="When the session was captured")
    extracted_from: Optional[str] = Field(None, description="Source URL")
    source: Optional[str] = Field(None, description="Provenance tag")
    extra: dict[str, str] = Field(
        default_factory=dict, description="Platform-specific string fields"
    )

    def to_json(self) -> str:
        """Serialize with camelCase keys, omitting unset optionals."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


SessionBundle = dict[str, PlatformSessionRecord]


class HealthState(str, Enum):
    """Health of one (internal ID, platform) pair."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


# Worst state wins when several platforms are combined
HEALTH_SEVERITY = {
    HealthState.HEALTHY: 0,
    HealthState.UNKNOWN: 1,
    HealthState.DEGRADED: 2,
    HealthState.EXPIRED: 3,
}


def worst_state(states) -> HealthState:
    """Combine states, worst wins; an empty input is unknown."""
    states = list(states)
    if not states:
        return HealthState.UNKNOWN
    return max(states, key=lambda state: HEALTH_SEVERITY[state])


class HealthStatus(BaseModel):
    """Cached health of one (internal ID, platform) pair."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    internal_id: str = Field(..., description="Internal session ID")
    platform: Platform = Field(..., description="Platform")
    status: HealthState = Field(default=HealthState.UNKNOWN, description="Current state")
    last_successful_check: Optional[datetime] = Field(None, description="Last passing check")
    last_failed_check: Optional[datetime] = Field(None, description="Last failing check")
    last_successful_refresh: Optional[datetime] = Field(None, description="Last refresh")
    last_error: Optional[SessionError] = Field(None, exclude=True)
    consecutive_failures: int = Field(default=0, description="Failures since last success")
    total_checks: int = Field(default=0, description="Checks performed")
    total_failures: int = Field(default=0, description="Failed checks")


class Watchlist(BaseModel):
    """A platform watchlist."""

    id: str = Field(..., description="Platform watchlist ID")
    name: str = Field(..., description="Watchlist name")
