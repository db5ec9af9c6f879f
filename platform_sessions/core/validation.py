"""Session validation across platforms, cleanup and refresh."""

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Optional

from ..clients import PlatformClient, detect_platform
from ..config import Settings, settings as default_settings
from ..cookies import (
    extract_asp_session,
    merge_cookies,
    parse_set_cookie_header,
    sanitize_cookie_value,
    update_asp_session_cookies,
    validate_cookie_format,
)
from ..errors import ErrorHandler, ErrorLogger, Platform, SessionError
from ..models import (
    AllPlatformsValidation,
    ExtensionSessionPayload,
    ExtensionSessionResponse,
    HealthAwareSessionData,
    HealthState,
    MonitoringValidation,
    PlatformHealth,
    PlatformSessionRecord,
    PlatformValidationOutcome,
    RefreshResult,
    ValidationSummary,
    Watchlist,
    worst_state,
)
from .health_monitor import SessionHealthMonitor
from .session_store import SessionStore

logger = logging.getLogger(__name__)

MARKETINOUT = Platform.MARKETINOUT.value

UNHEALTHY_HINT = "Session appears unhealthy - consider refreshing or re-authenticating"


def _unique(items) -> list[str]:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


class SessionValidator:
    """
    Answers whether a session is usable and keeps monitoring in sync.

    Every failure leaves this class as a SessionError.
    """

    def __init__(
        self,
        store: SessionStore,
        monitor: SessionHealthMonitor,
        clients: Mapping[str, PlatformClient],
        error_logger: Optional[ErrorLogger] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.monitor = monitor
        self.clients = dict(clients)
        self.error_logger = error_logger or monitor.error_logger
        self.settings = settings or default_settings

    # Helpers

    async def _record(
        self, internal_id: str, platform: str, operation: str
    ) -> PlatformSessionRecord:
        record = await self.store.get(internal_id, platform)
        if record is None:
            raise ErrorHandler.create_session_expired_error(
                Platform.from_name(platform), operation, session_id=internal_id
            )
        return record

    def _client(self, platform: str, operation: str) -> PlatformClient:
        client = self.clients.get(platform)
        if client is None:
            raise ErrorHandler.create_generic_error(
                Platform.from_name(platform), operation, f"Unknown platform: {platform}"
            )
        return client

    async def _call(self, coro):
        return await asyncio.wait_for(coro, self.settings.platform_timeout)

    def _fail(self, raw: Exception, platform: str, operation: str, internal_id: str) -> SessionError:
        error = ErrorHandler.parse_error(raw, Platform.from_name(platform), operation)
        self.error_logger.log_error(error, {"internal_id": internal_id})
        return error

    async def _safe_cleanup(self, internal_id: str, platform: str, whole_bundle: bool) -> None:
        try:
            if whole_bundle:
                await self.store.delete_bundle(internal_id)
            else:
                await self.store.delete(internal_id, platform)
        except SessionError as e:
            logger.error(f"Cleanup of {internal_id} ({platform}) failed: {e.technical_message}")
        if whole_bundle:
            self.stop_monitoring_on_invalid_session(internal_id)
            self.monitor.forget(internal_id)
        else:
            self.monitor.stop_monitoring(internal_id, platform)
            self.monitor.forget(internal_id, platform)

    # Read side

    async def get_health_aware_session_data(self, internal_id: str) -> HealthAwareSessionData:
        """
        Bundle contents combined with cached health.

        Platforms never checked count as unknown; the worst state wins.
        """
        bundle = await self.store.get_bundle(internal_id)

        if not bundle:
            error = ErrorHandler.create_session_expired_error(
                Platform.UNKNOWN, "get_health_aware_session_data", session_id=internal_id
            )
            return HealthAwareSessionData(
                session_exists=False,
                overall_status=HealthState.EXPIRED,
                recommendations=error.get_recovery_instructions(),
                can_auto_recover=False,
            )

        platforms = []
        recommendations = []
        can_auto_recover = False

        for platform in sorted(bundle):
            health = self.monitor.get_session_health(internal_id, platform)
            state = health.status if health else HealthState.UNKNOWN
            platforms.append(
                PlatformHealth(
                    platform=platform,
                    status=state,
                    is_monitoring=self.monitor.is_monitoring(internal_id, platform),
                    health=health,
                )
            )

            if health is None:
                recommendations.append(
                    f"Start health monitoring for {Platform.from_name(platform).display_name}"
                )
            elif state in (HealthState.DEGRADED, HealthState.EXPIRED):
                if health.last_error is not None:
                    recommendations.extend(health.last_error.get_recovery_instructions())
                    can_auto_recover = can_auto_recover or health.last_error.can_auto_recover()
                else:
                    recommendations.append(UNHEALTHY_HINT)

        return HealthAwareSessionData(
            session_exists=True,
            platforms=platforms,
            overall_status=worst_state(item.status for item in platforms),
            recommendations=_unique(recommendations),
            can_auto_recover=can_auto_recover,
        )

    # Validation

    async def validate_and_cleanup_marketinout_session(
        self, internal_id: str, record: Optional[PlatformSessionRecord] = None
    ) -> list[Watchlist]:
        """
        Fetch MarketInOut watchlists, deleting the bundle if that fails.

        Args:
            internal_id: Internal session ID
            record: Already loaded record, looked up when omitted

        Returns:
            The watchlists

        Raises:
            SessionError: The session is unusable (the bundle is gone)
        """
        operation = "validate_and_cleanup_marketinout_session"
        try:
            if record is None:
                record = await self._record(internal_id, MARKETINOUT, operation)
            client = self._client(MARKETINOUT, operation)
            watchlists = await self._call(client.list_watchlists(record))
            if not watchlists:
                raise ErrorHandler.create_session_expired_error(
                    Platform.MARKETINOUT, operation, session_id=internal_id
                )
        except Exception as e:
            await self._safe_cleanup(internal_id, MARKETINOUT, whole_bundle=True)
            raise self._fail(e, MARKETINOUT, operation, internal_id) from e

        self.monitor.clear_expired(internal_id, MARKETINOUT)
        self.monitor.start_monitoring(internal_id, MARKETINOUT)
        logger.info(f"MarketInOut session {internal_id} valid ({len(watchlists)} watchlists)")
        return watchlists

    async def validate_platform_session(
        self,
        internal_id: str,
        platform: str,
        record: Optional[PlatformSessionRecord] = None,
    ) -> bool:
        """
        Probe one platform's session, deleting that entry if it fails.

        MarketInOut goes through the watchlist validation instead.

        Raises:
            SessionError: The session is unusable
        """
        if platform == MARKETINOUT:
            await self.validate_and_cleanup_marketinout_session(internal_id, record)
            return True

        operation = "validate_platform_session"
        platform_enum = Platform.from_name(platform)
        if platform not in self.clients:
            error = ErrorHandler.create_generic_error(
                platform_enum, operation, f"Unknown platform: {platform}"
            )
            self.error_logger.log_error(error, {"internal_id": internal_id})
            raise error

        try:
            if record is None:
                record = await self._record(internal_id, platform, operation)
            ok = await self._call(self.clients[platform].probe(record))
            if not ok:
                raise ErrorHandler.create_session_expired_error(
                    platform_enum, operation, session_id=internal_id
                )
        except Exception as e:
            await self._safe_cleanup(internal_id, platform, whole_bundle=False)
            raise self._fail(e, platform, operation, internal_id) from e

        self.monitor.clear_expired(internal_id, platform)
        self.monitor.start_monitoring(internal_id, platform)
        return True

    async def _validate_one(
        self, internal_id: str, platform: str, record: PlatformSessionRecord
    ) -> Optional[list[Watchlist]]:
        if platform == MARKETINOUT:
            return await self.validate_and_cleanup_marketinout_session(internal_id, record)
        await self.validate_platform_session(internal_id, platform, record)
        return None

    async def validate_and_monitor_all_platforms(self, internal_id: str) -> AllPlatformsValidation:
        """
        Validate every platform in the bundle concurrently.

        One platform failing never stops the others; all outcomes are
        collected before the summary is built.

        Raises:
            SessionError: SESSION_EXPIRED when there is no bundle
        """
        operation = "validate_and_monitor_all_platforms"
        bundle = await self.store.get_bundle(internal_id)
        if not bundle:
            error = ErrorHandler.create_session_expired_error(
                Platform.UNKNOWN, operation, session_id=internal_id
            )
            self.error_logger.log_error(error, {"internal_id": internal_id})
            raise error

        platforms = list(bundle)
        outcomes = await asyncio.gather(
            *(self._validate_one(internal_id, platform, bundle[platform]) for platform in platforms),
            return_exceptions=True,
        )

        # A MarketInOut failure removes the whole bundle, including entries
        # whose own check passed.
        remaining = await self.store.get_bundle(internal_id) or {}

        results: dict[str, PlatformValidationOutcome] = {}
        errors: dict[str, SessionError] = {}
        recovery_actions: list[str] = []
        can_auto_recover = False

        for platform, outcome in zip(platforms, outcomes):
            if not isinstance(outcome, BaseException) and platform not in remaining:
                outcome = ErrorHandler.create_session_expired_error(
                    Platform.from_name(platform), operation, session_id=internal_id
                )
                self.error_logger.log_error(outcome, {"internal_id": internal_id})
                self.monitor.forget(internal_id, platform)

            if isinstance(outcome, BaseException):
                if isinstance(outcome, SessionError):
                    error = ErrorHandler.parse_error(
                        outcome, Platform.from_name(platform), operation
                    )
                else:
                    error = self._fail(outcome, platform, operation, internal_id)
                self.monitor.stop_monitoring(internal_id, platform)
                errors[platform] = error
                results[platform] = PlatformValidationOutcome(
                    is_valid=False, error_code=error.error_code
                )
                can_auto_recover = can_auto_recover or error.can_auto_recover()
                recovery_actions.extend(error.get_recovery_instructions())
            else:
                results[platform] = PlatformValidationOutcome(
                    is_valid=True,
                    monitoring_started=self.monitor.is_monitoring(internal_id, platform),
                    watchlists=outcome,
                )

        valid = sum(1 for outcome in results.values() if outcome.is_valid)
        summary = ValidationSummary(
            total=len(platforms),
            valid=valid,
            invalid=len(platforms) - valid,
            can_auto_recover=can_auto_recover,
            recovery_actions=_unique(recovery_actions),
        )
        logger.info(
            f"Validated {summary.total} platform(s) for {internal_id}: "
            f"{summary.valid} valid, {summary.invalid} invalid"
        )
        return AllPlatformsValidation(results=results, errors=errors, summary=summary)

    async def validate_and_start_monitoring(
        self, internal_id: str, platform: str
    ) -> MonitoringValidation:
        """Validate one pair; start monitoring on success, stop it on failure."""
        operation = "validate_and_start_monitoring"
        watchlists = None
        try:
            if platform == MARKETINOUT:
                watchlists = await self.validate_and_cleanup_marketinout_session(internal_id)
            else:
                await self.validate_platform_session(internal_id, platform)
        except Exception as e:
            error = ErrorHandler.parse_error(e, Platform.from_name(platform), operation)
            self.monitor.stop_monitoring(internal_id, platform)
            return MonitoringValidation(is_valid=False, error=error)

        self.monitor.start_monitoring(internal_id, platform)
        health_status = await self.monitor.check_session_health(internal_id, platform)
        return MonitoringValidation(
            is_valid=True,
            monitoring_started=self.monitor.is_monitoring(internal_id, platform),
            health_status=health_status,
            watchlists=watchlists,
        )

    # Recovery

    async def refresh_session_with_health_check(
        self, internal_id: str, platform: str
    ) -> RefreshResult:
        """
        Refresh a session, then re-check its health.

        A failed post-refresh health check is only logged; the refresh
        result and the health result are reported separately.
        """
        operation = "refresh_session"
        try:
            record = await self._record(internal_id, platform, operation)
            client = self._client(platform, operation)
            refreshed = await self._call(client.refresh(record))
            if not refreshed:
                raise ErrorHandler.create_generic_error(
                    Platform.from_name(platform), operation, "Session refresh failed"
                )
        except Exception as e:
            error = self._fail(e, platform, operation, internal_id)
            self.monitor.stop_monitoring(internal_id, platform)
            return RefreshResult(refresh_success=False, error=error)

        self.monitor.record_refresh(internal_id, platform)
        health_status = await self.monitor.check_session_health(internal_id, platform)
        if health_status != HealthState.HEALTHY:
            logger.warning(
                f"Session {internal_id} on {platform} refreshed but health check "
                f"reports {health_status.value}"
            )

        self.monitor.start_monitoring(internal_id, platform)
        return RefreshResult(
            refresh_success=True,
            health_status=health_status,
            monitoring_active=self.monitor.is_monitoring(internal_id, platform),
        )

    def stop_monitoring_on_invalid_session(
        self, internal_id: str, platform: Optional[str] = None
    ) -> list[str]:
        """
        Stop monitoring one platform, or every monitored platform of the session.

        Returns:
            Platforms whose monitoring was stopped
        """
        platforms = [platform] if platform else self.monitor.monitored_platforms(internal_id)
        return [p for p in platforms if self.monitor.stop_monitoring(internal_id, p)]

    async def disconnect(self, internal_id: str) -> int:
        """Delete the bundle and forget its health."""
        self.stop_monitoring_on_invalid_session(internal_id)
        removed = await self.store.delete_bundle(internal_id)
        self.monitor.forget(internal_id)
        return removed

    # Ingestion

    async def ingest_extension_session(
        self, payload: ExtensionSessionPayload
    ) -> ExtensionSessionResponse:
        """
        Store a session captured by the browser extension and validate it.

        Raises:
            SessionError: The platform cannot be detected or the cookie is malformed
        """
        operation = "ingest_extension_session"

        session_key, session_value = payload.session_key.strip(), payload.session_value
        if session_value is None:
            session_key, _, session_value = session_key.partition("=")
        session_key, session_value = session_key.strip(), (session_value or "").strip()

        platform = (
            Platform.from_name(payload.platform)
            if payload.platform
            else detect_platform(payload.url, session_key)
        )
        if platform == Platform.UNKNOWN or platform.value not in self.clients:
            raise ErrorHandler.create_cookie_error(
                platform, operation, f"Unsupported platform for session key {session_key!r}"
            )
        if not session_value or not validate_cookie_format(session_key, session_value):
            raise ErrorHandler.create_cookie_error(
                platform, operation, f"Invalid session cookie {session_key!r}"
            )

        parsed = parse_set_cookie_header(payload.set_cookie_header)
        fresh = {cookie.name: cookie.value for cookie in parsed.cookies}
        captured = {
            name: sanitize_cookie_value(value) for name, value in payload.cookies.items()
        }
        extra = merge_cookies({k: v for k, v in captured.items() if v}, fresh)
        if platform == Platform.MARKETINOUT:
            rotated = extract_asp_session(fresh)
            if rotated:
                extra = update_asp_session_cookies(extra, rotated)
        extra.pop(session_key, None)

        if platform == Platform.TRADINGVIEW and session_key == "sessionid":
            session_id = session_value
        else:
            session_id = f"{session_key}={session_value}"

        record = PlatformSessionRecord(
            session_id=session_id,
            user_email=payload.user_email,
            user_password=payload.user_password,
            extracted_at=payload.extracted_at or datetime.now(timezone.utc),
            extracted_from=payload.url,
            source="browser-extension",
            extra=extra,
        )

        candidate_id = payload.internal_id or self.store.generate_session_id()
        internal_id = await self.store.save_with_deduplication(
            candidate_id, platform.value, record
        )
        logger.info(f"Stored {platform.value} session from extension under {internal_id}")
        self.monitor.forget(internal_id, platform.value)

        validation = await self.validate_and_start_monitoring(internal_id, platform.value)
        return ExtensionSessionResponse(
            internal_id=internal_id,
            platform=platform.value,
            is_valid=validation.is_valid,
            monitoring_started=validation.monitoring_started,
            cookie_errors=parsed.errors,
            error=validation.error,
        )
