"""Tests for cross-platform session validation."""

from datetime import datetime, timezone

import httpx
import pytest
from pydantic import ValidationError

from platform_sessions.core import SessionHealthMonitor, SessionStore, SessionValidator
from platform_sessions.core.validation import UNHEALTHY_HINT
from platform_sessions.errors import Platform, PlatformHTTPError, SessionError, SessionErrorType
from platform_sessions.models import (
    ExtensionSessionPayload,
    HealthState,
    PlatformSessionRecord,
)


def make_record(session_id="ASPSESSIONIDABC=xyz", **overrides) -> PlatformSessionRecord:
    data = {
        "session_id": session_id,
        "user_email": "trader@example.com",
        "extracted_at": datetime.now(timezone.utc),
    }
    data.update(overrides)
    return PlatformSessionRecord(**data)


@pytest.fixture
async def seeded(store):
    await store.save("abc", "marketinout", make_record())
    await store.save("abc", "tradingview", make_record("tv-token"))
    return store


@pytest.mark.asyncio
async def test_health_aware_data_without_bundle(validator):
    data = await validator.get_health_aware_session_data("missing")

    assert data.session_exists is False
    assert data.overall_status == HealthState.EXPIRED
    assert data.platforms == []
    assert data.recommendations[0] == "Please log in to the platform again"
    assert data.can_auto_recover is False


@pytest.mark.asyncio
async def test_health_aware_data_follows_health_transitions(store, validator, monitor, clients):
    """Unknown until checked, degraded on failures, expired at the threshold."""
    await store.save("abc", "marketinout", make_record())

    data = await validator.get_health_aware_session_data("abc")
    assert data.session_exists is True
    assert data.overall_status == HealthState.UNKNOWN
    assert data.recommendations == ["Start health monitoring for MarketInOut"]
    assert data.platforms[0].health is None

    clients["marketinout"].probe.side_effect = PlatformHTTPError(503)
    await monitor.check_session_health("abc", "marketinout")

    data = await validator.get_health_aware_session_data("abc")
    assert data.overall_status == HealthState.DEGRADED
    assert data.recommendations == [
        "Wait a few minutes and try again",
        "Contact support if the issue persists",
    ]
    assert data.can_auto_recover is True

    await monitor.check_session_health("abc", "marketinout")
    await monitor.check_session_health("abc", "marketinout")

    data = await validator.get_health_aware_session_data("abc")
    assert data.overall_status == HealthState.EXPIRED
    assert data.platforms[0].health.consecutive_failures == 3
    assert data.can_auto_recover is True


@pytest.mark.asyncio
async def test_health_aware_data_worst_state_wins(seeded, validator, monitor, clients):
    clients["tradingview"].probe.side_effect = PlatformHTTPError(401)
    await monitor.check_session_health("abc", "marketinout")
    await monitor.check_session_health("abc", "tradingview")

    data = await validator.get_health_aware_session_data("abc")

    assert [item.platform for item in data.platforms] == ["marketinout", "tradingview"]
    assert data.platforms[0].status == HealthState.HEALTHY
    assert data.overall_status == HealthState.EXPIRED
    assert data.recommendations[0] == "Please log in to TradingView again"
    assert data.can_auto_recover is False


@pytest.mark.asyncio
async def test_health_aware_data_without_last_error_uses_hint(seeded, validator, monitor):
    monitor.record_refresh("abc", "tradingview")
    monitor._statuses[("abc", "tradingview")].status = HealthState.DEGRADED

    data = await validator.get_health_aware_session_data("abc")

    assert UNHEALTHY_HINT in data.recommendations


@pytest.mark.asyncio
async def test_marketinout_validation_returns_watchlists(seeded, validator, monitor):
    watchlists = await validator.validate_and_cleanup_marketinout_session("abc")

    assert [watchlist.name for watchlist in watchlists] == ["Tech", "Energy"]
    assert monitor.is_monitoring("abc", "marketinout")


@pytest.mark.asyncio
async def test_marketinout_empty_watchlists_deletes_bundle(seeded, validator, clients, store):
    clients["marketinout"].list_watchlists.return_value = []

    with pytest.raises(SessionError) as exc_info:
        await validator.validate_and_cleanup_marketinout_session("abc")

    assert exc_info.value.type == SessionErrorType.SESSION_EXPIRED
    assert exc_info.value.context.operation == "validate_and_cleanup_marketinout_session"
    assert await store.get_bundle("abc") is None


@pytest.mark.asyncio
async def test_marketinout_network_failure_deletes_bundle(seeded, validator, clients, store, monitor):
    clients["marketinout"].list_watchlists.side_effect = httpx.ConnectError("refused")

    with pytest.raises(SessionError) as exc_info:
        await validator.validate_and_cleanup_marketinout_session("abc")

    assert exc_info.value.type == SessionErrorType.NETWORK_ERROR
    assert await store.get_bundle("abc") is None
    assert not monitor.is_monitoring("abc", "marketinout")
    assert monitor.error_logger.get_error_stats()["errors_by_type"] == {"NETWORK_ERROR": 1}


@pytest.mark.asyncio
async def test_marketinout_missing_record_is_expired(validator):
    with pytest.raises(SessionError) as exc_info:
        await validator.validate_and_cleanup_marketinout_session("missing")

    assert exc_info.value.type == SessionErrorType.SESSION_EXPIRED


@pytest.mark.asyncio
async def test_platform_failure_deletes_only_that_entry(seeded, validator, clients, store):
    clients["tradingview"].probe.side_effect = PlatformHTTPError(401)

    with pytest.raises(SessionError) as exc_info:
        await validator.validate_platform_session("abc", "tradingview")

    assert exc_info.value.type == SessionErrorType.SESSION_EXPIRED
    assert await store.get("abc", "tradingview") is None
    assert await store.get("abc", "marketinout") is not None


@pytest.mark.asyncio
async def test_platform_false_probe_is_expired(seeded, validator, clients):
    clients["tradingview"].probe.return_value = False

    with pytest.raises(SessionError) as exc_info:
        await validator.validate_platform_session("abc", "tradingview")

    assert exc_info.value.type == SessionErrorType.SESSION_EXPIRED


@pytest.mark.asyncio
async def test_unknown_platform_is_not_cleaned_up(store, validator):
    await store.save("abc", "telegram", make_record("tg"))

    with pytest.raises(SessionError) as exc_info:
        await validator.validate_platform_session("abc", "telegram")

    assert exc_info.value.type == SessionErrorType.OPERATION_FAILED
    assert "Unknown platform: telegram" in exc_info.value.technical_message
    assert await store.get("abc", "telegram") is not None


@pytest.mark.asyncio
async def test_platform_success_starts_monitoring(seeded, validator, monitor):
    assert await validator.validate_platform_session("abc", "tradingview") is True
    assert monitor.is_monitoring("abc", "tradingview")


@pytest.mark.asyncio
async def test_all_platforms_partial_failure(store, make_client, test_settings):
    """One platform failing never stops the others from being validated."""
    clients = {
        "marketinout": make_client(),
        "tradingview": make_client(probe=PlatformHTTPError(401)),
        "telegram": make_client(probe=httpx.ConnectError("refused")),
    }
    monitor = SessionHealthMonitor(store, clients, settings=test_settings)
    validator = SessionValidator(store, monitor, clients, settings=test_settings)
    await store.save("abc", "marketinout", make_record())
    await store.save("abc", "tradingview", make_record("tv-token"))
    await store.save("abc", "telegram", make_record("tg-token"))

    try:
        result = await validator.validate_and_monitor_all_platforms("abc")
        monitoring = {p: monitor.is_monitoring("abc", p) for p in clients}
    finally:
        await monitor.shutdown()

    assert result.summary.total == 3
    assert result.summary.valid == 1
    assert result.summary.invalid == 2
    assert result.summary.can_auto_recover is True
    assert len(result.summary.recovery_actions) == len(set(result.summary.recovery_actions))

    assert result.results["marketinout"].is_valid is True
    assert result.results["marketinout"].monitoring_started is True
    assert result.results["tradingview"].is_valid is False
    assert result.results["tradingview"].error_code == "TRADINGVIEW_SESSION_EXPIRED"
    assert result.errors["telegram"].type == SessionErrorType.NETWORK_ERROR

    error = result.errors["tradingview"]
    assert error.context.operation == "validate_and_monitor_all_platforms"
    assert error.context.additional_data["original_operation"] == "validate_platform_session"

    assert monitoring == {"marketinout": True, "tradingview": False, "telegram": False}
    assert await store.get("abc", "marketinout") is not None
    assert await store.get("abc", "tradingview") is None
    assert await store.get("abc", "telegram") is None


@pytest.mark.asyncio
async def test_all_platforms_marketinout_failure_invalidates_whole_bundle(
    seeded, validator, clients, monitor, store
):
    """Entries removed with the MarketInOut bundle are not reported as valid."""
    clients["marketinout"].list_watchlists.side_effect = PlatformHTTPError(401)

    result = await validator.validate_and_monitor_all_platforms("abc")

    clients["tradingview"].probe.assert_awaited()
    assert result.summary.valid == 0
    assert result.summary.invalid == 2
    assert result.results["tradingview"].is_valid is False
    assert result.results["tradingview"].monitoring_started is False
    assert result.results["tradingview"].error_code == "TRADINGVIEW_SESSION_EXPIRED"
    assert result.errors["tradingview"].type == SessionErrorType.SESSION_EXPIRED
    assert result.errors["marketinout"].context.additional_data["original_operation"] == (
        "validate_and_cleanup_marketinout_session"
    )

    assert not monitor.is_monitoring("abc", "tradingview")
    assert monitor.get_session_health("abc", "tradingview") is None
    assert await store.get_bundle("abc") is None


@pytest.mark.asyncio
async def test_all_platforms_deduplicates_recovery_actions(seeded, validator, clients):
    clients["marketinout"].list_watchlists.side_effect = PlatformHTTPError(401)
    clients["tradingview"].probe.side_effect = PlatformHTTPError(401)

    result = await validator.validate_and_monitor_all_platforms("abc")

    actions = result.summary.recovery_actions
    assert result.summary.invalid == 2
    assert result.summary.can_auto_recover is False
    assert actions.count("Clear your browser cache and cookies if the problem persists") == 1
    assert "Please log in to MarketInOut again" in actions
    assert "Please log in to TradingView again" in actions
    assert len(actions) == 3


@pytest.mark.asyncio
async def test_all_platforms_success(seeded, validator, monitor):
    result = await validator.validate_and_monitor_all_platforms("abc")

    assert result.summary.valid == 2
    assert result.errors == {}
    assert len(result.results["marketinout"].watchlists) == 2
    assert result.results["tradingview"].watchlists is None
    assert monitor.monitored_platforms("abc") == ["marketinout", "tradingview"]

    dumped = result.model_dump(mode="json")
    assert dumped["summary"]["recovery_actions"] == []


@pytest.mark.asyncio
async def test_all_platforms_missing_bundle_raises(validator):
    with pytest.raises(SessionError) as exc_info:
        await validator.validate_and_monitor_all_platforms("missing")

    assert exc_info.value.type == SessionErrorType.SESSION_EXPIRED
    assert exc_info.value.platform == Platform.UNKNOWN


@pytest.mark.asyncio
async def test_validate_and_start_monitoring_success(seeded, validator, monitor):
    result = await validator.validate_and_start_monitoring("abc", "marketinout")

    assert result.is_valid is True
    assert result.monitoring_started is True
    assert result.health_status == HealthState.HEALTHY
    assert [watchlist.id for watchlist in result.watchlists] == ["101", "102"]
    assert monitor.get_session_health("abc", "marketinout").total_checks == 1


@pytest.mark.asyncio
async def test_validate_and_start_monitoring_failure(seeded, validator, monitor, clients):
    clients["tradingview"].probe.return_value = False

    result = await validator.validate_and_start_monitoring("abc", "tradingview")

    assert result.is_valid is False
    assert result.error.type == SessionErrorType.SESSION_EXPIRED
    assert result.error.context.operation == "validate_and_start_monitoring"
    assert not monitor.is_monitoring("abc", "tradingview")
    assert result.model_dump(mode="json")["error"]["error_code"] == "TRADINGVIEW_SESSION_EXPIRED"


@pytest.mark.asyncio
async def test_validate_and_start_monitoring_clears_expired_health(
    seeded, validator, monitor, clients
):
    clients["tradingview"].probe.side_effect = PlatformHTTPError(401)
    assert await monitor.check_session_health("abc", "tradingview") == HealthState.EXPIRED

    clients["tradingview"].probe.side_effect = None
    clients["tradingview"].probe.return_value = True
    result = await validator.validate_and_start_monitoring("abc", "tradingview")

    assert result.is_valid is True
    assert result.health_status == HealthState.HEALTHY
    health = monitor.get_session_health("abc", "tradingview")
    assert health.status == HealthState.HEALTHY
    assert health.consecutive_failures == 0


@pytest.mark.asyncio
async def test_failed_validation_forgets_health(seeded, validator, monitor, clients):
    await monitor.check_session_health("abc", "tradingview")
    clients["tradingview"].probe.return_value = False

    with pytest.raises(SessionError):
        await validator.validate_platform_session("abc", "tradingview")

    assert monitor.get_session_health("abc", "tradingview") is None


@pytest.mark.asyncio
async def test_refresh_success(seeded, validator, monitor):
    result = await validator.refresh_session_with_health_check("abc", "tradingview")

    assert result.refresh_success is True
    assert result.health_status == HealthState.HEALTHY
    assert result.monitoring_active is True
    assert monitor.get_session_health("abc", "tradingview").last_successful_refresh is not None


@pytest.mark.asyncio
async def test_refresh_reports_failed_health_check_separately(seeded, validator, clients):
    clients["tradingview"].probe.side_effect = PlatformHTTPError(503)

    result = await validator.refresh_session_with_health_check("abc", "tradingview")

    assert result.refresh_success is True
    assert result.health_status == HealthState.DEGRADED
    assert result.error is None


@pytest.mark.asyncio
async def test_refresh_failure(seeded, validator, clients, monitor):
    clients["tradingview"].refresh.side_effect = PlatformHTTPError(500)
    monitor.start_monitoring("abc", "tradingview")

    result = await validator.refresh_session_with_health_check("abc", "tradingview")

    assert result.refresh_success is False
    assert result.error.type == SessionErrorType.PLATFORM_UNAVAILABLE
    assert not monitor.is_monitoring("abc", "tradingview")


@pytest.mark.asyncio
async def test_refresh_returning_false_is_operation_failure(seeded, validator, clients):
    clients["marketinout"].refresh.return_value = False

    result = await validator.refresh_session_with_health_check("abc", "marketinout")

    assert result.refresh_success is False
    assert result.error.type == SessionErrorType.OPERATION_FAILED


@pytest.mark.asyncio
async def test_stop_monitoring_on_invalid_session(seeded, validator, monitor):
    monitor.start_monitoring("abc", "marketinout")
    monitor.start_monitoring("abc", "tradingview")

    assert validator.stop_monitoring_on_invalid_session("abc", "tradingview") == ["tradingview"]
    assert validator.stop_monitoring_on_invalid_session("abc") == ["marketinout"]
    assert validator.stop_monitoring_on_invalid_session("abc") == []


@pytest.mark.asyncio
async def test_disconnect_removes_everything(seeded, validator, monitor, store):
    await monitor.check_session_health("abc", "marketinout")
    monitor.start_monitoring("abc", "marketinout")

    assert await validator.disconnect("abc") == 2

    assert await store.get_bundle("abc") is None
    assert monitor.get_session_health("abc", "marketinout") is None
    assert not monitor.is_monitoring("abc", "marketinout")


@pytest.mark.asyncio
async def test_ingest_marketinout_session(validator, store, monitor):
    payload = ExtensionSessionPayload(
        sessionKey="ASPSESSIONIDQACRSTAB",
        sessionValue="ABCDEF",
        url="https://www.marketinout.com/wl/watch_list.php",
        userEmail="trader@example.com",
        cookies={"tracker": "1"},
        setCookieHeader="ASPSESSIONIDQACRSTAB=ABCDEF; path=/, pref=dark, bad name=x",
    )

    response = await validator.ingest_extension_session(payload)

    assert response.platform == "marketinout"
    assert response.is_valid is True
    assert response.monitoring_started is True
    assert len(response.cookie_errors) == 1

    record = await store.get(response.internal_id, "marketinout")
    assert record.session_id == "ASPSESSIONIDQACRSTAB=ABCDEF"
    assert record.source == "browser-extension"
    assert record.extra == {"tracker": "1", "pref": "dark"}
    assert record.extracted_at is not None


@pytest.mark.asyncio
async def test_ingest_tradingview_with_credentials_uses_deterministic_id(validator, store):
    payload = ExtensionSessionPayload(
        session_key="sessionid=tv-token",
        url="https://www.tradingview.com/chart/",
        user_email="Trader@Example.com",
        user_password="secret",
    )

    first = await validator.ingest_extension_session(payload)
    second = await validator.ingest_extension_session(payload)

    expected = SessionStore.derive_deterministic_id("Trader@Example.com", "secret", "tradingview")
    assert first.internal_id == second.internal_id == expected
    record = await store.get(expected, "tradingview")
    assert record.session_id == "tv-token"
    assert (await store.get_stats())["total_sessions"] == 1


@pytest.mark.asyncio
async def test_ingest_reports_validation_failure(validator, clients, store):
    clients["tradingview"].probe.side_effect = PlatformHTTPError(401)
    payload = ExtensionSessionPayload(session_key="sessionid", session_value="stale")

    response = await validator.ingest_extension_session(payload)

    assert response.is_valid is False
    assert response.error.type == SessionErrorType.SESSION_EXPIRED
    assert await store.get(response.internal_id, "tradingview") is None


@pytest.mark.asyncio
async def test_ingest_unknown_platform_is_rejected(validator):
    payload = ExtensionSessionPayload(
        session_key="PHPSESSID", session_value="abc", url="https://example.com/"
    )

    with pytest.raises(SessionError) as exc_info:
        await validator.ingest_extension_session(payload)

    assert exc_info.value.type == SessionErrorType.COOKIE_INVALID


@pytest.mark.asyncio
async def test_ingest_malformed_cookie_is_rejected(validator):
    payload = ExtensionSessionPayload(
        session_key="ASPSESSIONIDAB", session_value="<script>", platform="marketinout"
    )

    with pytest.raises(SessionError) as exc_info:
        await validator.ingest_extension_session(payload)

    assert exc_info.value.type == SessionErrorType.COOKIE_INVALID
    assert exc_info.value.platform == Platform.MARKETINOUT


@pytest.mark.asyncio
async def test_ingest_after_expiry_restores_health(validator, clients, monitor):
    """A fresh capture for an expired session is checked again."""
    clients["marketinout"].probe.side_effect = PlatformHTTPError(401)
    payload = ExtensionSessionPayload(
        session_key="ASPSESSIONIDQACRSTAB",
        session_value="OLDVALUE",
        platform="marketinout",
        user_email="trader@example.com",
        user_password="secret",
    )

    first = await validator.ingest_extension_session(payload)
    assert monitor.get_session_health(first.internal_id, "marketinout").status == (
        HealthState.EXPIRED
    )

    clients["marketinout"].probe.side_effect = None
    clients["marketinout"].probe.return_value = True
    second = await validator.ingest_extension_session(
        payload.model_copy(update={"session_value": "NEWVALUE"})
    )

    assert second.internal_id == first.internal_id
    assert second.is_valid is True
    health = monitor.get_session_health(second.internal_id, "marketinout")
    assert health.status == HealthState.HEALTHY
    assert health.consecutive_failures == 0


@pytest.mark.asyncio
async def test_ingest_replaces_stale_asp_cookies_and_sanitizes_values(validator, store):
    payload = ExtensionSessionPayload(
        session_key="ASPSESSIONIDQACRSTAB",
        session_value="ABCDEF",
        platform="marketinout",
        cookies={"ASPSESSIONIDOLDOLDOL": "stale", "pref": ' "dark" '},
        set_cookie_header="ASPSESSIONIDNEWNEWNE=fresh; path=/",
    )

    response = await validator.ingest_extension_session(payload)

    record = await store.get(response.internal_id, "marketinout")
    assert record.extra == {"pref": "dark", "ASPSESSIONIDNEWNEWNE": "fresh"}


def test_payload_rejects_internal_id_with_separator():
    with pytest.raises(ValidationError):
        ExtensionSessionPayload(session_key="sessionid", session_value="x", internal_id="a:b")

    payload = ExtensionSessionPayload(session_key="sessionid", session_value="x", internal_id="ab")
    assert payload.internal_id == "ab"
