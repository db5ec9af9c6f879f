"""Per-(internal ID, platform) session health checks and background monitoring."""

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Optional

from ..clients import PlatformClient
from ..config import Settings, settings as default_settings
from ..errors import AUTH_ERROR_TYPES, ErrorHandler, ErrorLogger, Platform, SessionError
from ..models import HealthState, HealthStatus, worst_state
from .session_store import SessionStore

logger = logging.getLogger(__name__)

HealthKey = tuple[str, str]


class SessionHealthMonitor:
    """
    Owns the in-memory health cache and the monitoring tasks.

    Health changes only through this class. Callers get copies of the
    cached statuses.
    """

    def __init__(
        self,
        store: SessionStore,
        clients: Mapping[str, PlatformClient],
        error_logger: Optional[ErrorLogger] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the monitor.

        Args:
            store: Session store used to look up records
            clients: Platform clients keyed by platform name
            error_logger: Receives every check failure
            settings: Intervals, thresholds and timeouts
        """
        self.store = store
        self.clients = dict(clients)
        self.error_logger = error_logger or ErrorLogger()
        self.settings = settings or default_settings
        self._statuses: dict[HealthKey, HealthStatus] = {}
        self._tasks: dict[HealthKey, asyncio.Task] = {}

    def _status_for(self, internal_id: str, platform: str) -> HealthStatus:
        key = (internal_id, platform)
        status = self._statuses.get(key)
        if status is None:
            status = HealthStatus(internal_id=internal_id, platform=Platform.from_name(platform))
            self._statuses[key] = status
        return status

    async def _probe(self, internal_id: str, platform: str) -> None:
        platform_enum = Platform.from_name(platform)

        record = await self.store.get(internal_id, platform)
        if record is None:
            raise ErrorHandler.create_session_expired_error(
                platform_enum, "health_check", session_id=internal_id
            )

        client = self.clients.get(platform)
        if client is None:
            raise ErrorHandler.create_generic_error(
                platform_enum, "health_check", f"No client configured for {platform}"
            )

        ok = await asyncio.wait_for(client.probe(record), self.settings.platform_timeout)
        if not ok:
            raise ErrorHandler.create_generic_error(
                platform_enum, "health_check", "Session health probe failed"
            )

    async def check_session_health(self, internal_id: str, platform: str) -> HealthState:
        """
        Probe a session and update its cached health.

        Expired pairs are not probed again until ``record_refresh``.

        Args:
            internal_id: Internal session ID
            platform: Platform name

        Returns:
            The new health state
        """
        status = self._status_for(internal_id, platform)
        if status.status == HealthState.EXPIRED:
            return status.status

        status.total_checks += 1
        try:
            await self._probe(internal_id, platform)
        except Exception as e:
            error = ErrorHandler.parse_error(e, Platform.from_name(platform), "health_check")
            self._record_failure(status, error)
            return status.status

        previous = status.status
        status.status = HealthState.HEALTHY
        status.consecutive_failures = 0
        status.last_successful_check = datetime.now(timezone.utc)
        if previous != HealthState.HEALTHY:
            logger.info(f"Session {internal_id} on {platform} is healthy ({previous.value} before)")
        return status.status

    def _record_failure(self, status: HealthStatus, error: SessionError) -> None:
        status.consecutive_failures += 1
        status.total_failures += 1
        status.last_failed_check = datetime.now(timezone.utc)
        status.last_error = error

        if (
            error.type in AUTH_ERROR_TYPES
            or status.consecutive_failures >= self.settings.max_consecutive_failures
        ):
            status.status = HealthState.EXPIRED
        else:
            status.status = HealthState.DEGRADED

        self.error_logger.log_error(
            error,
            {
                "internal_id": status.internal_id,
                "consecutive_failures": status.consecutive_failures,
                "health_status": status.status.value,
            },
        )
        logger.warning(
            f"Health check failed for {status.internal_id} on {status.platform.value}: "
            f"{status.status.value} after {status.consecutive_failures} failure(s)"
        )

    def record_refresh(self, internal_id: str, platform: str) -> None:
        """Mark a successful session refresh; the pair becomes healthy again."""
        status = self._status_for(internal_id, platform)
        now = datetime.now(timezone.utc)
        status.status = HealthState.HEALTHY
        status.consecutive_failures = 0
        status.last_error = None
        status.last_successful_refresh = now
        logger.info(f"Session {internal_id} on {platform} refreshed")

    def get_session_health(self, internal_id: str, platform: str) -> Optional[HealthStatus]:
        """Cached status copy, None if the pair was never checked."""
        status = self._statuses.get((internal_id, platform))
        return status.model_copy() if status is not None else None

    def forget(self, internal_id: str, platform: Optional[str] = None) -> None:
        """Drop cached health for a deleted session."""
        for key in list(self._statuses):
            if key[0] == internal_id and (platform is None or key[1] == platform):
                del self._statuses[key]

    def clear_expired(self, internal_id: str, platform: str) -> bool:
        """Drop an expired status once the session has been validated again."""
        status = self._statuses.get((internal_id, platform))
        if status is None or status.status != HealthState.EXPIRED:
            return False
        del self._statuses[(internal_id, platform)]
        logger.info(f"Cleared expired health for {internal_id} on {platform}")
        return True

    # Background monitoring

    def _next_interval(self, status: Optional[HealthStatus]) -> float:
        if status is None or status.status in (HealthState.HEALTHY, HealthState.UNKNOWN):
            return self.settings.health_check_interval
        backoff = self.settings.backoff_base ** max(status.consecutive_failures - 1, 0)
        return min(
            self.settings.degraded_check_interval * backoff,
            self.settings.max_check_interval,
        )

    async def _monitor_loop(self, internal_id: str, platform: str) -> None:
        logger.info(f"Started monitoring {internal_id} on {platform}")

        while True:
            try:
                status = self._statuses.get((internal_id, platform))
                await asyncio.sleep(self._next_interval(status))

                state = await self.check_session_health(internal_id, platform)
                if state == HealthState.EXPIRED:
                    logger.warning(
                        f"Session {internal_id} on {platform} expired, monitoring stopped"
                    )
                    break

            except asyncio.CancelledError:
                logger.info(f"Monitoring cancelled for {internal_id} on {platform}")
                break
            except Exception as e:
                logger.error(f"Error in monitoring loop for {internal_id} on {platform}: {e}")

    def start_monitoring(self, internal_id: str, platform: str) -> bool:
        """
        Start periodic checks for a pair.

        Returns:
            True if a task was created, False if one was already running
        """
        key = (internal_id, platform)
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            return False

        task = asyncio.get_running_loop().create_task(self._monitor_loop(internal_id, platform))
        self._tasks[key] = task

        def _cleanup(finished: asyncio.Task) -> None:
            if self._tasks.get(key) is finished:
                del self._tasks[key]

        task.add_done_callback(_cleanup)
        return True

    def stop_monitoring(self, internal_id: str, platform: str) -> bool:
        """
        Stop periodic checks for a pair.

        Returns:
            True if a running task was cancelled
        """
        task = self._tasks.pop((internal_id, platform), None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info(f"Stopped monitoring {internal_id} on {platform}")
        return True

    def is_monitoring(self, internal_id: str, platform: str) -> bool:
        task = self._tasks.get((internal_id, platform))
        return task is not None and not task.done()

    def monitored_platforms(self, internal_id: str) -> list[str]:
        return sorted(
            key[1] for key, task in self._tasks.items() if key[0] == internal_id and not task.done()
        )

    async def shutdown(self) -> None:
        """Cancel and await every monitoring task."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Health monitor stopped ({len(tasks)} task(s) cancelled)")

    # Reporting

    def get_monitoring_stats(self) -> dict[str, Any]:
        active = sum(1 for task in self._tasks.values() if not task.done())
        state_counts = {state.value: 0 for state in HealthState}
        for status in self._statuses.values():
            state_counts[status.status.value] += 1

        return {
            "is_global_monitoring_active": active > 0,
            "active_count": active,
            "tracked_count": len(self._statuses),
            "state_counts": state_counts,
            "total_checks": sum(status.total_checks for status in self._statuses.values()),
            "total_failures": sum(status.total_failures for status in self._statuses.values()),
        }

    def get_session_report(self, internal_id: str) -> dict[str, Any]:
        """Per-platform statuses for one internal ID and the worst state."""
        statuses = {
            key[1]: status
            for key, status in self._statuses.items()
            if key[0] == internal_id
        }
        return {
            "internal_id": internal_id,
            "overall_status": worst_state(status.status for status in statuses.values()).value,
            "platforms": {
                platform: {
                    **status.model_dump(mode="json"),
                    "is_monitoring": self.is_monitoring(internal_id, platform),
                }
                for platform, status in statuses.items()
            },
        }

    def get_all_reports(self) -> list[dict[str, Any]]:
        internal_ids = sorted({key[0] for key in self._statuses})
        return [self.get_session_report(internal_id) for internal_id in internal_ids]
