"""In-memory error log with optional forwarding to an external sink."""

import asyncio
import logging
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx
from pydantic import BaseModel, Field

from .types import ErrorSeverity, SessionError

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


class ErrorLogEntry(BaseModel):
    """One logged SessionError."""

    error_code: str = Field(..., description="PLATFORM_TYPE error code")
    type: str = Field(..., description="Session error type")
    severity: str = Field(..., description="Severity")
    platform: str = Field(..., description="Platform")
    operation: str = Field(..., description="Operation that failed")
    user_message: str = Field(..., description="User-facing message")
    technical_message: str = Field(..., description="Technical message")
    timestamp: datetime = Field(..., description="When the error was logged")
    context: Optional[dict[str, Any]] = Field(None, description="Caller-supplied context")


class ErrorLogger:
    """Bounded ring of recent errors plus stdlib logging."""

    def __init__(
        self,
        capacity: int = 1000,
        sink: Optional[Callable[[ErrorLogEntry], Any]] = None,
    ):
        """
        Initialize the error logger.

        Args:
            capacity: Number of entries kept; older ones are dropped
            sink: Optional callable receiving every entry (sync or async)
        """
        self.capacity = capacity
        self.sink = sink
        self._logs: deque[ErrorLogEntry] = deque(maxlen=capacity)
        self._tasks: set[asyncio.Task] = set()

    def log_error(
        self, error: SessionError, context: Optional[dict[str, Any]] = None
    ) -> ErrorLogEntry:
        """
        Record an error and emit it through logging.

        Args:
            error: The error to record
            context: Extra caller context stored alongside the entry

        Returns:
            The stored log entry
        """
        entry = ErrorLogEntry(
            error_code=error.error_code,
            type=error.type.value,
            severity=error.severity.value,
            platform=error.platform.value,
            operation=error.context.operation,
            user_message=error.user_message,
            technical_message=error.technical_message,
            timestamp=datetime.now(timezone.utc),
            context=context,
        )
        self._logs.append(entry)

        logger.log(
            _LOG_LEVELS.get(error.severity, logging.ERROR),
            f"[{error.error_code}] {error.technical_message}",
        )

        if self.sink is not None:
            self._forward(entry)

        return entry

    def _forward(self, entry: ErrorLogEntry) -> None:
        try:
            result = self.sink(entry)
        except Exception as e:
            logger.warning(f"Error sink failed: {e}")
            return

        if not asyncio.iscoroutine(result):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            result.close()
            logger.warning(f"Error sink dropped {entry.error_code}: no running event loop")
            return

        task = loop.create_task(result)
        self._tasks.add(task)
        task.add_done_callback(self._sink_done)

    def _sink_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Error sink failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for entries still being forwarded to an async sink."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def get_error_stats(self) -> dict[str, Any]:
        """Aggregate counts over the retained entries."""
        one_hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        return {
            "total_errors": len(self._logs),
            "errors_by_type": dict(Counter(entry.type for entry in self._logs)),
            "errors_by_platform": dict(Counter(entry.platform for entry in self._logs)),
            "errors_by_severity": dict(Counter(entry.severity for entry in self._logs)),
            "recent_error_rate": sum(
                1 for entry in self._logs if entry.timestamp > one_hour_ago
            ),
        }

    def get_recent_logs(self, limit: int = 50) -> list[ErrorLogEntry]:
        """Newest entries first."""
        return list(reversed(self._logs))[:limit]

    def clear_old_logs(self, max_age: float = 86400) -> int:
        """
        Drop entries older than max_age seconds.

        Returns:
            Number of entries removed
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age)
        kept = [entry for entry in self._logs if entry.timestamp >= cutoff]
        removed = len(self._logs) - len(kept)
        self._logs = deque(kept, maxlen=self.capacity)
        return removed


class HttpErrorSink:
    """Posts error log entries as JSON to a collector URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._tasks: set[asyncio.Task] = set()

    def __call__(self, entry: ErrorLogEntry) -> None:
        task = asyncio.get_running_loop().create_task(self._post(entry))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, entry: ErrorLogEntry) -> None:
        try:
            response = await self._client.post(self.url, json=entry.model_dump(mode="json"))
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to forward error log to {self.url}: {e}")

    async def close(self) -> None:
        """Wait for in-flight posts and close the HTTP client."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._client.aclose()
