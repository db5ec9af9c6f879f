"""Debounced, fire-and-forget cache invalidation."""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

OVERFLOW_KEY = "*"


class DebouncedInvalidator:
    """
    Trailing-edge debounce of invalidation signals, one timer per key.

    ``signal`` never blocks: it (re)starts the key's timer and returns. When
    the timer fires the sink is called with the key. Once ``max_keys``
    timers are pending, further keys share the overflow key.
    """

    def __init__(
        self,
        sink: Optional[Callable[[str], Any]] = None,
        delay: float = 0.1,
        max_keys: int = 64,
    ):
        self.sink = sink
        self.delay = delay
        self.max_keys = max_keys
        self._timers: dict[str, asyncio.Task] = {}
        self.fired = 0

    @property
    def pending(self) -> int:
        return len(self._timers)

    def signal(self, key: str = OVERFLOW_KEY) -> None:
        """Schedule an invalidation for key, restarting any pending timer."""
        if self.sink is None:
            return

        if key not in self._timers and len(self._timers) >= self.max_keys:
            key = OVERFLOW_KEY

        existing = self._timers.get(key)
        if existing is not None:
            existing.cancel()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, invalidating {key} synchronously")
            self._call_sink_sync(key)
            return

        self._timers[key] = loop.create_task(self._fire_later(key))

    def _call_sink_sync(self, key: str) -> None:
        try:
            result = self.sink(key)
            if inspect.isawaitable(result):
                # No loop to await on; drop the coroutine cleanly
                close = getattr(result, "close", None)
                if close:
                    close()
            self.fired += 1
        except Exception as e:
            logger.warning(f"Cache invalidation for {key} failed: {e}")

    async def _fire_later(self, key: str) -> None:
        current = asyncio.current_task()
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            return

        if self._timers.get(key) is current:
            del self._timers[key]

        try:
            result = self.sink(key)
            if inspect.isawaitable(result):
                await result
            self.fired += 1
            logger.debug(f"Cache invalidated for {key}")
        except Exception as e:
            logger.warning(f"Cache invalidation for {key} failed: {e}")

    async def flush(self) -> None:
        """Wait for every pending timer to fire."""
        while self._timers:
            await asyncio.gather(*list(self._timers.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel pending timers without firing them."""
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
