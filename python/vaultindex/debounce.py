"""
Debouncer - Coalesce bursts of events per key into one delayed action.

A single edit produces many rapid modify notifications; only the last
one per document should reach the work queue.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union


logger = logging.getLogger(__name__)

DebouncedAction = Callable[[], Union[None, Awaitable[Any]]]


class Debouncer:
    """
    Per-key debounce timers on the running event loop.

    Each key has at most one pending timer. Calling debounce() again for
    the same key cancels the old timer and starts a new one with the new
    action, so only the latest action runs.
    """

    def __init__(self, default_delay_ms: int = 3000):
        self.default_delay_ms = default_delay_ms
        self._timers: Dict[str, asyncio.Task] = {}

    def debounce(
        self,
        key: str,
        action: DebouncedAction,
        delay_ms: Optional[int] = None,
    ) -> None:
        """
        Run `action` after `delay_ms` of quiet on `key`.

        Must be called from the event loop thread.
        """
        self.cancel(key)

        delay = self.default_delay_ms if delay_ms is None else delay_ms
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.create_task(
            self._fire_after_delay(key, action, delay / 1000.0),
            name=f"debounce:{key}",
        )

    async def _fire_after_delay(
        self,
        key: str,
        action: DebouncedAction,
        delay_seconds: float,
    ) -> None:
        await asyncio.sleep(delay_seconds)

        # Past this point the timer can no longer be cancelled by debounce()
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]

        try:
            result = action()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Debounced action failed for {key}: {e}")

    def cancel(self, key: str) -> None:
        """Cancel the pending action for `key`, if any."""
        timer = self._timers.pop(key, None)
        if timer and not timer.done():
            timer.cancel()

    def cancel_all(self) -> None:
        """Cancel every pending action."""
        for timer in self._timers.values():
            if not timer.done():
                timer.cancel()
        self._timers.clear()

    def is_pending(self, key: str) -> bool:
        return key in self._timers

    def pending_count(self) -> int:
        return len(self._timers)
