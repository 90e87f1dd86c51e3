from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger


class DebounceTimer:
    """Run a coroutine after a quiet period; rescheduling replaces the pending run.

    At most one handle is pending at any time. ``cancel`` only drops the
    scheduled run; a coroutine that already started keeps going until
    ``aclose`` cancels it.
    """

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self._handle: Optional[asyncio.TimerHandle] = None
        self._running: Optional[asyncio.Task[None]] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, action: Callable[[], Awaitable[None]]) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire, action)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, action: Callable[[], Awaitable[None]]) -> None:
        self._handle = None
        self._running = asyncio.ensure_future(action())
        self._running.add_done_callback(self._done)

    def _done(self, task: "asyncio.Task[None]") -> None:
        if task is self._running:
            self._running = None
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("Debounced action failed")

    async def flush(self) -> None:
        """Wait for a run that already fired to finish."""
        if self._running is not None:
            await asyncio.shield(self._running)

    async def aclose(self) -> None:
        """Drop the scheduled run and cancel one that is still in flight."""
        self.cancel()
        running = self._running
        if running is not None and not running.done():
            running.cancel()
            await asyncio.wait([running])
