"""Coalescing of project reload signals."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, Optional, Union

from kefs.constants import Constants

logger = logging.getLogger(__name__)

ReloadCallback = Callable[[], Union[None, Awaitable[None]]]


class ReloadDebouncer:
    """Run ``callback`` once per burst of ``signal()`` calls.

    Signals closer than ``delay_ms`` to each other collapse into one run.
    Runs wait for ``mark_ready()``. At most one run is scheduled at a time;
    signals arriving while it waits only push its start back.
    """

    def __init__(self, callback: ReloadCallback, delay_ms: Optional[int] = None):
        self._callback = callback
        self._delay = (Constants.RELOAD_DEBOUNCE_MS if delay_ms is None else delay_ms) / 1000.0
        self._last_signal = 0.0
        self._ready: Optional[asyncio.Event] = None
        self._ready_flag = False
        self._pending: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def mark_ready(self) -> None:
        self._ready_flag = True
        if self._ready is not None:
            self._ready.set()

    def signal(self) -> None:
        """Record a reload signal; must be called from the event loop."""
        self._last_signal = time.monotonic()
        if self.pending:
            logger.debug("Reload already scheduled")
            return
        self._pending = asyncio.get_running_loop().create_task(self._run(), name="reload-debounce")

    async def _run(self) -> None:
        if self._ready is None:
            self._ready = asyncio.Event()
            if self._ready_flag:
                self._ready.set()
        await self._ready.wait()

        while True:
            remaining = self._delay - (time.monotonic() - self._last_signal)
            if remaining <= 0:
                break
            await asyncio.sleep(remaining)

        # a signal arriving from here on schedules a new run
        self._pending = None
        result = self._callback()
        if inspect.isawaitable(result):
            await result

    async def cancel(self) -> None:
        task, self._pending = self._pending, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            if asyncio.current_task() is not None and asyncio.current_task().cancelling():
                raise
