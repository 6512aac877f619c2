"""Time-window coalescing of values into an async sink."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

logger = logging.getLogger(__name__)

Sink = Callable[[Any], Awaitable[None]]


class CoalescingThrottle:
    """At most one sink call per window; the last value pushed before the window closes wins.

    The first push opens a window. Pushes inside an open window only replace the
    pending value. When the window closes, the pending value is flushed.
    """

    def __init__(self, window: float, sink: Sink, name: str = "throttle") -> None:
        self.window = window
        self.name = name
        self._sink = sink
        self._pending: Any = None
        self._has_pending = False
        self._task: Optional[asyncio.Task[None]] = None
        self.flushes = 0

    @property
    def window_open(self) -> bool:
        return self._task is not None and not self._task.done()

    def push(self, value: Any) -> None:
        self._pending = value
        self._has_pending = True
        if not self.window_open:
            self._task = asyncio.get_running_loop().create_task(self._run_window(), name=f"{self.name}-window")

    async def _run_window(self) -> None:
        await asyncio.sleep(self.window)
        if not self._has_pending:
            return
        value = self._pending
        self._pending = None
        self._has_pending = False
        self.flushes += 1
        try:
            await self._sink(value)
        except Exception as exc:
            logger.warning("%s: sink failed for %r: %s", self.name, value, exc)

    async def cancel(self) -> None:
        task = self._task
        self._task = None
        self._pending = None
        self._has_pending = False
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


__all__ = ["CoalescingThrottle"]
