"""Named publish/subscribe channel used between the bridge, the watchdogs and the supervisor."""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Dict, List, Optional, Set, Union

logger = logging.getLogger(__name__)

Listener = Callable[..., Union[None, Awaitable[None]]]


class EventBus:
    """Delivers events to listeners in registration order.

    Coroutine listeners are awaited one after another. A failing listener is
    logged and does not stop delivery to the ones registered after it.
    """

    def __init__(self, name: str = "events") -> None:
        self.name = name
        self._listeners: Dict[str, List[Listener]] = {}
        self._pending: Set[asyncio.Task[None]] = set()

    def on(self, event: str, listener: Listener) -> Listener:
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def clear(self, event: Optional[str] = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listeners(self, event: str) -> List[Listener]:
        return list(self._listeners.get(event, ()))

    async def emit(self, event: str, *args: Any) -> None:
        for listener in self.listeners(event):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("%s: listener for %r failed: %s", self.name, event, exc)

    def emit_soon(self, event: str, *args: Any) -> asyncio.Task[None]:
        """Schedule delivery from synchronous code (timer callbacks)."""
        task = asyncio.get_running_loop().create_task(self.emit(event, *args), name=f"{self.name}-{event}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every delivery scheduled with emit_soon()."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = ["EventBus", "Listener"]
