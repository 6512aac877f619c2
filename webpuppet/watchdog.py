"""Feed-or-reset timer used for connectivity and login-page supervision."""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from .events import EventBus, Listener

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class WatchdogFood:
    data: Any = None
    timeout: Optional[float] = None
    type: str = "food"


class WatchdogTimer:
    """Fires ``reset(food, elapsed)`` when no food arrives before the deadline.

    A reset fires at most once per feed. A sleeping dog ignores feeds and never
    fires until ``wake()`` is called. The clock is injectable so tests can step
    time and call ``expire_if_due()`` themselves.
    """

    def __init__(self, timeout: float, name: str = "watchdog", *, clock: Clock = time.monotonic) -> None:
        self.default_timeout = timeout
        self.name = name
        self.events = EventBus(f"watchdog.{name}")
        self._clock = clock
        self._food: Optional[WatchdogFood] = None
        self._fed_at: Optional[float] = None
        self._deadline: Optional[float] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._asleep = False

    @property
    def asleep(self) -> bool:
        return self._asleep

    @property
    def armed(self) -> bool:
        return self._deadline is not None and not self._asleep

    @property
    def last_food(self) -> Optional[WatchdogFood]:
        return self._food

    def on_reset(self, listener: Listener) -> Listener:
        return self.events.on("reset", listener)

    def on_feed(self, listener: Listener) -> Listener:
        return self.events.on("feed", listener)

    def remaining(self) -> Optional[float]:
        if self._deadline is None or self._asleep:
            return None
        return max(0.0, self._deadline - self._clock())

    def feed(self, food: WatchdogFood) -> None:
        if self._asleep:
            logger.debug("%s: asleep, ignoring food type=%s", self.name, food.type)
            return

        timeout = food.timeout if food.timeout is not None else self.default_timeout
        self._food = food
        self._fed_at = self._clock()
        self._deadline = self._fed_at + timeout
        self._schedule(timeout)
        logger.debug("%s: fed type=%s timeout=%.1fs", self.name, food.type, timeout)
        self._notify("feed", food)

    def sleep(self) -> None:
        logger.debug("%s: sleep", self.name)
        self._asleep = True
        self._deadline = None
        self._cancel()

    def wake(self) -> None:
        if self._asleep:
            logger.debug("%s: wake", self.name)
        self._asleep = False

    def expire_if_due(self) -> bool:
        """Fire the reset notification when the deadline has passed."""
        self._cancel()
        if self._asleep or self._deadline is None:
            return False

        now = self._clock()
        if now < self._deadline:
            self._schedule(self._deadline - now)
            return False

        elapsed = now - (self._fed_at if self._fed_at is not None else now)
        food = self._food or WatchdogFood()
        self._deadline = None
        logger.warning("%s: reset after %.1fs, last food type=%s data=%s", self.name, elapsed, food.type, food.data)
        self._notify("reset", food, elapsed)
        return True

    def _schedule(self, delay: float) -> None:
        self._cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: expiry is only checked through expire_if_due()
            return
        self._handle = loop.call_later(max(delay, 0.0), self.expire_if_due)

    def _cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _notify(self, event: str, *args: Any) -> None:
        try:
            self.events.emit_soon(event, *args)
        except RuntimeError:
            logger.debug("%s: no running loop, %s notification dropped", self.name, event)


__all__ = ["WatchdogFood", "WatchdogTimer", "Clock"]
