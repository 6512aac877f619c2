"""Session lifecycle supervision for the browser-driven transport."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Dict, List, Optional, Tuple

from .backend.bridge import TransportBridge
from .config import Settings, get_settings
from .errors import (
    InvalidStateError,
    PuppetError,
    RecoveryExhaustedError,
    StabilizationTimeoutError,
    TransportInitError,
)
from .events import EventBus, Listener
from .predicates import CONTACT_FIELDS, Matches
from .profile import Profile
from .state import (
    LifecycleState,
    RecoveryAttempt,
    RecoveryTier,
    ScanState,
    Session,
    SupervisorEvent,
)
from .throttle import CoalescingThrottle
from .watchdog import Clock, WatchdogFood, WatchdogTimer

logger = logging.getLogger(__name__)

BridgeFactory = Callable[[], TransportBridge]


class LifecycleSupervisor:
    """Drives the session state machine and both watchdogs.

    * connectivity watchdog: fed by every bridge event; on reset the session is
      restarted with ``stop()`` + ``start()``.
    * scan watchdog: fed by scan/login/logout; asleep while logged in; on reset
      the page is recovered with reload, then quit + init, then given up.

    Supervisor notifications (``events``): state, login, logout, scan, message,
    heartbeat, bridge, broadcast, error.
    """

    def __init__(
        self,
        bridge: TransportBridge,
        *,
        settings: Optional[Settings] = None,
        profile: Optional[Profile] = None,
        bridge_factory: Optional[BridgeFactory] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.bridge = bridge
        self.profile = profile
        self.events = EventBus("supervisor")
        self.session = Session()

        self._bridge_factory = bridge_factory
        self._idle_event = asyncio.Event()
        self._idle_event.set()
        self._bridge_listeners: List[Tuple[str, Listener]] = []
        self._cookie_throttle: Optional[CoalescingThrottle] = None
        self._stop_count = 0

        watchdog_settings = self.settings.watchdog
        dog_kwargs: Dict[str, Any] = {"clock": clock} if clock is not None else {}
        self.watchdog = WatchdogTimer(watchdog_settings.connectivity_timeout, "connectivity", **dog_kwargs)
        self.scan_watchdog = WatchdogTimer(watchdog_settings.scan_timeout, "scan", **dog_kwargs)

        self.watchdog.on_feed(self._on_watchdog_feed)
        self.watchdog.on_reset(self._on_watchdog_reset)
        self.scan_watchdog.on_reset(self._on_scan_watchdog_reset)

    @property
    def state(self) -> LifecycleState:
        return self.session.state

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id

    def on(self, event: str, listener: Listener) -> Listener:
        return self.events.on(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        self.events.off(event, listener)

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        logger.info("Starting supervisor")
        if self.state is not LifecycleState.IDLE:
            raise InvalidStateError(f"start() called in state {self.state.value}", {"state": self.state.value})

        self._idle_event.clear()
        await self._set_state(LifecycleState.INITIALIZING)
        stops = self._stop_count
        init_error: Optional[BaseException] = None

        try:
            self._attach_bridge(self.bridge)
            self.watchdog.wake()
            self.scan_watchdog.wake()
            await self.bridge.init()
            logger.info("bridge.init() done")

            if self._stop_count == stops:
                # must be LIVE before the dog is fed
                await self._set_state(LifecycleState.LIVE)
                self.watchdog.feed(
                    WatchdogFood(data="inited", timeout=self.settings.watchdog.initial_timeout, type="inited")
                )

                self._cookie_throttle = CoalescingThrottle(
                    self.settings.persistence.cookie_save_window,
                    self._persist_heartbeat,
                    name="cookie-save",
                )
                logger.info("Supervisor live")
                return
        except Exception as exc:
            if self._stop_count == stops:
                logger.error("start() exception: %s", exc)
                error = exc if isinstance(exc, PuppetError) else TransportInitError(f"bridge init failed: {exc}")
                await self._set_state(LifecycleState.ERRORED)
                await self._emit_error(error)
                try:
                    await self.stop()
                except Exception as stop_exc:
                    logger.warning("stop() after failed start: %s", stop_exc)
                if error is exc:
                    raise
                raise error from exc
            init_error = exc

        await self._abandon_start(init_error)

    async def _abandon_start(self, init_error: Optional[BaseException]) -> None:
        """stop() ran while bridge.init() was pending: undo the init and refuse to go live."""
        logger.warning("start() interrupted by stop(), state=%s", self.state.value)
        error = InvalidStateError("start() interrupted by stop()", {"state": self.state.value})
        if self.state in (LifecycleState.INITIALIZING, LifecycleState.LIVE):
            # a later start() owns the bridge now
            raise error from init_error

        bridge = self.bridge
        self._detach_bridge_now(bridge)
        if init_error is None:
            # the init finished after stop() quit the bridge
            try:
                await bridge.quit()
            except Exception as exc:
                logger.warning("start(): quit of the abandoned bridge failed: %s", exc)
        if self.state is LifecycleState.STOPPING:
            await self._idle_event.wait()
        raise error from init_error

    async def stop(self) -> None:
        logger.info("Stopping supervisor")

        if self.state in (LifecycleState.IDLE, LifecycleState.STOPPING):
            logger.warning("stop() called in state %s, waiting for idle", self.state.value)
            await self._idle_event.wait()
            return

        self._stop_count += 1
        await self._set_state(LifecycleState.STOPPING)

        # no resets while stopped
        self.watchdog.sleep()
        self.scan_watchdog.sleep()

        if self._cookie_throttle is not None:
            await self._cookie_throttle.cancel()
            self._cookie_throttle = None

        bridge = self.bridge
        try:
            await bridge.quit()
        except Exception as exc:
            logger.error("stop() bridge.quit() exception: %s", exc)
            raise TransportInitError(f"bridge quit failed: {exc}") from exc
        finally:
            # let in-flight bridge callbacks finish before listeners go away
            asyncio.get_running_loop().call_soon(self._detach_bridge, bridge)
            await self._set_state(LifecycleState.IDLE)
            self._idle_event.set()
            logger.info("Supervisor stopped")

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def login(self, user_id: str) -> None:
        logger.info("login(%s)", user_id)
        self.session.user_id = user_id
        self.session.scan = None
        await self.events.emit("login", user_id)
        await self._broadcast("login", user_id=user_id)

    async def logout(self) -> None:
        user_id = self.session.user_id
        if not user_id:
            logger.warning("logout() without a logged in user")
            return

        try:
            await self.bridge.logout()
        except Exception as exc:
            logger.error("logout() exception: %s", exc)
            raise
        finally:
            self.session.user_id = None
            await self.events.emit("logout", user_id)
            await self._broadcast("logout", user_id=user_id)

    async def ding(self, data: Any = None) -> str:
        try:
            return await self.bridge.ding(data)
        except Exception as exc:
            logger.warning("ding(%s) rejected: %s", data, exc)
            raise

    async def ready_stable(self) -> None:
        """Wait until the contact roster stops growing.

        Two consecutive equal, non-zero contact counts taken ``roster_interval``
        apart count as stable. Raises StabilizationTimeoutError after
        ``roster_timeout`` seconds.
        """
        settings = self.settings.stabilization
        samples: List[int] = []
        everyone = Matches(field=CONTACT_FIELDS["name"], pattern=".*")

        async def _poll() -> None:
            previous = -1
            while True:
                count = len(await self.bridge.contact_find(everyone))
                samples.append(count)
                logger.debug("ready_stable() contact count=%d previous=%d", count, previous)
                if count > 0 and count == previous:
                    logger.info("ready_stable() roster stable at %d contacts", count)
                    return
                previous = count
                await asyncio.sleep(settings.roster_interval)

        try:
            await asyncio.wait_for(_poll(), timeout=settings.roster_timeout)
        except asyncio.TimeoutError as exc:
            last = samples[-1] if samples else None
            logger.warning("ready_stable() timed out at count=%s", last)
            raise StabilizationTimeoutError(
                f"contact roster not stable after {settings.roster_timeout:g} seconds",
                {"samples": samples},
            ) from exc

    async def save_cookies(self) -> None:
        if self.profile is None:
            logger.debug("save_cookies(): no profile configured")
            return
        cookies = await self.bridge.cookies()
        self.profile.set("cookies", cookies)
        self.profile.save()
        logger.debug("save_cookies(): %d cookies saved", len(cookies))

    # ------------------------------------------------------------------
    # Bridge event handlers
    # ------------------------------------------------------------------

    def _attach_bridge(self, bridge: TransportBridge) -> None:
        # this could be a re-start: never register twice
        self._detach_bridge_now(bridge)
        listeners: List[Tuple[str, Listener]] = [
            ("ding", self._handle_ding),
            ("error", self._handle_error),
            ("login", self._handle_login),
            ("logout", self._handle_logout),
            ("message", self._handle_message),
            ("scan", self._handle_scan),
            ("unload", self._handle_unload),
        ]
        for event, listener in listeners:
            bridge.events.on(event, listener)
        self._bridge_listeners = listeners

    def _detach_bridge(self, bridge: TransportBridge) -> None:
        if bridge is self.bridge and self.state in (LifecycleState.INITIALIZING, LifecycleState.LIVE):
            # the bridge was attached again by a start() that ran in between
            return
        for event, listener in self._bridge_listeners:
            bridge.events.off(event, listener)

    def _feed(self, data: Any, kind: str) -> None:
        self.watchdog.feed(WatchdogFood(data=data, type=kind))

    async def _handle_ding(self, data: Any = None) -> None:
        self._feed(data, "ding")

    async def _handle_error(self, error: Any) -> None:
        self._feed(str(error), "error")
        await self._emit_error(error if isinstance(error, BaseException) else PuppetError(str(error)))

    async def _handle_login(self, user_id: str) -> None:
        self._feed(user_id, "login")
        self.scan_watchdog.feed(WatchdogFood(data=user_id, type="login"))
        # no need to watch the login page while logged in
        self.scan_watchdog.sleep()
        await self.login(user_id)

    async def _handle_logout(self, user_id: Optional[str] = None) -> None:
        self._feed(user_id, "logout")
        self.scan_watchdog.wake()
        self.scan_watchdog.feed(WatchdogFood(data=user_id, type="logout"))
        previous = self.session.user_id
        self.session.user_id = None
        await self.events.emit("logout", user_id or previous)
        await self._broadcast("logout", user_id=user_id or previous)

    async def _handle_message(self, raw_payload: Dict[str, Any]) -> None:
        self._feed(raw_payload.get("MsgId") if isinstance(raw_payload, dict) else None, "message")
        await self.events.emit("message", raw_payload)

    async def _handle_scan(self, challenge: Dict[str, Any]) -> None:
        challenge = challenge or {}
        self._feed(challenge.get("code"), "scan")
        self.scan_watchdog.feed(WatchdogFood(data=challenge, type="scan"))
        self.session.scan = ScanState(
            url=challenge.get("url"),
            code=int(challenge.get("code") or 0),
            data=challenge.get("data"),
        )
        await self.events.emit("scan", self.session.scan)
        await self._broadcast("scan", url=self.session.scan.url, code=self.session.scan.code)

    async def _handle_unload(self, *_: Any) -> None:
        logger.warning("bridge page unloaded")
        self._feed("unload", "unload")

    # ------------------------------------------------------------------
    # Watchdog reactions
    # ------------------------------------------------------------------

    async def _on_watchdog_feed(self, food: WatchdogFood) -> None:
        await self.events.emit("heartbeat", food.data)
        if self._cookie_throttle is not None:
            self._cookie_throttle.push(food.data)

    async def _persist_heartbeat(self, data: Any) -> None:
        logger.debug("cookie save window closed, last heartbeat=%s", data)
        await self.save_cookies()

    async def _on_watchdog_reset(self, food: WatchdogFood, elapsed: float) -> None:
        logger.warning("connectivity watchdog reset: last food=%s elapsed=%.1fs", food.data, elapsed)
        await self._broadcast_watchdog("restart", elapsed=round(elapsed, 1), food=food.type)
        try:
            await self.stop()
            await self.start()
        except Exception as exc:
            logger.error("connectivity watchdog restart failed: %s", exc)
            await self._emit_error(exc)

    async def _on_scan_watchdog_reset(self, food: WatchdogFood, elapsed: float) -> None:
        logger.warning("scan watchdog reset: last food=%s elapsed=%.1fs", food.type, elapsed)
        await self.recover()

    async def recover(self) -> List[RecoveryAttempt]:
        """Tiered recovery of a stale login page: reload, then quit + init, then give up."""
        attempts: List[RecoveryAttempt] = []

        soft = RecoveryAttempt(tier=RecoveryTier.SOFT)
        attempts.append(soft)
        try:
            await self.bridge.reload()
            soft.succeeded = True
            await self._broadcast_watchdog("reload", status="success")
            return attempts
        except Exception as exc:
            soft.error = exc
            logger.error("recover(): bridge.reload() failed: %s", exc)
            await self._broadcast_watchdog("reload", status="failed", error=str(exc))

        hard = RecoveryAttempt(tier=RecoveryTier.HARD)
        attempts.append(hard)
        try:
            await self._hard_recover()
            hard.succeeded = True
            logger.info("recover(): bridge re-initialised")
            await self._broadcast_watchdog("reinit", status="success")
            return attempts
        except Exception as exc:
            hard.error = exc
            logger.error("recover(): bridge quit + init failed: %s", exc)
            await self._broadcast_watchdog("reinit", status="failed", error=str(exc))

        # a half-initialised bridge is never reused: the session needs an external restart
        if self._cookie_throttle is not None:
            await self._cookie_throttle.cancel()
            self._cookie_throttle = None
        try:
            await self.bridge.quit()
        except Exception as exc:
            logger.debug("recover(): cleanup quit failed: %s", exc)
        self.watchdog.sleep()
        self.scan_watchdog.sleep()
        await self._set_state(LifecycleState.ERRORED)
        error = RecoveryExhaustedError(
            "login page recovery failed: reload and re-init both failed",
            {"attempts": [(a.tier.value, str(a.error)) for a in attempts]},
        )
        await self._emit_error(error)
        return attempts

    async def _hard_recover(self) -> None:
        old = self.bridge
        await old.quit()
        if self._bridge_factory is not None:
            self._detach_bridge_now(old)
            self.bridge = self._bridge_factory()
            self._attach_bridge(self.bridge)
            await self.events.emit("bridge", self.bridge)
        await self.bridge.init()
        self.scan_watchdog.wake()

    def _detach_bridge_now(self, bridge: TransportBridge) -> None:
        for event, listener in self._bridge_listeners:
            bridge.events.off(event, listener)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _set_state(self, state: LifecycleState) -> None:
        if self.session.state is state:
            return
        logger.debug("state %s -> %s", self.session.state.value, state.value)
        self.session.state = state
        await self.events.emit("state", state)

    async def _emit_error(self, error: BaseException) -> None:
        await self.events.emit("error", error)
        await self._broadcast("error", error=str(error), kind=getattr(getattr(error, "kind", None), "value", None))

    async def _broadcast(self, event_type: str, **data: Any) -> None:
        error = data.pop("error", None)
        await self.events.emit(
            "broadcast",
            SupervisorEvent(type=event_type, data=data, state=self.state, error=error),
        )

    async def _broadcast_watchdog(self, action: str, **data: Any) -> None:
        await self._broadcast("watchdog", action=action, **data)


__all__ = ["LifecycleSupervisor", "BridgeFactory"]
