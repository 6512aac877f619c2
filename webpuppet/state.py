"""Shared session state definitions for the web puppet."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class LifecycleState(str, enum.Enum):
    """
    Supervisor lifecycle:

    IDLE -> INITIALIZING -> LIVE -> STOPPING -> IDLE

    ERRORED is entered on unrecoverable failure from any non-idle state
    and is only left through stop().
    """
    IDLE = "idle"
    INITIALIZING = "initializing"
    LIVE = "live"
    STOPPING = "stopping"
    ERRORED = "errored"


class RecoveryTier(str, enum.Enum):
    SOFT = "soft"   # bridge.reload(), keeps the browser session
    HARD = "hard"   # bridge.quit() + bridge.init()


@dataclass
class ScanState:
    """Login challenge shown while no user is logged in."""

    url: Optional[str] = None
    code: int = 0
    data: Optional[str] = None


@dataclass
class Session:
    user_id: Optional[str] = None
    state: LifecycleState = LifecycleState.IDLE
    scan: Optional[ScanState] = None

    @property
    def logged_in(self) -> bool:
        return self.user_id is not None


@dataclass
class RecoveryAttempt:
    tier: RecoveryTier
    succeeded: bool = False
    error: Optional[BaseException] = None


@dataclass
class SupervisorEvent:
    """Event payload distributed to service clients over the local WebSocket."""

    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    state: LifecycleState = LifecycleState.IDLE
    error: Optional[str] = None


__all__ = [
    "LifecycleState",
    "RecoveryTier",
    "ScanState",
    "Session",
    "RecoveryAttempt",
    "SupervisorEvent",
]
