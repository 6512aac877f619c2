"""Contract of the browser-driven transport consumed by the supervisor and the normalizer."""
from __future__ import annotations

import abc
from typing import Any, Dict, List, Optional

from ..events import EventBus
from ..predicates import QueryPredicate
from ..schemas import (
    Cookie,
    WebMessageMediaPayload,
    WebMessageRawPayload,
)

# Event names published on TransportBridge.events
BRIDGE_EVENTS = ("login", "logout", "scan", "message", "error", "unload", "ding")


class TransportBridge(abc.ABC):
    """Owns the browser connection; every call may fail and is never retried here.

    Listeners for ``BRIDGE_EVENTS`` are registered on ``events``. The bridge
    never sees the supervisor itself.
    """

    def __init__(self) -> None:
        self.events = EventBus(f"bridge.{type(self).__name__}")

    # lifecycle
    @abc.abstractmethod
    async def init(self) -> None: ...

    @abc.abstractmethod
    async def quit(self) -> None: ...

    @abc.abstractmethod
    async def reload(self) -> None: ...

    @abc.abstractmethod
    async def logout(self) -> None: ...

    @abc.abstractmethod
    async def ding(self, data: Any = None) -> str: ...

    # raw payloads
    @abc.abstractmethod
    async def get_message(self, message_id: str) -> WebMessageRawPayload: ...

    @abc.abstractmethod
    async def get_contact(self, user_name: str) -> Dict[str, Any]:
        """Contact or room payload; rooms are contacts whose id starts with ``@@``."""

    # media locators
    @abc.abstractmethod
    async def get_msg_img(self, message_id: str) -> Optional[str]: ...

    @abc.abstractmethod
    async def get_msg_emoticon(self, message_id: str) -> Optional[str]: ...

    @abc.abstractmethod
    async def get_msg_video(self, message_id: str) -> Optional[str]: ...

    @abc.abstractmethod
    async def get_msg_voice(self, message_id: str) -> Optional[str]: ...

    @abc.abstractmethod
    async def get_msg_public_link_img(self, message_id: str) -> Optional[str]: ...

    # session material
    @abc.abstractmethod
    async def get_upload_media_url(self) -> str: ...

    @abc.abstractmethod
    async def get_check_upload_url(self) -> str: ...

    @abc.abstractmethod
    async def get_pass_ticket(self) -> Optional[str]: ...

    @abc.abstractmethod
    async def get_base_request(self) -> str:
        """JSON text of the form ``{"BaseRequest": {...}}``."""

    @abc.abstractmethod
    async def cookies(self) -> List[Cookie]: ...

    @abc.abstractmethod
    async def hostname(self) -> Optional[str]: ...

    # search
    @abc.abstractmethod
    async def contact_find(self, predicate: QueryPredicate) -> List[str]: ...

    @abc.abstractmethod
    async def room_find(self, predicate: QueryPredicate) -> List[str]: ...

    # mutations
    @abc.abstractmethod
    async def room_add_member(self, room_id: str, contact_id: str) -> Any: ...

    @abc.abstractmethod
    async def room_del_member(self, room_id: str, contact_id: str) -> Any: ...

    @abc.abstractmethod
    async def room_mod_topic(self, room_id: str, topic: str) -> str: ...

    @abc.abstractmethod
    async def room_create(self, contact_id_list: List[str], topic: str) -> Optional[str]: ...

    @abc.abstractmethod
    async def contact_alias(self, contact_id: str, alias: Optional[str]) -> bool: ...

    @abc.abstractmethod
    async def verify_user_request(self, contact_id: str, hello: str) -> bool: ...

    @abc.abstractmethod
    async def verify_user_ok(self, contact_id: str, ticket: str) -> bool: ...

    # outbound
    @abc.abstractmethod
    async def send(self, to_user_name: str, text: str) -> bool: ...

    @abc.abstractmethod
    async def send_media(self, media: WebMessageMediaPayload) -> bool: ...

    @abc.abstractmethod
    async def forward(self, base_data: WebMessageRawPayload, patch_data: WebMessageRawPayload) -> bool: ...


__all__ = ["TransportBridge", "BRIDGE_EVENTS"]
