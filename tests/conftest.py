from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from webpuppet.backend.bridge import TransportBridge
from webpuppet.config import (
    MediaSettings,
    PersistenceSettings,
    Settings,
    StabilizationSettings,
    WatchdogSettings,
)
from webpuppet.predicates import QueryPredicate


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBridge(TransportBridge):
    """In-memory TransportBridge that records every call.

    ``fail`` maps a method name to an exception raised on every call;
    ``contacts`` values may be callables to produce a fresh payload per call.
    """

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[Tuple[str, tuple]] = []
        self.fail: Dict[str, BaseException] = {}
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.contacts: Dict[str, Any] = {}
        self.contact_counts: Optional[Callable[[], int]] = None
        self.room_ids: List[str] = []
        self.media_urls: Dict[str, str] = {}
        self.send_result = True
        self.send_media_result = True
        self.forward_result = True
        self.alias_result = True
        self.created_room_id: Optional[str] = "@@newroom"
        self.host = "wx.qq.com"
        self.cookie_list: List[Dict[str, Any]] = [
            {"name": "webwx_data_ticket", "value": "ticket1"},
            {"name": "wxuin", "value": "42"},
        ]

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        error = self.fail.get(name)
        if error is not None:
            raise error

    def count(self, name: str, *args: Any) -> int:
        return sum(1 for call, call_args in self.calls if call == name and call_args[: len(args)] == args)

    async def init(self) -> None:
        self._record("init")

    async def quit(self) -> None:
        self._record("quit")

    async def reload(self) -> None:
        self._record("reload")

    async def logout(self) -> None:
        self._record("logout")

    async def ding(self, data: Any = None) -> str:
        self._record("ding", data)
        return f"dong:{data}"

    async def get_message(self, message_id: str) -> Dict[str, Any]:
        self._record("get_message", message_id)
        return self.messages.get(message_id, {})

    async def get_contact(self, user_name: str) -> Dict[str, Any]:
        self._record("get_contact", user_name)
        value = self.contacts.get(user_name, {})
        return value() if callable(value) else value

    async def _media_url(self, kind: str, message_id: str) -> Optional[str]:
        self._record(kind, message_id)
        return self.media_urls.get(message_id)

    async def get_msg_img(self, message_id: str) -> Optional[str]:
        return await self._media_url("get_msg_img", message_id)

    async def get_msg_emoticon(self, message_id: str) -> Optional[str]:
        return await self._media_url("get_msg_emoticon", message_id)

    async def get_msg_video(self, message_id: str) -> Optional[str]:
        return await self._media_url("get_msg_video", message_id)

    async def get_msg_voice(self, message_id: str) -> Optional[str]:
        return await self._media_url("get_msg_voice", message_id)

    async def get_msg_public_link_img(self, message_id: str) -> Optional[str]:
        return await self._media_url("get_msg_public_link_img", message_id)

    async def get_upload_media_url(self) -> str:
        self._record("get_upload_media_url")
        return "https://file.wx.qq.com/cgi-bin/mmwebwx-bin/webwxuploadmedia"

    async def get_check_upload_url(self) -> str:
        self._record("get_check_upload_url")
        return "/cgi-bin/mmwebwx-bin/webwxcheckupload"

    async def get_pass_ticket(self) -> Optional[str]:
        self._record("get_pass_ticket")
        return "pass1"

    async def get_base_request(self) -> str:
        self._record("get_base_request")
        return '{"BaseRequest": {"Uin": 42, "Sid": "sid1", "Skey": "@skey", "DeviceID": "e1"}}'

    async def cookies(self) -> List[Dict[str, Any]]:
        self._record("cookies")
        return list(self.cookie_list)

    async def hostname(self) -> Optional[str]:
        self._record("hostname")
        return self.host

    async def contact_find(self, predicate: QueryPredicate) -> List[str]:
        self._record("contact_find", predicate)
        if self.contact_counts is not None:
            return [f"@c{i}" for i in range(self.contact_counts())]
        return [cid for cid, raw in self.contacts.items() if not callable(raw) and predicate.test(raw)]

    async def room_find(self, predicate: QueryPredicate) -> List[str]:
        self._record("room_find", predicate)
        return list(self.room_ids)

    async def room_add_member(self, room_id: str, contact_id: str) -> Any:
        self._record("room_add_member", room_id, contact_id)
        return True

    async def room_del_member(self, room_id: str, contact_id: str) -> Any:
        self._record("room_del_member", room_id, contact_id)
        return True

    async def room_mod_topic(self, room_id: str, topic: str) -> str:
        self._record("room_mod_topic", room_id, topic)
        return topic

    async def room_create(self, contact_id_list: List[str], topic: str) -> Optional[str]:
        self._record("room_create", tuple(contact_id_list), topic)
        return self.created_room_id

    async def contact_alias(self, contact_id: str, alias: Optional[str]) -> bool:
        self._record("contact_alias", contact_id, alias)
        return self.alias_result

    async def verify_user_request(self, contact_id: str, hello: str) -> bool:
        self._record("verify_user_request", contact_id, hello)
        return True

    async def verify_user_ok(self, contact_id: str, ticket: str) -> bool:
        self._record("verify_user_ok", contact_id, ticket)
        return True

    async def send(self, to_user_name: str, text: str) -> bool:
        self._record("send", to_user_name, text)
        return self.send_result

    async def send_media(self, media: Dict[str, Any]) -> bool:
        self._record("send_media", dict(media))
        return self.send_media_result

    async def forward(self, base_data: Dict[str, Any], patch_data: Dict[str, Any]) -> bool:
        self._record("forward", dict(base_data), dict(patch_data))
        return self.forward_result


def make_settings(tmp_path, **overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "_env_file": None,
        "log_directory": tmp_path / "logs",
        "watchdog": WatchdogSettings(connectivity_timeout=60.0, initial_timeout=120.0, scan_timeout=120.0),
        "stabilization": StabilizationSettings(
            room_attempts=7,
            room_interval=0.0,
            roster_interval=0.01,
            roster_timeout=0.5,
        ),
        "media": MediaSettings(),
        "persistence": PersistenceSettings(profile_path=tmp_path / "profile.json", cookie_save_window=0.05),
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def fake_bridge() -> FakeBridge:
    return FakeBridge()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)
