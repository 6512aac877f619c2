from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from webpuppet.backend import ws_client
from webpuppet.backend.ws_client import WebSocketBridge
from webpuppet.errors import TransportCommandError, TransportInitError
from webpuppet.predicates import Equals
from webpuppet.profile import MemoryProfile


class _FakeConnection:
    """Stands in for a websockets client connection.

    Requests whose method is in ``replies`` are answered right away; the
    value may be an exception to answer with an error frame.
    """

    def __init__(self, replies: Optional[Dict[str, Any]] = None) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.replies = replies or {}
        self.closed = False

    async def send(self, text: str) -> None:
        frame = json.loads(text)
        self.sent.append(frame)
        if frame.get("type") == "request" and frame["method"] in self.replies:
            reply = self.replies[frame["method"]]
            if isinstance(reply, Exception):
                self.push({"type": "response", "id": frame["id"], "error": str(reply)})
            else:
                self.push({"type": "response", "id": frame["id"], "result": reply})

    def push(self, frame: Dict[str, Any]) -> None:
        self.incoming.put_nowait(json.dumps(frame))

    def requests(self, method: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f.get("type") == "request" and f["method"] == method]

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)


@pytest.fixture
def connection(monkeypatch) -> _FakeConnection:
    conn = _FakeConnection({"init": True, "quit": True, "reload": True})

    async def fake_connect(uri, **kwargs):
        return conn

    monkeypatch.setattr(ws_client.websockets, "connect", fake_connect)
    return conn


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_init_sends_head_and_saved_cookies(connection, settings):
    cookies = [{"name": "wxuin", "value": "42"}]
    bridge = WebSocketBridge(settings, MemoryProfile({"cookies": cookies}))

    await bridge.init()

    (init,) = connection.requests("init")
    assert init["params"] == {"head": settings.head, "cookies": cookies}
    assert bridge.connected
    await bridge.quit()
    assert connection.closed
    assert not bridge.connected


@pytest.mark.asyncio
async def test_request_matches_response_by_id(connection, settings):
    connection.replies["getContact"] = {"UserName": "@alice", "NickName": "Alice"}
    bridge = WebSocketBridge(settings)
    await bridge.connect()

    contact = await bridge.get_contact("@alice")

    assert contact["NickName"] == "Alice"
    (request,) = connection.requests("getContact")
    assert request["params"] == {"id": "@alice"}
    await bridge.disconnect()


@pytest.mark.asyncio
async def test_error_response_raises_command_error(connection, settings):
    connection.replies["send"] = RuntimeError("not logged in")
    bridge = WebSocketBridge(settings)
    await bridge.connect()

    with pytest.raises(TransportCommandError, match="not logged in"):
        await bridge.send("@bob", "hi")
    await bridge.disconnect()


@pytest.mark.asyncio
async def test_init_failure_is_transport_init_error(connection, settings):
    connection.replies["init"] = RuntimeError("no browser")
    bridge = WebSocketBridge(settings)

    with pytest.raises(TransportInitError):
        await bridge.init()
    assert not bridge.connected


@pytest.mark.asyncio
async def test_request_without_connection(settings):
    bridge = WebSocketBridge(settings)
    with pytest.raises(TransportCommandError):
        await bridge.hostname()


@pytest.mark.asyncio
async def test_ping_is_answered(connection, settings):
    bridge = WebSocketBridge(settings)
    await bridge.connect()

    connection.push({"type": "ping"})
    await _settle()

    assert {"type": "pong"} in connection.sent
    await bridge.disconnect()


@pytest.mark.asyncio
async def test_events_are_dispatched_in_order(connection, settings):
    bridge = WebSocketBridge(settings)
    seen: list = []
    bridge.events.on("scan", lambda data: seen.append(("scan", data["code"])))
    bridge.events.on("login", lambda user: seen.append(("login", user)))
    bridge.events.on("unload", lambda: seen.append(("unload", None)))
    await bridge.connect()

    connection.push({"type": "event", "event": "scan", "data": {"code": 201}})
    connection.push({"type": "event", "event": "login", "data": "@me"})
    connection.push({"type": "event", "event": "unload"})
    connection.push({"type": "event", "event": "not-a-bridge-event", "data": 1})
    await _settle()

    assert seen == [("scan", 201), ("login", "@me"), ("unload", None)]
    await bridge.disconnect()


@pytest.mark.asyncio
async def test_event_listener_may_call_back_into_bridge(connection, settings):
    connection.replies["getMessage"] = {"MsgId": "m1", "Content": "hi"}
    bridge = WebSocketBridge(settings)
    fetched: list = []

    async def on_message(data):
        fetched.append(await bridge.get_message(data["MsgId"]))

    bridge.events.on("message", on_message)
    await bridge.connect()

    connection.push({"type": "event", "event": "message", "data": {"MsgId": "m1"}})
    for _ in range(20):
        if fetched:
            break
        await asyncio.sleep(0)

    assert fetched == [{"MsgId": "m1", "Content": "hi"}]
    await bridge.disconnect()


@pytest.mark.asyncio
async def test_predicate_is_sent_structured_and_as_script(connection, settings):
    connection.replies["contactFind"] = ["@alice"]
    bridge = WebSocketBridge(settings)
    await bridge.connect()

    assert await bridge.contact_find(Equals("NickName", "alice")) == ["@alice"]

    (request,) = connection.requests("contactFind")
    assert request["params"]["filter"] == {"kind": "equals", "field": "NickName", "value": "alice"}
    assert '"alice"' in request["params"]["script"]
    await bridge.disconnect()


@pytest.mark.asyncio
async def test_disconnect_fails_pending_requests(connection, settings):
    bridge = WebSocketBridge(settings)
    await bridge.connect()

    pending = asyncio.create_task(bridge.cookies())
    await _settle()
    await bridge.disconnect()

    with pytest.raises(TransportCommandError):
        await pending
