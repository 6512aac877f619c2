"""TransportBridge backed by a browser driver sidecar reached over a websocket.

Frames are JSON objects:

* ``{"type": "request", "id": 7, "method": "getContact", "params": {...}}``
* ``{"type": "response", "id": 7, "result": ...}`` or ``{"type": "response", "id": 7, "error": "..."}``
* ``{"type": "event", "event": "login", "data": ...}``
* ``{"type": "ping"}`` answered with ``{"type": "pong"}``
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import websockets

from ..config import Settings
from ..errors import TransportCommandError, TransportInitError
from ..predicates import QueryPredicate, to_script
from ..profile import Profile
from ..schemas import Cookie, WebMessageMediaPayload, WebMessageRawPayload
from .bridge import BRIDGE_EVENTS, TransportBridge

logger = logging.getLogger(__name__)


class WebSocketBridge(TransportBridge):
    """Maintains the sidecar connection and maps the bridge contract onto requests."""

    def __init__(self, settings: Settings, profile: Optional[Profile] = None) -> None:
        super().__init__()
        self.settings = settings
        self.profile = profile
        self._conn: Optional[Any] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._dispatch_task: Optional[asyncio.Task[None]] = None
        self._event_queue: asyncio.Queue[Tuple[str, Any]] = asyncio.Queue()
        self._pending: Dict[int, asyncio.Future[Any]] = {}
        self._ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        try:
            await self.disconnect()
            uri = self.settings.bridge_ws_url
            logger.info("Connecting to browser bridge %s", uri)
            conn = await websockets.connect(uri, ping_interval=None, ping_timeout=None, max_size=None)
            self._conn = conn
            self._listener_task = asyncio.create_task(self._listen(conn), name="bridge-ws-listener")
            self._dispatch_task = asyncio.create_task(self._dispatch(), name="bridge-ws-dispatch")
        except Exception as e:
            logger.error("Failed to connect to browser bridge: %s", e)
            raise TransportInitError(f"bridge connect failed: {e}") from e

    async def disconnect(self) -> None:
        for task in (self._listener_task, self._dispatch_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.warning("Error during bridge task cleanup: %s", e)
        self._listener_task = None
        self._dispatch_task = None
        if self._conn:
            try:
                await self._conn.close()
            except Exception as e:
                logger.warning("Error closing bridge connection: %s", e)
            self._conn = None
        self._fail_pending(TransportCommandError("bridge disconnected"))

    async def init(self) -> None:
        await self.connect()
        cookies: List[Cookie] = []
        if self.profile is not None:
            cookies = self.profile.get("cookies", []) or []
        try:
            await self.request("init", {"head": self.settings.head, "cookies": cookies})
        except TransportCommandError as e:
            await self.disconnect()
            raise TransportInitError(f"bridge init failed: {e.message}") from e

    async def quit(self) -> None:
        if not self.connected:
            logger.debug("quit() on a disconnected bridge")
            return
        try:
            await self.request("quit")
        except TransportCommandError as e:
            raise TransportInitError(f"bridge quit failed: {e.message}") from e
        finally:
            await self.disconnect()

    async def reload(self) -> None:
        try:
            await self.request("reload")
        except TransportCommandError as e:
            raise TransportInitError(f"bridge reload failed: {e.message}") from e

    async def logout(self) -> None:
        await self.request("logout")

    async def ding(self, data: Any = None) -> str:
        return await self.request("ding", {"data": data})

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self._conn:
            raise TransportCommandError(f"{method}: bridge not connected", {"method": method})

        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        frame = {"type": "request", "id": request_id, "method": method, "params": params or {}}
        try:
            await self._conn.send(json.dumps(frame))
            return await asyncio.wait_for(future, timeout=self.settings.bridge_request_timeout)
        except asyncio.TimeoutError as e:
            raise TransportCommandError(f"{method}: bridge request timed out", {"method": method}) from e
        except websockets.ConnectionClosed as e:
            raise TransportCommandError(f"{method}: bridge connection closed", {"method": method}) from e
        finally:
            self._pending.pop(request_id, None)

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _listen(self, conn: Any) -> None:
        try:
            async for message in conn:
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from bridge: %s", message)
                    continue

                kind = payload.get("type")
                if kind == "ping":
                    await conn.send(json.dumps({"type": "pong"}))
                elif kind == "response":
                    self._resolve(payload)
                elif kind == "event":
                    event = payload.get("event")
                    if event in BRIDGE_EVENTS:
                        self._event_queue.put_nowait((event, payload.get("data")))
                    else:
                        logger.debug("Ignoring bridge event %r", event)
                else:
                    logger.debug("Ignoring bridge frame type %r", kind)
        except asyncio.CancelledError:  # cooperative cancel
            raise
        except websockets.ConnectionClosedOK:
            logger.info("Bridge websocket closed cleanly")
        except websockets.ConnectionClosedError as exc:
            logger.warning("Bridge websocket closed: %s", exc)
            self._event_queue.put_nowait(("error", TransportCommandError(f"bridge connection lost: {exc}")))
        finally:
            self._fail_pending(TransportCommandError("bridge connection closed"))

    def _resolve(self, payload: Dict[str, Any]) -> None:
        future = self._pending.get(payload.get("id"))  # type: ignore[arg-type]
        if future is None or future.done():
            logger.debug("Response for unknown request id %s", payload.get("id"))
            return
        if payload.get("error") is not None:
            future.set_exception(TransportCommandError(str(payload["error"]), {"id": payload.get("id")}))
        else:
            future.set_result(payload.get("result"))

    async def _dispatch(self) -> None:
        # events are delivered one at a time, apart from the reader so handlers may call back into the bridge
        while True:
            event, data = await self._event_queue.get()
            if event in ("unload",):
                await self.events.emit(event)
            else:
                await self.events.emit(event, data)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def get_message(self, message_id: str) -> WebMessageRawPayload:
        return await self.request("getMessage", {"id": message_id}) or {}

    async def get_contact(self, user_name: str) -> Dict[str, Any]:
        return await self.request("getContact", {"id": user_name}) or {}

    async def get_msg_img(self, message_id: str) -> Optional[str]:
        return await self.request("getMsgImg", {"id": message_id})

    async def get_msg_emoticon(self, message_id: str) -> Optional[str]:
        return await self.request("getMsgEmoticon", {"id": message_id})

    async def get_msg_video(self, message_id: str) -> Optional[str]:
        return await self.request("getMsgVideo", {"id": message_id})

    async def get_msg_voice(self, message_id: str) -> Optional[str]:
        return await self.request("getMsgVoice", {"id": message_id})

    async def get_msg_public_link_img(self, message_id: str) -> Optional[str]:
        return await self.request("getMsgPublicLinkImg", {"id": message_id})

    async def get_upload_media_url(self) -> str:
        return await self.request("getUploadMediaUrl")

    async def get_check_upload_url(self) -> str:
        return await self.request("getCheckUploadUrl")

    async def get_pass_ticket(self) -> Optional[str]:
        return await self.request("getPassticket")

    async def get_base_request(self) -> str:
        return await self.request("getBaseRequest")

    async def cookies(self) -> List[Cookie]:
        return await self.request("cookies") or []

    async def hostname(self) -> Optional[str]:
        return await self.request("hostname")

    async def contact_find(self, predicate: QueryPredicate) -> List[str]:
        return await self.request("contactFind", {"filter": predicate.to_wire(), "script": to_script(predicate)}) or []

    async def room_find(self, predicate: QueryPredicate) -> List[str]:
        return await self.request("roomFind", {"filter": predicate.to_wire(), "script": to_script(predicate)}) or []

    async def room_add_member(self, room_id: str, contact_id: str) -> Any:
        return await self.request("roomAddMember", {"roomId": room_id, "contactId": contact_id})

    async def room_del_member(self, room_id: str, contact_id: str) -> Any:
        return await self.request("roomDelMember", {"roomId": room_id, "contactId": contact_id})

    async def room_mod_topic(self, room_id: str, topic: str) -> str:
        return await self.request("roomModTopic", {"roomId": room_id, "topic": topic})

    async def room_create(self, contact_id_list: List[str], topic: str) -> Optional[str]:
        return await self.request("roomCreate", {"contactIdList": contact_id_list, "topic": topic})

    async def contact_alias(self, contact_id: str, alias: Optional[str]) -> bool:
        return bool(await self.request("contactAlias", {"contactId": contact_id, "alias": alias}))

    async def verify_user_request(self, contact_id: str, hello: str) -> bool:
        return bool(await self.request("verifyUserRequest", {"contactId": contact_id, "hello": hello}))

    async def verify_user_ok(self, contact_id: str, ticket: str) -> bool:
        return bool(await self.request("verifyUserOk", {"contactId": contact_id, "ticket": ticket}))

    async def send(self, to_user_name: str, text: str) -> bool:
        return bool(await self.request("send", {"toUserName": to_user_name, "text": text}))

    async def send_media(self, media: WebMessageMediaPayload) -> bool:
        return bool(await self.request("sendMedia", {"media": dict(media)}))

    async def forward(self, base_data: WebMessageRawPayload, patch_data: WebMessageRawPayload) -> bool:
        return bool(await self.request("forward", {"baseData": dict(base_data), "patchData": dict(patch_data)}))


__all__ = ["WebSocketBridge"]
