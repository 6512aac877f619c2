"""PuppetWeb: the public surface composed from supervisor, normalizer and media pipeline."""
from __future__ import annotations

import asyncio
import logging
import re
from asyncio import QueueEmpty
from pathlib import PurePath
from typing import Any, List, Mapping, Optional, Pattern, Union

import httpx

from .backend.bridge import TransportBridge
from .backend.http_client import WebHttpClient
from .backend.ws_client import WebSocketBridge
from .config import Settings, get_settings
from .events import EventBus, Listener
from .errors import (
    MediaTooLargeError,
    PayloadMissingFieldError,
    PuppetError,
    TransportCommandError,
)
from .media import MediaTransferPipeline
from .models import CanonicalContact, CanonicalMessage, CanonicalRoom, Receiver, RemoteFile
from .normalizer import PayloadNormalizer
from .predicates import contact_predicate, room_predicate
from .profile import JsonFileProfile, Profile
from .schemas import WebMessageMediaPayload, WebMessageRawPayload, WebMessageType, cookie_header
from .state import LifecycleState, SupervisorEvent
from .supervisor import BridgeFactory, LifecycleSupervisor
from .text import unescape_html
from .watchdog import Clock

logger = logging.getLogger(__name__)

# events owned by the facade; everything else is the supervisor's
FACADE_EVENTS = frozenset({"message"})

_ROOM_MENTION_PREFIX_RE = re.compile(r"^@\w+:<br/>")
_SENDER_PREFIX_RE = re.compile(r"^[\w\-]+:<br/>")


def message_type_for(extension: str) -> WebMessageType:
    extension = extension.lower()
    if extension in (".bmp", ".jpeg", ".jpg", ".png"):
        return WebMessageType.IMAGE
    if extension == ".gif":
        return WebMessageType.EMOTICON
    if extension == ".mp4":
        return WebMessageType.VIDEO
    return WebMessageType.APP


def forward_content(content: Optional[str]) -> str:
    """Drop the ``sender:<br/>`` prefix the web client adds to room messages."""
    text = _ROOM_MENTION_PREFIX_RE.sub("", content or "", count=1)
    return _SENDER_PREFIX_RE.sub("", unescape_html(text), count=1)


class PuppetWeb:
    """Drives one web chat session for the messaging framework."""

    def __init__(
        self,
        bridge: Optional[TransportBridge] = None,
        *,
        settings: Optional[Settings] = None,
        profile: Optional[Profile] = None,
        bridge_factory: Optional[BridgeFactory] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.profile = profile if profile is not None else JsonFileProfile(self.settings.persistence.profile_path)

        if bridge is None:
            bridge = WebSocketBridge(self.settings, self.profile)
            if bridge_factory is None:
                bridge_factory = self._new_bridge

        self.events = EventBus("puppet")
        self.supervisor = LifecycleSupervisor(
            bridge,
            settings=self.settings,
            profile=self.profile,
            bridge_factory=bridge_factory,
            clock=clock,
        )
        self.http = WebHttpClient(self.settings.media, client=http_client)
        self.normalizer = PayloadNormalizer(bridge, self.settings.media, self.settings.stabilization)
        self.media = MediaTransferPipeline(bridge, self.http, self.settings.media)

        self._subscribers: List[asyncio.Queue[SupervisorEvent]] = []

        self.supervisor.on("message", self._on_raw_message)
        self.supervisor.on("bridge", self._on_bridge_replaced)
        self.supervisor.on("broadcast", self._fan_out)

    def _new_bridge(self) -> TransportBridge:
        return WebSocketBridge(self.settings, self.profile)

    @property
    def bridge(self) -> TransportBridge:
        return self.supervisor.bridge

    @property
    def state(self) -> LifecycleState:
        return self.supervisor.state

    @property
    def user_id(self) -> Optional[str]:
        return self.supervisor.user_id

    def on(self, event: str, listener: Listener) -> Listener:
        if event in FACADE_EVENTS:
            return self.events.on(event, listener)
        return self.supervisor.on(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        if event in FACADE_EVENTS:
            self.events.off(event, listener)
        else:
            self.supervisor.off(event, listener)

    def register_subscriber(self) -> asyncio.Queue[SupervisorEvent]:
        queue: asyncio.Queue[SupervisorEvent] = asyncio.Queue(maxsize=self.settings.event_queue_size)
        self._subscribers.append(queue)
        return queue

    def unregister_subscriber(self, queue: asyncio.Queue[SupervisorEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def _fan_out(self, event: SupervisorEvent) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                # slow subscriber: drop its oldest event
                try:
                    queue.get_nowait()
                except QueueEmpty:
                    pass
            queue.put_nowait(event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.supervisor.start()

    async def stop(self) -> None:
        await self.supervisor.stop()

    async def aclose(self) -> None:
        if self.state is not LifecycleState.IDLE:
            await self.supervisor.stop()
        await self.http.aclose()

    async def logout(self) -> None:
        await self.supervisor.logout()

    async def ding(self, data: Any = None) -> str:
        return await self.supervisor.ding(data)

    async def ready_stable(self) -> None:
        await self.supervisor.ready_stable()

    async def _on_raw_message(self, raw: WebMessageRawPayload) -> None:
        try:
            message = await self.normalizer.normalize_message(raw, strict=False)
        except PuppetError as exc:
            logger.error("inbound message %s could not be normalized: %s", raw.get("MsgId"), exc)
            await self.supervisor.events.emit("error", exc)
            return
        await self.events.emit("message", message)

    async def _on_bridge_replaced(self, bridge: TransportBridge) -> None:
        logger.info("bridge replaced, rebinding normalizer and media pipeline")
        self.normalizer.bridge = bridge
        self.media.bridge = bridge

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def message_raw_payload(self, message_id: str) -> WebMessageRawPayload:
        raw = await self.bridge.get_message(message_id)
        if not raw:
            raise TransportCommandError(f"no payload for message {message_id}", {"message_id": message_id})
        return raw

    async def message_payload(self, message_id: str) -> CanonicalMessage:
        raw = await self.message_raw_payload(message_id)
        return await self.normalizer.normalize_message(raw)

    async def message_send_text(self, receiver: Receiver, text: str) -> None:
        destination = receiver.destination
        logger.debug("message_send_text() destination=%s text=%s", destination, text)
        try:
            ok = await self.bridge.send(destination, text)
        except Exception as e:
            logger.error("message_send_text() exception: %s", e)
            raise
        if not ok:
            raise TransportCommandError("send failed", {"to": destination})

    async def message_send_file(self, receiver: Receiver, filename: str, content: bytes) -> None:
        destination = receiver.destination
        logger.info("message_send_file(to=%s, file=%s)", destination, filename)

        descriptor = await self.media.upload(
            filename,
            content,
            from_user_name=self.user_id or "",
            to_user_name=destination,
        )

        media: WebMessageMediaPayload = {
            "ToUserName": destination,
            "MediaId": descriptor.remote_media_id or "",
            "MsgType": int(message_type_for(PurePath(filename).suffix)),
            "FileName": descriptor.filename,
            "FileSize": descriptor.byte_length,
            "FileMd5": descriptor.checksum,
            "MMFileExt": descriptor.extension,
        }
        if descriptor.signature:
            media["Signature"] = descriptor.signature

        logger.debug("send_media() to=%s media_id=%s MsgType=%s", destination, media["MediaId"], media["MsgType"])
        try:
            ok = await self.bridge.send_media(media)
        except Exception as e:
            logger.error("send_media() exception: %s", e)
            raise
        if not ok:
            raise TransportCommandError("send_media failed", {"to": destination, "media_id": media["MediaId"]})

    async def message_forward(self, receiver: Receiver, message_id: str) -> None:
        destination = receiver.destination
        raw = await self.message_raw_payload(message_id)

        size = int(raw.get("FileSize") or 0)
        limit = self.settings.media.large_file_bytes
        if size >= limit and not raw.get("Signature"):
            logger.warning("message_forward(%s): files over %d bytes cannot be forwarded without a Signature", message_id, limit)
            raise MediaTooLargeError(
                "files of 25MB or more can not be forwarded without a Signature",
                size=size,
                limit=limit,
            )

        patch: dict = {
            "FromUserName": self.user_id or "",
            "isTranspond": True,
            "MsgIdBeforeTranspond": raw.get("MsgIdBeforeTranspond") or raw.get("MsgId"),
            "MMSourceMsgId": raw.get("MsgId"),
            "Content": forward_content(raw.get("Content")),
            "MMIsChatRoom": bool(receiver.room_id),
            "ToUserName": destination,
        }
        base = {**raw, **patch}

        try:
            ok = await self.bridge.forward(base, patch)  # type: ignore[arg-type]
        except Exception as e:
            logger.error("message_forward() exception: %s", e)
            raise
        if not ok:
            raise TransportCommandError("forward failed", {"message_id": message_id, "to": destination})

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def contact_payload(self, contact_id: str) -> CanonicalContact:
        return await self.normalizer.contact_payload(contact_id)

    async def contact_find_all(self, query: Mapping[str, Union[str, Pattern[str]]]) -> List[str]:
        predicate = contact_predicate(query)
        try:
            return await self.bridge.contact_find(predicate)
        except Exception as e:
            logger.warning("contact_find_all(%s) rejected: %s", predicate, e)
            raise

    async def contact_alias(self, contact_id: str, alias: Optional[str]) -> None:
        try:
            ok = await self.bridge.contact_alias(contact_id, alias)
        except Exception as e:
            logger.warning("contact_alias(%s, %s) rejected: %s", contact_id, alias, e)
            raise
        if not ok:
            logger.warning("contact_alias(%s, %s) bridge returned false", contact_id, alias)
            raise TransportCommandError("contact_alias failed", {"contact_id": contact_id})

    async def contact_avatar(self, contact_id: str) -> RemoteFile:
        contact = await self.contact_payload(contact_id)
        if not contact.avatar:
            raise PayloadMissingFieldError("avatar", contact_id=contact_id)

        hostname = await self.bridge.hostname()
        if not hostname:
            raise TransportCommandError("no hostname found")
        cookies = await self.bridge.cookies()

        url = f"http://{hostname}{contact.avatar}&type=big"
        logger.debug("contact_avatar(%s) url=%s", contact_id, url)
        return RemoteFile(
            url=url,
            name=f"{contact.name or 'unknown'}-avatar.jpg",
            headers={"Cookie": cookie_header(cookies)},
        )

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def room_payload(self, room_id: str) -> CanonicalRoom:
        return await self.normalizer.room_payload(room_id)

    async def room_find_all(self, topic: Union[str, Pattern[str], None] = None) -> List[str]:
        predicate = room_predicate(topic)
        try:
            return await self.bridge.room_find(predicate)
        except Exception as e:
            logger.warning("room_find_all(%s) rejected: %s", predicate, e)
            raise

    async def room_add(self, room_id: str, contact_id: str) -> None:
        try:
            await self.bridge.room_add_member(room_id, contact_id)
        except Exception as e:
            logger.warning("room_add(%s, %s) rejected: %s", room_id, contact_id, e)
            raise

    async def room_del(self, room_id: str, contact_id: str) -> None:
        try:
            await self.bridge.room_del_member(room_id, contact_id)
        except Exception as e:
            logger.warning("room_del(%s, %s) rejected: %s", room_id, contact_id, e)
            raise

    async def room_topic(self, room_id: str, topic: str) -> str:
        try:
            return await self.bridge.room_mod_topic(room_id, topic)
        except Exception as e:
            logger.warning("room_topic(%s) rejected: %s", topic, e)
            raise

    async def room_create(self, contact_id_list: List[str], topic: str) -> str:
        try:
            room_id = await self.bridge.room_create(contact_id_list, topic)
        except Exception as e:
            logger.warning("room_create(%s, %s) rejected: %s", ",".join(contact_id_list), topic, e)
            raise
        if not room_id:
            raise TransportCommandError(f"room_create() room id {room_id!r} not found", {"topic": topic})
        return room_id

    async def room_quit(self, room_id: str) -> None:
        logger.warning("room_quit(%s) not supported by the web client", room_id)

    # ------------------------------------------------------------------
    # Friend requests
    # ------------------------------------------------------------------

    async def friend_request_send(self, contact_id: str, hello: str) -> None:
        try:
            await self.bridge.verify_user_request(contact_id, hello)
        except Exception as e:
            logger.warning("friend_request_send(%s, %s) rejected: %s", contact_id, hello, e)
            raise

    async def friend_request_accept(self, contact_id: str, ticket: str) -> None:
        try:
            await self.bridge.verify_user_ok(contact_id, ticket)
        except Exception as e:
            logger.warning("friend_request_accept(%s, %s) rejected: %s", contact_id, ticket, e)
            raise


__all__ = ["PuppetWeb", "FACADE_EVENTS", "message_type_for", "forward_content"]
