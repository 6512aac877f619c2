"""Mapping of raw web client payloads onto canonical message, contact and room records."""
from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlsplit

from .backend.bridge import TransportBridge
from .config import MediaSettings, StabilizationSettings
from .errors import PayloadMissingFieldError, TransportCommandError, UnsupportedMediaKindError
from .models import (
    CanonicalContact,
    CanonicalMessage,
    CanonicalRoom,
    ContactType,
    Gender,
    MessageType,
    RemoteFile,
)
from .schemas import (
    WebAppMsgType,
    WebContactRawPayload,
    WebMessageRawPayload,
    WebMessageType,
    WebRoomRawMember,
    WebRoomRawPayload,
    cookie_header,
    is_room_id,
)
from .text import plain_text, strip_emoji

logger = logging.getLogger(__name__)

OFFICIAL_VERIFY_FLAG = 8
MILLISECOND_TIMESTAMP_FLOOR = 1e11
_EXTENSION_RE = re.compile(r"\.[a-z0-9]{1,7}$", re.IGNORECASE)

_TYPE_MAP: Dict[int, MessageType] = {
    WebMessageType.TEXT: MessageType.TEXT,
    WebMessageType.SYS: MessageType.TEXT,  # friend requests arrive as SYS
    WebMessageType.IMAGE: MessageType.IMAGE,
    WebMessageType.EMOTICON: MessageType.IMAGE,
    WebMessageType.VOICE: MessageType.AUDIO,
    WebMessageType.VIDEO: MessageType.VIDEO,
    WebMessageType.MICROVIDEO: MessageType.VIDEO,
    WebMessageType.APP: MessageType.ATTACHMENT,
}


def classify(kind: Any) -> MessageType:
    """Total over every input: unrecognised kinds are read as text."""
    try:
        return _TYPE_MAP[int(kind)]
    except (KeyError, TypeError, ValueError):
        logger.warning("classify(%r): unsupported web message type, treat as TEXT", kind)
        return MessageType.TEXT


def message_date(raw: Mapping[str, Any]) -> Optional[datetime]:
    value = raw.get("MMDisplayTime")
    if value in (None, ""):
        return None
    try:
        stamp = float(value)
    except (TypeError, ValueError):
        logger.warning("message_date(): unparsable MMDisplayTime %r", value)
        return None
    if stamp > MILLISECOND_TIMESTAMP_FLOOR:
        stamp /= 1000.0
    return datetime.fromtimestamp(stamp, tz=timezone.utc)


def extname(raw: Mapping[str, Any]) -> str:
    msg_type = raw.get("MsgType")
    if msg_type == WebMessageType.EMOTICON:
        return ".gif"
    if msg_type == WebMessageType.IMAGE:
        return ".jpg"
    if msg_type in (WebMessageType.VIDEO, WebMessageType.MICROVIDEO):
        return ".mp4"
    if msg_type == WebMessageType.VOICE:
        return ".mp3"
    if msg_type == WebMessageType.APP and raw.get("AppMsgType") == WebAppMsgType.URL:
        return ".url"
    if msg_type == WebMessageType.TEXT and raw.get("SubMsgType") == WebMessageType.LOCATION:
        return ".jpg"
    return f".{msg_type}"


def filename_for(raw: Mapping[str, Any]) -> Optional[str]:
    filename = raw.get("FileName") or raw.get("MediaId") or raw.get("MsgId")
    if not filename:
        return None
    filename = str(filename)
    if not _EXTENSION_RE.search(filename):
        ext = raw.get("MMAppMsgFileExt")
        filename += f".{ext}" if ext else extname(raw)
    return filename


def room_member_count(raw: Optional[Mapping[str, Any]]) -> int:
    if not raw:
        return 0
    return len(raw.get("MemberList") or [])


class PayloadNormalizer:
    """Stateless translation layer; the bridge is borrowed for lookups."""

    def __init__(
        self,
        bridge: TransportBridge,
        media: MediaSettings,
        stabilization: StabilizationSettings,
    ) -> None:
        self.bridge = bridge
        self.media = media
        self.stabilization = stabilization

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def normalize_message(self, raw: WebMessageRawPayload, *, strict: bool = True) -> CanonicalMessage:
        """Canonical form of one raw message.

        With ``strict=False`` a message whose file cannot be located is still
        returned with ``file=None``; an app message without a file becomes TEXT.
        """
        logger.debug("normalize_message(MsgId=%s, MsgType=%s)", raw.get("MsgId"), raw.get("MsgType"))

        room_id: Optional[str] = None
        to_id: Optional[str] = None

        if raw.get("MMIsChatRoom"):
            from_user = raw.get("FromUserName")
            to_user = raw.get("ToUserName")
            if is_room_id(from_user):
                room_id = from_user
            elif is_room_id(to_user):
                room_id = to_user
            else:
                raise PayloadMissingFieldError(
                    "room",
                    "room message but neither FromUserName nor ToUserName is a room (@@)",
                    message_id=raw.get("MsgId"),
                )

        to_user_name = raw.get("ToUserName")
        if to_user_name and not is_room_id(to_user_name):
            to_id = to_user_name

        message_type = classify(raw.get("MsgType"))
        payload = CanonicalMessage(
            id=raw.get("MsgId"),
            type=message_type,
            from_id=raw.get("MMActualSender"),
            to_id=to_id,
            room_id=room_id,
            text=raw.get("MMActualContent") or "",
            date=message_date(raw),
        )

        if self._has_binary(raw, message_type):
            try:
                payload.file = await self.remote_file(raw)
            except (PayloadMissingFieldError, UnsupportedMediaKindError) as e:
                if strict:
                    raise
                logger.warning("normalize_message(%s): delivered without a file: %s", payload.id, e)
                if payload.type is MessageType.ATTACHMENT:
                    payload.type = MessageType.TEXT
        return payload

    @staticmethod
    def _has_binary(raw: Mapping[str, Any], message_type: MessageType) -> bool:
        if message_type not in (MessageType.TEXT, MessageType.UNKNOWN):
            return True
        return raw.get("MsgType") == WebMessageType.TEXT and raw.get("SubMsgType") == WebMessageType.LOCATION

    async def media_url(self, raw: WebMessageRawPayload) -> Optional[str]:
        msg_type = raw.get("MsgType")
        msg_id = raw.get("MsgId") or ""

        if msg_type == WebMessageType.EMOTICON:
            return await self.bridge.get_msg_emoticon(msg_id)
        if msg_type == WebMessageType.IMAGE:
            return await self.bridge.get_msg_img(msg_id)
        if msg_type in (WebMessageType.VIDEO, WebMessageType.MICROVIDEO):
            return await self.bridge.get_msg_video(msg_id)
        if msg_type == WebMessageType.VOICE:
            return await self.bridge.get_msg_voice(msg_id)
        if msg_type == WebMessageType.APP:
            app_type = raw.get("AppMsgType")
            if app_type == WebAppMsgType.ATTACH:
                if not raw.get("MMAppMsgDownloadUrl"):
                    raise PayloadMissingFieldError("MMAppMsgDownloadUrl", message_id=msg_id)
                return raw["MMAppMsgDownloadUrl"]
            if app_type in (WebAppMsgType.URL, WebAppMsgType.READER_TYPE):
                if not raw.get("Url"):
                    raise PayloadMissingFieldError("Url", message_id=msg_id)
                return raw["Url"]
            logger.warning("media_url(%s): unsupported app message type %s", msg_id, app_type)
            raise UnsupportedMediaKindError(
                f"unsupported app message type: {app_type}",
                {"message_id": msg_id, "app_msg_type": app_type},
            )
        if msg_type == WebMessageType.TEXT and raw.get("SubMsgType") == WebMessageType.LOCATION:
            return await self.bridge.get_msg_public_link_img(msg_id)
        return None

    async def remote_file(self, raw: WebMessageRawPayload) -> RemoteFile:
        url = await self.media_url(raw)
        if not url:
            raise PayloadMissingFieldError("url", f"no url for message type {raw.get('MsgType')}", message_id=raw.get("MsgId"))

        # https only works for the very first request against the media host
        url = re.sub(r"^https", "http", url, flags=re.IGNORECASE)

        filename = filename_for(raw)
        if not filename:
            raise PayloadMissingFieldError("filename", message_id=raw.get("MsgId"))

        cookies = await self.bridge.cookies()
        headers = {
            "User-Agent": self.media.user_agent,
            "Accept": "*/*",
            "Host": urlsplit(url).hostname or "",
            "Referer": url,
            "Range": "bytes=0-",
            "Accept-Encoding": "identity;q=1, *;q=0",
            "Accept-Language": self.media.accept_language,
            "Cookie": cookie_header(cookies),
        }
        return RemoteFile(url=url, name=filename, headers=headers)

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def normalize_contact(self, raw: Optional[WebContactRawPayload]) -> CanonicalContact:
        if not raw:
            logger.error("normalize_contact() got empty raw payload")
            return CanonicalContact(gender=Gender.UNKNOWN, type=ContactType.UNKNOWN)

        user_name = raw.get("UserName")
        official = bool(user_name) and not is_room_id(user_name) and bool(
            int(raw.get("VerifyFlag") or 0) & OFFICIAL_VERIFY_FLAG
        )
        stranger = raw.get("stranger")

        try:
            gender = Gender(int(raw.get("Sex") or 0))
        except ValueError:
            gender = Gender.UNKNOWN

        return CanonicalContact(
            id=user_name,
            gender=gender,
            type=ContactType.OFFICIAL if official else ContactType.PERSONAL,
            weixin=raw.get("Alias"),
            name=plain_text(raw.get("NickName") or ""),
            alias=raw.get("RemarkName"),
            province=raw.get("Province"),
            city=raw.get("City"),
            signature=raw.get("Signature"),
            address=raw.get("Alias"),
            star=bool(raw.get("StarFriend")),
            friend=None if stranger is None else not stranger,
            avatar=raw.get("HeadImgUrl"),
        )

    async def contact_payload(self, contact_id: str) -> CanonicalContact:
        try:
            raw = await self.bridge.get_contact(contact_id)
        except Exception as e:
            logger.error("contact_payload(%s) exception: %s", contact_id, e)
            raise
        return self.normalize_contact(raw)

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def room_raw_payload(self, room_id: str) -> WebRoomRawPayload:
        """Fetch the room until two consecutive fetches report the same non-zero member count.

        Gives up after ``room_attempts`` fetches and returns the last payload,
        which may still be incomplete.
        """
        attempts = max(1, self.stabilization.room_attempts)
        raw: Optional[WebRoomRawPayload] = None
        previous = 0

        for attempt in range(1, attempts + 1):
            raw = await self.bridge.get_contact(room_id)  # type: ignore[assignment]
            current = room_member_count(raw)
            logger.debug("room_raw_payload(%s) MemberList.length=%d at attempt %d/%d", room_id, current, attempt, attempts)

            if current > 0 and current == previous:
                logger.debug("room_raw_payload(%s) stable at attempt %d", room_id, attempt)
                break
            previous = current

            if attempt < attempts:
                await asyncio.sleep(self.stabilization.room_interval)
        else:
            logger.warning("room_raw_payload(%s) member list not stable after %d attempts", room_id, attempts)

        if raw is None:
            raise TransportCommandError(f"no payload for room {room_id}", {"room_id": room_id})
        return raw

    async def normalize_room(self, raw: WebRoomRawPayload) -> CanonicalRoom:
        members: List[WebRoomRawMember] = [m for m in (raw.get("MemberList") or []) if m.get("UserName")]
        contacts = await asyncio.gather(*(self.contact_payload(m["UserName"]) for m in members))

        name_map: Dict[str, str] = {}
        room_alias_map: Dict[str, str] = {}
        contact_alias_map: Dict[str, str] = {}
        for member, contact in zip(members, contacts):
            member_id = member["UserName"]
            name_map[member_id] = strip_emoji(contact.name)
            room_alias_map[member_id] = strip_emoji(member.get("DisplayName") or "")
            contact_alias_map[member_id] = strip_emoji(contact.alias or "")

        return CanonicalRoom(
            id=raw.get("UserName"),
            topic=plain_text(raw.get("NickName") or ""),
            member_id_list=[m["UserName"] for m in members],
            name_map=name_map,
            room_alias_map=room_alias_map,
            contact_alias_map=contact_alias_map,
        )

    async def room_payload(self, room_id: str) -> CanonicalRoom:
        raw = await self.room_raw_payload(room_id)
        return await self.normalize_room(raw)


__all__ = [
    "PayloadNormalizer",
    "classify",
    "filename_for",
    "extname",
    "message_date",
    "room_member_count",
]
