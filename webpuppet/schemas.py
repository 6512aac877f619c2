"""Raw payload shapes produced by the web chat client.

Field names follow the client's own JSON. Every field is optional: the
transport returns partial records while the page is still loading.
"""
from __future__ import annotations

import enum
from typing import List, TypedDict

ROOM_ID_PREFIX = "@@"


class WebMessageType(enum.IntEnum):
    TEXT = 1
    IMAGE = 3
    VOICE = 34
    VERIFYMSG = 37
    POSSIBLEFRIEND_MSG = 40
    SHARECARD = 42
    VIDEO = 43
    EMOTICON = 47
    LOCATION = 48
    APP = 49
    VOIPMSG = 50
    STATUSNOTIFY = 51
    VOIPNOTIFY = 52
    VOIPINVITE = 53
    MICROVIDEO = 62
    SYSNOTICE = 9999
    SYS = 10000
    RECALLED = 10002


class WebAppMsgType(enum.IntEnum):
    TEXT = 1
    IMG = 2
    AUDIO = 3
    VIDEO = 4
    URL = 5
    ATTACH = 6
    OPEN = 7
    EMOJI = 8
    VOICE_REMIND = 9
    SCAN_GOOD = 10
    GOOD = 13
    EMOTION = 15
    CARD_TICKET = 16
    REALTIME_SHARE_LOCATION = 17
    TRANSFERS = 2000
    RED_ENVELOPES = 2001
    READER_TYPE = 100001


class WebMediaType(enum.IntEnum):
    IMAGE = 1
    VIDEO = 2
    AUDIO = 3
    ATTACHMENT = 4


class WebMessageRawPayload(TypedDict, total=False):
    MsgId: str
    MsgType: int
    SubMsgType: int
    AppMsgType: int
    FromUserName: str
    ToUserName: str
    Content: str
    MMActualSender: str
    MMActualContent: str
    MMDisplayTime: float
    MMIsChatRoom: bool
    MMPeerUserName: str
    FileName: str
    FileSize: int
    MediaId: str
    MMAppMsgFileExt: str
    MMAppMsgDownloadUrl: str
    MMFileExt: str
    Url: str
    Signature: str
    MsgIdBeforeTranspond: str


class WebContactRawPayload(TypedDict, total=False):
    UserName: str
    Alias: str
    NickName: str
    RemarkName: str
    Sex: int
    Province: str
    City: str
    Signature: str
    StarFriend: int
    stranger: bool
    HeadImgUrl: str
    VerifyFlag: int
    Uin: int


class WebRoomRawMember(TypedDict, total=False):
    UserName: str
    NickName: str
    DisplayName: str


class WebRoomRawPayload(TypedDict, total=False):
    UserName: str
    NickName: str
    EncryChatRoomId: str
    OwnerUin: int
    MemberList: List[WebRoomRawMember]


class WebMessageMediaPayload(TypedDict, total=False):
    ToUserName: str
    MediaId: str
    MsgType: int
    FileName: str
    FileSize: int
    FileMd5: str
    MMFileExt: str
    Signature: str


class Cookie(TypedDict, total=False):
    name: str
    value: str
    domain: str
    path: str
    expires: float
    httpOnly: bool
    secure: bool
    sameSite: str


def is_room_id(user_name: object) -> bool:
    return isinstance(user_name, str) and user_name.startswith(ROOM_ID_PREFIX)


def cookie_header(cookies: List[Cookie]) -> str:
    return "; ".join(f"{c.get('name', '')}={c.get('value', '')}" for c in cookies)


__all__ = [
    "ROOM_ID_PREFIX",
    "WebMessageType",
    "WebAppMsgType",
    "WebMediaType",
    "WebMessageRawPayload",
    "WebContactRawPayload",
    "WebRoomRawMember",
    "WebRoomRawPayload",
    "WebMessageMediaPayload",
    "Cookie",
    "is_room_id",
    "cookie_header",
]
