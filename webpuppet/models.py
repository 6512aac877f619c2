"""Canonical records handed to the messaging framework."""
from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import httpx

from .schemas import WebMediaType


class MessageType(str, enum.Enum):
    UNKNOWN = "unknown"
    ATTACHMENT = "attachment"
    AUDIO = "audio"
    IMAGE = "image"
    TEXT = "text"
    VIDEO = "video"


class Gender(enum.IntEnum):
    UNKNOWN = 0
    MALE = 1
    FEMALE = 2


class ContactType(enum.IntEnum):
    UNKNOWN = 0
    PERSONAL = 1
    OFFICIAL = 2


@dataclass(frozen=True)
class RemoteFile:
    """Binary content that stays on the remote host until read() is called."""

    url: str
    name: str
    headers: Dict[str, str] = field(default_factory=dict)

    async def read(self, client: Optional[httpx.AsyncClient] = None, *, timeout: float = 60.0) -> bytes:
        if client is not None:
            response = await client.get(self.url, headers=self.headers)
            response.raise_for_status()
            return response.content
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as own_client:
            response = await own_client.get(self.url, headers=self.headers)
            response.raise_for_status()
            return response.content


@dataclass
class CanonicalMessage:
    id: Optional[str]
    type: MessageType
    from_id: Optional[str] = None
    to_id: Optional[str] = None
    room_id: Optional[str] = None
    text: str = ""
    date: Optional[datetime] = None
    file: Optional[RemoteFile] = None


@dataclass
class CanonicalContact:
    gender: Gender = Gender.UNKNOWN
    type: ContactType = ContactType.UNKNOWN
    id: Optional[str] = None
    weixin: Optional[str] = None
    name: str = ""
    alias: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    signature: Optional[str] = None
    address: Optional[str] = None
    star: bool = False
    friend: Optional[bool] = None
    avatar: Optional[str] = None


@dataclass
class CanonicalRoom:
    id: Optional[str]
    topic: str = ""
    member_id_list: List[str] = field(default_factory=list)
    name_map: Dict[str, str] = field(default_factory=dict)
    room_alias_map: Dict[str, str] = field(default_factory=dict)
    contact_alias_map: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class MediaDescriptor:
    filename: str
    byte_length: int
    checksum: str
    media_kind: WebMediaType
    to_user_name: str
    extension: str = ""
    signature: Optional[str] = None
    remote_media_id: Optional[str] = None

    @property
    def uploaded(self) -> bool:
        return self.remote_media_id is not None

    def with_remote_id(self, remote_media_id: str) -> "MediaDescriptor":
        if self.remote_media_id is not None:
            raise ValueError(f"{self.filename} already has remote media id {self.remote_media_id}")
        return dataclasses.replace(self, remote_media_id=remote_media_id)


@dataclass(frozen=True)
class Receiver:
    contact_id: Optional[str] = None
    room_id: Optional[str] = None

    @property
    def destination(self) -> str:
        if self.room_id:
            return self.room_id
        if self.contact_id:
            return self.contact_id
        raise ValueError("receiver has neither room nor contact")


__all__ = [
    "MessageType",
    "Gender",
    "ContactType",
    "RemoteFile",
    "CanonicalMessage",
    "CanonicalContact",
    "CanonicalRoom",
    "MediaDescriptor",
    "Receiver",
]
