"""Upload of local files to the web client's media endpoints."""
from __future__ import annotations

import hashlib
import itertools
import json
import logging
import mimetypes
import time
from email.utils import formatdate
from pathlib import PurePath
from typing import Any, Dict, Iterator, Optional

from .backend.bridge import TransportBridge
from .backend.http_client import WebHttpClient
from .config import MediaSettings
from .errors import (
    MediaTooLargeError,
    TransportCommandError,
    UnsupportedMediaKindError,
    UploadHandshakeError,
    UploadSubmitError,
)
from .models import MediaDescriptor
from .schemas import WebMediaType, cookie_header

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".bmp", ".jpeg", ".jpg", ".png", ".gif"})
VIDEO_EXTENSIONS = frozenset({".mp4"})

UPLOAD_TYPE = 2
CHECK_FILE_TYPE = 7  # the check-upload endpoint fails without it
DATA_TICKET_COOKIE = "webwx_data_ticket"

# value of the "mediatype" form field expected by the upload endpoint
FORM_MEDIA_TYPES = {
    WebMediaType.IMAGE: "pic",
    WebMediaType.VIDEO: "video",
    WebMediaType.AUDIO: "doc",
    WebMediaType.ATTACHMENT: "doc",
}


def media_kind_for(extension: str) -> WebMediaType:
    extension = extension.lower()
    if extension in IMAGE_EXTENSIONS:
        return WebMediaType.IMAGE
    if extension in VIDEO_EXTENSIONS:
        return WebMediaType.VIDEO
    return WebMediaType.ATTACHMENT


def content_type_for(filename: str) -> Optional[str]:
    content_type, _ = mimetypes.guess_type(filename, strict=False)
    return content_type


def md5_hex(content: bytes) -> str:
    return hashlib.md5(content).hexdigest()


class MediaTransferPipeline:
    """Checksum, size gates, optional check-upload handshake and multipart submission.

    Nothing is retried and nothing is cached between calls: a failed upload is
    re-run from the start by the caller.
    """

    def __init__(
        self,
        bridge: TransportBridge,
        http: WebHttpClient,
        settings: MediaSettings,
        *,
        media_ids: Optional[Iterator[int]] = None,
    ) -> None:
        self.bridge = bridge
        self.http = http
        self.settings = settings
        self._media_ids = media_ids if media_ids is not None else itertools.count()

    def next_client_file_id(self) -> str:
        return f"WU_FILE_{next(self._media_ids)}"

    def check_size(self, size: int, kind: WebMediaType) -> None:
        mb = 1024 * 1024
        if kind is WebMediaType.VIDEO and size > self.settings.max_video_bytes:
            raise MediaTooLargeError(
                f"Sending video files is not allowed to exceed {self.settings.max_video_bytes // mb}MB",
                size=size,
                limit=self.settings.max_video_bytes,
            )
        if size > self.settings.max_file_bytes:
            raise MediaTooLargeError(
                f"Sending files is not allowed to exceed {self.settings.max_file_bytes // mb}MB",
                size=size,
                limit=self.settings.max_file_bytes,
            )

    def needs_check_upload(self, size: int) -> bool:
        return size > self.settings.large_file_bytes

    async def upload(
        self,
        filename: str,
        content: bytes,
        *,
        from_user_name: str,
        to_user_name: str,
    ) -> MediaDescriptor:
        extension = PurePath(filename).suffix
        content_type = content_type_for(filename)
        if not content_type:
            raise UnsupportedMediaKindError(f"no MIME type found for {filename}", {"filename": filename})
        kind = media_kind_for(extension)
        size = len(content)
        self.check_size(size, kind)

        checksum = md5_hex(content)

        base_request = await self._base_request()
        pass_ticket = await self.bridge.get_pass_ticket()
        upload_url = await self.bridge.get_upload_media_url()
        check_upload_url = await self.bridge.get_check_upload_url()
        cookies = await self.bridge.cookies()
        hostname = await self.bridge.hostname()
        data_ticket = next((c.get("value") for c in cookies if c.get("name") == DATA_TICKET_COOKIE), None)

        headers = {
            "Referer": f"https://{hostname}",
            "User-Agent": self.settings.user_agent,
            "Cookie": cookie_header(cookies),
        }

        upload_request: Dict[str, Any] = {
            "BaseRequest": base_request,
            "FileMd5": checksum,
            "FromUserName": from_user_name,
            "ToUserName": to_user_name,
            "UploadType": UPLOAD_TYPE,
            "ClientMediaId": int(time.time() * 1000),
            "MediaType": int(WebMediaType.ATTACHMENT),
            "StartPos": 0,
            "DataLen": size,
            "TotalLen": size,
        }

        signature: Optional[str] = None
        if self.needs_check_upload(size):
            check = await self.http.check_upload(
                f"https://{hostname}{check_upload_url}",
                headers,
                {
                    "BaseRequest": base_request,
                    "FromUserName": from_user_name,
                    "ToUserName": to_user_name,
                    "FileName": filename,
                    "FileSize": size,
                    "FileMd5": checksum,
                    "FileType": CHECK_FILE_TYPE,
                },
            )
            signature = check.get("Signature")
            if not signature:
                logger.error("upload(%s): check upload returned no Signature", filename)
                raise UploadHandshakeError("check upload failed to get Signature", {"filename": filename})
            upload_request["Signature"] = signature
            upload_request["AESKey"] = check.get("AESKey") or ""

        logger.debug("upload(%s): webwx_data_ticket=%s pass_ticket=%s", filename, data_ticket, pass_ticket)

        fields = {
            "id": self.next_client_file_id(),
            "name": filename,
            "type": content_type,
            "lastModifiedDate": formatdate(usegmt=True),
            "size": str(size),
            "mediatype": FORM_MEDIA_TYPES[kind],
            "uploadmediarequest": json.dumps(upload_request, separators=(",", ":"), ensure_ascii=False),
            "webwx_data_ticket": data_ticket or "",
            "pass_ticket": pass_ticket or "",
        }
        body = await self.http.upload_media(
            f"{upload_url}?f=json",
            headers,
            fields,
            (filename, content, content_type),
        )

        media_id = body.get("MediaId")
        if not media_id:
            logger.error("upload(%s): no MediaId in %s", filename, body)
            raise UploadSubmitError(f"upload of {filename} returned no MediaId", {"filename": filename})

        descriptor = MediaDescriptor(
            filename=filename,
            byte_length=size,
            checksum=checksum,
            media_kind=kind,
            to_user_name=to_user_name,
            extension=extension,
            signature=signature,
        )
        logger.info("upload(%s): done media_id=%s", filename, media_id)
        return descriptor.with_remote_id(media_id)

    async def _base_request(self) -> Any:
        raw = await self.bridge.get_base_request()
        try:
            return json.loads(raw)["BaseRequest"]
        except (TypeError, ValueError, KeyError) as e:
            raise TransportCommandError("bridge returned an unusable base request", {"raw": raw}) from e


__all__ = ["MediaTransferPipeline", "media_kind_for", "content_type_for", "md5_hex"]
