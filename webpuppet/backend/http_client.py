"""HTTP client helpers for the web client's media endpoints."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from ..config import MediaSettings
from ..errors import UploadHandshakeError, UploadSubmitError

logger = logging.getLogger(__name__)

FilePart = Tuple[str, bytes, str]


def _decode_body(response: httpx.Response) -> Any:
    """The upload endpoints answer JSON, sometimes labelled text/plain."""
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return json.loads(response.text)


class WebHttpClient:
    """Thin wrapper around the check-upload and upload endpoints."""

    def __init__(self, settings: MediaSettings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.http_timeout, follow_redirects=True)

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def check_upload(self, url: str, headers: Mapping[str, str], payload: Dict[str, Any]) -> Dict[str, Any]:
        """Pre-check a large file; returns the response body when BaseResponse.Ret == 0."""
        try:
            logger.info("web.check_upload: %s size=%s", payload.get("FileName"), payload.get("FileSize"))
            response = await self._client.post(url, headers=dict(headers), json=payload)
            response.raise_for_status()
            body = _decode_body(response)
        except httpx.TimeoutException as e:
            raise UploadHandshakeError("check upload timed out", {"url": url}) from e
        except httpx.NetworkError as e:
            raise UploadHandshakeError(f"check upload network error: {e}", {"url": url}) from e
        except httpx.HTTPStatusError as e:
            raise UploadHandshakeError(
                f"check upload HTTP {e.response.status_code}",
                {"url": url, "status": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise UploadHandshakeError(f"check upload failed: {e}", {"url": url}) from e
        except ValueError as e:
            raise UploadHandshakeError("check upload returned a non-JSON body", {"url": url}) from e

        base_response = body.get("BaseResponse") if isinstance(body, dict) else None
        if not isinstance(base_response, dict) or base_response.get("Ret") != 0:
            logger.error("web.check_upload: rejected %s", base_response or body)
            raise UploadHandshakeError(f"check upload rejected: {base_response or body}", {"url": url})
        return body

    async def upload_media(
        self,
        url: str,
        headers: Mapping[str, str],
        fields: Mapping[str, str],
        file_part: FilePart,
    ) -> Dict[str, Any]:
        """Submit the multipart upload form; the file goes in the ``filename`` part."""
        try:
            logger.info("web.upload_media: %s (%d bytes)", file_part[0], len(file_part[1]))
            response = await self._client.post(
                url,
                headers=dict(headers),
                data=dict(fields),
                files={"filename": file_part},
            )
            response.raise_for_status()
            body = _decode_body(response)
        except httpx.TimeoutException as e:
            raise UploadSubmitError("upload timed out", {"url": url}) from e
        except httpx.NetworkError as e:
            raise UploadSubmitError(f"upload network error: {e}", {"url": url}) from e
        except httpx.HTTPStatusError as e:
            raise UploadSubmitError(
                f"upload HTTP {e.response.status_code}",
                {"url": url, "status": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise UploadSubmitError(f"upload failed: {e}", {"url": url}) from e
        except ValueError as e:
            raise UploadSubmitError("upload returned a non-JSON body", {"url": url}) from e

        if not isinstance(body, dict):
            raise UploadSubmitError(f"upload returned {type(body).__name__}", {"url": url})
        return body

    async def aclose(self) -> None:
        if not self._owns_client:
            return
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)


__all__ = ["WebHttpClient", "FilePart"]
