"""Error hierarchy for the web puppet.

Every error carries a stable ``kind`` so callers can branch on the cause
instead of parsing message text.
"""
from __future__ import annotations

import enum
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    TRANSPORT_INIT = "transport_init"
    TRANSPORT_COMMAND = "transport_command"
    RECOVERY_EXHAUSTED = "recovery_exhausted"
    PAYLOAD_MISSING_FIELD = "payload_missing_field"
    UNSUPPORTED_MEDIA_KIND = "unsupported_media_kind"
    MEDIA_TOO_LARGE = "media_too_large"
    UPLOAD_HANDSHAKE = "upload_handshake"
    UPLOAD_SUBMIT = "upload_submit"
    STABILIZATION_TIMEOUT = "stabilization_timeout"
    INVALID_QUERY = "invalid_query"
    INVALID_STATE = "invalid_state"


class PuppetError(Exception):
    """Base exception for all puppet errors."""

    kind: ErrorKind

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransportInitError(PuppetError):
    """The bridge failed to init, reload or quit."""

    kind = ErrorKind.TRANSPORT_INIT


class TransportCommandError(PuppetError):
    """The bridge rejected or failed an outbound command."""

    kind = ErrorKind.TRANSPORT_COMMAND


class RecoveryExhaustedError(PuppetError):
    """Both soft and hard recovery failed."""

    kind = ErrorKind.RECOVERY_EXHAUSTED


class PayloadMissingFieldError(PuppetError):
    kind = ErrorKind.PAYLOAD_MISSING_FIELD

    def __init__(self, field: str, message: Optional[str] = None, **details: Any) -> None:
        super().__init__(message or f"raw payload has no {field}", {"field": field, **details})
        self.field = field


class UnsupportedMediaKindError(PuppetError):
    kind = ErrorKind.UNSUPPORTED_MEDIA_KIND


class MediaTooLargeError(PuppetError):
    kind = ErrorKind.MEDIA_TOO_LARGE

    def __init__(self, message: str, *, size: int, limit: int) -> None:
        super().__init__(message, {"size": size, "limit": limit})
        self.size = size
        self.limit = limit


class UploadHandshakeError(PuppetError):
    """The check-upload call was rejected or returned no signature."""

    kind = ErrorKind.UPLOAD_HANDSHAKE


class UploadSubmitError(PuppetError):
    """The multipart upload failed or returned no media id."""

    kind = ErrorKind.UPLOAD_SUBMIT


class StabilizationTimeoutError(PuppetError):
    kind = ErrorKind.STABILIZATION_TIMEOUT


class InvalidQueryError(PuppetError, ValueError):
    kind = ErrorKind.INVALID_QUERY


class InvalidStateError(PuppetError):
    kind = ErrorKind.INVALID_STATE


__all__ = [
    "ErrorKind",
    "PuppetError",
    "TransportInitError",
    "TransportCommandError",
    "RecoveryExhaustedError",
    "PayloadMissingFieldError",
    "UnsupportedMediaKindError",
    "MediaTooLargeError",
    "UploadHandshakeError",
    "UploadSubmitError",
    "StabilizationTimeoutError",
    "InvalidQueryError",
    "InvalidStateError",
]
