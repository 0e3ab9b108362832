"""Signed provider callback URLs.

The signature binds a video uuid to a millisecond timestamp:
``hex(HMAC-SHA256(secret, "{video_uuid}:{ts}"))``.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import time
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from config import settings


class CallbackSignatureConfigError(RuntimeError):
    """Raised when callback signing is attempted without a secret."""


class SignatureCheck(str, enum.Enum):
    VALID = "VALID"
    EXPIRED = "EXPIRED"
    INVALID = "INVALID"


def _secret(secret: Optional[str] = None) -> str:
    value = (secret if secret is not None else settings.CALLBACK_HMAC_SECRET) or ""
    if not value.strip():
        raise CallbackSignatureConfigError("CALLBACK_HMAC_SECRET is not configured")
    return value


def _now_ms() -> int:
    return int(time.time() * 1000)


def compute_signature(video_uuid: str, timestamp: str, *, secret: Optional[str] = None) -> str:
    message = f"{video_uuid}:{timestamp}".encode("utf-8")
    return hmac.new(_secret(secret).encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_callback_url(base_url: str, video_uuid: str, now: Optional[int] = None) -> str:
    """Append ``videoUuid``, ``ts`` and ``sig`` query params to ``base_url``."""
    timestamp = str(int(now) if now is not None else _now_ms())
    signature = compute_signature(video_uuid, timestamp)

    parts = urlsplit(base_url)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in {"videoUuid", "ts", "sig"}
    ]
    query.extend([("videoUuid", video_uuid), ("ts", timestamp), ("sig", signature)])
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def verify_callback_signature(
    video_uuid: str,
    timestamp: str,
    signature: str,
    now: Optional[int] = None,
) -> SignatureCheck:
    try:
        issued_at = int(str(timestamp))
    except (TypeError, ValueError):
        return SignatureCheck.EXPIRED

    ttl_ms = max(int(settings.CALLBACK_SIGNATURE_TTL_HOURS), 1) * 60 * 60 * 1000
    current = int(now) if now is not None else _now_ms()
    if current - issued_at > ttl_ms:
        return SignatureCheck.EXPIRED

    try:
        expected = compute_signature(video_uuid, str(timestamp))
    except CallbackSignatureConfigError:
        return SignatureCheck.INVALID
    if not hmac.compare_digest(str(signature or "").encode("utf-8"), expected.encode("utf-8")):
        return SignatureCheck.INVALID
    return SignatureCheck.VALID
