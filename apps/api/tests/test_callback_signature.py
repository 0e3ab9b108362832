from urllib.parse import parse_qs, urlsplit

import pytest

from config import settings
from services.callback_signature import (
    CallbackSignatureConfigError,
    SignatureCheck,
    compute_signature,
    sign_callback_url,
    verify_callback_signature,
)


SECRET = "callback-secret-for-tests-0123456789"
NOW_MS = 1_760_000_000_000


@pytest.fixture(autouse=True)
def callback_secret(monkeypatch):
    monkeypatch.setattr(settings, "CALLBACK_HMAC_SECRET", SECRET)
    monkeypatch.setattr(settings, "CALLBACK_SIGNATURE_TTL_HOURS", 24)


def test_signed_url_round_trips_through_verification():
    url = sign_callback_url("https://api.test/video/callback/evolink", "vid_abc", now=NOW_MS)

    parts = urlsplit(url)
    query = parse_qs(parts.query)
    assert parts.path == "/video/callback/evolink"
    assert query["videoUuid"] == ["vid_abc"]
    assert query["ts"] == [str(NOW_MS)]
    assert query["sig"] == [compute_signature("vid_abc", str(NOW_MS))]

    check = verify_callback_signature("vid_abc", query["ts"][0], query["sig"][0], now=NOW_MS + 1000)
    assert check == SignatureCheck.VALID


def test_signing_replaces_stale_signature_params():
    url = sign_callback_url("https://api.test/cb?keep=1&sig=old&ts=1", "vid_abc", now=NOW_MS)
    query = parse_qs(urlsplit(url).query)
    assert query["keep"] == ["1"]
    assert query["ts"] == [str(NOW_MS)]
    assert query["sig"] != ["old"]


def test_signature_bound_to_video_uuid():
    signature = compute_signature("vid_abc", str(NOW_MS))
    assert verify_callback_signature("vid_other", str(NOW_MS), signature, now=NOW_MS) == SignatureCheck.INVALID
    assert verify_callback_signature("vid_abc", str(NOW_MS), "0" * 64, now=NOW_MS) == SignatureCheck.INVALID


def test_expired_and_malformed_timestamps():
    signature = compute_signature("vid_abc", str(NOW_MS))
    day_ms = 24 * 60 * 60 * 1000
    assert verify_callback_signature("vid_abc", str(NOW_MS), signature, now=NOW_MS + day_ms) == SignatureCheck.VALID
    assert (
        verify_callback_signature("vid_abc", str(NOW_MS), signature, now=NOW_MS + day_ms + 1)
        == SignatureCheck.EXPIRED
    )
    assert verify_callback_signature("vid_abc", "yesterday", signature, now=NOW_MS) == SignatureCheck.EXPIRED


def test_missing_secret(monkeypatch):
    monkeypatch.setattr(settings, "CALLBACK_HMAC_SECRET", "")
    with pytest.raises(CallbackSignatureConfigError):
        sign_callback_url("https://api.test/cb", "vid_abc", now=NOW_MS)
    assert verify_callback_signature("vid_abc", str(NOW_MS), "abc", now=NOW_MS) == SignatureCheck.INVALID
