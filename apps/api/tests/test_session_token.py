from jose import jwt
import pytest

from config import settings
from services.session_token import SESSION_TOKEN_TYPE, create_session_token, decode_session_token


def test_token_round_trip_returns_claims():
    issued = create_session_token("user-42", email="viewer@example.com", expires_hours=2)

    claims = decode_session_token(issued["token"])

    assert claims.user_id == "user-42"
    assert claims.email == "viewer@example.com"
    assert claims.expires_at == issued["expires_at"]


def test_issuer_is_enforced_when_configured(monkeypatch):
    monkeypatch.setattr(settings, "JWT_ISSUER", "auth.video-credits.test")
    token = create_session_token("user-42")["token"]
    assert jwt.get_unverified_claims(token)["iss"] == "auth.video-credits.test"
    assert decode_session_token(token).user_id == "user-42"

    monkeypatch.setattr(settings, "JWT_ISSUER", "someone-else")
    with pytest.raises(ValueError):
        decode_session_token(token)


def test_wrong_type_and_missing_subject_are_rejected():
    other_type = jwt.encode(
        {"sub": "user-42", "type": "refresh"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM
    )
    with pytest.raises(ValueError, match="type"):
        decode_session_token(other_type)

    no_subject = jwt.encode(
        {"sub": " ", "type": SESSION_TOKEN_TYPE}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM
    )
    with pytest.raises(ValueError, match="subject"):
        decode_session_token(no_subject)
