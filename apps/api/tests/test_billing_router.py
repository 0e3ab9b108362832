import hashlib
import hmac
import json

import pytest

from config import settings
from services.session_token import create_session_token


BILLING_USER_ID = "billing-user"
AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(BILLING_USER_ID)['token']}"}
BILLING_SECRET = "billing-secret-for-tests-0123456789"


def _signed(body):
    raw = json.dumps(body).encode("utf-8")
    signature = hmac.new(BILLING_SECRET.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return raw, {"X-Billing-Signature": signature, "Content-Type": "application/json"}


@pytest.fixture
def billing_secret(monkeypatch):
    monkeypatch.setattr(settings, "BILLING_WEBHOOK_SECRET", BILLING_SECRET)


@pytest.mark.asyncio
async def test_credits_summary_for_new_user(api_client):
    response = await api_client.get("/billing/credits", headers=AUTH_HEADER)
    assert response.status_code == 200
    assert response.json() == {
        "totalCredits": 0,
        "usedCredits": 0,
        "frozenCredits": 0,
        "availableCredits": 0,
        "expiringSoon": 0,
    }


@pytest.mark.asyncio
async def test_welcome_credits_are_granted_once(api_client):
    first = await api_client.post("/billing/welcome", headers=AUTH_HEADER)
    second = await api_client.post("/billing/welcome", headers=AUTH_HEADER)

    assert first.json()["granted"] is True
    assert first.json()["packageId"]
    assert second.json() == {"granted": False, "packageId": None}

    credits = await api_client.get("/billing/credits", headers=AUTH_HEADER)
    assert credits.json()["availableCredits"] == settings.NEW_USER_GIFT_CREDITS


@pytest.mark.asyncio
async def test_grant_requires_configured_secret(api_client, monkeypatch):
    monkeypatch.setattr(settings, "BILLING_WEBHOOK_SECRET", "")
    raw, headers = _signed({"userId": BILLING_USER_ID, "credits": 50, "orderNo": "ord-1"})
    response = await api_client.post("/billing/grant", content=raw, headers=headers)
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_grant_rejects_bad_signature(api_client, billing_secret):
    raw, headers = _signed({"userId": BILLING_USER_ID, "credits": 50, "orderNo": "ord-1"})
    headers["X-Billing-Signature"] = "0" * 64
    response = await api_client.post("/billing/grant", content=raw, headers=headers)
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "InvalidSignature"


@pytest.mark.asyncio
async def test_grant_is_idempotent_by_order(api_client, billing_secret):
    raw, headers = _signed({"userId": BILLING_USER_ID, "credits": 50, "orderNo": "ord-1"})

    first = await api_client.post("/billing/grant", content=raw, headers=headers)
    replay = await api_client.post("/billing/grant", content=raw, headers=headers)

    assert first.status_code == 200
    assert first.json()["ok"] is True
    assert replay.json()["packageId"] == first.json()["packageId"]

    credits = await api_client.get("/billing/credits", headers=AUTH_HEADER)
    assert credits.json()["availableCredits"] == 50


@pytest.mark.asyncio
async def test_grant_rejects_non_grant_types_and_bad_bodies(api_client, billing_secret):
    raw, headers = _signed(
        {"userId": BILLING_USER_ID, "credits": 50, "orderNo": "ord-2", "transType": "VIDEO_CONSUME"}
    )
    response = await api_client.post("/billing/grant", content=raw, headers=headers)
    assert response.status_code == 422

    raw, headers = _signed({"userId": BILLING_USER_ID, "credits": -5, "orderNo": "ord-3"})
    response = await api_client.post("/billing/grant", content=raw, headers=headers)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_history_lists_ledger_entries(api_client, ledger, billing_secret):
    for index in range(3):
        raw, headers = _signed(
            {"userId": BILLING_USER_ID, "credits": 10, "orderNo": f"ord-{index}", "transType": "SUBSCRIPTION"}
        )
        assert (await api_client.post("/billing/grant", content=raw, headers=headers)).status_code == 200
    await api_client.post("/billing/welcome", headers=AUTH_HEADER)

    page = await api_client.get("/billing/history", params={"limit": 2}, headers=AUTH_HEADER)
    body = page.json()
    assert body["total"] == 4
    assert len(body["transactions"]) == 2
    assert body["hasMore"] is True
    assert body["nextCursor"] == 2
    assert {"transNo", "transType", "credits", "balanceAfter", "createdAt"} <= set(body["transactions"][0])

    subscriptions = await api_client.get("/billing/history", params={"type": "SUBSCRIPTION"}, headers=AUTH_HEADER)
    assert subscriptions.json()["total"] == 3
    assert {entry["transType"] for entry in subscriptions.json()["transactions"]} == {"SUBSCRIPTION"}
