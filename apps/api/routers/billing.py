"""Billing and credits router."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.credit_package import CreditTransType
from routers.auth_scope import AuthContext, ensure_user_row, get_auth_context
from routers.dependencies import get_credit_ledger
from routers.rate_limit import rate_limit
from services.credits import GRANT_TRANS_TYPES, CreditLedger, serialize_transaction

router = APIRouter()
logger = logging.getLogger(__name__)


class GrantCreditsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1, max_length=128)
    credits: int = Field(ge=1, le=1_000_000)
    order_no: str = Field(alias="orderNo", min_length=1, max_length=128)
    trans_type: CreditTransType = Field(default=CreditTransType.ORDER_PAY, alias="transType")
    expiry_days: Optional[int] = Field(default=None, alias="expiryDays", ge=1, le=3650)


def _verify_billing_signature(raw_body: bytes, signature: Optional[str]) -> None:
    secret = (settings.BILLING_WEBHOOK_SECRET or "").strip()
    if not secret:
        raise HTTPException(
            status_code=503,
            detail={"code": "BillingNotConfigured", "message": "Credit grants are not configured."},
        )
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not signature or not hmac.compare_digest(signature.strip().lower(), expected):
        raise HTTPException(status_code=401, detail={"code": "InvalidSignature", "message": "Invalid signature"})


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    await ensure_user_row(db, auth)
    balance = await ledger.get_balance(auth.user_id)
    return balance.to_dict()


@router.get("/history")
async def credits_history(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    trans_type: Optional[CreditTransType] = Query(default=None, alias="type"),
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    history = await ledger.get_history(auth.user_id, limit=limit, offset=offset, trans_type=trans_type)
    total = history["total"]
    has_more = offset + len(history["records"]) < total
    return {
        "transactions": [serialize_transaction(entry) for entry in history["records"]],
        "total": total,
        "hasMore": has_more,
        "nextCursor": offset + limit if has_more else None,
    }


@router.post("/welcome")
async def welcome_credits(
    _rate_limit: None = Depends(rate_limit("billing_welcome", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Grant the new-user gift. Repeat calls are no-ops."""
    await ensure_user_row(db, auth)
    package_id = await ledger.grant_new_user_credits(auth.user_id)
    return {"granted": package_id is not None, "packageId": package_id}


@router.post("/grant")
async def grant_credits(
    request: Request,
    x_billing_signature: Optional[str] = Header(default=None),
    _rate_limit: None = Depends(rate_limit("billing_grant", limit=120, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Signed callback from the payment collaborator; idempotent by order number."""
    raw_body = await request.body()
    _verify_billing_signature(raw_body, x_billing_signature)
    try:
        grant = GrantCreditsRequest.model_validate_json(raw_body)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc
    if grant.trans_type not in GRANT_TRANS_TYPES:
        raise HTTPException(
            status_code=422,
            detail={"code": "InvalidTransType", "message": f"{grant.trans_type.value} cannot grant credits"},
        )

    await ensure_user_row(db, AuthContext(user_id=grant.user_id))
    package_id = await ledger.recharge(
        grant.user_id,
        grant.credits,
        grant.order_no,
        trans_type=grant.trans_type,
        expiry_days=grant.expiry_days,
    )
    logger.info("Granted %s credits to %s for order %s", grant.credits, grant.user_id, grant.order_no)
    return {"ok": True, "packageId": package_id}
