from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from irisvision.dependencies import Caller, ErrorResponse, get_engine, rate_limit
from irisvision.errors import BillingVerificationError
from irisvision.models import ErrorCode
from irisvision.services import ScanEngine
from irisvision.services.billing import verify_purchase
from irisvision.services.records import EntitlementRecord

logger = logging.getLogger(__name__)

router = APIRouter()


class QuotaResponse(BaseModel):
    scans_used: int
    weekly_limit: int
    remaining: int | None
    is_premium: bool
    subscription_status: str
    subscription_expiry: datetime | None = None
    resets_at: datetime
    can_scan: bool


class PurchaseRequest(BaseModel):
    purchase_token: str = Field(alias="purchaseToken")
    product_id: str = Field(alias="productId")

    model_config = {"populate_by_name": True}


def _quota(engine: ScanEngine, record: EntitlementRecord) -> QuotaResponse:
    premium = record.is_premium()
    return QuotaResponse(
        scans_used=record.scans_used,
        weekly_limit=record.weekly_limit,
        remaining=None if premium else max(record.weekly_limit - record.scans_used, 0),
        is_premium=premium,
        subscription_status="premium" if premium else "free",
        subscription_expiry=record.subscription_expiry,
        resets_at=record.resets_at(engine.entitlements.reset_period),
        can_scan=record.allows_scan(),
    )


@router.get(
    "/quota",
    response_model=QuotaResponse,
    responses={401: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def get_quota(
    caller: Caller = Depends(rate_limit),
    engine: ScanEngine = Depends(get_engine),
):
    if caller.claim is not None and caller.claim.is_active():
        await engine.entitlements.apply_entitlement(caller.identity, caller.claim)
    await engine.entitlements.reset_if_due(caller.identity)
    record = await engine.entitlements.snapshot(caller.identity)
    return _quota(engine, record)


@router.post(
    "/purchases/verify",
    response_model=QuotaResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def verify(
    body: PurchaseRequest,
    caller: Caller = Depends(rate_limit),
    engine: ScanEngine = Depends(get_engine),
):
    cfg = engine.settings
    try:
        claim = await verify_purchase(
            body.purchase_token,
            body.product_id,
            url=cfg.billing_verify_url,
            api_token=cfg.billing_api_token,
            policy=engine.billing_policy,
        )
    except BillingVerificationError as exc:
        logger.warning("Purchase verification rejected: %s", exc)
        err = ErrorResponse(code=ErrorCode.PAYMENT_INVALID, message=str(exc))
        return JSONResponse(status_code=400, content=err.model_dump())

    record = await engine.entitlements.apply_entitlement(caller.identity, claim)
    logger.info(
        "Premium granted to %s until %s", caller.identity.owner_key, claim.expires_at.isoformat()
    )
    return _quota(engine, record)
