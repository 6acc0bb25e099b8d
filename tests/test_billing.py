from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from irisvision.errors import BillingVerificationError
from irisvision.services import billing
from irisvision.services.billing import verify_purchase
from irisvision.services.retry_policy import RetryPolicy

VERIFY_URL = "https://billing.test/verifyGooglePlayPurchase"


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


@pytest.fixture
def production(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")


@pytest.fixture
def verifier(monkeypatch):
    """Route the verifier's httpx client through a mock transport."""
    calls = []
    state = {"response": None}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return state["response"]

    real_client = httpx.AsyncClient

    def _client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(billing.httpx, "AsyncClient", _client)
    return state, calls


@pytest.mark.asyncio
async def test_sandbox_claim_outside_production(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")
    claim = await verify_purchase("tok", "iris_pro_monthly", url=VERIFY_URL)

    assert claim.is_pro is True
    assert claim.product_id == "iris_pro_monthly"
    assert claim.is_active()
    assert claim.expires_at - datetime.now(timezone.utc) <= timedelta(days=7)


@pytest.mark.asyncio
async def test_missing_arguments_rejected():
    with pytest.raises(BillingVerificationError):
        await verify_purchase("", "iris_pro_monthly")
    with pytest.raises(BillingVerificationError):
        await verify_purchase("tok", "")


@pytest.mark.asyncio
async def test_production_purchase_verified(production, verifier):
    state, calls = verifier
    expiry = datetime.now(timezone.utc) + timedelta(days=30)
    state["response"] = httpx.Response(
        200, json={"success": True, "isPro": True, "expiryTimestamp": str(_ms(expiry))}
    )

    claim = await verify_purchase(
        "tok-123", "iris_pro_monthly", url=VERIFY_URL, api_token="secret"
    )

    assert claim.is_active()
    assert abs((claim.expires_at - expiry).total_seconds()) < 1
    assert len(calls) == 1
    assert calls[0].headers["Authorization"] == "Bearer secret"
    assert b'"purchaseToken":"tok-123"' in calls[0].content.replace(b" ", b"")


@pytest.mark.asyncio
async def test_inactive_subscription_rejected(production, verifier):
    state, _ = verifier
    state["response"] = httpx.Response(200, json={"success": True, "isPro": False})
    with pytest.raises(BillingVerificationError):
        await verify_purchase("tok", "iris_pro_monthly", url=VERIFY_URL)


@pytest.mark.asyncio
async def test_expired_subscription_rejected(production, verifier):
    state, _ = verifier
    past = datetime.now(timezone.utc) - timedelta(days=1)
    state["response"] = httpx.Response(
        200, json={"success": True, "isPro": True, "expiryTimestamp": _ms(past)}
    )
    with pytest.raises(BillingVerificationError):
        await verify_purchase("tok", "iris_pro_monthly", url=VERIFY_URL)


@pytest.mark.asyncio
async def test_verifier_outage_retried_then_rejected(production, verifier):
    state, calls = verifier
    state["response"] = httpx.Response(503)
    with pytest.raises(BillingVerificationError):
        await verify_purchase(
            "tok", "iris_pro_monthly", url=VERIFY_URL, policy=RetryPolicy(1, name="billing")
        )
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_verifier_client_error_not_retried(production, verifier):
    state, calls = verifier
    state["response"] = httpx.Response(400, json={"error": "invalid token"})
    with pytest.raises(BillingVerificationError):
        await verify_purchase("tok", "iris_pro_monthly", url=VERIFY_URL)
    assert len(calls) == 1
