import logging
import os
from datetime import datetime, timedelta, timezone

import httpx

from irisvision.errors import BillingVerificationError

from .records import VerifiedClaim
from .retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

SANDBOX_PERIOD = timedelta(days=7)


def _parse_expiry(raw: object) -> datetime:
    """``expiryTimestamp`` arrives as epoch milliseconds (number or string)."""
    try:
        millis = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise BillingVerificationError("Missing or invalid expiryTimestamp") from exc
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


async def verify_purchase(
    purchase_token: str,
    product_id: str,
    *,
    url: str | None = None,
    api_token: str | None = None,
    policy: RetryPolicy | None = None,
) -> VerifiedClaim:
    """Confirm a store purchase and return the entitlement it grants.

    In development (or without a configured verifier URL) returns a sandbox
    claim valid for one week. In production the verifier is called through
    the retry policy; any failure raises :class:`BillingVerificationError`.
    """
    if not purchase_token or not product_id:
        raise BillingVerificationError("purchaseToken and productId are required")

    env = os.getenv("APP_ENV", "development").lower()
    now = datetime.now(timezone.utc)
    if env != "production" or not url:
        logger.info("Sandbox purchase verification for %s", product_id)
        return VerifiedClaim(is_pro=True, expires_at=now + SANDBOX_PERIOD, product_id=product_id)

    headers = {"Authorization": f"Bearer {api_token}"} if api_token else None
    payload = {"purchaseToken": purchase_token, "productId": product_id}
    policy = policy or RetryPolicy(name="billing")

    async def _call() -> dict:
        async with httpx.AsyncClient(timeout=policy.timeout) as client:
            resp = await client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()

    result = await policy.invoke(_call)
    if not result.ok:
        logger.error("Billing verifier request failed: %s", result.error)
        raise BillingVerificationError("Purchase verification failed") from result.error

    data = result.value
    if not isinstance(data, dict) or not data.get("success") or not data.get("isPro"):
        raise BillingVerificationError("Invalid or inactive subscription")
    expires_at = _parse_expiry(data.get("expiryTimestamp"))
    if expires_at <= now:
        raise BillingVerificationError("Subscription has expired")
    return VerifiedClaim(is_pro=True, expires_at=expires_at, product_id=product_id)


__all__ = ["verify_purchase"]
