"""Identity handles and the signed entitlement claims carried by tokens."""
from __future__ import annotations

from datetime import datetime, timezone

import jwt

from .records import Anonymous, Authenticated, Identity, VerifiedClaim

ALGORITHM = "HS256"


class InvalidIdentityToken(Exception):
    pass


def resolve_identity(
    device_id: str, token: str | None, secret: str
) -> tuple[Identity, VerifiedClaim | None]:
    """Anonymous without a token, otherwise the token's subject."""
    if not device_id or not device_id.strip():
        raise InvalidIdentityToken("device id is required")
    if not token:
        return Anonymous(device_id=device_id.strip()), None
    try:
        claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.PyJWTError as exc:
        raise InvalidIdentityToken(str(exc)) from exc
    uid = claims.get("sub")
    if not uid:
        raise InvalidIdentityToken("token has no subject")
    return Authenticated(uid=str(uid), device_id=device_id.strip()), read_claim(claims)


def read_claim(claims: dict) -> VerifiedClaim | None:
    """``isPro`` + ``subscriptionExpiry`` (epoch ms) as set by the billing backend."""
    if not claims.get("isPro"):
        return None
    try:
        expiry_ms = int(claims.get("subscriptionExpiry") or 0)
    except (TypeError, ValueError):
        return None
    if expiry_ms <= 0:
        return None
    return VerifiedClaim(
        is_pro=True,
        expires_at=datetime.fromtimestamp(expiry_ms / 1000, tz=timezone.utc),
    )


__all__ = ["InvalidIdentityToken", "read_claim", "resolve_identity"]
