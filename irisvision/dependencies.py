from __future__ import annotations

import logging
from dataclasses import dataclass

import redis.asyncio as redis
from redis.exceptions import RedisError
from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel

from irisvision.config import Settings
from irisvision.models import ErrorCode
from irisvision.services import ScanEngine
from irisvision.services.identity import InvalidIdentityToken, resolve_identity
from irisvision.services.records import Identity, VerifiedClaim

settings = Settings()
redis_client = redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)


logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    code: str
    message: str


@dataclass(frozen=True)
class Caller:
    identity: Identity
    claim: VerifiedClaim | None = None


def _error(status: int, code: ErrorCode, message: str) -> HTTPException:
    err = ErrorResponse(code=code.value, message=message)
    return HTTPException(status_code=status, detail=err.model_dump())


async def require_identity(
    x_api_key: str = Header(..., alias="X-API-Key"),
    x_api_ver: str | None = Header(None, alias="X-API-Ver"),
    x_device_id: str | None = Header(None, alias="X-Device-ID"),
    authorization: str | None = Header(None),
) -> Caller:
    if x_api_ver is None:
        raise _error(426, ErrorCode.UPGRADE_REQUIRED, "Missing API version")

    if x_api_ver != "v1":
        raise _error(426, ErrorCode.UPGRADE_REQUIRED, "Invalid API version")

    if x_api_key != settings.api_key:
        raise _error(401, ErrorCode.UNAUTHORIZED, "Invalid API key")

    if not x_device_id:
        raise _error(401, ErrorCode.UNAUTHORIZED, "Missing device ID")

    token = None
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() != "bearer" or not value:
            raise _error(401, ErrorCode.UNAUTHORIZED, "Malformed authorization header")
        token = value.strip()

    try:
        identity, claim = resolve_identity(x_device_id, token, settings.jwt_secret)
    except InvalidIdentityToken as exc:
        logger.info("Rejected identity token: %s", exc)
        raise _error(401, ErrorCode.UNAUTHORIZED, "Invalid identity token") from exc
    return Caller(identity=identity, claim=claim)


async def rate_limit(request: Request, caller: Caller = Depends(require_identity)) -> Caller:
    """Throttle requests by IP and device via Redis."""
    client_host = request.client.host if request.client else ""
    ip = client_host
    xff = request.headers.get("X-Forwarded-For")
    if xff and client_host in settings.trusted_proxies:
        forwarded = [h.strip() for h in xff.split(",") if h.strip()]
        proxies = forwarded[1:] + [client_host]
        if all(p in settings.trusted_proxies for p in proxies):
            ip = forwarded[0]
    ip_key = f"rate:ip:{ip}"
    device_key = f"rate:device:{caller.identity.device_id}"

    try:
        pipe = redis_client.pipeline()
        pipe.incr(ip_key)
        pipe.expire(ip_key, 60)
        pipe.incr(device_key)
        pipe.expire(device_key, 60)
        ip_count, _, device_count, _ = await pipe.execute()
    except RedisError as exc:
        logger.exception("Redis unavailable for rate limiting: %s", exc)
        raise _error(503, ErrorCode.SERVICE_UNAVAILABLE, "Rate limiter unavailable") from exc
    if ip_count > 30 or device_count > 60:
        raise _error(429, ErrorCode.TOO_MANY_REQUESTS, "Rate limit exceeded")

    return caller


def get_engine(request: Request) -> ScanEngine:
    return request.app.state.engine
