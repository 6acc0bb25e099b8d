"""Value types shared by the entitlement, history and scan services."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize naive timestamps (SQLite drops tzinfo) to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Anonymous:
    device_id: str

    @property
    def owner_key(self) -> str:
        return f"anon:{self.device_id}"


@dataclass(frozen=True)
class Authenticated:
    uid: str
    device_id: str

    @property
    def owner_key(self) -> str:
        return f"uid:{self.uid}"


Identity = Union[Anonymous, Authenticated]


def identity_handle(identity: Identity) -> dict[str, str]:
    if isinstance(identity, Authenticated):
        return {"kind": "authenticated", "uid": identity.uid}
    return {"kind": "anonymous", "device_id": identity.device_id}


class SubscriptionStatus(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


@dataclass(frozen=True)
class VerifiedClaim:
    """Entitlement claim confirmed by the billing verifier."""

    is_pro: bool
    expires_at: datetime
    product_id: str | None = None

    def is_active(self, now: datetime | None = None) -> bool:
        return self.is_pro and self.expires_at > (now or utcnow())


class EntitlementRecord(BaseModel):
    scans_used: int = Field(0, ge=0)
    weekly_limit: int = Field(ge=0)
    subscription_status: SubscriptionStatus = SubscriptionStatus.FREE
    subscription_expiry: datetime | None = None
    last_reset_at: datetime

    def is_premium(self, now: datetime | None = None) -> bool:
        """Premium is re-derived from the expiry on every read."""
        if self.subscription_status != SubscriptionStatus.PREMIUM:
            return False
        expiry = as_utc(self.subscription_expiry)
        return expiry is not None and expiry > (now or utcnow())

    def allows_scan(self, now: datetime | None = None) -> bool:
        return self.is_premium(now) or self.scans_used < self.weekly_limit

    def resets_at(self, period: timedelta) -> datetime:
        return as_utc(self.last_reset_at) + period

    def reset_due(self, now: datetime, period: timedelta) -> bool:
        return now >= self.resets_at(period)


class HistoryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    image_ref: str
    analysis: dict[str, Any]
    created_at: datetime = Field(default_factory=utcnow)
    pending_sync: bool = False


__all__ = [
    "Anonymous",
    "Authenticated",
    "Identity",
    "identity_handle",
    "SubscriptionStatus",
    "VerifiedClaim",
    "EntitlementRecord",
    "HistoryRecord",
    "as_utc",
    "utcnow",
]
