"""Remote entitlement document, one row per authenticated user."""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Integer, String

from .base import Base


class Entitlement(Base):
    __tablename__ = "entitlements"

    owner_id = Column(String(128), primary_key=True)
    scans_used = Column(Integer, nullable=False, server_default="0")
    weekly_limit = Column(Integer, nullable=False)
    subscription_status = Column(
        Enum("free", "premium", name="subscription_status"),
        nullable=False,
        server_default="free",
    )
    subscription_expiry = Column(DateTime(timezone=True), nullable=True)
    last_reset_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


__all__ = ["Entitlement"]
