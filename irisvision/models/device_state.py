"""Device-local state: a single keyed JSON blob per device."""
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String

from .base import Base


class DeviceState(Base):
    __tablename__ = "device_state"

    device_id = Column(String(128), primary_key=True)
    payload = Column(JSON, nullable=False, default=dict)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


__all__ = ["DeviceState"]
