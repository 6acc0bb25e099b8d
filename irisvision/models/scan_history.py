from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String

from .base import Base


class ScanHistory(Base):
    """Immutable analysis record of one completed scan."""

    __tablename__ = "scan_history"

    id = Column(String(64), primary_key=True)
    owner_id = Column(String(128), nullable=False, index=True)
    image_ref = Column(String, nullable=False)
    analysis = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    stored_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


__all__ = ["ScanHistory"]
