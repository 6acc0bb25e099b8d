from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String

from .base import Base


class AppliedOp(Base):
    """Entitlement operation id already applied to the remote document."""

    __tablename__ = "applied_ops"

    op_id = Column(String(64), primary_key=True)
    owner_id = Column(String(128), nullable=False, index=True)
    kind = Column(String(16), nullable=False)
    applied_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


__all__ = ["AppliedOp"]
