"""Authoritative store for authenticated users (entitlement documents and history)."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from irisvision import db as db_module
from irisvision.errors import StoreUnavailable
from irisvision.models import AppliedOp, Entitlement, ScanHistory

from .records import (
    EntitlementRecord,
    HistoryRecord,
    SubscriptionStatus,
    VerifiedClaim,
    as_utc,
)

logger = logging.getLogger(__name__)


def _to_record(row: Entitlement) -> EntitlementRecord:
    return EntitlementRecord(
        scans_used=row.scans_used or 0,
        weekly_limit=row.weekly_limit,
        subscription_status=SubscriptionStatus(row.subscription_status or "free"),
        subscription_expiry=as_utc(row.subscription_expiry),
        last_reset_at=as_utc(row.last_reset_at),
    )


class RemoteStore:
    """Synchronous SQLAlchemy access; callers run it via ``asyncio.to_thread``.

    Any database error is reported as :class:`StoreUnavailable` so the
    services above can fall back to the device buffer.
    """

    def __init__(self, session_factory: sessionmaker | Callable[[], Any] | None = None):
        self._session_factory = session_factory or db_module.SessionLocal

    def _run(self, op: str, fn: Callable[[Session], Any]) -> Any:
        try:
            with self._session_factory() as db:
                return fn(db)
        except SQLAlchemyError as exc:
            logger.warning("Remote store %s failed: %s", op, exc)
            raise StoreUnavailable(f"remote {op} failed") from exc

    @staticmethod
    def _ensure(db: Session, owner_id: str, weekly_limit: int, now: datetime) -> Entitlement:
        row = db.get(Entitlement, owner_id)
        if row is None:
            row = Entitlement(
                owner_id=owner_id,
                scans_used=0,
                weekly_limit=weekly_limit,
                subscription_status=SubscriptionStatus.FREE.value,
                last_reset_at=now,
            )
            db.add(row)
            db.flush()
        return row

    @staticmethod
    def _first_apply(
        db: Session, op_id: str | None, owner_id: str, kind: str, now: datetime
    ) -> bool:
        """Mark ``op_id`` applied in this transaction; False when it already was."""
        if op_id is None:
            return True
        if db.get(AppliedOp, op_id) is not None:
            logger.info("Skipping already applied %s %s for %s", kind, op_id, owner_id)
            return False
        db.add(AppliedOp(op_id=op_id, owner_id=owner_id, kind=kind, applied_at=now))
        return True

    def get_entitlement(self, owner_id: str, weekly_limit: int, now: datetime) -> EntitlementRecord:
        """Read-only; a missing document reads as a fresh free window."""

        def _call(db: Session) -> EntitlementRecord:
            row = db.get(Entitlement, owner_id)
            if row is None:
                return EntitlementRecord(weekly_limit=weekly_limit, last_reset_at=now)
            return _to_record(row)

        return self._run("entitlement read", _call)

    # Writes take the outbox op id so a replay of an applied op is a no-op.
    # Records are built before commit; nothing touches the database afterwards.

    def increment(
        self, owner_id: str, weekly_limit: int, now: datetime, op_id: str | None = None
    ) -> EntitlementRecord:
        def _call(db: Session) -> EntitlementRecord:
            self._ensure(db, owner_id, weekly_limit, now)
            if self._first_apply(db, op_id, owner_id, "increment", now):
                db.execute(
                    update(Entitlement)
                    .where(Entitlement.owner_id == owner_id)
                    .values(scans_used=Entitlement.scans_used + 1, updated_at=now)
                )
            row = db.get(Entitlement, owner_id, populate_existing=True)
            record = _to_record(row)
            db.commit()
            return record

        return self._run("increment", _call)

    def reset(
        self, owner_id: str, at: datetime, weekly_limit: int, op_id: str | None = None
    ) -> EntitlementRecord:
        """Start a new window at ``at`` unless a later reset already happened."""

        def _call(db: Session) -> EntitlementRecord:
            row = self._ensure(db, owner_id, weekly_limit, at)
            if self._first_apply(db, op_id, owner_id, "reset", at) and as_utc(row.last_reset_at) <= at:
                row.scans_used = 0
                row.last_reset_at = at
            db.flush()
            record = _to_record(row)
            db.commit()
            return record

        return self._run("reset", _call)

    def apply_claim(
        self,
        owner_id: str,
        claim: VerifiedClaim,
        weekly_limit: int,
        now: datetime,
        op_id: str | None = None,
    ) -> EntitlementRecord:
        def _call(db: Session) -> EntitlementRecord:
            row = self._ensure(db, owner_id, weekly_limit, now)
            current = as_utc(row.subscription_expiry)
            if self._first_apply(db, op_id, owner_id, "claim", now) and (
                current is None or claim.expires_at >= current
            ):
                row.subscription_status = SubscriptionStatus.PREMIUM.value
                row.subscription_expiry = claim.expires_at
            db.flush()
            record = _to_record(row)
            db.commit()
            return record

        return self._run("claim", _call)

    def insert_history(self, owner_id: str, record: HistoryRecord) -> bool:
        """Insert once by id; returns False when the record already exists."""

        def _call(db: Session) -> bool:
            if db.get(ScanHistory, record.id) is not None:
                return False
            db.add(
                ScanHistory(
                    id=record.id,
                    owner_id=owner_id,
                    image_ref=record.image_ref,
                    analysis=record.analysis,
                    created_at=record.created_at,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

        return self._run("history insert", _call)

    def list_history(self, owner_id: str, limit: int) -> list[HistoryRecord]:
        def _call(db: Session) -> list[HistoryRecord]:
            rows = (
                db.query(ScanHistory)
                .filter(ScanHistory.owner_id == owner_id)
                .order_by(ScanHistory.created_at.desc(), ScanHistory.id.desc())
                .limit(limit)
                .all()
            )
            return [
                HistoryRecord(
                    id=r.id,
                    image_ref=r.image_ref,
                    analysis=r.analysis,
                    created_at=as_utc(r.created_at),
                )
                for r in rows
            ]

        return self._run("history list", _call)

    def clear_history(self, owner_id: str) -> int:
        def _call(db: Session) -> int:
            result = db.execute(delete(ScanHistory).where(ScanHistory.owner_id == owner_id))
            db.commit()
            return result.rowcount or 0

        return self._run("history clear", _call)


__all__ = ["RemoteStore"]
