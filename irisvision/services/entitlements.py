"""Weekly scan quota and subscription state per identity.

Anonymous identities live entirely in the device blob. Authenticated
identities are authoritative in the remote store; when it is unreachable
writes are applied to the device snapshot and queued in the outbox, then
replayed in order on the next successful contact. Each queued op carries an
id the remote records with the write, so a replay applies once. The quota
is a UX nudge enforced on the client, so reads fail open to the last local
snapshot.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from irisvision.config import Settings
from irisvision.errors import StoreUnavailable, StoreWriteFailure
from irisvision.metrics import pending_operations

from .local_state import LocalStateStore
from .records import (
    Authenticated,
    EntitlementRecord,
    Identity,
    SubscriptionStatus,
    VerifiedClaim,
    as_utc,
    utcnow,
)
from .remote_store import RemoteStore

logger = logging.getLogger(__name__)


class EntitlementStore:
    def __init__(
        self,
        local: LocalStateStore,
        remote: RemoteStore,
        *,
        weekly_limit: int = 3,
        reset_period: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._local = local
        self._remote = remote
        self.weekly_limit = weekly_limit
        self.reset_period = reset_period
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(
        cls, cfg: Settings, local: LocalStateStore, remote: RemoteStore, **kwargs: Any
    ) -> "EntitlementStore":
        return cls(
            local,
            remote,
            weekly_limit=cfg.weekly_limit,
            reset_period=timedelta(days=cfg.reset_period_days),
            **kwargs,
        )

    def _lock(self, identity: Identity) -> asyncio.Lock:
        return self._locks.setdefault(identity.owner_key, asyncio.Lock())

    # -- device snapshot helpers (run in worker threads) -------------------

    def _fresh(self, now: datetime) -> EntitlementRecord:
        return EntitlementRecord(weekly_limit=self.weekly_limit, last_reset_at=now)

    def _from_state(self, state: dict[str, Any], identity: Identity, now: datetime) -> EntitlementRecord:
        raw = state["entitlements"].get(identity.owner_key)
        if raw is None:
            return self._fresh(now)
        return EntitlementRecord.model_validate(raw)

    @staticmethod
    def _put(state: dict[str, Any], identity: Identity, record: EntitlementRecord) -> None:
        state["entitlements"][identity.owner_key] = record.model_dump(mode="json")

    @staticmethod
    def _owned_ops(state: dict[str, Any], identity: Identity) -> list[dict[str, Any]]:
        return [op for op in state["outbox"] if op.get("owner") == identity.owner_key]

    def _read_local(self, identity: Identity, now: datetime) -> tuple[EntitlementRecord, int]:
        state = self._local.load(identity.device_id)
        return self._from_state(state, identity, now), len(self._owned_ops(state, identity))

    def _mutate_local(
        self,
        identity: Identity,
        change: Callable[[EntitlementRecord], EntitlementRecord],
        queued_op: dict[str, Any] | None = None,
    ) -> EntitlementRecord:
        now = self._clock()

        def _mutate(state: dict[str, Any]) -> EntitlementRecord:
            record = change(self._from_state(state, identity, now))
            self._put(state, identity, record)
            if queued_op is not None:
                state["outbox"].append(queued_op)
            return record

        record = self._local.update(identity.device_id, _mutate)
        if queued_op is not None:
            pending_operations.inc()
        return record

    async def _cache(self, identity: Identity, record: EntitlementRecord) -> None:
        def _mutate(state: dict[str, Any]) -> None:
            self._put(state, identity, record)

        try:
            await asyncio.to_thread(self._local.update, identity.device_id, _mutate)
        except StoreWriteFailure:
            logger.warning("Could not cache entitlement snapshot for %s", identity.owner_key)

    def _queue(self, identity: Identity, op: str, **fields: Any) -> dict[str, Any]:
        return {
            "id": uuid4().hex,
            "op": op,
            "owner": identity.owner_key,
            "at": self._clock().isoformat(),
            **fields,
        }

    # -- record transitions ---------------------------------------------

    def _reset_record(self, now: datetime) -> Callable[[EntitlementRecord], EntitlementRecord]:
        def _change(record: EntitlementRecord) -> EntitlementRecord:
            if record.scans_used == 0 and not record.reset_due(now, self.reset_period):
                return record
            return record.model_copy(update={"scans_used": 0, "last_reset_at": now})

        return _change

    @staticmethod
    def _increment_record(record: EntitlementRecord) -> EntitlementRecord:
        return record.model_copy(update={"scans_used": record.scans_used + 1})

    @staticmethod
    def _claim_record(claim: VerifiedClaim) -> Callable[[EntitlementRecord], EntitlementRecord]:
        def _change(record: EntitlementRecord) -> EntitlementRecord:
            current = as_utc(record.subscription_expiry)
            if current is not None and current > claim.expires_at:
                return record
            return record.model_copy(
                update={
                    "subscription_status": SubscriptionStatus.PREMIUM,
                    "subscription_expiry": claim.expires_at,
                }
            )

        return _change

    # -- public contract --------------------------------------------------

    async def snapshot(self, identity: Identity) -> EntitlementRecord:
        """Current record; falls back to the device snapshot when offline."""
        now = self._clock()
        local, queued = await asyncio.to_thread(self._read_local, identity, now)
        if not isinstance(identity, Authenticated) or queued:
            return local
        try:
            return await asyncio.to_thread(
                self._remote.get_entitlement, identity.uid, self.weekly_limit, now
            )
        except StoreUnavailable:
            logger.info("Remote entitlement unavailable, using device snapshot")
            return local

    async def check_quota(self, identity: Identity) -> bool:
        record = await self.snapshot(identity)
        return record.allows_scan(self._clock())

    async def remember(self, identity: Identity) -> None:
        """Record who last used this device so offline work can be flushed later."""
        await asyncio.to_thread(self._local.remember_identity, identity)

    async def reset(self, identity: Identity) -> EntitlementRecord:
        now = self._clock()
        async with self._lock(identity):
            if isinstance(identity, Authenticated):
                op = self._queue(identity, "reset")
                try:
                    record = await asyncio.to_thread(
                        self._remote.reset, identity.uid, now, self.weekly_limit, op["id"]
                    )
                except StoreUnavailable:
                    return await asyncio.to_thread(
                        self._mutate_local, identity, self._reset_record(now), op
                    )
                await self._cache(identity, record)
                return record
            return await asyncio.to_thread(self._mutate_local, identity, self._reset_record(now))

    async def reset_if_due(self, identity: Identity) -> bool:
        """Lazy weekly reset, run on foreground and before each quota check."""
        await self.sync(identity)
        record = await self.snapshot(identity)
        if not record.reset_due(self._clock(), self.reset_period):
            return False
        logger.info("Weekly window elapsed for %s, resetting usage", identity.owner_key)
        await self.reset(identity)
        return True

    async def increment(self, identity: Identity) -> EntitlementRecord:
        async with self._lock(identity):
            if isinstance(identity, Authenticated):
                # The same op id is queued on failure; the remote may have applied it
                op = self._queue(identity, "increment")
                try:
                    record = await asyncio.to_thread(
                        self._remote.increment,
                        identity.uid,
                        self.weekly_limit,
                        self._clock(),
                        op["id"],
                    )
                except StoreUnavailable:
                    logger.warning("Queueing scan increment for %s", identity.owner_key)
                    return await asyncio.to_thread(
                        self._mutate_local, identity, self._increment_record, op
                    )
                await self._cache(identity, record)
                return record
            return await asyncio.to_thread(self._mutate_local, identity, self._increment_record)

    async def apply_entitlement(self, identity: Identity, claim: VerifiedClaim) -> EntitlementRecord:
        async with self._lock(identity):
            if isinstance(identity, Authenticated):
                op = self._queue(
                    identity,
                    "claim",
                    expires_at=claim.expires_at.isoformat(),
                    product_id=claim.product_id,
                )
                try:
                    record = await asyncio.to_thread(
                        self._remote.apply_claim,
                        identity.uid,
                        claim,
                        self.weekly_limit,
                        self._clock(),
                        op["id"],
                    )
                except StoreUnavailable:
                    return await asyncio.to_thread(
                        self._mutate_local, identity, self._claim_record(claim), op
                    )
                await self._cache(identity, record)
                return record
            return await asyncio.to_thread(self._mutate_local, identity, self._claim_record(claim))

    async def sync(self, identity: Identity) -> int:
        """Replay queued operations in order; returns how many remain queued."""
        if not isinstance(identity, Authenticated):
            return 0
        async with self._lock(identity):
            state = await asyncio.to_thread(self._local.load, identity.device_id)
            ops = self._owned_ops(state, identity)
            if not ops:
                return 0
            applied: list[str] = []
            record: EntitlementRecord | None = None
            for op in ops:
                try:
                    record = await asyncio.to_thread(self._replay, identity, op)
                except StoreUnavailable:
                    break
                applied.append(op["id"])

            done = set(applied)

            def _mutate(state: dict[str, Any]) -> None:
                state["outbox"] = [op for op in state["outbox"] if op.get("id") not in done]
                if record is not None and len(done) == len(ops):
                    self._put(state, identity, record)

            if done:
                await asyncio.to_thread(self._local.update, identity.device_id, _mutate)
                pending_operations.dec(len(done))
                logger.info("Replayed %s queued entitlement operations", len(done))
            return len(ops) - len(done)

    def _replay(self, identity: Authenticated, op: dict[str, Any]) -> EntitlementRecord:
        at = as_utc(datetime.fromisoformat(op["at"]))
        op_id = op.get("id")
        kind = op["op"]
        if kind == "increment":
            return self._remote.increment(identity.uid, self.weekly_limit, at, op_id)
        if kind == "reset":
            return self._remote.reset(identity.uid, at, self.weekly_limit, op_id)
        if kind == "claim":
            claim = VerifiedClaim(
                is_pro=True,
                expires_at=as_utc(datetime.fromisoformat(op["expires_at"])),
                product_id=op.get("product_id"),
            )
            return self._remote.apply_claim(identity.uid, claim, self.weekly_limit, at, op_id)
        raise ValueError(f"unknown queued operation: {kind}")


__all__ = ["EntitlementStore"]
