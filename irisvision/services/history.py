"""Analysis history across the device blob and the remote store."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from irisvision.config import Settings
from irisvision.errors import StoreUnavailable, StoreWriteFailure
from irisvision.metrics import pending_operations, store_write_failure_total

from .local_state import LocalStateStore
from .records import Authenticated, HistoryRecord, Identity
from .remote_store import RemoteStore

logger = logging.getLogger(__name__)


def _newest_first(records: list[HistoryRecord]) -> list[HistoryRecord]:
    return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)


class HistoryReconciler:
    def __init__(
        self,
        local: LocalStateStore,
        remote: RemoteStore,
        *,
        local_limit: int = 50,
        remote_limit: int = 50,
    ):
        self._local = local
        self._remote = remote
        self.local_limit = local_limit
        self.remote_limit = remote_limit
        self._sync_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls, cfg: Settings, local: LocalStateStore, remote: RemoteStore
    ) -> "HistoryReconciler":
        return cls(
            local,
            remote,
            local_limit=cfg.local_history_limit,
            remote_limit=cfg.remote_history_limit,
        )

    # -- device side -------------------------------------------------------

    def _append_local(self, device_id: str, record: HistoryRecord) -> None:
        def _mutate(state: dict[str, Any]) -> None:
            records = [HistoryRecord.model_validate(r) for r in state["history"]]
            if any(r.id == record.id for r in records):
                return
            records = _newest_first(records + [record])[: self.local_limit]
            state["history"] = [r.model_dump(mode="json") for r in records]

        self._local.update(device_id, _mutate)

    def _buffer_pending(self, identity: Authenticated, record: HistoryRecord) -> None:
        def _mutate(state: dict[str, Any]) -> None:
            bucket = state["pending_history"].setdefault(identity.uid, [])
            if any(item["id"] == record.id for item in bucket):
                return
            bucket.append(record.model_dump(mode="json"))

        self._local.update(identity.device_id, _mutate)

    def _pending(self, identity: Authenticated) -> list[HistoryRecord]:
        state = self._local.load(identity.device_id)
        return [
            HistoryRecord.model_validate(item)
            for item in state["pending_history"].get(identity.uid, [])
        ]

    def _drop_pending(self, identity: Authenticated, ids: set[str]) -> None:
        def _mutate(state: dict[str, Any]) -> None:
            bucket = state["pending_history"].get(identity.uid, [])
            remaining = [item for item in bucket if item["id"] not in ids]
            if remaining:
                state["pending_history"][identity.uid] = remaining
            else:
                state["pending_history"].pop(identity.uid, None)

        self._local.update(identity.device_id, _mutate)

    # -- public contract ---------------------------------------------------

    async def append(self, identity: Identity, record: HistoryRecord) -> HistoryRecord:
        """Persist ``record`` once; raises :class:`StoreWriteFailure` if nothing took it."""
        if not isinstance(identity, Authenticated):
            await asyncio.to_thread(self._append_local, identity.device_id, record)
            return record

        try:
            await asyncio.to_thread(self._remote.insert_history, identity.uid, record)
            return record
        except StoreUnavailable:
            logger.warning("Remote history write failed, buffering record %s", record.id)

        pending = record.model_copy(update={"pending_sync": True})
        try:
            await asyncio.to_thread(self._buffer_pending, identity, pending)
        except StoreWriteFailure:
            store_write_failure_total.labels(store="history").inc()
            raise
        pending_operations.inc()
        return pending

    async def sync(self, identity: Identity) -> int:
        """Push buffered records to the remote store; returns how many remain."""
        if not isinstance(identity, Authenticated):
            return 0
        async with self._sync_lock:
            pending = await asyncio.to_thread(self._pending, identity)
            if not pending:
                return 0
            synced: set[str] = set()
            for record in pending:
                stored = record.model_copy(update={"pending_sync": False})
                try:
                    # Insert is keyed by id, so a replay never duplicates
                    await asyncio.to_thread(self._remote.insert_history, identity.uid, stored)
                except StoreUnavailable:
                    break
                synced.add(record.id)
            if synced:
                await asyncio.to_thread(self._drop_pending, identity, synced)
                pending_operations.dec(len(synced))
                logger.info("Synced %s buffered history records", len(synced))
            return len(pending) - len(synced)

    async def list(self, identity: Identity) -> list[HistoryRecord]:
        if not isinstance(identity, Authenticated):
            state = await asyncio.to_thread(self._local.load, identity.device_id)
            records = [HistoryRecord.model_validate(r) for r in state["history"]]
            return _newest_first(records)[: self.local_limit]

        await self.sync(identity)
        pending = await asyncio.to_thread(self._pending, identity)
        try:
            remote = await asyncio.to_thread(
                self._remote.list_history, identity.uid, self.remote_limit
            )
        except StoreUnavailable:
            logger.warning("Remote history unavailable, listing buffered records only")
            return _newest_first(pending)
        known = {r.id for r in remote}
        merged = remote + [r for r in pending if r.id not in known]
        return _newest_first(merged)[: self.remote_limit]

    async def clear(self, identity: Identity) -> None:
        """Destructive; only touches the store that belongs to ``identity``."""
        if not isinstance(identity, Authenticated):
            def _mutate(state: dict[str, Any]) -> None:
                state["history"] = []

            await asyncio.to_thread(self._local.update, identity.device_id, _mutate)
            return

        await asyncio.to_thread(self._remote.clear_history, identity.uid)
        pending = await asyncio.to_thread(self._pending, identity)
        if pending:
            await asyncio.to_thread(self._drop_pending, identity, {r.id for r in pending})
            pending_operations.dec(len(pending))


__all__ = ["HistoryReconciler"]
