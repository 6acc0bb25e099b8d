"""Device-local keyed blob holding entitlement snapshots, history and the outbox."""
from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from irisvision import db as db_module
from irisvision.errors import StoreWriteFailure
from irisvision.metrics import store_write_failure_total
from irisvision.models import DeviceState

from .records import Identity, identity_handle

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _normalize(payload: dict[str, Any] | None) -> dict[str, Any]:
    state = copy.deepcopy(payload) if payload else {}
    state.setdefault("identity", None)
    state.setdefault("entitlements", {})
    state.setdefault("history", [])
    state.setdefault("outbox", [])
    state.setdefault("pending_history", {})
    return state


class LocalStateStore:
    """Read-modify-write access to the per-device blob.

    Every ``update`` runs inside one transaction under a store-wide lock, so
    concurrent completions cannot lose each other's counter updates.
    """

    def __init__(self, session_factory: sessionmaker | Callable[[], Any] | None = None):
        self._session_factory = session_factory or db_module.DeviceSession
        self._lock = threading.Lock()

    def load(self, device_id: str) -> dict[str, Any]:
        try:
            with self._session_factory() as db:
                row = db.get(DeviceState, device_id)
                return _normalize(row.payload if row else None)
        except SQLAlchemyError as exc:
            logger.exception("Device state read failed for %s", device_id)
            raise StoreWriteFailure("device state unavailable") from exc

    def update(self, device_id: str, mutate: Callable[[dict[str, Any]], T]) -> T:
        with self._lock:
            try:
                with self._session_factory() as db:
                    row = db.get(DeviceState, device_id)
                    state = _normalize(row.payload if row else None)
                    result = mutate(state)
                    if row is None:
                        db.add(DeviceState(device_id=device_id, payload=state))
                    else:
                        # JSON columns only persist on reassignment
                        row.payload = state
                    db.commit()
                    return result
            except SQLAlchemyError as exc:
                store_write_failure_total.labels(store="device").inc()
                logger.exception("Device state write failed for %s", device_id)
                raise StoreWriteFailure("device state write failed") from exc

    def remember_identity(self, identity: Identity) -> None:
        def _mutate(state: dict[str, Any]) -> None:
            state["identity"] = identity_handle(identity)

        self.update(identity.device_id, _mutate)

    def outbox_size(self, device_id: str) -> int:
        state = self.load(device_id)
        pending = sum(len(items) for items in state["pending_history"].values())
        return len(state["outbox"]) + pending


__all__ = ["LocalStateStore"]
