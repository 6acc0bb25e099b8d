"""Flush queued entitlement operations and buffered history for a device.

Usage:
  python scripts/sync_pending.py DEVICE_ID
  python scripts/sync_pending.py DEVICE_ID --uid abc123
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from irisvision.config import Settings
from irisvision.db import init_db, init_local_state
from irisvision.logger import setup_logging
from irisvision.services.entitlements import EntitlementStore
from irisvision.services.history import HistoryReconciler
from irisvision.services.local_state import LocalStateStore
from irisvision.services.records import Authenticated
from irisvision.services.remote_store import RemoteStore

logger = logging.getLogger("sync_pending")


async def _flush(cfg: Settings, identity: Authenticated, local: LocalStateStore) -> int:
    remote = RemoteStore()
    entitlements = EntitlementStore.from_settings(cfg, local, remote)
    history = HistoryReconciler.from_settings(cfg, local, remote)
    ops_left = await entitlements.sync(identity)
    records_left = await history.sync(identity)
    return ops_left + records_left


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("device_id")
    parser.add_argument("--uid", help="defaults to the last identity seen on the device")
    args = parser.parse_args()

    setup_logging()
    cfg = Settings()
    init_db(cfg)
    init_local_state(cfg)

    local = LocalStateStore()
    uid = args.uid
    if uid is None:
        handle = local.load(args.device_id)["identity"] or {}
        uid = handle.get("uid")
    if not uid:
        raise SystemExit("No authenticated identity recorded for this device")

    before = local.outbox_size(args.device_id)
    remaining = asyncio.run(_flush(cfg, Authenticated(uid=uid, device_id=args.device_id), local))
    logger.info("Flushed %s of %s pending operations", before - remaining, before)
    print(remaining)
    if remaining:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
