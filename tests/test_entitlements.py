from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from irisvision.errors import StoreWriteFailure
from irisvision.services.records import (
    Anonymous,
    Authenticated,
    SubscriptionStatus,
    VerifiedClaim,
)

ANON = Anonymous(device_id="device-a")
USER = Authenticated(uid="user-1", device_id="device-a")


@pytest.mark.asyncio
async def test_fresh_identity_gets_weekly_allowance(stores):
    record = await stores.entitlements.snapshot(ANON)
    assert record.scans_used == 0
    assert record.weekly_limit == 3
    assert record.subscription_status is SubscriptionStatus.FREE
    assert await stores.entitlements.check_quota(ANON) is True


@pytest.mark.asyncio
async def test_free_quota_blocks_after_limit(stores):
    for _ in range(3):
        assert await stores.entitlements.check_quota(ANON) is True
        await stores.entitlements.increment(ANON)

    record = await stores.entitlements.snapshot(ANON)
    assert record.scans_used == 3
    assert await stores.entitlements.check_quota(ANON) is False


@pytest.mark.asyncio
async def test_check_quota_does_not_write(stores):
    await stores.entitlements.check_quota(USER)
    await stores.entitlements.check_quota(ANON)

    assert stores.remote.calls == ["entitlement read"]
    assert stores.local.load(ANON.device_id)["entitlements"] == {}


@pytest.mark.asyncio
async def test_weekly_reset_restores_allowance(stores, clock):
    for _ in range(3):
        await stores.entitlements.increment(ANON)
    assert await stores.entitlements.check_quota(ANON) is False

    clock.advance(days=6, hours=23)
    assert await stores.entitlements.reset_if_due(ANON) is False
    assert await stores.entitlements.check_quota(ANON) is False

    clock.advance(hours=1)
    assert await stores.entitlements.reset_if_due(ANON) is True
    record = await stores.entitlements.snapshot(ANON)
    assert record.scans_used == 0
    assert record.last_reset_at == clock.now
    assert await stores.entitlements.check_quota(ANON) is True


@pytest.mark.asyncio
async def test_reset_then_check_quota_allows(stores):
    for _ in range(5):
        await stores.entitlements.increment(USER)

    await stores.entitlements.reset(USER)
    assert await stores.entitlements.check_quota(USER) is True


@pytest.mark.asyncio
async def test_premium_is_unlimited(stores, clock):
    claim = VerifiedClaim(is_pro=True, expires_at=clock.now + timedelta(days=30))
    await stores.entitlements.apply_entitlement(USER, claim)
    for _ in range(10):
        await stores.entitlements.increment(USER)

    record = await stores.entitlements.snapshot(USER)
    assert record.scans_used == 10
    assert record.subscription_status is SubscriptionStatus.PREMIUM
    assert await stores.entitlements.check_quota(USER) is True


@pytest.mark.asyncio
async def test_lapsed_premium_falls_back_to_free_limit(stores, clock):
    claim = VerifiedClaim(is_pro=True, expires_at=clock.now + timedelta(days=1))
    await stores.entitlements.apply_entitlement(USER, claim)
    for _ in range(3):
        await stores.entitlements.increment(USER)
    assert await stores.entitlements.check_quota(USER) is True

    clock.advance(days=1)
    # expiry equal to now no longer counts as active
    assert await stores.entitlements.check_quota(USER) is False


@pytest.mark.asyncio
async def test_older_claim_does_not_shorten_subscription(stores, clock):
    later = clock.now + timedelta(days=30)
    await stores.entitlements.apply_entitlement(USER, VerifiedClaim(True, later))
    await stores.entitlements.apply_entitlement(
        USER, VerifiedClaim(True, clock.now + timedelta(days=2))
    )

    record = await stores.entitlements.snapshot(USER)
    assert record.subscription_expiry == later


@pytest.mark.asyncio
async def test_identities_are_isolated(stores):
    other = Anonymous(device_id="device-b")
    for _ in range(3):
        await stores.entitlements.increment(ANON)
    await stores.entitlements.increment(USER)

    assert (await stores.entitlements.snapshot(other)).scans_used == 0
    assert (await stores.entitlements.snapshot(USER)).scans_used == 1
    assert (await stores.entitlements.snapshot(ANON)).scans_used == 3


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(stores):
    await asyncio.gather(*(stores.entitlements.increment(ANON) for _ in range(5)))
    await asyncio.gather(*(stores.entitlements.increment(USER) for _ in range(5)))

    assert (await stores.entitlements.snapshot(ANON)).scans_used == 5
    assert (await stores.entitlements.snapshot(USER)).scans_used == 5


@pytest.mark.asyncio
async def test_offline_increment_is_queued_and_replayed_once(stores):
    await stores.entitlements.increment(USER)
    stores.remote.down = True

    record = await stores.entitlements.increment(USER)
    assert record.scans_used == 2
    assert len(stores.local.load(USER.device_id)["outbox"]) == 1
    # queued work keeps reads on the device snapshot
    assert (await stores.entitlements.snapshot(USER)).scans_used == 2

    assert await stores.entitlements.sync(USER) == 1
    stores.remote.down = False
    assert await stores.entitlements.sync(USER) == 0
    assert await stores.entitlements.sync(USER) == 0

    assert stores.local.load(USER.device_id)["outbox"] == []
    assert (await stores.entitlements.snapshot(USER)).scans_used == 2


@pytest.mark.asyncio
async def test_offline_reset_is_replayed_in_order(stores, clock):
    for _ in range(3):
        await stores.entitlements.increment(USER)
    clock.advance(days=7)
    stores.remote.down = True

    assert await stores.entitlements.reset_if_due(USER) is True
    await stores.entitlements.increment(USER)
    assert (await stores.entitlements.snapshot(USER)).scans_used == 1

    stores.remote.down = False
    assert await stores.entitlements.sync(USER) == 0
    record = await stores.entitlements.snapshot(USER)
    assert record.scans_used == 1
    assert record.last_reset_at == clock.now


@pytest.mark.asyncio
async def test_offline_claim_is_replayed(stores, clock):
    stores.remote.down = True
    expiry = clock.now + timedelta(days=30)
    record = await stores.entitlements.apply_entitlement(
        USER, VerifiedClaim(True, expiry, product_id="iris_pro_monthly")
    )
    assert record.is_premium(clock.now)

    stores.remote.down = False
    await stores.entitlements.sync(USER)
    remote = stores.remote.get_entitlement(USER.uid, 3, clock.now)
    assert remote.subscription_status is SubscriptionStatus.PREMIUM
    assert remote.subscription_expiry == expiry


def test_remote_applies_each_op_id_once(stores, clock):
    first = stores.remote.increment(USER.uid, 3, clock.now, "op-1")
    again = stores.remote.increment(USER.uid, 3, clock.now, "op-1")
    other = stores.remote.increment(USER.uid, 3, clock.now, "op-2")

    assert first.scans_used == again.scans_used == 1
    assert other.scans_used == 2


@pytest.mark.asyncio
async def test_replay_is_not_repeated_when_outbox_cleanup_fails(stores, clock, monkeypatch):
    stores.remote.down = True
    await stores.entitlements.increment(USER)
    stores.remote.down = False

    real_update = stores.local.update
    failures = [StoreWriteFailure("device state write failed")]

    def _update(device_id, mutate):
        if failures:
            raise failures.pop()
        return real_update(device_id, mutate)

    monkeypatch.setattr(stores.local, "update", _update)
    with pytest.raises(StoreWriteFailure):
        await stores.entitlements.sync(USER)
    # remote already applied the op but it is still queued on the device
    assert len(stores.local.load(USER.device_id)["outbox"]) == 1

    assert await stores.entitlements.sync(USER) == 0
    assert stores.local.load(USER.device_id)["outbox"] == []
    assert stores.remote.get_entitlement(USER.uid, 3, clock.now).scans_used == 1


@pytest.mark.asyncio
async def test_increment_with_lost_response_is_counted_once(stores, clock):
    stores.remote.lose_ack = True
    record = await stores.entitlements.increment(USER)
    assert record.scans_used == 1
    assert len(stores.local.load(USER.device_id)["outbox"]) == 1

    stores.remote.lose_ack = False
    assert await stores.entitlements.sync(USER) == 0
    assert stores.remote.get_entitlement(USER.uid, 3, clock.now).scans_used == 1
    assert (await stores.entitlements.snapshot(USER)).scans_used == 1


@pytest.mark.asyncio
async def test_snapshot_falls_back_to_device_copy(stores):
    await stores.entitlements.increment(USER)
    stores.remote.down = True

    record = await stores.entitlements.snapshot(USER)
    assert record.scans_used == 1
