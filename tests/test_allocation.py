import asyncio
from datetime import timedelta

import pytest

from coupon_core.data_model.coupon import ClaimGranted, ClaimRejected, RejectReason, Stats
from coupon_core.service.allocation import AllocationEngine
from coupon_core.service.exceptions import (
    ClaimRefConflict,
    ContentionExceeded,
    InvariantViolation,
    StoreTimeout,
)
from coupon_core.service.memory_store import MemoryCouponStore
from coupon_core.service.store import CommitOutcome, CommitResult
from coupon_core.util.signals import on_coupon_claimed, on_pool_exhausted
from tests.conftest import T0

HOUR = timedelta(hours=1)


async def test_grant(two_code_store, engine):
    decision = await engine.claim('1.1.1.1', now=T0)
    assert isinstance(decision, ClaimGranted)
    assert decision.code == 'A'
    assert decision.claimed_at == T0

    coupon = two_code_store.all()[0]
    assert coupon.claimed
    assert coupon.claimed_by == '1.1.1.1'
    assert coupon.claimed_at == T0


async def test_round_robin_order(store, engine):
    codes = [f'CODE{i}' for i in range(5)]
    await store.add_codes(codes)

    granted = []
    for i in range(5):
        decision = await engine.claim(f'10.0.0.{i}', now=T0 + timedelta(seconds=i))
        granted.append(decision.code)

    assert granted == codes


async def test_rate_limited_within_window(two_code_store, engine):
    await engine.claim('1.1.1.1', now=T0)

    decision = await engine.claim('1.1.1.1', now=T0 + timedelta(minutes=59))
    assert isinstance(decision, ClaimRejected)
    assert decision.reason == RejectReason.RATE_LIMITED
    assert decision.retry_after == T0 + HOUR
    assert two_code_store.all()[1].claimed is False


async def test_claim_again_after_window(two_code_store, engine):
    await engine.claim('1.1.1.1', now=T0)

    decision = await engine.claim('1.1.1.1', now=T0 + HOUR + timedelta(seconds=1))
    assert isinstance(decision, ClaimGranted)
    assert decision.code == 'B'


async def test_rate_limit_uses_latest_claim(store):
    engine = AllocationEngine(store, window=timedelta(minutes=10))
    await store.add_codes(['A', 'B', 'C'])
    await engine.claim('1.1.1.1', now=T0)
    await engine.claim('1.1.1.1', now=T0 + timedelta(minutes=15))

    # both claims are inside a one hour lookback, the later one decides
    hour_engine = AllocationEngine(store)
    decision = await hour_engine.claim('1.1.1.1', now=T0 + timedelta(minutes=20))
    assert decision.reason == RejectReason.RATE_LIMITED
    assert decision.retry_after == T0 + timedelta(minutes=15) + HOUR


async def test_pool_exhausted(two_code_store, engine):
    await engine.claim('1.1.1.1', now=T0)
    await engine.claim('2.2.2.2', now=T0)

    for client in ['3.3.3.3', '4.4.4.4', '5.5.5.5']:
        decision = await engine.claim(client, now=T0)
        assert isinstance(decision, ClaimRejected)
        assert decision.reason == RejectReason.POOL_EXHAUSTED
        assert decision.retry_after is None


async def test_empty_pool(engine):
    decision = await engine.claim('1.1.1.1', now=T0)
    assert decision.reason == RejectReason.POOL_EXHAUSTED


async def test_rate_limit_checked_before_exhaustion(two_code_store, engine):
    await engine.claim('1.1.1.1', now=T0)
    await engine.claim('2.2.2.2', now=T0)

    decision = await engine.claim('1.1.1.1', now=T0 + timedelta(minutes=1))
    assert decision.reason == RejectReason.RATE_LIMITED


async def test_scenario(two_code_store, engine, stats_reader):
    first = await engine.claim('1.1.1.1', now=T0)
    assert isinstance(first, ClaimGranted) and first.code == 'A'

    again = await engine.claim('1.1.1.1', now=T0 + timedelta(seconds=1))
    assert again.reason == RejectReason.RATE_LIMITED
    assert again.retry_after == T0 + HOUR

    second = await engine.claim('2.2.2.2', now=T0 + timedelta(seconds=2))
    assert isinstance(second, ClaimGranted) and second.code == 'B'

    third = await engine.claim('3.3.3.3', now=T0 + timedelta(seconds=3))
    assert third.reason == RejectReason.POOL_EXHAUSTED

    assert await stats_reader.stats() == Stats(total=2, claimed=2)


async def test_stats_increase_by_one_per_grant(store, engine, stats_reader):
    await store.add_codes(['A', 'B', 'C'])
    before = await stats_reader.stats()

    await engine.claim('1.1.1.1', now=T0)

    after = await stats_reader.stats()
    assert after.total == before.total == 3
    assert after.claimed == before.claimed + 1


async def test_concurrent_claims_never_share_a_code(store, engine):
    await store.add_codes([f'CODE{i}' for i in range(5)])

    decisions = await asyncio.gather(*[engine.claim(f'10.0.0.{i}', now=T0) for i in range(20)])

    granted = [d for d in decisions if isinstance(d, ClaimGranted)]
    rejected = [d for d in decisions if isinstance(d, ClaimRejected)]
    assert len(granted) == 5
    assert len({d.coupon_id for d in granted}) == 5
    assert all(d.reason == RejectReason.POOL_EXHAUSTED for d in rejected)
    assert all(c.claimed for c in store.all())


async def test_concurrent_claims_of_one_client(store, engine):
    await store.add_codes([f'CODE{i}' for i in range(5)])

    decisions = await asyncio.gather(*[engine.claim('1.1.1.1', now=T0) for _ in range(10)])

    granted = [d for d in decisions if isinstance(d, ClaimGranted)]
    rejected = [d for d in decisions if isinstance(d, ClaimRejected)]
    assert len(granted) == 1
    assert len(rejected) == 9
    assert all(d.reason == RejectReason.RATE_LIMITED for d in rejected)
    assert all(d.retry_after == T0 + HOUR for d in rejected)
    assert len([c for c in store.all() if c.claimed]) == 1


class StolenFirstStore(MemoryCouponStore):
    """Lets another client take the candidate right before the first commit"""

    def __init__(self):
        super().__init__()
        self.stolen = False

    async def commit_claim(self, coupon_id, claimed_by, claimed_at, since, claim_ref=None):
        if not self.stolen:
            self.stolen = True
            await super().commit_claim(coupon_id, 'thief', claimed_at, since)
        return await super().commit_claim(coupon_id, claimed_by, claimed_at, since, claim_ref)


async def test_retry_with_next_code_when_taken():
    store = StolenFirstStore()
    await store.add_codes(['A', 'B'])
    engine = AllocationEngine(store)

    decision = await engine.claim('1.1.1.1', now=T0)

    assert decision.code == 'B'
    assert store.all()[0].claimed_by == 'thief'


async def test_contention_exceeded(store, mocker):
    await store.add_codes(['A'])
    mocker.patch.object(store, 'commit_claim', return_value=CommitResult(CommitOutcome.CODE_TAKEN))
    engine = AllocationEngine(store, max_attempts=3)

    with pytest.raises(ContentionExceeded):
        await engine.claim('1.1.1.1', now=T0)
    assert store.commit_claim.call_count == 3


def test_max_attempts_must_be_positive(store):
    with pytest.raises(ValueError):
        AllocationEngine(store, max_attempts=0)


async def test_slow_store_times_out():
    store = MemoryCouponStore(latency=0.5)
    engine = AllocationEngine(store, store_timeout=0.05)

    with pytest.raises(StoreTimeout):
        await engine.claim('1.1.1.1', now=T0)


class SlowAfterCommitStore(MemoryCouponStore):
    async def commit_claim(self, *args, **kwargs):
        result = await super().commit_claim(*args, **kwargs)
        await asyncio.sleep(1)
        return result


class SlowBeforeCommitStore(MemoryCouponStore):
    async def commit_claim(self, *args, **kwargs):
        await asyncio.sleep(1)
        return await super().commit_claim(*args, **kwargs)


async def test_timed_out_commit_that_landed_is_granted():
    store = SlowAfterCommitStore()
    await store.add_codes(['A', 'B'])
    engine = AllocationEngine(store, store_timeout=0.1)

    decision = await engine.claim('1.1.1.1', now=T0, claim_ref='request-1')

    assert isinstance(decision, ClaimGranted)
    assert decision.code == 'A'
    assert store.all()[0].claim_ref == 'request-1'
    assert not store.all()[1].claimed


async def test_timed_out_commit_that_did_not_land():
    store = SlowBeforeCommitStore()
    await store.add_codes(['A', 'B'])
    engine = AllocationEngine(store, store_timeout=0.1)

    with pytest.raises(StoreTimeout):
        await engine.claim('1.1.1.1', now=T0)
    assert not any(c.claimed for c in store.all())


async def test_inconsistent_commit_is_invariant_violation(store, mocker, memory_logger):
    await store.add_codes(['A'])
    foreign = (await store.commit_claim(1, 'someone else', T0, T0)).coupon
    mocker.patch.object(store, 'first_unclaimed', return_value=foreign)
    mocker.patch.object(
        store, 'commit_claim', return_value=CommitResult(CommitOutcome.COMMITTED, foreign))
    engine = AllocationEngine(store)

    with pytest.raises(InvariantViolation):
        await engine.claim('1.1.1.1', now=T0)
    assert any(r.levelname == 'CRITICAL' for r in memory_logger.records)


async def test_signals(two_code_store, engine):
    claimed = []
    exhausted = []

    def on_claimed(_, coupon):
        claimed.append(coupon.code)

    def on_exhausted(_):
        exhausted.append(True)

    on_coupon_claimed.connect(on_claimed)
    on_pool_exhausted.connect(on_exhausted)
    try:
        await engine.claim('1.1.1.1', now=T0)
        await engine.claim('2.2.2.2', now=T0)
        await engine.claim('3.3.3.3', now=T0)
    finally:
        on_coupon_claimed.disconnect(on_claimed)
        on_pool_exhausted.disconnect(on_exhausted)

    assert claimed == ['A', 'B']
    assert exhausted == [True]


@pytest.mark.config_override({'claim': {'window_seconds': 60, 'max_attempts': 7, 'store_timeout': 2}})
def test_engine_from_config(store):
    engine = AllocationEngine.from_config(store)
    assert engine.window == timedelta(seconds=60)
    assert engine.max_attempts == 7
    assert engine.store_timeout == 2


async def test_repeated_request_returns_original_grant(two_code_store, engine):
    first = await engine.claim('1.1.1.1', now=T0, claim_ref='request-1')
    again = await engine.claim('1.1.1.1', now=T0 + timedelta(seconds=5), claim_ref='request-1')

    assert isinstance(again, ClaimGranted)
    assert again == first
    assert (await two_code_store.stats()).claimed == 1


class LateCommitStore(MemoryCouponStore):
    """Finishes the commit in the background after the caller gave up"""

    async def _commit_later(self, *args, **kwargs):
        await asyncio.sleep(0.3)
        return await super().commit_claim(*args, **kwargs)

    async def commit_claim(self, *args, **kwargs):
        self.pending = asyncio.ensure_future(self._commit_later(*args, **kwargs))
        return await asyncio.shield(self.pending)


async def test_repeated_request_after_late_commit():
    store = LateCommitStore()
    await store.add_codes(['A', 'B'])
    engine = AllocationEngine(store, store_timeout=0.1)

    with pytest.raises(StoreTimeout):
        await engine.claim('1.1.1.1', now=T0, claim_ref='request-1')
    await store.pending
    assert store.all()[0].claim_ref == 'request-1'

    decision = await engine.claim('1.1.1.1', now=T0 + timedelta(seconds=5), claim_ref='request-1')
    assert isinstance(decision, ClaimGranted)
    assert decision.code == 'A'
    assert decision.claimed_at == T0


async def test_claim_ref_of_another_client_is_rejected(two_code_store, engine):
    await engine.claim('1.1.1.1', now=T0, claim_ref='request-1')

    with pytest.raises(ClaimRefConflict):
        await engine.claim('2.2.2.2', now=T0, claim_ref='request-1')
    assert not two_code_store.all()[1].claimed
