import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Optional, TypeVar

import gconf

from coupon_core.data_model.coupon import (
    ClaimDecision,
    ClaimGranted,
    ClaimRejected,
    Coupon,
    RejectReason,
)
from coupon_core.service.exceptions import (
    ClaimRefConflict,
    ContentionExceeded,
    InvariantViolation,
    StoreTimeout,
)
from coupon_core.service.store import CommitOutcome, CommitResult, CouponStore
from coupon_core.util.signals import on_coupon_claimed, on_pool_exhausted

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WINDOW = timedelta(hours=1)


class AllocationEngine:
    """Hands out coupons, one per claimant and window.

    A claim takes the unclaimed coupon with the lowest id and commits it
    with a compare-and-set in the store. If another request took that
    coupon first, the next lowest one is tried. The store re-checks the
    claimant's window inside the commit, so concurrent requests of one
    claimant cannot both pass.
    """

    def __init__(
        self,
        store: CouponStore,
        window: timedelta = DEFAULT_WINDOW,
        max_attempts: int = 100,
        store_timeout: float = 5.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.window = window
        self.max_attempts = max_attempts
        self.store_timeout = store_timeout

    @classmethod
    def from_config(cls, store: CouponStore) -> "AllocationEngine":
        return cls(
            store,
            window=timedelta(seconds=gconf.get("claim.window_seconds")),
            max_attempts=gconf.get("claim.max_attempts"),
            store_timeout=gconf.get("claim.store_timeout"),
        )

    def next_claim_time(self, claimed_at: datetime) -> datetime:
        return (claimed_at + self.window).astimezone(timezone.utc)

    async def claim(
        self, client_id: str, now: Optional[datetime] = None, claim_ref: Optional[str] = None
    ) -> ClaimDecision:
        now = now or datetime.now(timezone.utc)
        since = now - self.window

        if claim_ref:
            # a repeated request gets the coupon its first attempt committed
            previous = await self._call(self.store.find_by_claim_ref(claim_ref))
            if previous is not None:
                return self._replayed(client_id, claim_ref, previous)
        else:
            claim_ref = uuid.uuid4().hex

        latest = await self._call(self.store.latest_claim(client_id, since))
        if latest:
            return self._rate_limited(client_id, latest)

        for attempt in range(1, self.max_attempts + 1):
            candidate = await self._call(self.store.first_unclaimed())
            if candidate is None:
                log.info(f"no coupons left for {client_id}")
                on_pool_exhausted.send(self)
                return ClaimRejected(reason=RejectReason.POOL_EXHAUSTED)

            result = await self._commit(candidate, client_id, now, since, claim_ref)
            if result.outcome == CommitOutcome.COMMITTED:
                return self._granted(client_id, claim_ref, result.coupon)
            if result.outcome == CommitOutcome.CLAIMANT_BUSY:
                return self._rate_limited(client_id, result.coupon)
            log.debug(f"{candidate} was taken concurrently, attempt {attempt} for {client_id} failed")

        raise ContentionExceeded(
            f"no coupon could be committed for {client_id} in {self.max_attempts} attempts"
        )

    async def _commit(
        self, candidate: Coupon, client_id: str, now: datetime, since: datetime, claim_ref: str
    ) -> CommitResult:
        try:
            return await asyncio.wait_for(
                self.store.commit_claim(candidate.id, client_id, now, since, claim_ref),
                self.store_timeout,
            )
        except asyncio.TimeoutError:
            log.warning(f"commit of {candidate} for {client_id} timed out, checking claim {claim_ref}")

        landed = await self._call(self.store.find_by_claim_ref(claim_ref))
        if landed is None:
            raise StoreTimeout(f"commit of {candidate} for {client_id} timed out")
        return CommitResult(CommitOutcome.COMMITTED, landed)

    def _granted(self, client_id: str, claim_ref: str, coupon: Optional[Coupon]) -> ClaimGranted:
        if (
            coupon is None
            or not coupon.claimed
            or coupon.claimed_by != client_id
            or coupon.claim_ref != claim_ref
        ):
            log.critical(f"commit for {client_id} reported success but returned {coupon!r}")
            raise InvariantViolation(f"inconsistent commit result for claim {claim_ref}")
        log.debug(f"commit of {coupon} for {client_id} succeeded")
        on_coupon_claimed.send(self, coupon=coupon)
        claimed_at = coupon.claimed_at.astimezone(timezone.utc)
        return ClaimGranted(coupon_id=coupon.id, code=coupon.code, claimed_at=claimed_at)

    def _replayed(self, client_id: str, claim_ref: str, previous: Coupon) -> ClaimGranted:
        if previous.claimed_by != client_id:
            log.warning(f"{client_id} sent claim {claim_ref} which belongs to {previous.claimed_by}")
            raise ClaimRefConflict(f"claim {claim_ref} belongs to another claimant")
        log.info(f"{client_id} repeated claim {claim_ref}, returning {previous}")
        claimed_at = previous.claimed_at.astimezone(timezone.utc)
        return ClaimGranted(coupon_id=previous.id, code=previous.code, claimed_at=claimed_at)

    def _rate_limited(self, client_id: str, latest: Coupon) -> ClaimRejected:
        retry_after = self.next_claim_time(latest.claimed_at)
        log.info(f"{client_id} already claimed {latest}, next claim at {retry_after.isoformat()}")
        return ClaimRejected(reason=RejectReason.RATE_LIMITED, retry_after=retry_after)

    async def _call(self, aw: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(aw, self.store_timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeout("store did not answer in time") from e
