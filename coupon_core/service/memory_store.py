import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from coupon_core.data_model.coupon import Coupon, Stats
from coupon_core.service.exceptions import ClaimRefConflict
from coupon_core.service.store import CommitOutcome, CommitResult

log = logging.getLogger(__name__)


class MemoryCouponStore:
    """Process-local coupon store for development and tests.

    Every call suspends once before it touches the data, like a store
    round-trip would. The body of each call runs without further
    suspension, which makes `commit_claim` atomic with respect to all other
    calls on the same event loop.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._coupons: Dict[int, Coupon] = {}
        self._next_id = 1

    async def _round_trip(self):
        await asyncio.sleep(self.latency)

    async def open(self) -> None:
        log.debug("using in-memory coupon store")

    async def close(self) -> None:
        pass

    def _latest_claim(self, claimed_by: str, since: datetime) -> Optional[Coupon]:
        claims = [
            c for c in self._coupons.values()
            if c.claimed_by == claimed_by and c.claimed_at >= since
        ]
        return max(claims, key=lambda c: c.claimed_at, default=None)

    async def latest_claim(self, claimed_by: str, since: datetime) -> Optional[Coupon]:
        await self._round_trip()
        return self._latest_claim(claimed_by, since)

    async def first_unclaimed(self) -> Optional[Coupon]:
        await self._round_trip()
        return next((c for c in self._coupons.values() if not c.claimed), None)

    async def commit_claim(
        self,
        coupon_id: int,
        claimed_by: str,
        claimed_at: datetime,
        since: datetime,
        claim_ref: Optional[str] = None,
    ) -> CommitResult:
        await self._round_trip()
        if latest := self._latest_claim(claimed_by, since):
            return CommitResult(CommitOutcome.CLAIMANT_BUSY, latest)
        coupon = self._coupons.get(coupon_id)
        if coupon is None or coupon.claimed:
            return CommitResult(CommitOutcome.CODE_TAKEN)
        if claim_ref is not None and any(c.claim_ref == claim_ref for c in self._coupons.values()):
            raise ClaimRefConflict(f"claim ref {claim_ref} is already used")
        claimed = coupon.model_copy(update={
            "claimed": True,
            "claimed_by": claimed_by,
            "claimed_at": claimed_at,
            "claim_ref": claim_ref,
        })
        self._coupons[coupon_id] = claimed
        return CommitResult(CommitOutcome.COMMITTED, claimed)

    async def find_by_claim_ref(self, claim_ref: str) -> Optional[Coupon]:
        await self._round_trip()
        return next((c for c in self._coupons.values() if c.claim_ref == claim_ref), None)

    async def stats(self) -> Stats:
        await self._round_trip()
        claimed = sum(1 for c in self._coupons.values() if c.claimed)
        return Stats(total=len(self._coupons), claimed=claimed)

    async def add_codes(self, codes: Iterable[str]) -> int:
        await self._round_trip()
        existing = {c.code for c in self._coupons.values()}
        added = 0
        for code in codes:
            if code in existing:
                continue
            self._coupons[self._next_id] = Coupon(id=self._next_id, code=code)
            existing.add(code)
            self._next_id += 1
            added += 1
        return added

    async def clear(self) -> int:
        await self._round_trip()
        removed = len(self._coupons)
        self._coupons.clear()
        return removed

    def all(self) -> List[Coupon]:
        return list(self._coupons.values())
