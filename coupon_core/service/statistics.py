import asyncio

import gconf

from coupon_core.data_model.coupon import Stats
from coupon_core.service.exceptions import StoreTimeout
from coupon_core.service.store import CouponStore


class StatisticsReader:
    def __init__(self, store: CouponStore, store_timeout: float = 5.0):
        self.store = store
        self.store_timeout = store_timeout

    @classmethod
    def from_config(cls, store: CouponStore) -> "StatisticsReader":
        return cls(store, store_timeout=gconf.get("claim.store_timeout"))

    async def stats(self) -> Stats:
        try:
            return await asyncio.wait_for(self.store.stats(), self.store_timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeout("reading statistics timed out") from e
