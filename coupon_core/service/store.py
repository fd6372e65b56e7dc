import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Protocol, runtime_checkable

import gconf
from psycopg import OperationalError
from psycopg.errors import UniqueViolation

from coupon_core.data_model.coupon import Coupon, Stats
from coupon_core.db import coupons as coupons_db
from coupon_core.db.connection import Database
from coupon_core.db.migration import migrate
from coupon_core.service.exceptions import ClaimRefConflict, StoreUnavailable
from coupon_core.util.misc import format_error

log = logging.getLogger(__name__)


class CommitOutcome(str, Enum):
    COMMITTED = "committed"
    CODE_TAKEN = "code_taken"
    CLAIMANT_BUSY = "claimant_busy"


@dataclass
class CommitResult:
    outcome: CommitOutcome
    # the claimed coupon if COMMITTED, the blocking claim if CLAIMANT_BUSY
    coupon: Optional[Coupon] = None


@runtime_checkable
class CouponStore(Protocol):
    """Storage contract of the allocation engine.

    `commit_claim` is the only write during normal operation. It must be
    atomic: the coupon is claimed only if it is still unclaimed *and* the
    claimant has no claim at or after `since`, both evaluated while no other
    commit of the same claimant can interleave.
    """

    async def open(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def latest_claim(self, claimed_by: str, since: datetime) -> Optional[Coupon]:
        ...

    async def first_unclaimed(self) -> Optional[Coupon]:
        ...

    async def commit_claim(
        self,
        coupon_id: int,
        claimed_by: str,
        claimed_at: datetime,
        since: datetime,
        claim_ref: Optional[str] = None,
    ) -> CommitResult:
        ...

    async def find_by_claim_ref(self, claim_ref: str) -> Optional[Coupon]:
        ...

    async def stats(self) -> Stats:
        ...

    async def add_codes(self, codes: Iterable[str]) -> int:
        ...

    async def clear(self) -> int:
        ...


@asynccontextmanager
async def _translate_errors():
    try:
        yield
    except OperationalError as e:
        log.error(f"database operation failed: {format_error(e)}")
        raise StoreUnavailable("database operation failed") from e


class PostgresCouponStore:
    def __init__(self, database: Database, run_migrations: bool = True):
        self.database = database
        self.run_migrations = run_migrations

    async def open(self) -> None:
        if self.run_migrations:
            # yoyo is synchronous
            await asyncio.to_thread(migrate, self.database.conninfo)
        await self.database.open()

    async def close(self) -> None:
        await self.database.close()

    async def latest_claim(self, claimed_by: str, since: datetime) -> Optional[Coupon]:
        async with _translate_errors(), self.database.connection() as conn:
            return await coupons_db.get_latest_claim(conn, claimed_by, since)

    async def first_unclaimed(self) -> Optional[Coupon]:
        async with _translate_errors(), self.database.connection() as conn:
            return await coupons_db.get_first_unclaimed(conn)

    async def commit_claim(
        self,
        coupon_id: int,
        claimed_by: str,
        claimed_at: datetime,
        since: datetime,
        claim_ref: Optional[str] = None,
    ) -> CommitResult:
        async with _translate_errors(), self.database.connection() as conn:
            try:
                async with conn.transaction():
                    await coupons_db.lock_claimant(conn, claimed_by)
                    latest = await coupons_db.get_latest_claim(conn, claimed_by, since)
                    if latest:
                        return CommitResult(CommitOutcome.CLAIMANT_BUSY, latest)
                    claimed = await coupons_db.claim_if_unclaimed(
                        conn, coupon_id, claimed_by, claimed_at, claim_ref
                    )
            except UniqueViolation as e:
                # claim_ref is the only unique column the update writes
                raise ClaimRefConflict(f"claim ref {claim_ref} is already used") from e
        if claimed is None:
            return CommitResult(CommitOutcome.CODE_TAKEN)
        return CommitResult(CommitOutcome.COMMITTED, claimed)

    async def find_by_claim_ref(self, claim_ref: str) -> Optional[Coupon]:
        async with _translate_errors(), self.database.connection() as conn:
            return await coupons_db.get_by_claim_ref(conn, claim_ref)

    async def stats(self) -> Stats:
        async with _translate_errors(), self.database.connection() as conn:
            return await coupons_db.count(conn)

    async def add_codes(self, codes: Iterable[str]) -> int:
        added = 0
        async with _translate_errors(), self.database.connection() as conn:
            async with conn.transaction():
                for code in codes:
                    if await coupons_db.insert(conn, code):
                        added += 1
        return added

    async def clear(self) -> int:
        async with _translate_errors(), self.database.connection() as conn:
            return await coupons_db.remove_all(conn)


def make_store() -> CouponStore:
    backend = gconf.get("store.backend", default="postgres")
    if backend == "postgres":
        return PostgresCouponStore(Database.from_config())
    if backend == "memory":
        from coupon_core.service.memory_store import MemoryCouponStore
        return MemoryCouponStore()
    raise ValueError(f"unknown store backend: {backend}")
