"""
Database access methods for coupons
"""
from datetime import datetime
from typing import Optional

from psycopg import AsyncConnection
from psycopg.rows import class_row

from coupon_core.data_model.coupon import Coupon, Stats

_COLUMNS = "id, code, claimed, claimed_by, claimed_at, claim_ref"


async def get_by_claim_ref(conn: AsyncConnection, claim_ref: str) -> Optional[Coupon]:
    async with conn.cursor(row_factory=class_row(Coupon)) as cur:
        await cur.execute(
            f"SELECT {_COLUMNS} FROM coupons WHERE claim_ref = %(claim_ref)s",
            {"claim_ref": claim_ref},
        )
        return await cur.fetchone()


async def get_latest_claim(
    conn: AsyncConnection, claimed_by: str, since: datetime
) -> Optional[Coupon]:
    """Most recent coupon claimed by `claimed_by` at or after `since`"""
    async with conn.cursor(row_factory=class_row(Coupon)) as cur:
        await cur.execute(
            f"""
            SELECT {_COLUMNS} FROM coupons
            WHERE claimed_by = %(claimed_by)s AND claimed_at >= %(since)s
            ORDER BY claimed_at DESC
            LIMIT 1
            """,
            {"claimed_by": claimed_by, "since": since},
        )
        return await cur.fetchone()


async def get_first_unclaimed(conn: AsyncConnection) -> Optional[Coupon]:
    async with conn.cursor(row_factory=class_row(Coupon)) as cur:
        await cur.execute(
            f"SELECT {_COLUMNS} FROM coupons WHERE NOT claimed ORDER BY id LIMIT 1"
        )
        return await cur.fetchone()


async def lock_claimant(conn: AsyncConnection, claimed_by: str) -> None:
    """Serialize transactions of one claimant until the current transaction ends"""
    async with conn.cursor() as cur:
        await cur.execute(
            "SELECT pg_advisory_xact_lock(hashtextextended(%(claimed_by)s, 0))",
            {"claimed_by": claimed_by},
        )


async def claim_if_unclaimed(
    conn: AsyncConnection,
    coupon_id: int,
    claimed_by: str,
    claimed_at: datetime,
    claim_ref: Optional[str],
) -> Optional[Coupon]:
    """Mark a coupon as claimed if nobody claimed it yet, returns None otherwise"""
    async with conn.cursor(row_factory=class_row(Coupon)) as cur:
        await cur.execute(
            f"""
            UPDATE coupons
            SET claimed = TRUE,
                claimed_by = %(claimed_by)s,
                claimed_at = %(claimed_at)s,
                claim_ref = %(claim_ref)s
            WHERE id = %(id)s AND NOT claimed
            RETURNING {_COLUMNS}
            """,
            {
                "id": coupon_id,
                "claimed_by": claimed_by,
                "claimed_at": claimed_at,
                "claim_ref": claim_ref,
            },
        )
        return await cur.fetchone()


async def count(conn: AsyncConnection) -> Stats:
    """Count all and claimed coupons in one statement"""
    async with conn.cursor(row_factory=class_row(Stats)) as cur:
        await cur.execute(
            """
            SELECT COUNT(*) AS total, COUNT(*) FILTER (WHERE claimed) AS claimed
            FROM coupons
            """
        )
        return await cur.fetchone()


async def insert(conn: AsyncConnection, code: str) -> bool:
    """Insert a new unclaimed coupon, returns False if the code already exists"""
    async with conn.cursor() as cur:
        await cur.execute(
            "INSERT INTO coupons (code) VALUES (%(code)s) ON CONFLICT (code) DO NOTHING",
            {"code": code},
        )
        return cur.rowcount == 1


async def remove_all(conn: AsyncConnection) -> int:
    async with conn.cursor() as cur:
        await cur.execute("DELETE FROM coupons")
        return cur.rowcount
