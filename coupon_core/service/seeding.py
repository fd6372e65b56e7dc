import argparse
import asyncio
import logging
from typing import List, Optional

import gconf

from coupon_core.service.store import CouponStore, make_store

log = logging.getLogger(__name__)

DEFAULT_CODES = ["SAVE10", "DISCOUNT20", "FREESHIP", "EXTRA15", "WELCOME25"]


async def seed_coupons(store: CouponStore, codes: List[str], replace: bool = False) -> int:
    """Add codes to the pool in the given order, skipping existing ones.

    The order of `codes` becomes the order in which they are handed out.
    With `replace`, the existing pool, claimed coupons included, is removed first.
    """
    if replace:
        removed = await store.clear()
        log.info(f"removed {removed} existing coupons")
    added = await store.add_codes(codes)
    log.info(f"added {added} of {len(codes)} coupons")
    return added


async def seed_on_startup(store: CouponStore) -> None:
    if not gconf.get("seed.on_startup", default=False):
        return
    stats = await store.stats()
    if stats.total > 0:
        log.debug(f"pool already holds {stats.total} coupons, not seeding")
        return
    await seed_coupons(store, gconf.get("seed.codes", default=DEFAULT_CODES))


async def _seed_from_cli(codes: List[str], replace: bool) -> int:
    store = make_store()
    await store.open()
    try:
        return await seed_coupons(store, codes, replace=replace)
    finally:
        await store.close()


def main(argv: Optional[List[str]] = None):
    from coupon_core.app_factory import configure_logging, load_config

    parser = argparse.ArgumentParser(description="Add coupon codes to the pool")
    parser.add_argument("codes", nargs="*", help="codes to add, defaults to seed.codes from the config")
    parser.add_argument("--replace", action="store_true", help="remove all existing coupons first")
    args = parser.parse_args(argv)

    load_config()
    configure_logging()
    codes = args.codes or gconf.get("seed.codes", default=DEFAULT_CODES)
    asyncio.run(_seed_from_cli(codes, args.replace))
