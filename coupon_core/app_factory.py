import logging
import os
import sys
from contextlib import asynccontextmanager
from importlib.metadata import metadata
from pathlib import Path
from typing import Optional

import gconf
from fastapi import FastAPI

from .data_model.coupon import Coupon
from .service.allocation import AllocationEngine
from .service.seeding import seed_on_startup
from .service.statistics import StatisticsReader
from .service.store import CouponStore, make_store
from .util.signals import on_coupon_claimed, on_pool_exhausted
from .web import api, public

log = logging.getLogger(__name__)

DEFAULT_CONFIG = Path(__file__).parent / "config.yml"


def create_app(store: Optional[CouponStore] = None):
    load_config()
    configure_logging()

    store = store or make_store()

    app_meta = metadata("coupon_core")
    app = FastAPI(
        title="Coupon Core",
        description=app_meta["summary"],
        version=app_meta["version"],
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.allocation_engine = AllocationEngine.from_config(store)
    app.state.statistics_reader = StatisticsReader.from_config(store)
    app.include_router(api.router)
    app.include_router(public.router)

    return app


def load_config():
    gconf.set_env_prefix("COUPON")
    # Only load config if not already loaded (e.g., by test fixtures)
    try:
        gconf.get("claim.window_seconds")
        log.debug("Config already loaded, skipping config file load")
    except KeyError:
        gconf.load(str(DEFAULT_CONFIG))
        if "CONFIG" in os.environ:
            for c in os.environ["CONFIG"].split(","):
                gconf.load(c)


def configure_logging():
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for module, level in gconf.get("log.levels").items():  # type: str, str
        logger = logging.getLogger() if module == "root" else logging.getLogger(module)
        logger.setLevel(getattr(logging, level.upper()))
        log.info(f"set logger for {module} to {level.upper()}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    store: CouponStore = app.state.store
    await store.open()
    await seed_on_startup(store)
    on_coupon_claimed.connect(_log_claim)
    on_pool_exhausted.connect(_log_pool_exhausted)

    log.info("Startup complete")
    yield  # === run app ===
    log.info("Shutting down")

    on_coupon_claimed.disconnect(_log_claim)
    on_pool_exhausted.disconnect(_log_pool_exhausted)
    await store.close()


def _log_claim(_, coupon: Coupon):
    log.info(f"{coupon} claimed at {coupon.claimed_at.isoformat()}")


def _log_pool_exhausted(_):
    log.warning("coupon pool is exhausted")
