import logging
import os
from datetime import datetime, timezone
from logging import LogRecord
from typing import List

import gconf
import pytest
import pytest_asyncio
from asgi_lifespan import LifespanManager
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

import coupon_core
from coupon_core.app_factory import DEFAULT_CONFIG
from coupon_core.service.allocation import AllocationEngine
from coupon_core.service.memory_store import MemoryCouponStore
from coupon_core.service.statistics import StatisticsReader

pytest_plugins = ('pytest_asyncio',)

T0 = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


def requires_test_env(*envs: str):
    """Run the test only if COUPON_TEST_ENV names one of `envs`"""
    current = os.environ.get('COUPON_TEST_ENV', 'unit')
    return pytest.mark.skipif(
        current not in envs, reason=f'requires test env {" or ".join(envs)}, running in {current}')


@pytest.fixture(autouse=True, scope='session')
def load_default_config():
    gconf.load(str(DEFAULT_CONFIG))


@pytest.fixture(autouse=True)
def config_override(request):
    # Detects the variable named *config_override* of a test module
    module_override = getattr(request.module, 'config_override', {})

    # Detects the annotation named @pytest.mark.config_override of a test function
    function_override_mark = request.node.get_closest_marker('config_override')
    function_override = function_override_mark.args[0] if function_override_mark else {}

    with gconf.override_conf({'store': {'backend': 'memory'}}), gconf.override_conf(module_override), \
            gconf.override_conf(function_override):
        yield


@pytest_asyncio.fixture
async def store() -> MemoryCouponStore:
    s = MemoryCouponStore()
    await s.open()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def two_code_store(store) -> MemoryCouponStore:
    await store.add_codes(['A', 'B'])
    return store


@pytest.fixture
def engine(store) -> AllocationEngine:
    return AllocationEngine(store, store_timeout=1.0)


@pytest.fixture
def stats_reader(store) -> StatisticsReader:
    return StatisticsReader(store, store_timeout=1.0)


@pytest.fixture
def app(store) -> FastAPI:
    return coupon_core.create_app(store=store)


@pytest_asyncio.fixture
async def api_client(app) -> AsyncClient:
    async with LifespanManager(app), AsyncClient(
            transport=ASGITransport(app=app), base_url='https://coupons') as client:
        yield client


class MemoryLogHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records: List[LogRecord] = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def memory_logger():
    memory_handler = MemoryLogHandler()
    root_logger = logging.getLogger()
    root_logger.addHandler(memory_handler)
    yield memory_handler
    root_logger.removeHandler(memory_handler)
