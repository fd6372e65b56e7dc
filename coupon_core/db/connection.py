import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import gconf
from psycopg import AsyncConnection, OperationalError
from psycopg.conninfo import make_conninfo
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from coupon_core.service.exceptions import StoreUnavailable
from coupon_core.util.misc import format_error

log = logging.getLogger(__name__)


class Database:
    """Owns the connection pool of one PostgreSQL database.

    The pool is opened lazily by the first caller of :meth:`open` or
    :meth:`connection`. Opening is single-flight: concurrent callers await
    the same attempt, and a failed attempt is forgotten so the next caller
    starts a fresh one.
    """

    def __init__(self, conninfo: str, min_size: int = 1, max_size: int = 10, open_timeout: float = 10.0):
        self.conninfo = conninfo
        self.min_size = min_size
        self.max_size = max_size
        self.open_timeout = open_timeout
        self._pool: Optional[AsyncConnectionPool] = None
        self._opening: Optional[asyncio.Future] = None

    @classmethod
    def from_config(cls) -> "Database":
        pool_config = gconf.get("db_pool", default={})
        return cls(
            make_conninfo(**gconf.get("db")),
            min_size=pool_config.get("min_size", 1),
            max_size=pool_config.get("max_size", 10),
            open_timeout=pool_config.get("open_timeout", 10.0),
        )

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    async def open(self) -> AsyncConnectionPool:
        if self._pool is not None:
            return self._pool
        if self._opening is None:
            self._opening = asyncio.ensure_future(self._open_pool())
        # a cancelled caller must not cancel the attempt the others are waiting on
        return await asyncio.shield(self._opening)

    async def _open_pool(self) -> AsyncConnectionPool:
        pool = AsyncConnectionPool(
            conninfo=self.conninfo,
            min_size=self.min_size,
            max_size=self.max_size,
            open=False,
        )
        try:
            await pool.open(wait=True, timeout=self.open_timeout)
        except (OperationalError, PoolTimeout) as e:
            await pool.close()
            log.error(f"could not open connection pool: {format_error(e)}")
            raise StoreUnavailable("database is not reachable") from e
        except Exception:
            await pool.close()
            log.exception("unexpected error while opening connection pool")
            raise
        finally:
            # a failed attempt is never reused
            self._opening = None
        self._pool = pool
        log.info("opened connection pool")
        return pool

    async def close(self) -> None:
        if self._opening is not None:
            try:
                await self._opening
            except Exception:  # logged by _open_pool
                pass
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            log.info("closed connection pool")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[AsyncConnection, None]:
        pool = await self.open()
        try:
            async with pool.connection() as conn:
                yield conn
        except PoolTimeout as e:
            raise StoreUnavailable("no database connection available") from e
