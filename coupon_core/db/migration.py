import logging
from pathlib import Path
from urllib.parse import quote

import gconf
import psycopg
from psycopg.conninfo import conninfo_to_dict
from yoyo import get_backend
from yoyo import read_migrations

log = logging.getLogger(__name__)


def yoyo_url(conninfo: str) -> str:
    """Turn a libpq connection string into the URL yoyo expects"""
    params = conninfo_to_dict(conninfo)
    user = quote(str(params.get("user", "")), safe="")
    password = quote(str(params.get("password", "")), safe="")
    host = params.get("host", "localhost")
    port = params.get("port", 5432)
    dbname = quote(str(params.get("dbname", "")), safe="")
    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{dbname}"


def migrate(conninfo: str):
    """Apply all pending migrations from `migrations.path` to the database"""
    try:
        backend = get_backend(yoyo_url(conninfo))
    except psycopg.OperationalError:
        log.exception("failed to connect to the database for migrations")
        raise
    migrations_path = Path(gconf.get("migrations.path", default="migrations")).resolve()
    migrations = read_migrations(str(migrations_path))
    with backend.lock():
        pending = backend.to_apply(migrations)
        backend.apply_migrations(pending)
    log.info(f"applied {len(pending)} migrations from {migrations_path}")
