"""
PostgreSQL driver

psycopg connection pool. SSL behaviour follows libpq sslmode:
disable | require | verify-ca | verify-full.
"""

import asyncio
import logging
import time
from typing import Any, List, Optional, Tuple

from ..config import SqlConfig
from ..exceptions import DriverNotConnectedError
from .base import DatabaseDriver, QueryResult, serialize_value

logger = logging.getLogger(__name__)

SSL_MODES = ("disable", "require", "verify-ca", "verify-full")


def build_conninfo(config: SqlConfig) -> str:
    """libpq connection string for the configured server"""
    from psycopg.conninfo import make_conninfo

    options = config.options or {}
    ssl_mode = options.get("ssl_mode", options.get("sslMode")) or "disable"
    if ssl_mode not in SSL_MODES:
        raise ValueError(f"Unsupported ssl_mode: {ssl_mode} (expected one of {', '.join(SSL_MODES)})")

    params = {
        "host": config.server,
        "port": config.port,
        "user": config.user,
        "password": config.password,
        "dbname": config.database or "postgres",
        "sslmode": ssl_mode,
        "connect_timeout": config.connection_timeout,
    }
    if options.get("ssl_root_cert"):
        params["sslrootcert"] = options["ssl_root_cert"]
    return make_conninfo(**{k: v for k, v in params.items() if v not in (None, "")})


class PostgresDriver(DatabaseDriver):
    """PostgreSQL backend"""

    name = "PostgreSQL"

    def __init__(self):
        self._pool = None
        self._config: Optional[SqlConfig] = None

    async def connect(self, config: SqlConfig) -> None:
        self._config = config
        self._pool = await asyncio.to_thread(self._open_pool, config)
        logger.info(f"Connected to PostgreSQL: {config.server}/{config.database or 'postgres'}")

    @staticmethod
    def _open_pool(config: SqlConfig):
        # Client library loaded on first connect: only the configured backend needs native libs
        from psycopg_pool import ConnectionPool

        pool = ConnectionPool(
            build_conninfo(config),
            min_size=1,
            max_size=10,
            max_idle=30,
            timeout=config.connection_timeout,
            open=False,
        )
        try:
            # Verify the server is reachable before reporting connected
            pool.open(wait=True, timeout=config.connection_timeout)
        except Exception:
            pool.close()
            raise
        return pool

    async def disconnect(self) -> None:
        pool, self._pool = self._pool, None
        if pool is None:
            return
        try:
            await asyncio.to_thread(pool.close)
            logger.info("Disconnected from PostgreSQL")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL pool: {e}")

    async def execute(self, query: str, timeout: Optional[int] = None) -> QueryResult:
        if self._pool is None:
            raise DriverNotConnectedError(self.name)

        started = time.monotonic()
        columns, rows, row_count = await asyncio.to_thread(self._execute_sync, query, timeout)
        duration = int((time.monotonic() - started) * 1000)

        logger.debug(f"Query executed in {duration}ms, returned {row_count} rows")
        return QueryResult(columns=columns, rows=rows, row_count=row_count, duration_ms=duration)

    def _execute_sync(self, query: str, timeout: Optional[int]) -> Tuple[List[str], List[List[Any]], int]:
        pool = self._pool
        if pool is None:
            raise DriverNotConnectedError(self.name)

        statement_timeout = int(timeout) if timeout else self._config.query_timeout * 1000

        with pool.connection() as conn:
            with conn.cursor() as cur:
                # SET LOCAL lasts only for this transaction
                cur.execute(f"SET LOCAL statement_timeout = {statement_timeout}")
                cur.execute(query)
                if cur.description:
                    columns = [column.name for column in cur.description]
                    rows = [[serialize_value(value) for value in row] for row in cur.fetchall()]
                    return columns, rows, len(rows)
                return [], [], max(cur.rowcount, 0)

    def is_connected(self) -> bool:
        return self._pool is not None and not self._pool.closed
