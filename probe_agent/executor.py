"""
Query Executor

Runs allowlist-validated SQL against whichever backend is configured.
Query text is never written to logs.
"""

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional

from .config import DbType, SqlConfig
from .drivers import DEFAULT_PORTS, DatabaseDriver, QueryResult, create_driver
from .exceptions import SqlNotConfiguredError

logger = logging.getLogger(__name__)

# Fields whose change requires a new driver connection
CONNECTION_FIELDS = ("db_type", "server", "port", "user", "password", "database")

TEST_QUERY = "SELECT 1 AS test"


class QueryExecutor:
    """
    Owns the SQL configuration and the live driver

    is_connected() also reports True after a successful test_connection(),
    so a pool that silently drops idle connections does not make the
    reported status flap.
    """

    def __init__(self, driver_factory: Callable[[DbType], DatabaseDriver] = create_driver):
        self._driver_factory = driver_factory
        self._driver: Optional[DatabaseDriver] = None
        self._config: Optional[SqlConfig] = None
        self._last_test_success = False

    async def configure(self, config: SqlConfig) -> None:
        """
        Apply a new SQL configuration

        The live driver is kept when no connection field changed; otherwise
        it is disconnected and a driver for the new backend is created.
        """
        db_type = DbType(config.db_type or DbType.MSSQL)
        config = replace(config, db_type=db_type, port=config.port or DEFAULT_PORTS[db_type])

        connection_changed = self._config is None or any(
            getattr(self._config, name) != getattr(config, name) for name in CONNECTION_FIELDS
        )

        self._config = config
        self._last_test_success = False

        if not connection_changed and self._driver is not None:
            logger.debug("SQL configuration unchanged - keeping live connection")
            return

        await self.disconnect()
        self._driver = self._driver_factory(db_type)
        logger.info(f"SQL configured: {db_type.value} at {config.server}:{config.port}")

    async def connect(self) -> None:
        if self._config is None:
            raise SqlNotConfiguredError()
        if self._driver is None:
            self._driver = self._driver_factory(self._config.db_type)

        try:
            await self._driver.connect(self._config)
        except Exception as e:
            logger.error(f"SQL connection failed: {e}")
            raise

    async def disconnect(self) -> None:
        if self._driver is not None:
            await self._driver.disconnect()

    async def execute(self, query: str, timeout: Optional[int] = None) -> QueryResult:
        """
        Run SQL text, connecting first if needed

        Args:
            query: SQL text that already passed the allowlist
            timeout: Statement timeout in milliseconds
        """
        if self._driver is None or not self._driver.is_connected():
            await self.connect()

        started = time.monotonic()
        try:
            result = await self._driver.execute(query, timeout)
        except Exception as e:
            duration = int((time.monotonic() - started) * 1000)
            logger.error(f"Query failed after {duration}ms: {e}")
            raise

        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    async def test_connection(self) -> Dict[str, Any]:
        """
        Run a trivial probe query, connecting first if needed

        Returns:
            {"success": bool} plus "error" on failure
        """
        try:
            result = await self.execute(TEST_QUERY)
            success = len(result.rows) > 0
            self._last_test_success = success
            return {"success": success}
        except Exception as e:
            self._last_test_success = False
            return {"success": False, "error": str(e) or type(e).__name__}

    def is_connected(self) -> bool:
        driver_connected = self._driver is not None and self._driver.is_connected()
        return driver_connected or self._last_test_success

    def is_configured(self) -> bool:
        return self._config is not None

    @property
    def config(self) -> Optional[SqlConfig]:
        return self._config

    @property
    def driver(self) -> Optional[DatabaseDriver]:
        return self._driver

    @property
    def sql_host(self) -> Optional[str]:
        return self._config.server if self._config else None

    @property
    def db_type(self) -> Optional[str]:
        return self._config.db_type.value if self._config else None

    def get_status(self) -> str:
        """Get connection status string"""
        return "connected" if self.is_connected() else "disconnected"
