"""
SQL Server driver

pyodbc connection to the local SQL Server. pyodbc is blocking, so every
call runs in a worker thread; one asyncio lock serializes use of the
single connection.
"""

import asyncio
import logging
import math
import time
from typing import Any, List, Optional, Tuple

from ..config import SqlConfig
from ..exceptions import DriverNotConnectedError
from .base import DatabaseDriver, QueryResult, serialize_value

logger = logging.getLogger(__name__)

DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"


def build_connection_string(config: SqlConfig) -> str:
    """
    Build ODBC connection string

    Encryption is on by default; TrustServerCertificate defaults to on so
    self-signed site certificates work out of the box.
    """
    options = config.options or {}
    driver = options.get("driver", DEFAULT_ODBC_DRIVER)
    encrypt = options.get("encrypt", True)
    trust_cert = options.get("trust_server_certificate", options.get("trustServerCertificate", True))

    server = config.server
    if config.port:
        server = f"{config.server},{config.port}"

    conn = (
        f"DRIVER={{{driver}}};"
        f"SERVER={server};"
        f"Connection Timeout={config.connection_timeout};"
        f"Encrypt={'yes' if encrypt else 'no'};"
    )
    if trust_cert:
        conn += "TrustServerCertificate=yes;"
    if config.database:
        conn += f"DATABASE={config.database};"

    if options.get("use_windows_auth"):
        return conn + "Trusted_Connection=yes;"
    return conn + f"UID={config.user};PWD={config.password};"


class MssqlDriver(DatabaseDriver):
    """SQL Server backend"""

    name = "MSSQL"

    def __init__(self):
        self._connection = None
        self._config: Optional[SqlConfig] = None
        self._lock = asyncio.Lock()

    async def connect(self, config: SqlConfig) -> None:
        self._config = config
        self._connection = await asyncio.to_thread(self._connect_sync, config)
        logger.info(f"Connected to SQL Server: {config.server}/{config.database}")

    @staticmethod
    def _connect_sync(config: SqlConfig):
        # Client library loaded on first connect: only the configured backend needs native libs
        import pyodbc

        return pyodbc.connect(build_connection_string(config), autocommit=True)

    async def disconnect(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await asyncio.to_thread(connection.close)
            logger.info("Disconnected from SQL Server")
        except Exception as e:
            logger.error(f"Error closing SQL Server connection: {e}")

    async def execute(self, query: str, timeout: Optional[int] = None) -> QueryResult:
        if self._connection is None:
            raise DriverNotConnectedError(self.name)

        async with self._lock:
            started = time.monotonic()
            columns, rows, row_count = await asyncio.to_thread(self._execute_sync, query, timeout)
            duration = int((time.monotonic() - started) * 1000)

        logger.debug(f"Query executed in {duration}ms, returned {row_count} rows")
        return QueryResult(columns=columns, rows=rows, row_count=row_count, duration_ms=duration)

    def _execute_sync(self, query: str, timeout: Optional[int]) -> Tuple[List[str], List[List[Any]], int]:
        import pyodbc

        connection = self._connection
        if connection is None:
            raise DriverNotConnectedError(self.name)

        # pyodbc timeout is whole seconds on the connection, not the cursor
        query_timeout = timeout if timeout else self._config.query_timeout * 1000
        connection.timeout = max(1, math.ceil(query_timeout / 1000))

        cursor = connection.cursor()
        try:
            cursor.execute(query)
            if cursor.description:
                columns = [column[0] for column in cursor.description]
                rows = [[serialize_value(value) for value in row] for row in cursor.fetchall()]
                return columns, rows, len(rows)
            return [], [], max(cursor.rowcount, 0)
        except pyodbc.OperationalError:
            # Link is gone; drop it so the next execute reconnects
            self._connection = None
            try:
                connection.close()
            except pyodbc.Error:
                pass
            raise
        finally:
            try:
                cursor.close()
            except pyodbc.Error:
                pass

    def is_connected(self) -> bool:
        return self._connection is not None
