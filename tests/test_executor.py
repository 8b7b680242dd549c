"""
Unit Tests for QueryExecutor and the database drivers
Tests backend switching, lazy connection, connection status and
connection string building
"""

from datetime import date, datetime
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import UUID

import pytest

from probe_agent.config import DbType, SqlConfig
from probe_agent.drivers import MssqlDriver, PostgresDriver, create_driver, serialize_value
from probe_agent.drivers.mssql import build_connection_string
from probe_agent.drivers.postgres import build_conninfo
from probe_agent.exceptions import SqlNotConfiguredError, UnsupportedDatabaseError
from probe_agent.executor import QueryExecutor


@pytest.fixture
def executor(driver_factory):
    return QueryExecutor(driver_factory=driver_factory)


class TestConfigure:
    """Test applying SQL configuration"""

    @pytest.mark.asyncio
    async def test_default_port_per_backend(self, executor, driver_factory):
        """Test switching backend without a port picks the new default"""
        await executor.configure(SqlConfig(db_type=DbType.MSSQL, server="db1"))
        assert executor.config.port == 1433

        await executor.configure(SqlConfig(db_type=DbType.POSTGRES, server="db1"))
        assert executor.config.port == 5432
        assert len(driver_factory.created) == 2
        assert driver_factory.last.db_type == DbType.POSTGRES

    @pytest.mark.asyncio
    async def test_string_db_type(self, executor, driver_factory):
        """Test db_type given as a plain string"""
        await executor.configure(SqlConfig(db_type="postgres", server="db1"))

        assert executor.db_type == "postgres"
        assert driver_factory.last.db_type == DbType.POSTGRES

    @pytest.mark.asyncio
    async def test_explicit_port_kept(self, executor):
        """Test a configured port is not replaced"""
        await executor.configure(SqlConfig(db_type=DbType.POSTGRES, server="db1", port=6543))
        assert executor.config.port == 6543

    @pytest.mark.asyncio
    async def test_unchanged_config_keeps_driver(self, executor, driver_factory):
        """Test reapplying the same connection settings keeps the live driver"""
        config = SqlConfig(db_type=DbType.MSSQL, server="db1", user="sa", password="pw", database="hr")
        await executor.configure(config)
        await executor.execute("SELECT 1")

        await executor.configure(SqlConfig(db_type=DbType.MSSQL, server="db1", user="sa", password="pw", database="hr"))

        assert len(driver_factory.created) == 1
        assert driver_factory.last.disconnect_calls == 0

    @pytest.mark.asyncio
    async def test_changed_config_replaces_driver(self, executor, driver_factory):
        """Test a new server disconnects the old driver"""
        await executor.configure(SqlConfig(server="db1"))
        await executor.execute("SELECT 1")
        old_driver = driver_factory.last

        await executor.configure(SqlConfig(server="db2"))

        assert old_driver.disconnect_calls == 1
        assert driver_factory.last is not old_driver
        assert executor.sql_host == "db2"

    def test_unknown_backend(self):
        """Test an unsupported backend is reported"""
        with pytest.raises(UnsupportedDatabaseError):
            create_driver("oracle")

    def test_create_known_drivers(self):
        """Test the registry returns the right driver classes"""
        assert isinstance(create_driver(DbType.MSSQL), MssqlDriver)
        assert isinstance(create_driver("postgres"), PostgresDriver)


class TestExecute:
    """Test query execution"""

    @pytest.mark.asyncio
    async def test_not_configured(self, executor):
        """Test executing before any configuration"""
        with pytest.raises(SqlNotConfiguredError):
            await executor.execute("SELECT 1")

    @pytest.mark.asyncio
    async def test_lazy_connect(self, executor, driver_factory):
        """Test the first execute connects the driver"""
        await executor.configure(SqlConfig(server="db1"))
        assert driver_factory.last.connect_calls == 0

        result = await executor.execute("SELECT id, name FROM t", timeout=5000)

        assert driver_factory.last.connect_calls == 1
        assert driver_factory.last.queries == [("SELECT id, name FROM t", 5000)]
        assert result.columns == ["id", "name"]
        assert result.rows == [[7, "seven"]]
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_execute_error_propagates(self, executor, driver_factory):
        """Test backend errors reach the caller"""
        driver_factory.execute_error = RuntimeError("Invalid object name 't'")
        await executor.configure(SqlConfig(server="db1"))

        with pytest.raises(RuntimeError):
            await executor.execute("SELECT * FROM t")

    @pytest.mark.asyncio
    async def test_result_payload(self, executor):
        """Test the wire shape of a result"""
        await executor.configure(SqlConfig(server="db1"))
        payload = (await executor.execute("SELECT 1")).to_payload()

        assert set(payload) == {"columns", "rows", "rowCount", "duration"}
        assert payload["rowCount"] == 1


class TestConnectionStatus:
    """Test is_connected and test_connection"""

    @pytest.mark.asyncio
    async def test_success_keeps_status_after_pool_drop(self, executor, driver_factory):
        """Test a passed connection test still reports connected when the pool idles out"""
        await executor.configure(SqlConfig(server="db1"))

        assert await executor.test_connection() == {"success": True}
        driver_factory.last.connected = False

        assert executor.is_connected() is True
        assert executor.get_status() == "connected"

    @pytest.mark.asyncio
    async def test_reconfigure_resets_status(self, executor, driver_factory):
        """Test configuring again clears the last test result"""
        await executor.configure(SqlConfig(server="db1"))
        await executor.test_connection()
        driver_factory.last.connected = False

        await executor.configure(SqlConfig(server="db1"))

        assert executor.is_connected() is False

    @pytest.mark.asyncio
    async def test_failure(self, executor, driver_factory):
        """Test a failing test query is reported, not raised"""
        driver_factory.execute_error = RuntimeError("Login failed for user 'sa'")
        await executor.configure(SqlConfig(server="db1"))

        result = await executor.test_connection()

        assert result["success"] is False
        assert "Login failed" in result["error"]

    @pytest.mark.asyncio
    async def test_failure_without_config(self, executor):
        """Test connection test before configuration"""
        result = await executor.test_connection()

        assert result == {"success": False, "error": "SQL not configured"}
        assert executor.is_connected() is False


class TestDriverHelpers:
    """Test connection strings and value conversion"""

    def test_mssql_connection_string_defaults(self):
        """Test ODBC string with encryption defaults"""
        conn = build_connection_string(
            SqlConfig(server="db1", port=1433, user="sa", password="pw", database="hr")
        )

        assert "DRIVER={ODBC Driver 18 for SQL Server};" in conn
        assert "SERVER=db1,1433;" in conn
        assert "Encrypt=yes;" in conn
        assert "TrustServerCertificate=yes;" in conn
        assert "DATABASE=hr;" in conn
        assert conn.endswith("UID=sa;PWD=pw;")

    def test_mssql_options(self):
        """Test encryption and Windows auth options"""
        conn = build_connection_string(SqlConfig(
            server="db1",
            options={"encrypt": False, "trust_server_certificate": False, "use_windows_auth": True},
        ))

        assert "Encrypt=no;" in conn
        assert "TrustServerCertificate" not in conn
        assert conn.endswith("Trusted_Connection=yes;")

    def test_postgres_conninfo(self):
        """Test libpq conninfo with ssl mode"""
        conninfo = build_conninfo(SqlConfig(
            db_type=DbType.POSTGRES,
            server="pg1",
            port=5432,
            user="probe",
            password="pw",
            options={"ssl_mode": "require"},
        ))

        assert "host=pg1" in conninfo
        assert "dbname=postgres" in conninfo
        assert "sslmode=require" in conninfo

    def test_postgres_invalid_ssl_mode(self):
        """Test unknown ssl modes are rejected"""
        with pytest.raises(ValueError):
            build_conninfo(SqlConfig(db_type=DbType.POSTGRES, options={"ssl_mode": "sometimes"}))

    def test_serialize_value(self):
        """Test driver values become JSON-safe"""
        assert serialize_value(datetime(2026, 1, 2, 3, 4, 5)) == "2026-01-02T03:04:05"
        assert serialize_value(date(2026, 1, 2)) == "2026-01-02"
        assert serialize_value(Decimal("1.50")) == 1.5
        assert serialize_value(b"\x01\xff") == "01ff"
        assert serialize_value(UUID(int=1)) == "00000000-0000-0000-0000-000000000001"
        assert serialize_value(None) is None

    def test_mssql_link_failure_closes_connection(self):
        """Test a dropped link closes the old handle and forces a reconnect"""
        pyodbc = pytest.importorskip("pyodbc")
        connection = MagicMock()
        connection.cursor.return_value.execute.side_effect = pyodbc.OperationalError("08S01", "link failure")
        driver = MssqlDriver()
        driver._config = SqlConfig()
        driver._connection = connection

        with pytest.raises(pyodbc.OperationalError):
            driver._execute_sync("SELECT 1", 1000)

        connection.close.assert_called_once_with()
        connection.cursor.return_value.close.assert_called_once_with()
        assert driver.is_connected() is False
