"""
Database drivers, keyed by the SqlConfig.db_type discriminator

New backends implement DatabaseDriver and register here.
"""

from typing import Dict, Type

from ..config import DbType
from ..exceptions import UnsupportedDatabaseError
from .base import DatabaseDriver, QueryResult, serialize_value
from .mssql import MssqlDriver
from .postgres import PostgresDriver

DRIVERS: Dict[DbType, Type[DatabaseDriver]] = {
    DbType.MSSQL: MssqlDriver,
    DbType.POSTGRES: PostgresDriver,
}

DEFAULT_PORTS: Dict[DbType, int] = {
    DbType.MSSQL: 1433,
    DbType.POSTGRES: 5432,
}


def create_driver(db_type) -> DatabaseDriver:
    """Instantiate the driver for a backend type"""
    try:
        return DRIVERS[DbType(db_type)]()
    except (KeyError, ValueError):
        raise UnsupportedDatabaseError(str(getattr(db_type, "value", db_type)))


__all__ = [
    "DatabaseDriver",
    "QueryResult",
    "serialize_value",
    "MssqlDriver",
    "PostgresDriver",
    "DRIVERS",
    "DEFAULT_PORTS",
    "create_driver",
]
