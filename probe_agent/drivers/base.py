"""
Database driver contract

Every backend implements connect / disconnect / execute / is_connected and
returns results as column-ordered arrays, so the controller sees the same
shape whichever database sits behind the probe.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..config import SqlConfig


@dataclass
class QueryResult:
    """Rows as arrays in column order"""
    columns: List[str] = field(default_factory=list)
    rows: List[List[Any]] = field(default_factory=list)
    row_count: int = 0
    duration_ms: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "columns": self.columns,
            "rows": self.rows,
            "rowCount": self.row_count,
            "duration": self.duration_ms,
        }


def serialize_value(value: Any) -> Any:
    """Convert driver values into JSON-safe equivalents"""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, UUID):
        return str(value)
    return value


class DatabaseDriver(ABC):
    """One database backend"""

    name = "database"

    @abstractmethod
    async def connect(self, config: SqlConfig) -> None:
        """Open the connection (or pool); raises on failure"""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection; safe to call when not connected"""

    @abstractmethod
    async def execute(self, query: str, timeout: Optional[int] = None) -> QueryResult:
        """
        Run query text

        Args:
            query: SQL text, already validated by the allowlist
            timeout: Statement timeout in milliseconds
        """

    @abstractmethod
    def is_connected(self) -> bool:
        """True while a live connection or pool is held"""
