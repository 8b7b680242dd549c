"""
Probe Message Schemas

Pydantic models for the JSON envelope protocol between the controller
and the probe.

Every frame is an envelope:
    {id, type: request|response|event, action, payload, timestamp}

A request is answered by exactly one response carrying the same id and
the action "<action>.response".
"""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class MessageType(str, Enum):
    """Envelope types"""
    REQUEST = "request"
    RESPONSE = "response"
    EVENT = "event"


class Action(str, Enum):
    """Actions the probe sends or understands"""

    # Probe -> controller
    PROBE_REGISTER = "probe.register"
    PROBE_HEARTBEAT = "probe.heartbeat"
    SYNC_STRUCTURE = "sync.structure"
    SYNC_MD_FILES = "sync.mdFiles"
    ALLOWLIST_REFRESH = "allowlist.refresh"
    AUTH_VERIFY = "auth.verify"

    # Controller -> probe requests
    SQL_EXECUTE = "sql.execute"
    SQL_TEST_CONNECTION = "sql.testConnection"
    FILE_READ = "file.read"
    FILE_LIST = "file.list"
    FILE_SEARCH = "file.search"
    FILE_GET_STRUCTURE = "file.getStructure"

    # Controller -> probe events
    CONFIG_SYNC = "config.sync"
    ALLOWLIST_SYNC = "allowlist.sync"


RESPONSE_SUFFIX = ".response"


def now_ms() -> int:
    """Current epoch time in milliseconds"""
    return int(time.time() * 1000)


def parse_iso_timestamp(value: str) -> datetime:
    """
    Parse an ISO8601 timestamp into an aware UTC datetime

    Accepts a trailing "Z", which datetime.fromisoformat only handles
    from Python 3.11 on. Naive values are taken as UTC.
    """
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ===================== Envelope =====================

class Message(BaseModel):
    """
    Wire envelope

    Extra top-level fields are kept: the auth.verify response carries
    ``success`` and ``error`` next to ``payload`` instead of inside it.
    """
    model_config = ConfigDict(extra="allow", use_enum_values=True)

    id: str
    type: MessageType
    action: str
    payload: Any = None
    timestamp: int = Field(default_factory=now_ms)

    @property
    def extras(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        if data.get("payload") is None:
            data["payload"] = {}
        return data


def new_message(
    action: str,
    payload: Optional[Dict[str, Any]] = None,
    message_type: MessageType = MessageType.REQUEST,
    message_id: Optional[str] = None,
) -> Message:
    """Build an outbound envelope with a fresh id and timestamp"""
    return Message(
        id=message_id or str(uuid4()),
        type=message_type,
        action=action,
        payload=payload if payload is not None else {},
    )


def response_to(request: Message, payload: Dict[str, Any]) -> Message:
    """Build the single response envelope for a request"""
    return new_message(
        action=f"{request.action}{RESPONSE_SUFFIX}",
        payload=payload,
        message_type=MessageType.RESPONSE,
        message_id=request.id,
    )


def parse_message(data: Dict[str, Any]) -> Message:
    """
    Parse incoming envelope data

    Raises:
        pydantic.ValidationError: if required envelope fields are missing
    """
    return Message.model_validate(data)


# ===================== Catalog =====================

class QueryCatalog(BaseModel):
    """
    Signed catalog of approved query templates

    Fields are strict: the signature covers their exact JSON form, so a
    coerced value (e.g. "3" -> 3) must not silently pass.
    """
    model_config = ConfigDict(strict=True, frozen=True)

    version: int
    generated_at: str
    expires_at: str
    queries: Dict[str, str]
    signature: str

    def signed_document(self) -> Dict[str, Any]:
        """The exact fields covered by the signature"""
        return {
            "expires_at": self.expires_at,
            "generated_at": self.generated_at,
            "queries": dict(self.queries),
            "version": self.version,
        }


# ===================== Request Payloads =====================

class SqlExecutePayload(BaseModel):
    """sql.execute request payload"""
    template: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    tool_id: Optional[str] = Field(None, alias="toolId")
    query: Optional[str] = Field(None, description="Legacy raw SQL, accepted only before the first catalog")
    timeout: Optional[int] = Field(None, description="Query timeout in milliseconds")

    model_config = ConfigDict(populate_by_name=True)


class FileReadPayload(BaseModel):
    """file.read request payload"""
    path: str


class FileListPayload(BaseModel):
    """file.list request payload"""
    path: str = "."
    recursive: bool = False


class FileSearchPayload(BaseModel):
    """file.search request payload"""
    pattern: str
    glob: str = "*"
