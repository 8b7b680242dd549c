"""
WebSocket Connection to the Controller

Owns the single outbound connection: authentication, envelope routing,
heartbeats, catalog refresh and reconnection with capped exponential
backoff. Close code 4001 means the controller rejected the credentials;
the client then stops for good instead of retrying.
"""

import asyncio
import json
import logging
import ssl
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit


from pydantic import ValidationError
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .allowlist import AllowlistEngine
from .config import AuthMode, AuthStateStore, ControllerConfig, determine_auth_mode
from .exceptions import (
    AllowlistValidationError,
    ConnectionLostError,
    NotConnectedError,
    ProbeException,
    RequestTimeoutError,
)
from .executor import QueryExecutor
from .files import ProjectFiles
from .messages import (
    Action,
    Message,
    MessageType,
    SqlExecutePayload,
    FileListPayload,
    FileReadPayload,
    FileSearchPayload,
    new_message,
    parse_message,
    response_to,
)

logger = logging.getLogger(__name__)

CONTROL_PATH = "/ws/probe"
CLIENT_CERT_HEADER = "X-Client-Cert"
AUTH_REJECTED_CLOSE_CODE = 4001

_SCHEME_MAP = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}


class ConnectionState(str, Enum):
    """Connection lifecycle; AUTH_FAILED is sticky"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTH_FAILED = "auth_failed"


ConnectionListener = Callable[[ConnectionState], None]


@dataclass
class PendingRequest:
    """A request sent to the controller that is awaiting its response"""
    id: str
    future: asyncio.Future
    deadline: float


def build_connection_url(
    server_url: str,
    auth_mode: AuthMode,
    client_id: str,
    client_secret: Optional[str] = None,
) -> str:
    """
    Rewrite the controller URL into the WebSocket endpoint

    http(s) becomes ws(s), certificate mode always uses wss, the control
    path is appended when missing and credentials go into the query string
    as the auth mode requires.
    """
    if "://" not in server_url:
        server_url = f"wss://{server_url}"

    parts = urlsplit(server_url)
    scheme = _SCHEME_MAP.get(parts.scheme.lower(), "wss")
    if auth_mode == AuthMode.CERTIFICATE:
        scheme = "wss"

    path = parts.path.rstrip("/")
    if not path.endswith(CONTROL_PATH):
        path = f"{path}{CONTROL_PATH}"

    query = parse_qsl(parts.query)
    query.append(("clientId", client_id))
    if auth_mode == AuthMode.SECRET and client_secret:
        query.append(("clientSecret", client_secret))

    return urlunsplit((scheme, parts.netloc, path, urlencode(query), ""))


def build_auth_headers(config: ControllerConfig, auth_mode: AuthMode) -> Dict[str, str]:
    """
    Certificate mode presents the PEM client certificate in a header

    TLS is terminated by the proxy in front of the controller, which reads
    this header; it is certificate presentation, not a TLS client-cert
    handshake.
    """
    if auth_mode == AuthMode.CERTIFICATE and config.certificate:
        return {CLIENT_CERT_HEADER: quote(config.certificate, safe="")}
    return {}


def build_ssl_context(url: str, auth_mode: AuthMode, ca_certificate: Optional[str]) -> Optional[ssl.SSLContext]:
    """System trust store, or pinned to the provisioned CA in secret mode"""
    if not url.startswith("wss://"):
        return None
    if auth_mode == AuthMode.SECRET and ca_certificate:
        return ssl.create_default_context(cadata=ca_certificate)
    return ssl.create_default_context()


class ProtocolClient:
    """
    Manages the WebSocket connection to the controller

    Responsibilities:
    - Connect and authenticate per the resolved auth mode
    - Route request / response / event envelopes
    - Gate every SQL text through the allowlist before execution
    - Send heartbeats and periodic catalog refresh requests
    - Reconnect with capped exponential backoff, except after 4001
    """

    def __init__(
        self,
        config: ControllerConfig,
        executor: QueryExecutor,
        allowlist: AllowlistEngine,
        files: ProjectFiles,
        auth_store: Optional[AuthStateStore] = None,
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        self.config = config
        self.executor = executor
        self.allowlist = allowlist
        self.files = files
        self.auth_mode = determine_auth_mode(config)
        self._auth_store = auth_store
        self._connector = connector or websocket_connect

        self._websocket = None
        self._state = ConnectionState.DISCONNECTED
        self._closing = False
        self._reconnect_attempts = 0
        self._pending: Dict[str, PendingRequest] = {}
        self._listeners: List[ConnectionListener] = []

        self._receive_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        stored = auth_store.load() if auth_store else {}
        self.auth_required: bool = bool(stored.get("authRequired", False))
        self.password_hash: Optional[str] = stored.get("passwordHash")

        self._request_handlers = {
            Action.SQL_EXECUTE.value: self._handle_sql_execute,
            Action.SQL_TEST_CONNECTION.value: self._handle_sql_test_connection,
            Action.FILE_READ.value: self._handle_file_read,
            Action.FILE_LIST.value: self._handle_file_list,
            Action.FILE_SEARCH.value: self._handle_file_search,
            Action.FILE_GET_STRUCTURE.value: self._handle_file_structure,
        }

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def add_listener(self, listener: ConnectionListener):
        """Register a callback for every connection state change"""
        self._listeners.append(listener)

    def remove_listener(self, listener: ConnectionListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_state(self, state: ConnectionState):
        if state == self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connection listener failed")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Open the connection to the controller

        Returns:
            True if the connection opened. On a transient failure a
            reconnect is scheduled and False is returned.
        """
        if self.auth_mode == AuthMode.NONE:
            logger.error("No client secret or certificate configured - not connecting")
            return False
        if not self.config.server_url:
            logger.error("Server URL not configured - not connecting")
            return False
        if self._state == ConnectionState.AUTH_FAILED:
            logger.error("Credentials were rejected by the controller - not reconnecting")
            return False
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return True

        self._closing = False
        self._set_state(ConnectionState.CONNECTING)

        url = build_connection_url(
            self.config.server_url,
            self.auth_mode,
            self.config.client_id,
            self.config.client_secret,
        )
        kwargs: Dict[str, Any] = {"close_timeout": 10}
        headers = build_auth_headers(self.config, self.auth_mode)
        if headers:
            kwargs["additional_headers"] = headers
        ssl_context = build_ssl_context(url, self.auth_mode, self.config.ca_certificate)
        if ssl_context is not None:
            kwargs["ssl"] = ssl_context

        # The URL may carry the client secret; log the configured base only
        logger.info(f"Connecting to {self.config.server_url} ({self.auth_mode.value} auth)")

        try:
            websocket = await self._connector(url, **kwargs)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning(f"Connection to controller failed: {e}")
            self._set_state(ConnectionState.DISCONNECTED)
            self._schedule_reconnect()
            return False

        if self._closing:
            await websocket.close()
            self._set_state(ConnectionState.DISCONNECTED)
            return False

        self._websocket = websocket
        # The receive loop owns close handling, so it must exist before the first send
        self._receive_task = asyncio.create_task(self._receive_loop(websocket))
        try:
            await self._on_open()
        except (ConnectionClosed, NotConnectedError) as e:
            logger.warning(f"Connection lost while registering: {e}")
            await websocket.close()
            await self._receive_task
            return False
        return True

    async def _on_open(self):
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to controller")

        await self._send(new_message(Action.PROBE_REGISTER.value, {"serverId": self.config.server_id}))
        self._reconnect_attempts = 0

        self._start_heartbeat()
        if self.allowlist.has_catalog():
            self._start_catalog_refresh()
        self._spawn(self.sync_project_data())

    async def _receive_loop(self, websocket):
        try:
            async for raw in websocket:
                try:
                    await self._handle_raw(raw)
                except Exception as e:
                    logger.error(f"Message handling error: {e}")
        except ConnectionClosed:
            pass
        finally:
            await self._on_close(websocket.close_code, websocket.close_reason)

    async def _on_close(self, code: Optional[int], reason: Optional[str]):
        self._websocket = None
        self._stop_timers()
        self._fail_pending(ConnectionLostError(details={"close_code": code}))

        if self._closing:
            self._set_state(ConnectionState.DISCONNECTED)
            logger.info("Disconnected from controller")
            return

        if code == AUTH_REJECTED_CLOSE_CODE:
            self._set_state(ConnectionState.AUTH_FAILED)
            logger.error(
                "Controller rejected the probe credentials (close code 4001). "
                "Not reconnecting - rotate or replace the credentials and restart the probe."
            )
            return

        logger.warning(f"Disconnected from controller (code={code}, reason={reason or 'n/a'})")
        self._set_state(ConnectionState.DISCONNECTED)
        self._schedule_reconnect()

    def next_reconnect_delay(self) -> float:
        """min(initial * 2^attempts, max); increments the attempt counter"""
        # Exponent capped only to keep the float finite; the delay cap applies far earlier
        exponent = min(self._reconnect_attempts, 30)
        delay = min(
            self.config.reconnect_initial_delay * (2 ** exponent),
            self.config.reconnect_max_delay,
        )
        self._reconnect_attempts += 1
        return delay

    def _schedule_reconnect(self):
        if self._closing or self._state == ConnectionState.AUTH_FAILED:
            return
        if self.reconnect_scheduled:
            return
        delay = self.next_reconnect_delay()
        logger.info(f"Reconnecting in {delay:g} seconds...")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)
        self._reconnect_task = None
        await self.connect()

    async def disconnect(self):
        """Close the connection without scheduling a reconnect"""
        self._closing = True

        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        websocket = self._websocket
        if websocket is not None:
            try:
                await websocket.close()
            except ConnectionClosed:
                pass
            receive_task = self._receive_task
            if receive_task is not None and receive_task is not asyncio.current_task():
                await receive_task
        else:
            self._stop_timers()
            self._fail_pending(ConnectionLostError())
            if self._state != ConnectionState.AUTH_FAILED:
                self._set_state(ConnectionState.DISCONNECTED)

        for task in list(self._tasks):
            task.cancel()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send(self, message: Message):
        websocket = self._websocket
        if websocket is None or self._state != ConnectionState.CONNECTED:
            raise NotConnectedError()
        await websocket.send(json.dumps(message.to_wire()))

    async def send_request(
        self,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Message:
        """
        Send a request and wait for its response envelope

        Raises:
            RequestTimeoutError: no response before the deadline
            ConnectionLostError: the connection closed first
            NotConnectedError: not connected
        """
        message = new_message(action, payload)
        timeout = timeout or self.config.request_timeout
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending[message.id] = PendingRequest(message.id, future, loop.time() + timeout)

        try:
            await self._send(message)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"No response to {action} within {timeout:g}s",
                details={"id": message.id},
            )
        finally:
            self._pending.pop(message.id, None)

    def _fail_pending(self, error: ProbeException):
        pending, self._pending = self._pending, {}
        for request in pending.values():
            if not request.future.done():
                request.future.set_exception(error)
        if pending:
            logger.warning(f"Failed {len(pending)} pending request(s): {error.message}")

    async def verify_password(self, password: str) -> Dict[str, Any]:
        """
        Ask the controller to verify a local UI password

        The controller answers with success/error at the envelope top
        level rather than inside the payload.
        """
        try:
            response = await self.send_request(Action.AUTH_VERIFY.value, {"password": password})
        except (RequestTimeoutError, ConnectionLostError, NotConnectedError) as e:
            return {"success": False, "error": e.message}

        extras = response.extras
        if "success" in extras:
            return {"success": bool(extras["success"]), "error": extras.get("error")}
        payload = response.payload if isinstance(response.payload, dict) else {}
        return {"success": bool(payload.get("success")), "error": payload.get("error")}

    # ------------------------------------------------------------------
    # Inbound routing
    # ------------------------------------------------------------------

    async def _handle_raw(self, raw):
        try:
            message = parse_message(json.loads(raw))
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            logger.error(f"Invalid message from controller: {e}")
            return

        logger.debug(f"Received {message.type}: {message.action}")

        if message.type == MessageType.EVENT:
            self._handle_event(message)
        elif message.type == MessageType.RESPONSE:
            self._handle_response(message)
        else:
            self._spawn(self._handle_request(message))

    def _handle_event(self, message: Message):
        payload = message.payload if isinstance(message.payload, dict) else {}

        if message.action == Action.CONFIG_SYNC.value:
            self._handle_config_sync(payload)
        elif message.action == Action.ALLOWLIST_SYNC.value:
            self._handle_catalog_sync(payload.get("catalog"))
        else:
            logger.warning(f"Unknown event: {message.action}")

    def _handle_response(self, message: Message):
        payload = message.payload if isinstance(message.payload, dict) else {}

        if message.action == f"{Action.ALLOWLIST_REFRESH.value}.response" and payload.get("catalog"):
            self._handle_catalog_sync(payload["catalog"])
            return

        pending = self._pending.pop(message.id, None)
        if pending is None:
            logger.debug(f"Response for unknown or expired request: {message.id}")
            return
        if not pending.future.done():
            pending.future.set_result(message)

    def _handle_config_sync(self, payload: Dict[str, Any]):
        updates: Dict[str, Any] = {}
        if "authRequired" in payload:
            self.auth_required = bool(payload["authRequired"])
            updates["authRequired"] = self.auth_required
        if "passwordHash" in payload:
            self.password_hash = payload["passwordHash"]
            updates["passwordHash"] = self.password_hash

        if not updates:
            return

        logger.info(f"Auth config synced from controller: authRequired={self.auth_required}")
        if self._auth_store is not None:
            try:
                self._auth_store.save(updates)
            except OSError as e:
                logger.error(f"Failed to persist auth config: {e}")

    def _handle_catalog_sync(self, catalog: Optional[Dict[str, Any]]):
        if not catalog:
            logger.warning("Catalog sync without a catalog - ignored")
            return
        try:
            self.allowlist.update_catalog(catalog)
        except AllowlistValidationError as e:
            logger.error(f"Catalog rejected [{e.code}]: {e.message} - keeping previous catalog")
            return
        self._start_catalog_refresh()

    async def _handle_request(self, message: Message):
        payload = message.payload if isinstance(message.payload, dict) else {}
        handler = self._request_handlers.get(message.action)

        try:
            if handler is None:
                result = {"error": f"Unknown action: {message.action}"}
            else:
                result = await handler(payload)
        except Exception as e:
            logger.error(f"{message.action} failed: {e}")
            result = {"error": str(e) or type(e).__name__}

        try:
            await self._send(response_to(message, result))
        except (ConnectionClosed, NotConnectedError) as e:
            logger.warning(f"Could not send {message.action} response {message.id}: {e}")

    # ------------------------------------------------------------------
    # Request handlers
    # ------------------------------------------------------------------

    def _authorize_sql(self, request: SqlExecutePayload) -> str:
        """Return executable SQL text or raise; the only route from wire to executor"""
        if request.template:
            tool_id = self.allowlist.validate_template(request.template)
            if request.tool_id and request.tool_id != tool_id:
                logger.debug(f"Template approved as {tool_id}, request named {request.tool_id}")
            return self.allowlist.substitute_params(request.template, request.params)

        if request.query:
            # TODO: reject raw queries outright once every controller sends the catalog before any sql.execute
            if self.allowlist.ever_loaded:
                raise AllowlistValidationError(
                    "Raw queries are rejected once a query catalog has been received",
                    AllowlistValidationError.TEMPLATE_NOT_ALLOWED,
                )
            logger.warning("Executing legacy raw query - no query catalog received yet")
            return request.query

        raise ValueError("sql.execute requires a template or a query")

    @staticmethod
    def _sql_error(started: float, error: str, code: Optional[str] = None) -> Dict[str, Any]:
        result = {
            "columns": [],
            "rows": [],
            "rowCount": 0,
            "duration": int((time.monotonic() - started) * 1000),
            "error": error,
        }
        if code:
            result["errorCode"] = code
        return result

    async def _handle_sql_execute(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            request = SqlExecutePayload.model_validate(payload)
            query = self._authorize_sql(request)
            result = await self.executor.execute(query, request.timeout)
            return result.to_payload()
        except AllowlistValidationError as e:
            logger.warning(f"sql.execute rejected [{e.code}]: {e.message}")
            return self._sql_error(started, str(e), e.code)
        except Exception as e:
            return self._sql_error(started, str(e) or "SQL execution failed")

    async def _handle_sql_test_connection(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.executor.test_connection()

    async def _handle_file_read(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        path = payload.get("path", "")
        try:
            request = FileReadPayload.model_validate(payload)
            result = await self.files.read_file(request.path)
            return {"path": request.path, "content": result["content"], "size": result["size"]}
        except (ProbeException, OSError, ValidationError) as e:
            return {"path": path, "content": "", "size": 0, "error": str(e) or "File read failed"}

    async def _handle_file_list(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        path = payload.get("path", ".")
        try:
            request = FileListPayload.model_validate(payload)
            files = await self.files.list_files(request.path, request.recursive)
            return {"path": request.path, "files": files}
        except (ProbeException, OSError, ValidationError) as e:
            return {"path": path, "files": [], "error": str(e) or "File list failed"}

    async def _handle_file_search(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            request = FileSearchPayload.model_validate(payload)
            results = await self.files.search_in_files(request.pattern, request.glob)
            return {"results": results}
        except (ProbeException, OSError, ValueError) as e:
            return {"results": [], "error": str(e) or "Search failed"}

    async def _handle_file_structure(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.files.scan_project_structure()

    # ------------------------------------------------------------------
    # Timers and background work
    # ------------------------------------------------------------------

    def heartbeat_payload(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "sqlConnected": self.executor.is_connected(),
            "sqlHost": self.executor.sql_host,
            "dbType": self.executor.db_type,
            "projectPath": self.files.base_path,
        }

    async def send_heartbeat(self) -> bool:
        """
        Send one heartbeat now

        Also used after a local reconfiguration so the controller sees the
        new status without waiting for the next interval.
        """
        if not self.is_connected:
            return False
        try:
            await self._send(new_message(
                Action.PROBE_HEARTBEAT.value,
                self.heartbeat_payload(),
                message_type=MessageType.EVENT,
            ))
        except (ConnectionClosed, NotConnectedError) as e:
            logger.debug(f"Heartbeat not sent: {e}")
            return False
        logger.debug("Sent heartbeat")
        return True

    async def _heartbeat_loop(self):
        # First beat immediately so the controller never shows a stale status
        while True:
            await self.send_heartbeat()
            await asyncio.sleep(self.config.heartbeat_interval)

    async def _catalog_refresh_loop(self):
        while True:
            await asyncio.sleep(self.config.catalog_refresh_interval)
            try:
                await self._send(new_message(Action.ALLOWLIST_REFRESH.value, {}))
                logger.debug("Requested catalog refresh")
            except (ConnectionClosed, NotConnectedError) as e:
                logger.debug(f"Catalog refresh not sent: {e}")

    def _start_heartbeat(self):
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _start_catalog_refresh(self):
        if not self.is_connected:
            return
        if self._refresh_task is not None:
            self._refresh_task.cancel()
        self._refresh_task = asyncio.create_task(self._catalog_refresh_loop())

    @property
    def catalog_refresh_active(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def _stop_timers(self):
        for task in (self._heartbeat_task, self._refresh_task):
            if task is not None:
                task.cancel()
        self._heartbeat_task = None
        self._refresh_task = None

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()}")

    async def sync_project_data(self):
        """Push the project tree and markdown files to the controller"""
        if not self.files.is_configured:
            logger.info("No project path configured - skipping project sync")
            return

        try:
            structure = await self.files.scan_project_structure()
            await self._send(new_message(Action.SYNC_STRUCTURE.value, {"structure": structure}))

            md_files = await self.files.scan_markdown_files()
            await self._send(new_message(Action.SYNC_MD_FILES.value, {"files": md_files}))

            logger.info(f"Synced project: {len(md_files)} MD files")
        except (ProbeException, OSError, ConnectionClosed) as e:
            logger.error(f"Project sync failed: {e}")
